"""
Response-time analytics over historical incidents.

All functions are pure: they take already-loaded records and return plain
result objects for dashboards and for the agency performance factor.
"""
from __future__ import annotations

import math
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from dispatch_engine.models import (
    CLOSED_INCIDENT_STATUSES,
    Anomaly,
    Assignment,
    AssignmentStatus,
    Incident,
    ResponseTimeMetrics,
    TrendPoint,
    TrendResult,
    utcnow,
)

TREND_THRESHOLD_PERCENT = 5


def response_time(incident: Incident, now: Optional[datetime] = None) -> Optional[int]:
    """Minutes from creation to resolution, or ``None`` while the incident is open."""
    if incident.status not in CLOSED_INCIDENT_STATUSES:
        return None
    end = incident.resolved_at or now or utcnow()
    minutes = (end - incident.created_at).total_seconds() / 60
    # half minutes round up
    return math.floor(minutes + 0.5)


def response_times(incidents: Iterable[Incident], now: Optional[datetime] = None) -> List[int]:
    times = (response_time(incident, now) for incident in incidents)
    return [t for t in times if t is not None]


def mean_and_stddev(values: Sequence[float]) -> tuple[float, float]:
    """Population mean and standard deviation; ``(0, 0)`` for an empty sequence."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def distribution(times: Iterable[float]) -> ResponseTimeMetrics:
    ordered = sorted(times)
    if not ordered:
        return ResponseTimeMetrics()

    count = len(ordered)
    p95_index = math.floor(count * 0.95)
    p95 = ordered[p95_index] if p95_index < count else ordered[-1]
    return ResponseTimeMetrics(
        count=count,
        average=round(sum(ordered) / count, 2),
        median=round(ordered[count // 2], 2),
        min=ordered[0],
        max=ordered[-1],
        p95=round(p95, 2),
    )


def distribution_for(incidents: Iterable[Incident], now: Optional[datetime] = None) -> ResponseTimeMetrics:
    return distribution(response_times(incidents, now))


def anomalies(series: Sequence[float], threshold: float = 2) -> List[Anomaly]:
    if len(series) < 3:
        return []

    mean, stddev = mean_and_stddev(series)
    if stddev == 0:
        return []

    flagged = []
    for index, value in enumerate(series):
        z_score = abs((value - mean) / stddev)
        if z_score > threshold:
            flagged.append(Anomaly(index=index, value=value, z_score=round(z_score, 2)))
    return flagged


def moving_average(series: Sequence[TrendPoint], window: int) -> List[TrendPoint]:
    averaged = []
    for end in range(window - 1, len(series)):
        chunk = series[end - window + 1 : end + 1]
        avg = sum(point.value for point in chunk) / window
        averaged.append(TrendPoint(date=series[end].date, value=round(avg, 2)))
    return averaged


def trend(series: Sequence[TrendPoint], window: int = 7) -> TrendResult:
    """Classify a time series as ``up``, ``down`` or ``stable``.

    The moving average is split in half; a change of more than 5% between the
    half averages sets the direction, and its magnitude is the trend strength.
    """
    if window < 1 or len(series) < window:
        return TrendResult(moving_average=list(series), trend="stable", strength=0)

    averaged = moving_average(series, window)
    if len(averaged) < 2:
        return TrendResult(moving_average=averaged, trend="stable", strength=0)

    half = len(averaged) // 2
    first_avg = sum(p.value for p in averaged[:half]) / half
    second_avg = sum(p.value for p in averaged[half:]) / (len(averaged) - half)

    if first_avg == 0:
        change = 0.0 if second_avg == 0 else math.copysign(100.0, second_avg)
    else:
        change = (second_avg - first_avg) / abs(first_avg) * 100

    if change > TREND_THRESHOLD_PERCENT:
        direction = "up"
    elif change < -TREND_THRESHOLD_PERCENT:
        direction = "down"
    else:
        direction = "stable"
    return TrendResult(moving_average=averaged, trend=direction, strength=round(abs(change), 2))


def resolution_rate(incidents: Sequence[Incident]) -> float:
    if not incidents:
        return 0
    resolved = sum(1 for incident in incidents if incident.status in CLOSED_INCIDENT_STATUSES)
    return round(resolved / len(incidents) * 100, 2)


def utilization_rate(assignments: Iterable[Assignment], total_hours: float) -> float:
    """Share of ``total_hours`` a responder spent on completed assignments, in percent."""
    if total_hours <= 0:
        return 0
    active_hours = 0.0
    for assignment in assignments:
        if assignment.status == AssignmentStatus.COMPLETED and assignment.completed_at:
            active_hours += (assignment.completed_at - assignment.dispatched_at).total_seconds() / 3600
    return round(active_hours / total_hours * 100, 2)


def percentage_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100, 2)


def period_key(moment: datetime, period: str) -> str:
    if period == "hour":
        return moment.strftime("%Y-%m-%d %H:00")
    if period == "day":
        return moment.strftime("%Y-%m-%d")
    if period == "week":
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "month":
        return moment.strftime("%Y-%m")
    raise ValueError(f"Unknown period: {period}")


def group_by_period(incidents: Iterable[Incident], period: str = "day") -> Dict[str, int]:
    counts = Counter(period_key(incident.created_at, period) for incident in incidents)
    return dict(sorted(counts.items()))
