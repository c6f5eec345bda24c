from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from dispatch_engine.analytics import mean_and_stddev, resolution_rate, response_times
from dispatch_engine.models import CLOSED_INCIDENT_STATUSES, AgencyScore, Incident

MAX_VOLUME = 1000

WEIGHTS = {
    "response_time": 0.3,
    "resolution_rate": 0.3,
    "volume": 0.2,
    "consistency": 0.2,
}


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def score_agency(
    agency_id: str,
    incidents: Sequence[Incident],
    avg_response_time: float,
    name: str = "",
) -> AgencyScore:
    """Weighted 0-100 performance score for one agency.

    Factors: response time (0.3), resolution rate (0.3), volume against a
    1000-incident ceiling (0.2) and consistency of per-incident response
    times (0.2).
    """
    rate = resolution_rate(incidents)
    resolved = [incident for incident in incidents if incident.status in CLOSED_INCIDENT_STATUSES]
    _, stddev = mean_and_stddev(response_times(resolved))

    factors = {
        "response_time": _clamp(100 - avg_response_time / 10),
        "resolution_rate": _clamp(rate),
        "volume": _clamp(len(incidents) / MAX_VOLUME * 100),
        "consistency": _clamp(100 - stddev / 5),
    }
    score = _clamp(sum(factors[factor] * weight for factor, weight in WEIGHTS.items()))

    return AgencyScore(
        agency_id=agency_id,
        agency_name=name,
        score=round(score, 2),
        incidents_handled=len(incidents),
        avg_response_time=avg_response_time,
        resolution_rate=rate,
        factors={key: round(value, 2) for key, value in factors.items()},
    )


def leaderboard(scores: Iterable[AgencyScore], limit: Optional[int] = 10) -> List[AgencyScore]:
    ranked = sorted(scores, key=lambda item: item.score, reverse=True)
    if limit is not None:
        return ranked[:limit]
    return ranked
