from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from dispatch_engine.analytics import response_time
from dispatch_engine.geo import haversine_km
from dispatch_engine.models import (
    Agency,
    AgencyCounters,
    AgencyType,
    CounterSnapshot,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Recommendation,
    Responder,
    ResponderStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_AVG_RESPONSE_MINUTES = 60

CATEGORY_AGENCY_MAP = {
    IncidentCategory.FIRE: {AgencyType.FIRE_SERVICE, AgencyType.DISASTER_MANAGEMENT},
    IncidentCategory.MEDICAL: {AgencyType.AMBULANCE, AgencyType.DISASTER_MANAGEMENT},
    IncidentCategory.ACCIDENT: {AgencyType.AMBULANCE, AgencyType.POLICE, AgencyType.FIRE_SERVICE},
    IncidentCategory.NATURAL_DISASTER: {AgencyType.DISASTER_MANAGEMENT, AgencyType.FIRE_SERVICE},
    IncidentCategory.CRIME: {AgencyType.POLICE},
    IncidentCategory.INFRASTRUCTURE: {AgencyType.DISASTER_MANAGEMENT, AgencyType.FIRE_SERVICE},
}


@dataclass(frozen=True)
class ReasonRule:
    factor: str
    applies: Callable[[float], bool]
    message: Callable[["ScoringContext"], str]


@dataclass(frozen=True)
class ScoringContext:
    incident: Incident
    agency: Agency
    counters: AgencyCounters


REASON_RULES = [
    ReasonRule("distance", lambda s: s > 20, lambda ctx: "Very close to incident"),
    ReasonRule(
        "category",
        lambda s: s > 15,
        lambda ctx: f"Specialized in {ctx.incident.category.value} incidents",
    ),
    ReasonRule(
        "availability",
        lambda s: s > 10,
        lambda ctx: f"{ctx.counters.available_responders} responders available",
    ),
    ReasonRule("workload", lambda s: s > 10, lambda ctx: "Low current workload"),
    ReasonRule("performance", lambda s: s > 7, lambda ctx: "Fast response times"),
]


def category_score(category: IncidentCategory, agency_type: AgencyType) -> int:
    if agency_type in CATEGORY_AGENCY_MAP.get(category, set()):
        return 25
    if agency_type == AgencyType.DISASTER_MANAGEMENT:
        return 15
    return 5


class AgencyRecommender:
    """Ranks candidate agencies for an incident by a five-factor weighted score.

    Factor caps: distance 30, category 25, availability 20, workload 15,
    performance 10. Workload counters come from a :class:`CounterSnapshot` when
    one covers the agency, otherwise from the agency record itself.
    """

    def __init__(self, reason_rules: Optional[List[ReasonRule]] = None) -> None:
        self.reason_rules = reason_rules if reason_rules is not None else REASON_RULES

    @staticmethod
    def counters_for(agency: Agency, snapshot: Optional[CounterSnapshot]) -> AgencyCounters:
        if snapshot is not None:
            counters = snapshot.for_agency(agency.agency_id)
            if counters is not None:
                return counters
        return AgencyCounters(
            active_incidents=agency.active_incidents,
            available_responders=agency.available_responders,
            avg_response_time=agency.avg_response_time,
        )

    @staticmethod
    def factor_scores(incident: Incident, agency: Agency, counters: AgencyCounters, distance: float) -> Dict[str, float]:
        avg_response = counters.avg_response_time
        if avg_response is None:
            avg_response = DEFAULT_AVG_RESPONSE_MINUTES
        return {
            "distance": max(0.0, 30 - distance * 2),
            "category": float(category_score(incident.category, agency.agency_type)),
            "availability": float(min(20, counters.available_responders * 5)),
            "workload": float(max(0, 15 - counters.active_incidents * 2)),
            "performance": max(0.0, 10 - avg_response / 6),
        }

    def explain(self, factors: Dict[str, float], context: ScoringContext) -> List[str]:
        return [rule.message(context) for rule in self.reason_rules if rule.applies(factors[rule.factor])]

    def rank(
        self,
        incident: Incident,
        agencies: Iterable[Agency],
        snapshot: Optional[CounterSnapshot] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Recommendation]:
        if incident.location is None:
            return []
        if snapshot is not None and snapshot.is_expired(now):
            logger.warning("Ranking with expired counter snapshot v%s", snapshot.version)

        ranked = []
        for agency in agencies:
            if agency.location is None:
                continue

            distance = haversine_km(incident.location, agency.location)
            counters = self.counters_for(agency, snapshot)
            factors = self.factor_scores(incident, agency, counters, distance)
            reasons = self.explain(factors, ScoringContext(incident=incident, agency=agency, counters=counters))

            ranked.append(
                Recommendation(
                    agency=agency,
                    score=round(sum(factors.values()), 2),
                    distance_km=round(distance, 1),
                    reasons=reasons,
                    factors={name: round(value, 2) for name, value in factors.items()},
                )
            )

        # list.sort is stable, so equal scores keep the candidate order
        ranked.sort(key=lambda item: item.score, reverse=True)
        if limit is not None:
            return ranked[:limit]
        return ranked


ACTIVE_INCIDENT_STATUSES = frozenset({IncidentStatus.DISPATCHED, IncidentStatus.IN_PROGRESS})


def capture_counters(
    agencies: Iterable[Agency],
    incidents: Iterable[Incident],
    responders: Iterable[Responder],
    version: int,
    ttl_seconds: float,
    now: Optional[datetime] = None,
) -> CounterSnapshot:
    """Build a counter snapshot from current records.

    Average response time per agency is the mean over its resolved or closed
    incidents, or ``None`` when it has none.
    """
    now = now or utcnow()
    active: Dict[str, int] = {}
    times: Dict[str, List[int]] = {}
    for incident in incidents:
        agency_id = incident.assigned_agency_id
        if agency_id is None:
            continue
        if incident.status in ACTIVE_INCIDENT_STATUSES:
            active[agency_id] = active.get(agency_id, 0) + 1
        minutes = response_time(incident, now)
        if minutes is not None:
            times.setdefault(agency_id, []).append(minutes)

    available: Dict[str, int] = {}
    for responder in responders:
        if responder.status == ResponderStatus.AVAILABLE:
            available[responder.agency_id] = available.get(responder.agency_id, 0) + 1

    counters = {}
    for agency in agencies:
        agency_times = times.get(agency.agency_id)
        counters[agency.agency_id] = AgencyCounters(
            active_incidents=active.get(agency.agency_id, 0),
            available_responders=available.get(agency.agency_id, 0),
            avg_response_time=sum(agency_times) / len(agency_times) if agency_times else None,
        )
    return CounterSnapshot(version=version, captured_at=now, ttl_seconds=ttl_seconds, counters=counters)
