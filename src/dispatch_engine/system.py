from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from dispatch_engine.errors import NotFoundError
from dispatch_engine.geo import estimate_eta, traffic_band_for
from dispatch_engine.lifecycle import AssignmentLifecycle, TransitionPolicy
from dispatch_engine.models import (
    LIVE_ASSIGNMENT_STATUSES,
    AgencyScore,
    Assignment,
    AssignmentStatus,
    Coordinates,
    CounterSnapshot,
    DispatchOutcome,
    Incident,
    IncidentStatus,
    Recommendation,
    ResponderAvailability,
    ResponderWorkload,
    TrafficBand,
    utcnow,
)
from dispatch_engine.outbox import DeliveryStats, DeliveryWorker, IncidentBroadcaster, InMemoryOutbox, Notifier, Outbox
from dispatch_engine.performance import leaderboard, score_agency
from dispatch_engine.recommendation import AgencyRecommender, capture_counters
from dispatch_engine.store import DispatchStore


class DispatchSystem:
    def __init__(
        self,
        store: DispatchStore,
        broadcaster: IncidentBroadcaster,
        notifier: Notifier,
        outbox: Optional[Outbox] = None,
        policy: Optional[TransitionPolicy] = None,
        counter_ttl_seconds: float = 30,
        max_delivery_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.outbox = outbox if outbox is not None else InMemoryOutbox()
        self.recommender = AgencyRecommender()
        self.lifecycle = AssignmentLifecycle(store, self.outbox, policy=policy, clock=clock)
        self.worker = DeliveryWorker(self.outbox, broadcaster, notifier, max_attempts=max_delivery_attempts)
        self.counter_ttl_seconds = counter_ttl_seconds
        self.clock = clock
        self._snapshot: Optional[CounterSnapshot] = None

    def _incident(self, incident_id: str) -> Incident:
        incident = self.store.get_incident(incident_id)
        if incident is None:
            raise NotFoundError("Incident not found")
        return incident

    def counter_snapshot(self) -> CounterSnapshot:
        """Current counter snapshot, recaptured once the previous one expires."""
        now = self.clock()
        if self._snapshot is None or self._snapshot.is_expired(now):
            version = self._snapshot.version + 1 if self._snapshot else 1
            self._snapshot = capture_counters(
                self.store.list_agencies(),
                self.store.list_incidents(),
                self.store.list_responders(),
                version=version,
                ttl_seconds=self.counter_ttl_seconds,
                now=now,
            )
        return self._snapshot

    def recommend(self, incident_id: str, limit: Optional[int] = None) -> List[Recommendation]:
        incident = self._incident(incident_id)
        return self.recommender.rank(
            incident,
            [agency for agency in self.store.list_agencies() if agency.active],
            snapshot=self.counter_snapshot(),
            limit=limit,
            now=self.clock(),
        )

    def eta(
        self,
        incident_id: str,
        responder_id: str,
        traffic_band: Optional[TrafficBand | str] = None,
    ) -> int:
        incident = self._incident(incident_id)
        responder = self.store.get_responder(responder_id)
        if responder is None:
            raise NotFoundError("Responder not found")
        if incident.location is None or responder.last_location is None:
            raise NotFoundError("Location unknown for incident or responder")
        band = traffic_band or traffic_band_for(self.clock().hour)
        return estimate_eta(responder.last_location, incident.location, band)

    def dispatch(
        self,
        dispatcher_id: str,
        incident_id: str,
        agency_id: str,
        responder_id: Optional[str] = None,
        priority: int = 3,
        notes: Optional[str] = None,
    ) -> DispatchOutcome:
        return self.lifecycle.create(dispatcher_id, incident_id, agency_id, responder_id, priority, notes)

    def advance(
        self,
        assignment_id: str,
        caller_id: str,
        target_status: Optional[str],
        location: Optional[Coordinates] = None,
        notes: Optional[str] = None,
    ) -> Assignment:
        return self.lifecycle.advance(assignment_id, caller_id, target_status, location, notes)

    def deliver_pending(self) -> DeliveryStats:
        return self.worker.drain()

    def agency_leaderboard(self, limit: Optional[int] = 10) -> List[AgencyScore]:
        snapshot = self.counter_snapshot()
        by_agency: Dict[str, List[Incident]] = {}
        for incident in self.store.list_incidents():
            if incident.assigned_agency_id is not None:
                by_agency.setdefault(incident.assigned_agency_id, []).append(incident)

        scores = []
        for agency in self.store.list_agencies():
            counters = snapshot.for_agency(agency.agency_id)
            avg = counters.avg_response_time if counters and counters.avg_response_time is not None else 0
            scores.append(score_agency(agency.agency_id, by_agency.get(agency.agency_id, []), avg, agency.name))
        return leaderboard(scores, limit=limit)

    def set_incident_status(self, incident_id: str, caller_id: str, status: IncidentStatus | str) -> Incident:
        return self.lifecycle.set_incident_status(incident_id, caller_id, status)

    def assignments_for_incident(self, incident_id: str) -> List[Assignment]:
        self._incident(incident_id)
        return self.store.list_assignments(incident_id=incident_id)

    def active_assignment(self, responder_id: str) -> Optional[Assignment]:
        """Most recently dispatched assignment the responder has not completed."""
        for assignment in self.store.list_assignments(responder_id=responder_id):
            if assignment.status in LIVE_ASSIGNMENT_STATUSES:
                return assignment
        return None

    def responder_workload(self, responder_id: str) -> ResponderWorkload:
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=7)

        assignments = self.store.list_assignments(responder_id=responder_id)
        completed = [
            a.completed_at
            for a in assignments
            if a.status == AssignmentStatus.COMPLETED and a.completed_at is not None
        ]
        return ResponderWorkload(
            assignments=assignments,
            active=next((a for a in assignments if a.status in LIVE_ASSIGNMENT_STATUSES), None),
            completed_today=sum(1 for at in completed if at >= start_of_day),
            completed_this_week=sum(1 for at in completed if at >= week_ago),
        )

    def responders_for_agency(self, agency_id: str) -> List[ResponderAvailability]:
        if self.store.get_agency(agency_id) is None:
            raise NotFoundError("Agency not found")
        responders = sorted(
            (r for r in self.store.list_responders() if r.agency_id == agency_id),
            key=lambda r: r.name,
        )
        picker = []
        for responder in responders:
            active = self.active_assignment(responder.responder_id)
            location = (active.current_location if active else None) or responder.last_location
            picker.append(
                ResponderAvailability(
                    responder=responder,
                    location=location,
                    current_assignment_id=active.assignment_id if active else None,
                )
            )
        return picker
