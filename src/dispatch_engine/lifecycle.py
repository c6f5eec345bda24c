from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional

from dispatch_engine.analytics import response_time
from dispatch_engine.errors import ForbiddenError, InvalidTransitionError, NotFoundError
from dispatch_engine.models import (
    CLOSED_INCIDENT_STATUSES,
    Assignment,
    AssignmentStatus,
    Coordinates,
    DispatchOutcome,
    Incident,
    IncidentStatus,
    ResponderStatus,
    utcnow,
)
from dispatch_engine.outbox import IncidentUpdateIntent, Notification, NotificationIntent, Outbox, enqueue_safely
from dispatch_engine.store import DispatchStore
from dispatch_engine.validation import validate_assignment

logger = logging.getLogger(__name__)

_ORDER = [
    AssignmentStatus.DISPATCHED,
    AssignmentStatus.ACCEPTED,
    AssignmentStatus.EN_ROUTE,
    AssignmentStatus.ARRIVED,
    AssignmentStatus.COMPLETED,
]

TIMESTAMP_FIELDS = {
    AssignmentStatus.ACCEPTED: "accepted_at",
    AssignmentStatus.EN_ROUTE: "en_route_at",
    AssignmentStatus.ARRIVED: "arrived_at",
    AssignmentStatus.COMPLETED: "completed_at",
}

INCIDENT_PROJECTION = {
    AssignmentStatus.ARRIVED: IncidentStatus.IN_PROGRESS,
    AssignmentStatus.COMPLETED: IncidentStatus.RESOLVED,
}

DISPATCH_NOTIFICATION = "dispatch_assignment"


class TransitionPolicy:
    """Allowed predecessor states for each target assignment status.

    "dispatched" is only ever an initial state and is never a valid target.
    """

    def __init__(self, allowed_predecessors: Mapping[AssignmentStatus, Iterable[AssignmentStatus]]) -> None:
        self.allowed_predecessors: Dict[AssignmentStatus, FrozenSet[AssignmentStatus]] = {
            AssignmentStatus(target): frozenset(AssignmentStatus(s) for s in sources)
            for target, sources in allowed_predecessors.items()
            if AssignmentStatus(target) != AssignmentStatus.DISPATCHED
        }

    @classmethod
    def permissive(cls) -> "TransitionPolicy":
        return cls({target: _ORDER for target in _ORDER[1:]})

    @classmethod
    def forward_only(cls) -> "TransitionPolicy":
        return cls({target: _ORDER[: _ORDER.index(target)] for target in _ORDER[1:]})

    @classmethod
    def named(cls, name: str) -> "TransitionPolicy":
        if name == "permissive":
            return cls.permissive()
        if name == "forward_only":
            return cls.forward_only()
        raise ValueError(f"Unknown transition policy: {name}")

    def allows(self, current: AssignmentStatus, target: AssignmentStatus) -> bool:
        return current in self.allowed_predecessors.get(target, frozenset())


class AssignmentLifecycle:
    """Creates assignments and advances them through the dispatch state machine.

    Every write goes through one atomic store call; broadcast and notification
    side effects are queued on the outbox afterwards and never undo a write.
    """

    def __init__(
        self,
        store: DispatchStore,
        outbox: Outbox,
        policy: Optional[TransitionPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.policy = policy or TransitionPolicy.forward_only()
        self.clock = clock

    def create(
        self,
        dispatcher_id: str,
        incident_id: str,
        agency_id: str,
        responder_id: Optional[str] = None,
        priority: int = 3,
        notes: Optional[str] = None,
    ) -> DispatchOutcome:
        incident = self.store.get_incident(incident_id)
        if incident is None:
            raise NotFoundError("Incident not found")
        agency = self.store.get_agency(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found")
        responder = None
        if responder_id is not None:
            responder = self.store.get_responder(responder_id)
            if responder is None:
                raise NotFoundError("Responder not found")

        now = self.clock()
        assignment = Assignment(
            assignment_id=f"dispatch-{uuid.uuid4().hex}",
            incident_id=incident_id,
            agency_id=agency_id,
            responder_id=responder_id,
            priority=priority,
            dispatched_at=now,
            notes=notes,
        )
        validation = validate_assignment(assignment, incident, agency, responder)
        if not validation.valid:
            logger.info(f"Dispatch of {incident_id} to {agency_id} rejected: {validation.errors}")
            return DispatchOutcome(validation=validation)

        dispatched_incident = replace(
            incident,
            status=IncidentStatus.DISPATCHED,
            assigned_agency_id=agency_id,
            dispatched_at=incident.dispatched_at or now,
        )
        busy_responder = replace(responder, status=ResponderStatus.DISPATCHED) if responder else None
        self.store.create_assignment(assignment, dispatched_incident, busy_responder, expected_version=incident.version)
        logger.info(
            f"Assignment {assignment.assignment_id} created by {dispatcher_id}: "
            f"incident={incident_id} agency={agency_id} responder={responder_id}"
        )

        enqueue_safely(self.outbox, IncidentUpdateIntent(incident_id, IncidentStatus.DISPATCHED.value))
        label = incident.title or incident_id
        if responder_id is not None:
            enqueue_safely(
                self.outbox,
                NotificationIntent(
                    responder_id,
                    Notification(
                        type=DISPATCH_NOTIFICATION,
                        title="New Dispatch Assignment",
                        message=f"You've been assigned to: {label}",
                        related_entity_id=assignment.assignment_id,
                        priority="critical" if priority >= 4 else "high",
                    ),
                ),
            )
        if agency.admin_user_id:
            enqueue_safely(
                self.outbox,
                NotificationIntent(
                    agency.admin_user_id,
                    Notification(
                        type=DISPATCH_NOTIFICATION,
                        title="New Dispatch Assignment",
                        message=f'Incident "{label}" assigned to your agency',
                        related_entity_id=assignment.assignment_id,
                        priority="normal",
                    ),
                ),
            )

        return DispatchOutcome(validation=validation, assignment=assignment)

    def advance(
        self,
        assignment_id: str,
        caller_id: str,
        target_status: Optional[AssignmentStatus | str],
        location: Optional[Coordinates] = None,
        notes: Optional[str] = None,
    ) -> Assignment:
        """Move an assignment to ``target_status`` on behalf of its responder.

        ``target_status=None`` records a location or notes update without a
        status change.
        """
        assignment = self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment not found")
        if assignment.responder_id is None or caller_id != assignment.responder_id:
            raise ForbiddenError("You can only update your own assignments")
        incident = self.store.get_incident(assignment.incident_id)
        if incident is None:
            raise NotFoundError("Incident not found")

        try:
            target = AssignmentStatus(target_status) if target_status is not None else None
        except ValueError as exc:
            raise InvalidTransitionError(f"Unknown assignment status: {target_status}") from exc
        if target is not None and not self.policy.allows(assignment.status, target):
            raise InvalidTransitionError(
                f"Cannot move assignment from {assignment.status.value} to {target.value}"
            )

        now = self.clock()
        changes: dict = {}
        if target is not None:
            changes["status"] = target
            changes[TIMESTAMP_FIELDS[target]] = now
        if location is not None:
            changes["current_location"] = location
        if notes is not None:
            changes["notes"] = notes
        updated = replace(assignment, **changes)

        projected = None
        new_incident_status = INCIDENT_PROJECTION.get(target) if target is not None else None
        if new_incident_status == IncidentStatus.IN_PROGRESS:
            projected = replace(incident, status=IncidentStatus.IN_PROGRESS)
        elif new_incident_status == IncidentStatus.RESOLVED:
            projected = replace(incident, status=IncidentStatus.RESOLVED, resolved_at=now)
            projected = replace(projected, response_time=response_time(projected, now))

        responder = None
        if location is not None or target == AssignmentStatus.COMPLETED:
            responder = self.store.get_responder(caller_id)
            if responder is not None:
                if location is not None:
                    responder = replace(responder, last_location=location, last_location_at=now)
                if target == AssignmentStatus.COMPLETED:
                    responder = replace(responder, status=ResponderStatus.AVAILABLE)

        self.store.apply_transition(
            updated,
            projected,
            responder,
            expected_status=assignment.status,
            expected_version=incident.version,
        )
        logger.info(
            f"Assignment {assignment_id}: {assignment.status.value} -> {updated.status.value}"
            + (f" (incident {incident.incident_id} now {new_incident_status.value})" if new_incident_status else "")
        )

        enqueue_safely(
            self.outbox,
            IncidentUpdateIntent(incident.incident_id, new_incident_status.value if new_incident_status else None),
        )
        return updated

    def set_incident_status(
        self,
        incident_id: str,
        caller_id: str,
        status: IncidentStatus | str,
    ) -> Incident:
        """Dispatcher override of an incident's status, e.g. to close or cancel it.

        Resolving stamps ``resolved_at`` and closing stamps ``closed_at``; both store
        the derived response time.
        """
        incident = self.store.get_incident(incident_id)
        if incident is None:
            raise NotFoundError("Incident not found")
        try:
            target = IncidentStatus(status)
        except ValueError as exc:
            raise InvalidTransitionError(f"Unknown incident status: {status}") from exc

        now = self.clock()
        changes: dict = {"status": target}
        if target == IncidentStatus.RESOLVED:
            changes["resolved_at"] = now
        elif target == IncidentStatus.CLOSED:
            changes["closed_at"] = now
        updated = replace(incident, **changes)
        if target in CLOSED_INCIDENT_STATUSES:
            updated = replace(updated, response_time=response_time(updated, now))

        stored = self.store.update_incident(updated, expected_version=incident.version)
        logger.info(f"Incident {incident_id}: {incident.status.value} -> {target.value} by {caller_id}")

        enqueue_safely(self.outbox, IncidentUpdateIntent(incident_id, target.value))
        return stored
