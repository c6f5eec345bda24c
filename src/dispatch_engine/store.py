from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Dict, Iterable, List, Optional, Protocol

from dispatch_engine.errors import ConflictError, NotFoundError
from dispatch_engine.models import (
    Agency,
    Assignment,
    AssignmentStatus,
    Incident,
    Responder,
    ResponderStatus,
)


class DispatchStore(Protocol):
    """Persistence collaborator used by the lifecycle engine.

    Every write method must be atomic and must re-check its preconditions
    (incident version, assignment status, responder availability) inside the
    write, raising ``ConflictError`` when they no longer hold.
    """

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        ...

    def get_agency(self, agency_id: str) -> Optional[Agency]:
        ...

    def get_responder(self, responder_id: str) -> Optional[Responder]:
        ...

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        ...

    def list_agencies(self) -> List[Agency]:
        ...

    def list_incidents(self) -> List[Incident]:
        ...

    def list_responders(self) -> List[Responder]:
        ...

    def list_assignments(
        self,
        incident_id: Optional[str] = None,
        responder_id: Optional[str] = None,
    ) -> List[Assignment]:
        ...

    def create_assignment(
        self,
        assignment: Assignment,
        incident: Incident,
        responder: Optional[Responder],
        expected_version: int,
    ) -> Incident:
        ...

    def apply_transition(
        self,
        assignment: Assignment,
        incident: Optional[Incident] = None,
        responder: Optional[Responder] = None,
        expected_status: Optional[AssignmentStatus] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        ...

    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        ...


def newest_first(assignments: Iterable[Assignment]) -> List[Assignment]:
    return sorted(assignments, key=lambda a: a.dispatched_at, reverse=True)


class InMemoryDispatchStore:
    def __init__(
        self,
        incidents: Iterable[Incident] = (),
        agencies: Iterable[Agency] = (),
        responders: Iterable[Responder] = (),
        assignments: Iterable[Assignment] = (),
    ) -> None:
        self._lock = Lock()
        self.incidents: Dict[str, Incident] = {i.incident_id: i for i in incidents}
        self.agencies: Dict[str, Agency] = {a.agency_id: a for a in agencies}
        self.responders: Dict[str, Responder] = {r.responder_id: r for r in responders}
        self.assignments: Dict[str, Assignment] = {a.assignment_id: a for a in assignments}

    def add_incident(self, incident: Incident) -> None:
        with self._lock:
            self.incidents[incident.incident_id] = incident

    def add_agency(self, agency: Agency) -> None:
        with self._lock:
            self.agencies[agency.agency_id] = agency

    def add_responder(self, responder: Responder) -> None:
        with self._lock:
            self.responders[responder.responder_id] = responder

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        return self.incidents.get(incident_id)

    def get_agency(self, agency_id: str) -> Optional[Agency]:
        return self.agencies.get(agency_id)

    def get_responder(self, responder_id: str) -> Optional[Responder]:
        return self.responders.get(responder_id)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self.assignments.get(assignment_id)

    def list_agencies(self) -> List[Agency]:
        return list(self.agencies.values())

    def list_incidents(self) -> List[Incident]:
        return list(self.incidents.values())

    def list_responders(self) -> List[Responder]:
        return list(self.responders.values())

    def list_assignments(
        self,
        incident_id: Optional[str] = None,
        responder_id: Optional[str] = None,
    ) -> List[Assignment]:
        return newest_first(
            a
            for a in list(self.assignments.values())
            if (incident_id is None or a.incident_id == incident_id)
            and (responder_id is None or a.responder_id == responder_id)
        )

    def _check_incident_version(self, incident_id: str, expected_version: int) -> Incident:
        current = self.incidents.get(incident_id)
        if current is None:
            raise NotFoundError("Incident not found")
        if current.version != expected_version:
            raise ConflictError("Incident was modified concurrently")
        return current

    def create_assignment(
        self,
        assignment: Assignment,
        incident: Incident,
        responder: Optional[Responder],
        expected_version: int,
    ) -> Incident:
        with self._lock:
            self._check_incident_version(incident.incident_id, expected_version)
            if responder is not None:
                booked = self.responders.get(responder.responder_id)
                if booked is None:
                    raise NotFoundError("Responder not found")
                if booked.status != ResponderStatus.AVAILABLE:
                    raise ConflictError("Responder was dispatched concurrently")

            stored = replace(incident, version=expected_version + 1)
            self.incidents[stored.incident_id] = stored
            self.assignments[assignment.assignment_id] = assignment
            if responder is not None:
                self.responders[responder.responder_id] = responder
            return stored

    def apply_transition(
        self,
        assignment: Assignment,
        incident: Optional[Incident] = None,
        responder: Optional[Responder] = None,
        expected_status: Optional[AssignmentStatus] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Incident]:
        with self._lock:
            current = self.assignments.get(assignment.assignment_id)
            if current is None:
                raise NotFoundError("Assignment not found")
            if expected_status is not None and current.status != expected_status:
                raise ConflictError("Assignment was updated concurrently")
            if incident is not None and expected_version is not None:
                self._check_incident_version(incident.incident_id, expected_version)

            self.assignments[assignment.assignment_id] = assignment
            stored = None
            if incident is not None:
                version = self.incidents[incident.incident_id].version
                stored = replace(incident, version=version + 1)
                self.incidents[stored.incident_id] = stored
            if responder is not None:
                self.responders[responder.responder_id] = responder
            return stored

    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        with self._lock:
            self._check_incident_version(incident.incident_id, expected_version)
            stored = replace(incident, version=expected_version + 1)
            self.incidents[stored.incident_id] = stored
            return stored
