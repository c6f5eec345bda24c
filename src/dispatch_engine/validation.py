from __future__ import annotations

from typing import Optional

from dispatch_engine.models import (
    DISPATCHABLE_INCIDENT_STATUSES,
    Agency,
    Assignment,
    Incident,
    Responder,
    ResponderStatus,
    ValidationResult,
)

MIN_PRIORITY = 1
MAX_PRIORITY = 5


def is_responder_available(responder: Responder) -> bool:
    return responder.status == ResponderStatus.AVAILABLE


def validate_assignment(
    assignment: Assignment,
    incident: Incident,
    agency: Agency,
    responder: Optional[Responder] = None,
) -> ValidationResult:
    """Check every creation rule and collect all violations.

    Nothing is raised; callers decide whether to block the write.
    """
    errors = []

    if incident.status not in DISPATCHABLE_INCIDENT_STATUSES:
        errors.append("Incident must be in REPORTED or DISPATCHED status")

    if not agency.active:
        errors.append("Agency must be active")

    if responder is not None:
        if not is_responder_available(responder):
            errors.append("Responder is not available")
        if responder.agency_id != assignment.agency_id:
            errors.append("Responder must belong to selected agency")

    if not MIN_PRIORITY <= assignment.priority <= MAX_PRIORITY:
        errors.append(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

    return ValidationResult(valid=not errors, errors=errors)
