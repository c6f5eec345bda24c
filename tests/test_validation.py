import pytest

from dispatch_fixtures import ACCRA

from dispatch_engine.models import (
    Agency,
    AgencyType,
    Assignment,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Responder,
    ResponderStatus,
    Severity,
)
from dispatch_engine.validation import is_responder_available, validate_assignment

INCIDENT = Incident("INC-1", IncidentCategory.MEDICAL, Severity.HIGH, ACCRA)
AGENCY = Agency("AMB-1", "Ambulance One", AgencyType.AMBULANCE, ACCRA)


def _assignment(priority=3, responder_id=None) -> Assignment:
    return Assignment("A-1", "INC-1", "AMB-1", responder_id=responder_id, priority=priority)


def test_priority_zero_is_the_only_error() -> None:
    result = validate_assignment(_assignment(priority=0), INCIDENT, AGENCY)

    assert result.valid is False
    assert result.errors == ["Priority must be between 1 and 5"]


@pytest.mark.parametrize("priority", [1, 2, 3, 4, 5])
def test_priorities_in_range_are_accepted(priority) -> None:
    assert validate_assignment(_assignment(priority=priority), INCIDENT, AGENCY).valid


@pytest.mark.parametrize("priority", [0, 6, -1])
def test_priorities_out_of_range_are_rejected(priority) -> None:
    assert not validate_assignment(_assignment(priority=priority), INCIDENT, AGENCY).valid


def test_inactive_agency_is_always_rejected() -> None:
    inactive = Agency("AMB-1", "Ambulance One", AgencyType.AMBULANCE, ACCRA, active=False)
    responder = Responder("r-1", "AMB-1")

    result = validate_assignment(_assignment(responder_id="r-1"), INCIDENT, inactive, responder)

    assert result.errors == ["Agency must be active"]


@pytest.mark.parametrize("status", [IncidentStatus.REPORTED, IncidentStatus.DISPATCHED])
def test_open_incident_statuses_accept_new_assignments(status) -> None:
    incident = Incident("INC-1", IncidentCategory.MEDICAL, Severity.HIGH, ACCRA, status=status)
    assert validate_assignment(_assignment(), incident, AGENCY).valid


@pytest.mark.parametrize(
    "status",
    [IncidentStatus.IN_PROGRESS, IncidentStatus.RESOLVED, IncidentStatus.CLOSED, IncidentStatus.CANCELLED],
)
def test_progressed_incident_statuses_are_rejected(status) -> None:
    incident = Incident("INC-1", IncidentCategory.MEDICAL, Severity.HIGH, ACCRA, status=status)

    result = validate_assignment(_assignment(), incident, AGENCY)

    assert result.errors == ["Incident must be in REPORTED or DISPATCHED status"]


def test_every_violation_is_reported() -> None:
    closed = Incident("INC-1", IncidentCategory.MEDICAL, Severity.HIGH, ACCRA, status=IncidentStatus.CLOSED)
    inactive = Agency("AMB-1", "Ambulance One", AgencyType.AMBULANCE, ACCRA, active=False)
    busy_elsewhere = Responder("r-9", "POL-1", status=ResponderStatus.DISPATCHED)

    result = validate_assignment(_assignment(priority=9, responder_id="r-9"), closed, inactive, busy_elsewhere)

    assert result.valid is False
    assert result.errors == [
        "Incident must be in REPORTED or DISPATCHED status",
        "Agency must be active",
        "Responder is not available",
        "Responder must belong to selected agency",
        "Priority must be between 1 and 5",
    ]


def test_responder_availability() -> None:
    assert is_responder_available(Responder("r", "A"))
    assert not is_responder_available(Responder("r", "A", status=ResponderStatus.DISPATCHED))
    assert not is_responder_available(Responder("r", "A", status=ResponderStatus.OFF_DUTY))
