import pytest

from dispatch_fixtures import ACCRA, T0, SteppingClock

from dispatch_engine.models import (
    Agency,
    AgencyType,
    Coordinates,
    Incident,
    IncidentCategory,
    Responder,
    Severity,
)
from dispatch_engine.store import InMemoryDispatchStore


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def store() -> InMemoryDispatchStore:
    return InMemoryDispatchStore(
        incidents=[
            Incident(
                incident_id="INC-1",
                title="Warehouse fire",
                category=IncidentCategory.FIRE,
                severity=Severity.HIGH,
                location=ACCRA,
                created_at=T0,
            )
        ],
        agencies=[
            Agency(
                agency_id="FIRE-1",
                name="Central Fire",
                agency_type=AgencyType.FIRE_SERVICE,
                location=ACCRA,
                admin_user_id="chief-1",
            ),
            Agency(
                agency_id="POL-1",
                name="Osu Police",
                agency_type=AgencyType.POLICE,
                location=Coordinates(5.7386, -0.1870),
            ),
            Agency(
                agency_id="OLD-1",
                name="Retired Station",
                agency_type=AgencyType.FIRE_SERVICE,
                location=ACCRA,
                active=False,
            ),
        ],
        responders=[
            Responder("resp-1", "FIRE-1", name="Kofi", last_location=Coordinates(5.60, -0.19)),
            Responder("resp-2", "FIRE-1", name="Ama"),
            Responder("resp-police", "POL-1", name="Esi"),
        ],
    )
