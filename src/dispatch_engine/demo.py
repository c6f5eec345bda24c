from __future__ import annotations

from typing import Optional

from dispatch_engine.geo import format_eta
from dispatch_engine.models import (
    Agency,
    AgencyType,
    Coordinates,
    Incident,
    IncidentCategory,
    Responder,
    Severity,
)
from dispatch_engine.outbox import Notification
from dispatch_engine.store import InMemoryDispatchStore
from dispatch_engine.system import DispatchSystem


class ConsoleBroadcaster:
    def emit_incident_update(self, incident_id: str, new_status: Optional[str]) -> None:
        print(f"   [broadcast] incident {incident_id} -> {new_status or 'updated'}")


class ConsoleNotifier:
    def notify(self, user_id: str, notification: Notification) -> None:
        print(f"   [notify {notification.priority}] {user_id}: {notification.message}")


def main() -> None:
    store = InMemoryDispatchStore(
        agencies=[
            Agency(
                agency_id="GNFS-ACC",
                name="Accra Central Fire Station",
                agency_type=AgencyType.FIRE_SERVICE,
                location=Coordinates(5.5560, -0.1969),
                admin_user_id="admin-gnfs",
            ),
            Agency(
                agency_id="NAS-KB",
                name="Korle Bu Ambulance Station",
                agency_type=AgencyType.AMBULANCE,
                location=Coordinates(5.5365, -0.2266),
            ),
            Agency(
                agency_id="GPS-OSU",
                name="Osu Police Station",
                agency_type=AgencyType.POLICE,
                location=Coordinates(5.5572, -0.1818),
            ),
        ],
        responders=[
            Responder("resp-kofi", "GNFS-ACC", name="Kofi", last_location=Coordinates(5.5600, -0.1900)),
            Responder("resp-ama", "GNFS-ACC", name="Ama", last_location=Coordinates(5.5500, -0.2000)),
            Responder("resp-yaw", "NAS-KB", name="Yaw", last_location=Coordinates(5.5365, -0.2266)),
        ],
        incidents=[
            Incident(
                incident_id="INC-1001",
                title="Market warehouse fire",
                category=IncidentCategory.FIRE,
                severity=Severity.CRITICAL,
                location=Coordinates(5.6037, -0.1870),
            )
        ],
    )
    system = DispatchSystem(store, ConsoleBroadcaster(), ConsoleNotifier())

    print("=== Agency recommendations for INC-1001 ===")
    recommendations = system.recommend("INC-1001")
    for rec in recommendations:
        print(f" - {rec.agency.name}: score={rec.score}, distance={rec.distance_km} km")
        for reason in rec.reasons:
            print(f"     * {reason}")

    top = recommendations[0].agency
    print(f"\nDispatching {top.name} with responder resp-kofi")
    eta = system.eta("INC-1001", "resp-kofi")
    print(f"ETA: {format_eta(eta)}")
    outcome = system.dispatch("dispatcher-1", "INC-1001", top.agency_id, "resp-kofi", priority=5)
    if not outcome.validation.valid:
        print(f"Rejected: {', '.join(outcome.validation.errors)}")
        return
    system.deliver_pending()

    assignment_id = outcome.assignment.assignment_id
    for status in ["accepted", "en_route", "arrived", "completed"]:
        system.advance(assignment_id, "resp-kofi", status)
        print(f"Assignment -> {status}")
        system.deliver_pending()

    incident = store.get_incident("INC-1001")
    print(f"\nIncident status: {incident.status.value}, response time: {incident.response_time} min")


if __name__ == "__main__":
    main()
