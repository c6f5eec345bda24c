import logging
from datetime import timedelta

from dispatch_fixtures import ACCRA, T0

from dispatch_engine.models import (
    Agency,
    AgencyCounters,
    AgencyType,
    Coordinates,
    CounterSnapshot,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Responder,
    ResponderStatus,
    Severity,
)
from dispatch_engine.recommendation import AgencyRecommender, capture_counters, category_score


def _incident(category=IncidentCategory.FIRE, location=ACCRA) -> Incident:
    return Incident(incident_id="INC-1", category=category, severity=Severity.HIGH, location=location)


def _agency(agency_id, agency_type, location, **kwargs) -> Agency:
    return Agency(agency_id=agency_id, name=agency_id, agency_type=agency_type, location=location, **kwargs)


def test_colocated_fire_service_outranks_distant_police() -> None:
    fire = _agency("FIRE", AgencyType.FIRE_SERVICE, ACCRA)
    police = _agency("POLICE", AgencyType.POLICE, Coordinates(5.7386, -0.1870))

    ranked = AgencyRecommender().rank(_incident(), [police, fire])

    assert [rec.agency.agency_id for rec in ranked] == ["FIRE", "POLICE"]
    top = ranked[0]
    assert top.factors["distance"] == 30
    assert top.factors["category"] == 25
    assert top.distance_km == 0
    assert "Very close to incident" in top.reasons
    assert "Specialized in fire incidents" in top.reasons
    assert ranked[1].distance_km == 15.0
    assert ranked[1].factors["distance"] == 0


def test_agencies_without_coordinates_are_dropped() -> None:
    agencies = [
        _agency("NOWHERE", AgencyType.FIRE_SERVICE, None),
        _agency("HERE", AgencyType.POLICE, ACCRA),
    ]

    ranked = AgencyRecommender().rank(_incident(), agencies)

    assert [rec.agency.agency_id for rec in ranked] == ["HERE"]


def test_incident_without_location_has_no_recommendations() -> None:
    ranked = AgencyRecommender().rank(_incident(location=None), [_agency("A", AgencyType.POLICE, ACCRA)])
    assert ranked == []


def test_empty_candidate_list() -> None:
    assert AgencyRecommender().rank(_incident(), []) == []


def test_score_is_non_increasing_in_distance() -> None:
    recommender = AgencyRecommender()
    incident = _incident()
    scores = []
    for offset in [0, 0.02, 0.05, 0.1, 0.2, 0.5]:
        agency = _agency("A", AgencyType.FIRE_SERVICE, Coordinates(ACCRA.latitude + offset, ACCRA.longitude))
        scores.append(recommender.rank(incident, [agency])[0].score)

    assert scores == sorted(scores, reverse=True)
    assert scores[0] > scores[-1]


def test_ties_keep_candidate_order() -> None:
    agencies = [_agency(name, AgencyType.POLICE, ACCRA) for name in ["B", "A", "C"]]

    ranked = AgencyRecommender().rank(_incident(IncidentCategory.CRIME), agencies)

    assert [rec.agency.agency_id for rec in ranked] == ["B", "A", "C"]


def test_category_scores() -> None:
    assert category_score(IncidentCategory.MEDICAL, AgencyType.AMBULANCE) == 25
    assert category_score(IncidentCategory.CRIME, AgencyType.DISASTER_MANAGEMENT) == 15
    assert category_score(IncidentCategory.CRIME, AgencyType.AMBULANCE) == 5
    assert category_score(IncidentCategory.OTHER, AgencyType.PRIVATE) == 5


def test_snapshot_counters_override_agency_record() -> None:
    agency = _agency("FIRE", AgencyType.FIRE_SERVICE, ACCRA, available_responders=0, active_incidents=9)
    snapshot = CounterSnapshot(
        version=3,
        captured_at=T0,
        ttl_seconds=60,
        counters={"FIRE": AgencyCounters(active_incidents=0, available_responders=4, avg_response_time=12)},
    )

    rec = AgencyRecommender().rank(_incident(), [agency], snapshot=snapshot, now=T0)[0]

    assert rec.factors["availability"] == 20
    assert rec.factors["workload"] == 15
    assert rec.factors["performance"] == 8
    assert rec.score == 98
    assert "4 responders available" in rec.reasons
    assert "Low current workload" in rec.reasons
    assert "Fast response times" in rec.reasons


def test_unknown_average_response_defaults_to_sixty_minutes() -> None:
    rec = AgencyRecommender().rank(_incident(), [_agency("A", AgencyType.POLICE, ACCRA)])[0]
    assert rec.factors["performance"] == 0


def test_expired_snapshot_is_used_and_logged(caplog) -> None:
    agency = _agency("FIRE", AgencyType.FIRE_SERVICE, ACCRA)
    snapshot = CounterSnapshot(
        version=7,
        captured_at=T0,
        ttl_seconds=30,
        counters={"FIRE": AgencyCounters(available_responders=2)},
    )

    with caplog.at_level(logging.WARNING, logger="dispatch_engine.recommendation"):
        rec = AgencyRecommender().rank(_incident(), [agency], snapshot=snapshot, now=T0 + timedelta(minutes=5))[0]

    assert rec.factors["availability"] == 10
    assert "expired counter snapshot v7" in caplog.text


def test_capture_counters_from_records() -> None:
    agencies = [_agency("FIRE", AgencyType.FIRE_SERVICE, ACCRA), _agency("POL", AgencyType.POLICE, ACCRA)]
    incidents = [
        Incident("I1", IncidentCategory.FIRE, Severity.LOW, ACCRA, status=IncidentStatus.DISPATCHED, assigned_agency_id="FIRE"),
        Incident("I2", IncidentCategory.FIRE, Severity.LOW, ACCRA, status=IncidentStatus.IN_PROGRESS, assigned_agency_id="FIRE"),
        Incident(
            "I3",
            IncidentCategory.FIRE,
            Severity.LOW,
            ACCRA,
            status=IncidentStatus.RESOLVED,
            created_at=T0,
            resolved_at=T0 + timedelta(minutes=20),
            assigned_agency_id="FIRE",
        ),
        Incident("I4", IncidentCategory.CRIME, Severity.LOW, ACCRA),
    ]
    responders = [
        Responder("r1", "FIRE"),
        Responder("r2", "FIRE", status=ResponderStatus.DISPATCHED),
        Responder("r3", "POL", status=ResponderStatus.OFF_DUTY),
    ]

    snapshot = capture_counters(agencies, incidents, responders, version=2, ttl_seconds=30, now=T0)

    assert snapshot.version == 2
    assert snapshot.for_agency("FIRE") == AgencyCounters(active_incidents=2, available_responders=1, avg_response_time=20)
    assert snapshot.for_agency("POL") == AgencyCounters(active_incidents=0, available_responders=0, avg_response_time=None)
    assert not snapshot.is_expired(T0 + timedelta(seconds=30))
    assert snapshot.is_expired(T0 + timedelta(seconds=31))
