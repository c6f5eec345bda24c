from datetime import timedelta

import pytest

from dispatch_fixtures import ACCRA, T0, RecordingBroadcaster, RecordingNotifier, SteppingClock

from dispatch_engine import demo
from dispatch_engine.errors import NotFoundError
from dispatch_engine.geo import estimate_eta
from dispatch_engine.models import (
    Coordinates,
    Incident,
    IncidentCategory,
    IncidentStatus,
    ResponderStatus,
    Severity,
    TrafficBand,
)
from dispatch_engine.system import DispatchSystem


def _system(store, clock, **kwargs):
    broadcaster, notifier = RecordingBroadcaster(), RecordingNotifier()
    kwargs.setdefault("counter_ttl_seconds", 3600)
    return DispatchSystem(store, broadcaster, notifier, clock=clock, **kwargs), broadcaster, notifier


def test_recommendations_skip_inactive_agencies(store, clock) -> None:
    system, _, _ = _system(store, clock)

    recs = system.recommend("INC-1")

    assert [rec.agency.agency_id for rec in recs] == ["FIRE-1", "POL-1"]
    assert recs[0].factors["availability"] == 10
    assert len(system.recommend("INC-1", limit=1)) == 1


def test_recommend_unknown_incident(store, clock) -> None:
    system, _, _ = _system(store, clock)

    with pytest.raises(NotFoundError):
        system.recommend("INC-404")


def test_counter_snapshot_is_reused_until_it_expires(store) -> None:
    system, _, _ = _system(store, SteppingClock(step=timedelta(seconds=10)), counter_ttl_seconds=30)

    first = system.counter_snapshot()
    assert system.counter_snapshot() is first
    assert system.counter_snapshot() is first
    assert system.counter_snapshot() is first

    refreshed = system.counter_snapshot()
    assert refreshed is not first
    assert refreshed.version == first.version + 1


def test_eta_for_responder(store, clock) -> None:
    system, _, _ = _system(store, clock)
    responder = store.get_responder("resp-1")
    incident = store.get_incident("INC-1")

    assert system.eta("INC-1", "resp-1", TrafficBand.NIGHT) == estimate_eta(
        responder.last_location, incident.location, TrafficBand.NIGHT
    )
    # the fixture clock sits at midday
    assert system.eta("INC-1", "resp-1") == estimate_eta(responder.last_location, incident.location, TrafficBand.NORMAL)


def test_eta_without_known_location(store, clock) -> None:
    system, _, _ = _system(store, clock)

    with pytest.raises(NotFoundError):
        system.eta("INC-1", "resp-2")
    with pytest.raises(NotFoundError):
        system.eta("INC-1", "nobody")


def test_dispatch_to_resolution(store, clock) -> None:
    system, broadcaster, notifier = _system(store, clock)

    outcome = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1", priority=5)
    assert broadcaster.events == []

    stats = system.deliver_pending()
    assert stats.delivered == 3
    assert broadcaster.events == [("INC-1", "dispatched")]
    assert [user for user, _ in notifier.sent] == ["resp-1", "chief-1"]
    assert notifier.sent[0][1].priority == "critical"

    assignment_id = outcome.assignment.assignment_id
    for status in ["accepted", "en_route", "arrived", "completed"]:
        system.advance(assignment_id, "resp-1", status)
    system.deliver_pending()

    assert broadcaster.events[-2:] == [("INC-1", "in_progress"), ("INC-1", "resolved")]
    assert store.get_incident("INC-1").status == IncidentStatus.RESOLVED
    assert store.get_responder("resp-1").status == ResponderStatus.AVAILABLE


def test_leaderboard_reflects_resolved_work(store, clock) -> None:
    system, _, _ = _system(store, clock, counter_ttl_seconds=0)
    outcome = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1")
    system.advance(outcome.assignment.assignment_id, "resp-1", "completed")

    board = system.agency_leaderboard()

    assert board[0].agency_id == "FIRE-1"
    assert board[0].agency_name == "Central Fire"
    assert board[0].incidents_handled == 1
    assert board[0].resolution_rate == 100
    assert len(system.agency_leaderboard(limit=2)) == 2


def test_demo_walks_an_incident_to_resolution(capsys) -> None:
    demo.main()

    out = capsys.readouterr().out
    assert "Accra Central Fire Station" in out
    assert "[notify critical] resp-kofi" in out
    assert "Incident status: resolved" in out


def test_assignments_for_incident_are_newest_first(store, clock) -> None:
    system, _, _ = _system(store, clock)
    first = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1").assignment
    second = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-2").assignment

    assert system.assignments_for_incident("INC-1") == [second, first]
    with pytest.raises(NotFoundError):
        system.assignments_for_incident("INC-404")


def test_responder_workload(store, clock) -> None:
    store.add_incident(Incident("INC-2", IncidentCategory.FIRE, Severity.MEDIUM, ACCRA, created_at=T0))
    system, _, _ = _system(store, clock)
    first = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1").assignment
    system.advance(first.assignment_id, "resp-1", "completed")
    assert system.active_assignment("resp-1") is None

    second = system.dispatch("dispatcher-1", "INC-2", "FIRE-1", responder_id="resp-1").assignment
    assert system.active_assignment("resp-1") == second

    workload = system.responder_workload("resp-1")

    assert [a.assignment_id for a in workload.assignments] == [second.assignment_id, first.assignment_id]
    assert workload.active == second
    assert workload.completed_today == 1
    assert workload.completed_this_week == 1
    assert system.responder_workload("resp-2").assignments == []


def test_completions_before_today_only_count_for_the_week(store) -> None:
    system, _, _ = _system(store, SteppingClock(step=timedelta(hours=11)))
    assignment = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1").assignment
    system.advance(assignment.assignment_id, "resp-1", "completed")

    # completed late on the first day, counted the next morning
    workload = system.responder_workload("resp-1")

    assert workload.completed_today == 0
    assert workload.completed_this_week == 1


def test_responders_for_agency(store, clock) -> None:
    system, _, _ = _system(store, clock)
    assignment = system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1").assignment
    position = Coordinates(5.59, -0.20)
    system.advance(assignment.assignment_id, "resp-1", "en_route", location=position)

    ama, kofi = system.responders_for_agency("FIRE-1")

    assert ama.responder.name == "Ama"
    assert ama.available
    assert ama.location is None
    assert ama.current_assignment_id is None
    assert kofi.responder.name == "Kofi"
    assert not kofi.available
    assert kofi.location == position
    assert kofi.current_assignment_id == assignment.assignment_id
    with pytest.raises(NotFoundError):
        system.responders_for_agency("AGENCY-404")


def test_responder_picker_falls_back_to_last_known_location(store, clock) -> None:
    system, _, _ = _system(store, clock)
    system.dispatch("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1")

    _, kofi = system.responders_for_agency("FIRE-1")

    assert kofi.location == Coordinates(5.60, -0.19)
    assert kofi.current_assignment_id is not None
