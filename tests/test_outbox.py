from dispatch_fixtures import RecordingBroadcaster, RecordingNotifier

from dispatch_engine.lifecycle import AssignmentLifecycle
from dispatch_engine.models import IncidentStatus
from dispatch_engine.outbox import (
    DeliveryWorker,
    IncidentUpdateIntent,
    InMemoryOutbox,
    Notification,
    NotificationIntent,
    enqueue_safely,
)


class FlakyNotifier(RecordingNotifier):
    def __init__(self, failures) -> None:
        super().__init__()
        self.failures = failures

    def notify(self, user_id, notification):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("push gateway unavailable")
        super().notify(user_id, notification)


class BrokenOutbox(InMemoryOutbox):
    def enqueue(self, intent):
        raise RuntimeError("queue is full")


NOTE = Notification(type="dispatch_assignment", title="New Dispatch Assignment", message="hi")


def test_drain_delivers_in_order() -> None:
    outbox = InMemoryOutbox()
    broadcaster, notifier = RecordingBroadcaster(), RecordingNotifier()
    outbox.enqueue(IncidentUpdateIntent("INC-1", "dispatched"))
    outbox.enqueue(NotificationIntent("resp-1", NOTE))
    outbox.enqueue(IncidentUpdateIntent("INC-1", None))

    stats = DeliveryWorker(outbox, broadcaster, notifier).drain()

    assert stats.delivered == 3
    assert stats.dropped == 0
    assert broadcaster.events == [("INC-1", "dispatched"), ("INC-1", None)]
    assert notifier.sent == [("resp-1", NOTE)]
    assert len(outbox) == 0


def test_flaky_delivery_succeeds_on_retry() -> None:
    outbox = InMemoryOutbox()
    notifier = FlakyNotifier(failures=2)
    outbox.enqueue(NotificationIntent("resp-1", NOTE))

    stats = DeliveryWorker(outbox, RecordingBroadcaster(), notifier, max_attempts=3).drain()

    assert stats.delivered == 1
    assert stats.retried == 2
    assert notifier.sent == [("resp-1", NOTE)]


def test_persistent_failure_is_dropped(caplog) -> None:
    outbox = InMemoryOutbox()
    notifier = FlakyNotifier(failures=100)
    outbox.enqueue(NotificationIntent("resp-1", NOTE))
    outbox.enqueue(IncidentUpdateIntent("INC-1", "dispatched"))
    broadcaster = RecordingBroadcaster()

    stats = DeliveryWorker(outbox, broadcaster, notifier, max_attempts=3).drain()

    assert stats.delivered == 1
    assert stats.dropped == 1
    assert stats.dead_letters[0].attempts == 3
    assert broadcaster.events == [("INC-1", "dispatched")]
    assert notifier.failures == 97
    assert "Dropping NotificationIntent after 3 attempts" in caplog.text


def test_enqueue_safely_reports_failure() -> None:
    assert enqueue_safely(InMemoryOutbox(), IncidentUpdateIntent("INC-1", None)) is True
    assert enqueue_safely(BrokenOutbox(), IncidentUpdateIntent("INC-1", None)) is False


def test_enqueue_failure_does_not_undo_dispatch(store, clock) -> None:
    lifecycle = AssignmentLifecycle(store, BrokenOutbox(), clock=clock)

    outcome = lifecycle.create("dispatcher-1", "INC-1", "FIRE-1", responder_id="resp-1")
    updated = lifecycle.advance(outcome.assignment.assignment_id, "resp-1", "arrived")

    assert outcome.validation.valid
    assert store.get_incident("INC-1").status == IncidentStatus.IN_PROGRESS
    assert store.get_assignment(updated.assignment_id).arrived_at is not None
