"""
Outbound side-effect intents.

The core never calls the broadcast or notification transports inline. It enqueues
an intent on an :class:`Outbox`; a :class:`DeliveryWorker` drains the queue and
hands each intent to its collaborator, retrying a bounded number of times.
Delivery is advisory: an intent that keeps failing is dropped and logged.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Deque, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    type: str
    title: str
    message: str
    related_entity_id: Optional[str] = None
    priority: str = "normal"


@dataclass(frozen=True)
class IncidentUpdateIntent:
    incident_id: str
    new_status: Optional[str]
    attempts: int = 0


@dataclass(frozen=True)
class NotificationIntent:
    user_id: str
    notification: Notification
    attempts: int = 0


Intent = Union[IncidentUpdateIntent, NotificationIntent]


class IncidentBroadcaster(Protocol):
    def emit_incident_update(self, incident_id: str, new_status: Optional[str]) -> None:
        ...


class Notifier(Protocol):
    def notify(self, user_id: str, notification: Notification) -> None:
        ...


class Outbox(Protocol):
    def enqueue(self, intent: Intent) -> None:
        ...

    def take(self) -> Optional[Intent]:
        ...


class InMemoryOutbox:
    """Thread-safe FIFO of pending intents."""

    def __init__(self) -> None:
        self._queue: Deque[Intent] = deque()
        self._lock = Lock()

    def enqueue(self, intent: Intent) -> None:
        with self._lock:
            self._queue.append(intent)

    def take(self) -> Optional[Intent]:
        with self._lock:
            if not self._queue:
                return None
            return self._queue.popleft()

    def pending(self) -> List[Intent]:
        with self._lock:
            return list(self._queue)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


def enqueue_safely(outbox: Outbox, intent: Intent) -> bool:
    """Enqueue ``intent``; failures are logged and reported as ``False``."""
    try:
        outbox.enqueue(intent)
    except Exception as e:
        logger.error(f"Failed to enqueue {type(intent).__name__}: {e}", exc_info=True)
        return False
    return True


@dataclass
class DeliveryStats:
    delivered: int = 0
    retried: int = 0
    dropped: int = 0
    dead_letters: List[Intent] = field(default_factory=list)


class DeliveryWorker:
    def __init__(
        self,
        outbox: Outbox,
        broadcaster: IncidentBroadcaster,
        notifier: Notifier,
        max_attempts: int = 3,
    ) -> None:
        self.outbox = outbox
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.max_attempts = max(1, max_attempts)

    def deliver(self, intent: Intent) -> None:
        if isinstance(intent, IncidentUpdateIntent):
            self.broadcaster.emit_incident_update(intent.incident_id, intent.new_status)
        else:
            self.notifier.notify(intent.user_id, intent.notification)

    def drain(self) -> DeliveryStats:
        """Deliver everything currently queued, retrying each intent up to ``max_attempts``."""
        stats = DeliveryStats()
        batch = self._take_all()

        while batch:
            retry: List[Intent] = []
            for intent in batch:
                try:
                    self.deliver(intent)
                    stats.delivered += 1
                except Exception as e:
                    attempts = intent.attempts + 1
                    if attempts >= self.max_attempts:
                        stats.dropped += 1
                        stats.dead_letters.append(replace(intent, attempts=attempts))
                        logger.error(
                            f"Dropping {type(intent).__name__} after {attempts} attempts: {e}",
                            exc_info=True,
                        )
                    else:
                        stats.retried += 1
                        logger.warning(f"Delivery of {type(intent).__name__} failed (attempt {attempts}): {e}")
                        retry.append(replace(intent, attempts=attempts))
            batch = retry

        if stats.delivered or stats.dropped:
            logger.info(f"Outbox drained: delivered={stats.delivered} dropped={stats.dropped}")
        return stats

    def _take_all(self) -> List[Intent]:
        intents = []
        while True:
            intent = self.outbox.take()
            if intent is None:
                return intents
            intents.append(intent)
