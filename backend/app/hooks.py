from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import List, Optional

from dispatch_engine.outbox import Notification

from .config import RECENT_EVENTS_LIMIT
from .db import get_conn, now_iso

logger = logging.getLogger(__name__)


class RecentEventsBroadcaster:
    """Keeps the latest incident updates in memory for dashboards that poll /events."""

    def __init__(self, limit: int = RECENT_EVENTS_LIMIT) -> None:
        self._events = deque(maxlen=limit)
        self._lock = Lock()
        self._sequence = 0

    def emit_incident_update(self, incident_id: str, new_status: Optional[str]) -> None:
        with self._lock:
            self._sequence += 1
            self._events.append(
                {
                    "sequence": self._sequence,
                    "incident_id": incident_id,
                    "status": new_status,
                    "emitted_at": now_iso(),
                }
            )
        logger.info(f"incident:{incident_id} updated (status={new_status})")

    def since(self, sequence: int = 0) -> List[dict]:
        with self._lock:
            return [event for event in self._events if event["sequence"] > sequence]


class SqliteNotifier:
    def notify(self, user_id: str, notification: Notification) -> None:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO notifications (user_id,type,title,message,related_entity_id,priority,created_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (
                    user_id,
                    notification.type,
                    notification.title,
                    notification.message,
                    notification.related_entity_id,
                    notification.priority,
                    now_iso(),
                ),
            )
