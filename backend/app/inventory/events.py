from __future__ import annotations

import json
import threading
from typing import Callable, List, Optional, Protocol, Tuple

from ..jsonlog import json_log


class EventPublisher(Protocol):
    def publish(self, event_type: str, payload: dict, *, source_type: str = "inventory", source_id: Optional[str] = None) -> None: ...


class RecordingPublisher:
    """Keeps published events in memory (tests, single-process tools)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Tuple[str, dict]] = []

    def publish(self, event_type: str, payload: dict, *, source_type: str = "inventory", source_id: Optional[str] = None) -> None:
        with self._lock:
            self.events.append((event_type, dict(payload)))

    def of_type(self, event_type: str) -> List[dict]:
        with self._lock:
            return [p for t, p in self.events if t == event_type]


class LoggingPublisher:
    def publish(self, event_type: str, payload: dict, *, source_type: str = "inventory", source_id: Optional[str] = None) -> None:
        json_log("info", "inventory.event", event_type=event_type, source_type=source_type, source_id=source_id, payload=payload)


class OutboxPublisher:
    """
    Writes events to the `events` outbox table; downstream workers (dashboards,
    low-stock notifiers) consume from there.
    """

    def __init__(self, connect: Callable):
        self._connect = connect

    def publish(self, event_type: str, payload: dict, *, source_type: str = "inventory", source_id: Optional[str] = None) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO events (id, event_type, source_type, source_id, payload_json)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s::jsonb)
                    """,
                    (event_type, source_type, source_id, json.dumps(payload, default=str)),
                )


def safe_publish(publisher: EventPublisher, event_type: str, payload: dict, *, source_type: str = "inventory", source_id: Optional[str] = None) -> bool:
    # Called after the stock change has committed: a failing sink must not
    # turn a committed mutation into an error for the caller.
    try:
        publisher.publish(event_type, payload, source_type=source_type, source_id=source_id)
        return True
    except Exception as exc:
        json_log("error", "inventory.events.publish_failed", event_type=event_type, source_id=source_id, error=str(exc))
        return False
