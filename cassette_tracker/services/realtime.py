"""In-process change feed for table updates."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """A row image delivered to feed subscribers."""

    table: str
    event_type: str
    row: dict[str, Any] = field(default_factory=dict)
    origin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "row": self.row,
            "origin": self.origin,
        }


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Fan out change events to every subscriber.

    Delivery is synchronous and unordered across subscribers. A failing
    subscriber is logged and skipped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, tuple[str | None, Subscriber]] = {}
        self._next_id = 0

    def subscribe(
        self, callback: Subscriber, table: str | None = None
    ) -> Callable[[], None]:
        """Register a callback, optionally for one table. Returns an unsubscribe."""

        with self._lock:
            token = self._next_id
            self._next_id += 1
            self._subscribers[token] = (table, callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [
                callback
                for table, callback in self._subscribers.values()
                if table is None or table == event.table
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Change subscriber failed",
                    extra={
                        "event": "change_subscriber_failed",
                        "context": {"table": event.table, "event_type": event.event_type},
                    },
                )

    def open_queue(self, maxsize: int = 100) -> tuple["queue.Queue[ChangeEvent]", Callable[[], None]]:
        """Subscribe a bounded queue, used by streaming responses.

        Events are dropped for a queue that is full.
        """

        events: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=maxsize)

        def _enqueue(event: ChangeEvent) -> None:
            try:
                events.put_nowait(event)
            except queue.Full:
                logger.warning(
                    "Dropped change event for slow listener",
                    extra={"event": "change_event_dropped", "context": {"table": event.table}},
                )

        return events, self.subscribe(_enqueue)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
