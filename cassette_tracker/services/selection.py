"""Drag-to-paint selection and click disambiguation for the cell grid."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from cassette_tracker.config import CLICK_TIMEOUT_SECONDS
from cassette_tracker.models import CellChange, Facet, Section
from cassette_tracker.services.store import TrackerStore

logger = logging.getLogger(__name__)


class SelectionEngine:
    """Turns a pointer gesture into identical writes across cells.

    Each (section, facet) pair has its own track. A track records the paint
    value chosen when the gesture began and applies it to every cell the
    pointer enters until end_gesture() is called.
    """

    def __init__(self, store: TrackerStore) -> None:
        self.store = store
        self._modes: dict[tuple[Section, Facet], bool] = {}
        self._lock = threading.Lock()

    def active_mode(self, section: Section, facet: Facet) -> bool | None:
        with self._lock:
            return self._modes.get((section, facet))

    @property
    def is_active(self) -> bool:
        with self._lock:
            return bool(self._modes)

    def _guarded(self, section: Section, facet: Facet, index: int) -> bool:
        return facet is not Facet.MAIN and not self.store.state.value(
            section, Facet.MAIN, index
        )

    def begin_gesture(self, section: Section, facet: Facet, index: int) -> list[CellChange]:
        if self._guarded(section, facet, index):
            return []
        mode = not self.store.state.value(section, facet, index)
        with self._lock:
            self._modes[(section, facet)] = mode
        logger.debug(
            "Gesture started",
            extra={
                "event": "gesture_started",
                "context": {"section": section.value, "facet": facet.value, "index": index, "mode": mode},
            },
        )
        return self.store.set_facet(section, facet, index, mode)

    def extend_gesture(self, section: Section, facet: Facet, index: int) -> list[CellChange]:
        mode = self.active_mode(section, facet)
        if mode is None or self._guarded(section, facet, index):
            return []
        return self.store.set_facet(section, facet, index, mode)

    def end_gesture(self) -> None:
        with self._lock:
            self._modes.clear()


class ClickState(str, Enum):
    IDLE = "idle"
    PENDING_SINGLE = "pending_single"
    FIRED = "fired"
    CANCELLED_BY_DOUBLE = "cancelled_by_double"


@dataclass(frozen=True)
class ClickOutcome:
    """A resolved click: ``single``, ``double``, ``pending`` or ``idle``."""

    kind: str
    section: Section | None = None
    index: int | None = None


class ClickDisambiguator:
    """idle -> pending_single -> (fired | cancelled_by_double).

    A press starts a pending single click. A second press on the same cell
    within the timeout cancels it and reports a double click. A poll after
    the timeout fires the single click. Pressing a different cell while a
    click is pending fires the pending one first.
    """

    def __init__(
        self,
        timeout: float = CLICK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.clock = clock
        self.state = ClickState.IDLE
        self._pending: tuple[Section, int] | None = None
        self._pressed_at = 0.0

    def press(self, section: Section, index: int) -> list[ClickOutcome]:
        now = self.clock()
        outcomes: list[ClickOutcome] = []
        if self.state is ClickState.PENDING_SINGLE and self._pending is not None:
            if self._pending == (section, index) and now - self._pressed_at <= self.timeout:
                self.state = ClickState.CANCELLED_BY_DOUBLE
                self._pending = None
                return [ClickOutcome("double", section, index)]
            outcomes.append(self._fire())
        self.state = ClickState.PENDING_SINGLE
        self._pending = (section, index)
        self._pressed_at = now
        outcomes.append(ClickOutcome("pending", section, index))
        return outcomes

    def poll(self) -> ClickOutcome:
        if self.state is not ClickState.PENDING_SINGLE or self._pending is None:
            return ClickOutcome("idle")
        if self.clock() - self._pressed_at <= self.timeout:
            section, index = self._pending
            return ClickOutcome("pending", section, index)
        return self._fire()

    def _fire(self) -> ClickOutcome:
        section, index = self._pending  # type: ignore[misc]
        self.state = ClickState.FIRED
        self._pending = None
        return ClickOutcome("single", section, index)
