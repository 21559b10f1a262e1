"""Tracker store: pure reducers plus a subscribe/notify wrapper."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Callable

from cassette_tracker.models import CellChange, Facet, Section, TrackerState

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

Listener = Callable[[TrackerState, list[CellChange], str], None]


def set_facet(
    state: TrackerState, section: Section, facet: Facet, index: int, value: bool
) -> tuple[TrackerState, list[CellChange]]:
    """Set one facet of one cell, enforcing the main-cell gating rules.

    Setting re_action or paid on a cell whose main flag is false is a no-op.
    Clearing main also clears re_action and paid at the same index.
    """

    cells = state.section(section)
    if facet is not Facet.MAIN and not cells.main[index]:
        return state, []

    targets = [facet]
    if facet is Facet.MAIN and not value:
        targets = [Facet.MAIN, Facet.RE_ACTION, Facet.PAID]

    changes: list[CellChange] = []
    for target in targets:
        values = cells.facet(target)
        if values[index] == value:
            continue
        updated = values[:index] + (value,) + values[index + 1 :]
        cells = cells.with_facet(target, updated)
        changes.append(CellChange(section, target, index, value))
    if not changes:
        return state, []
    return state.with_section(section, cells), changes


def reset_cells(state: TrackerState) -> tuple[TrackerState, list[CellChange]]:
    """Clear every facet of every cell, keeping the export counter."""

    blank = TrackerState.empty()
    changes = [
        CellChange(section, facet, index, False)
        for section in Section
        for facet in Facet
        for index, value in enumerate(state.section(section).facet(facet))
        if value
    ]
    return (
        replace(
            blank,
            export_count=state.export_count,
            updated_at=state.updated_at,
            updated_by=state.updated_by,
        ),
        changes,
    )


def set_export_count(state: TrackerState, value: int) -> TrackerState:
    return replace(state, export_count=value)


class TrackerStore:
    """Holds the current TrackerState and notifies listeners on change.

    Listeners receive ``(state, changes, source)`` where source is
    ``"local"`` for reducer dispatches and ``"remote"`` for wholesale
    replacements from the change feed.
    """

    def __init__(self, state: TrackerState | None = None) -> None:
        self._state = state or TrackerState.empty()
        self._lock = threading.RLock()
        self._listeners: dict[int, Listener] = {}
        self._next_token = 0
        self.origin = uuid.uuid4().hex

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def _notify(self, state: TrackerState, changes: list[CellChange], source: str) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            listener(state, changes, source)

    def set_facet(
        self, section: Section, facet: Facet, index: int, value: bool
    ) -> list[CellChange]:
        with self._lock:
            new_state, changes = set_facet(self._state, section, facet, index, value)
            if not changes:
                return []
            self._state = new_state
        self._notify(new_state, changes, LOCAL)
        return changes

    def reset(self) -> list[CellChange]:
        with self._lock:
            new_state, changes = reset_cells(self._state)
            self._state = new_state
        self._notify(new_state, changes, LOCAL)
        return changes

    def set_export_count(self, value: int) -> TrackerState:
        with self._lock:
            new_state = set_export_count(self._state, value)
            self._state = new_state
        self._notify(new_state, [], LOCAL)
        return new_state

    def replace(self, state: TrackerState) -> None:
        """Overwrite the whole state with a remote row image (last write wins)."""

        with self._lock:
            self._state = state
        logger.info(
            "Tracker state replaced from change feed",
            extra={"event": "tracker_state_replaced", "context": {"updated_at": state.updated_at}},
        )
        self._notify(state, [], REMOTE)

    def stamp(self, updated_at: str | None, updated_by: str | None) -> None:
        """Record audit columns after a save without notifying listeners."""

        with self._lock:
            self._state = replace(self._state, updated_at=updated_at, updated_by=updated_by)
