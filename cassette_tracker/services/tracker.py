"""Tracker service: binds the store to persistence and the change feed."""

from __future__ import annotations

import contextvars
import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from cassette_tracker.config import HISTORY_LIMIT
from cassette_tracker.errors import MalformedRowError, ValidationError
from cassette_tracker.models import (
    CellChange,
    Facet,
    HistoryEntry,
    Section,
    TrackerState,
    UserAccount,
)
from cassette_tracker.services.gateway import PersistenceGateway, decode_tracker_row
from cassette_tracker.services.history import entries_for_changes
from cassette_tracker.services.realtime import ChangeEvent
from cassette_tracker.services.selection import ClickDisambiguator, ClickOutcome, SelectionEngine
from cassette_tracker.services.store import LOCAL, TrackerStore

logger = logging.getLogger(__name__)

_current_actor: contextvars.ContextVar[UserAccount | None] = contextvars.ContextVar(
    "current_actor", default=None
)


def parse_export_count(raw: object) -> int:
    """Validate an export counter value from user input."""

    if isinstance(raw, bool):
        raise ValidationError("Export count must be a whole number.")
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ValidationError("Export count must be a whole number.") from exc
    if value < 0:
        raise ValidationError("Export count cannot be negative.")
    return value


class TrackerService:
    """Owns the TrackerStore and persists every local change.

    Local changes are saved through the gateway and logged to history.
    Change events from other origins overwrite the store wholesale.
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway
        self.store = TrackerStore(gateway.load_tracker())
        self._engines: dict[int, SelectionEngine] = {}
        self._clicks: dict[int, ClickDisambiguator] = {}
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self.store.subscribe(self._persist)
        self._unsubscribe_feed = gateway.feed.subscribe(self._on_remote_change, table="tracker_data")

    def close(self) -> None:
        self._unsubscribe_feed()

    @contextmanager
    def acting_as(self, actor: UserAccount | None) -> Iterator[None]:
        token = _current_actor.set(actor)
        try:
            yield
        finally:
            _current_actor.reset(token)

    def _persist(self, state: TrackerState, changes: list[CellChange], source: str) -> None:
        if source != LOCAL:
            return
        actor = _current_actor.get()
        # Serialised, and writes the store's newest state rather than the snapshot passed in.
        with self._save_lock:
            current = self.store.state
            state_to_save = TrackerState(
                edited=current.edited,
                captured=current.captured,
                export_count=current.export_count,
                updated_by=actor.email if actor else None,
            )
            saved = self.gateway.save_tracker(state_to_save, origin=self.store.origin)
            self.store.stamp(saved.updated_at, saved.updated_by)
        self.gateway.append_history(entries_for_changes(changes, actor))

    def _on_remote_change(self, event: ChangeEvent) -> None:
        if event.origin == self.store.origin:
            return
        try:
            state = decode_tracker_row(event.row)
        except MalformedRowError:
            logger.exception(
                "Rejected malformed tracker row from change feed",
                extra={"event": "tracker_row_rejected", "context": {"origin": event.origin}},
            )
            return
        self.store.replace(state)

    @property
    def state(self) -> TrackerState:
        return self.store.state

    def engine_for(self, user_id: int) -> SelectionEngine:
        with self._lock:
            engine = self._engines.get(user_id)
            if engine is None:
                engine = self._engines[user_id] = SelectionEngine(self.store)
            return engine

    def clicks_for(self, user_id: int) -> ClickDisambiguator:
        with self._lock:
            clicks = self._clicks.get(user_id)
            if clicks is None:
                clicks = self._clicks[user_id] = ClickDisambiguator()
            return clicks

    def begin_gesture(
        self, actor: UserAccount, section: Section, facet: Facet, index: int
    ) -> list[CellChange]:
        with self.acting_as(actor):
            return self.engine_for(actor.id).begin_gesture(section, facet, index)

    def extend_gesture(
        self, actor: UserAccount, section: Section, facet: Facet, index: int
    ) -> list[CellChange]:
        with self.acting_as(actor):
            return self.engine_for(actor.id).extend_gesture(section, facet, index)

    def end_gesture(self, actor: UserAccount) -> None:
        self.engine_for(actor.id).end_gesture()

    def toggle(self, actor: UserAccount, section: Section, facet: Facet, index: int) -> list[CellChange]:
        """Flip one facet, honoring the main-cell gating rules."""

        value = not self.store.state.value(section, facet, index)
        with self.acting_as(actor):
            return self.store.set_facet(section, facet, index, value)

    def tap(self, actor: UserAccount, section: Section, index: int) -> list[ClickOutcome]:
        """Feed a main-area click through the disambiguator.

        Single clicks that fire here are applied as main toggles.
        """

        outcomes = self.clicks_for(actor.id).press(section, index)
        self._apply_singles(actor, outcomes)
        return outcomes

    def settle(self, actor: UserAccount) -> ClickOutcome:
        outcome = self.clicks_for(actor.id).poll()
        self._apply_singles(actor, [outcome])
        return outcome

    def _apply_singles(self, actor: UserAccount, outcomes: list[ClickOutcome]) -> None:
        for outcome in outcomes:
            if outcome.kind == "single" and outcome.section is not None and outcome.index is not None:
                self.toggle(actor, outcome.section, Facet.MAIN, outcome.index)

    def save(self, actor: UserAccount) -> TrackerState:
        """Explicitly upsert the current state."""

        with self.acting_as(actor):
            self._persist(self.store.state, [], LOCAL)
        logger.info(
            "Tracker saved",
            extra={"event": "tracker_saved", "context": {"user": actor.email}},
        )
        return self.store.state

    def reset(self, actor: UserAccount) -> list[CellChange]:
        with self.acting_as(actor):
            changes = self.store.reset()
        logger.info(
            "Tracker reset",
            extra={
                "event": "tracker_reset",
                "context": {"user": actor.email, "cleared": len(changes)},
            },
        )
        return changes

    def set_export_count(self, actor: UserAccount, raw: object) -> TrackerState:
        value = parse_export_count(raw)
        with self.acting_as(actor):
            return self.store.set_export_count(value)

    def history(self, limit: int = HISTORY_LIMIT) -> list[HistoryEntry]:
        return self.gateway.list_history(min(limit, HISTORY_LIMIT))
