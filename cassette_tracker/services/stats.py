"""Counters and progress figures derived from the tracker state."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from cassette_tracker.config import CELL_COUNT
from cassette_tracker.models import Facet, Section, TrackerState


def percent(count: int, total: int = CELL_COUNT) -> int:
    """Return a display percentage, rounded half up."""

    if total <= 0:
        return 0
    return int(count / total * 100 + 0.5)


@dataclass(frozen=True)
class SectionStats:
    count: int
    re_action: int
    paid: int
    remaining: int
    percent: int


@dataclass(frozen=True)
class TrackerStats:
    """Counters shown in the counter boxes and the summary page."""

    edited: SectionStats
    captured: SectionStats
    export_count: int
    rough_cut: int
    finalized: int
    successful_capture: int
    failed_capture: int
    total_paid: int
    total_rework: int
    paid_percent: int

    def to_dict(self) -> dict:
        return asdict(self)


def section_stats(state: TrackerState, section: Section) -> SectionStats:
    cells = state.section(section)
    count = cells.count(Facet.MAIN)
    return SectionStats(
        count=count,
        re_action=cells.count(Facet.RE_ACTION),
        paid=cells.count(Facet.PAID),
        remaining=CELL_COUNT - count,
        percent=percent(count),
    )


def derive_stats(state: TrackerState) -> TrackerStats:
    edited = section_stats(state, Section.EDITED)
    captured = section_stats(state, Section.CAPTURED)
    total_paid = edited.paid + captured.paid
    return TrackerStats(
        edited=edited,
        captured=captured,
        export_count=state.export_count,
        # Re-edited videos count as finalized; the rest are rough cuts.
        rough_cut=edited.count - edited.re_action,
        finalized=edited.re_action,
        successful_capture=captured.count - captured.re_action,
        failed_capture=captured.re_action,
        total_paid=total_paid,
        total_rework=edited.re_action + captured.re_action,
        paid_percent=percent(total_paid, CELL_COUNT * 2),
    )
