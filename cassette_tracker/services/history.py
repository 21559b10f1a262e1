"""History labels for cell changes."""

from __future__ import annotations

from cassette_tracker.db import utc_now
from cassette_tracker.models import CellChange, Facet, HistoryEntry, Section, UserAccount

_HISTORY_SECTIONS = {
    (Section.EDITED, Facet.MAIN): "edited",
    (Section.EDITED, Facet.RE_ACTION): "re_edited",
    (Section.EDITED, Facet.PAID): "edited_paid",
    (Section.CAPTURED, Facet.MAIN): "captured",
    (Section.CAPTURED, Facet.RE_ACTION): "re_captured",
    (Section.CAPTURED, Facet.PAID): "captured_paid",
}

SECTION_LABELS = {
    "edited": "Edited",
    "captured": "Captured",
    "re_edited": "Re-Edit",
    "re_captured": "Re-Capture",
    "edited_paid": "Edited Paid",
    "captured_paid": "Captured Paid",
}


def history_section(section: Section, facet: Facet) -> str:
    return _HISTORY_SECTIONS[(section, facet)]


def action_label(change: CellChange) -> str:
    """Describe a change, e.g. ``filled`` or ``unmarked re-capture``."""

    if change.facet is Facet.MAIN:
        return "filled" if change.value else "unfilled"
    if change.facet is Facet.RE_ACTION:
        target = change.section.re_action_label.lower()
    else:
        target = "paid"
    return f"{'marked' if change.value else 'unmarked'} {target}"


def entries_for_changes(
    changes: list[CellChange], actor: UserAccount | None
) -> list[HistoryEntry]:
    now = utc_now()
    return [
        HistoryEntry(
            id=None,
            cell_index=change.index,
            section=history_section(change.section, change.facet),
            action=action_label(change),
            changed_by=actor.id if actor else None,
            changed_by_email=actor.email if actor else None,
            changed_at=now,
        )
        for change in changes
    ]
