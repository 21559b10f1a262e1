"""Lightweight data structures for the cassette tracker."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from cassette_tracker.config import CELL_COUNT
from cassette_tracker.errors import ValidationError


class Section(str, Enum):
    """One of the two parallel cell grids."""

    EDITED = "edited"
    CAPTURED = "captured"

    @property
    def label(self) -> str:
        return "Edited" if self is Section.EDITED else "Captured"

    @property
    def re_action_label(self) -> str:
        return "Re-Edit" if self is Section.EDITED else "Re-Capture"

    @property
    def paid_label(self) -> str:
        return "Edit Paid" if self is Section.EDITED else "Capt Paid"


class Facet(str, Enum):
    """A togglable aspect of a cell."""

    MAIN = "main"
    RE_ACTION = "re_action"
    PAID = "paid"


def parse_section(value: object) -> Section:
    """Return the Section for a raw request value."""

    try:
        return Section(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown section: {value!r}") from exc


def parse_facet(value: object) -> Facet:
    """Return the Facet for a raw request value."""

    try:
        return Facet(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown facet: {value!r}") from exc


def parse_index(value: object) -> int:
    """Return a validated 0-based cell index."""

    if isinstance(value, bool):
        raise ValidationError("Cell index must be an integer.")
    try:
        index = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError("Cell index must be an integer.") from exc
    if not 0 <= index < CELL_COUNT:
        raise ValidationError(f"Cell index must be between 0 and {CELL_COUNT - 1}.")
    return index


def _blank() -> tuple[bool, ...]:
    return (False,) * CELL_COUNT


@dataclass(frozen=True)
class SectionCells:
    """The three parallel facet arrays of one section."""

    main: tuple[bool, ...] = _blank()
    re_action: tuple[bool, ...] = _blank()
    paid: tuple[bool, ...] = _blank()

    def facet(self, facet: Facet) -> tuple[bool, ...]:
        return getattr(self, facet.value)

    def with_facet(self, facet: Facet, values: tuple[bool, ...]) -> "SectionCells":
        return replace(self, **{facet.value: values})

    def count(self, facet: Facet) -> int:
        return sum(1 for value in self.facet(facet) if value)


@dataclass(frozen=True)
class TrackerState:
    """Snapshot of the whole tracker row."""

    edited: SectionCells = SectionCells()
    captured: SectionCells = SectionCells()
    export_count: int = 0
    updated_at: str | None = None
    updated_by: str | None = None

    @classmethod
    def empty(cls) -> "TrackerState":
        return cls()

    def section(self, section: Section) -> SectionCells:
        return getattr(self, section.value)

    def with_section(self, section: Section, cells: SectionCells) -> "TrackerState":
        return replace(self, **{section.value: cells})

    def value(self, section: Section, facet: Facet, index: int) -> bool:
        return self.section(section).facet(facet)[index]

    def to_dict(self) -> dict:
        return {
            section.value: {
                facet.value: list(self.section(section).facet(facet)) for facet in Facet
            }
            for section in Section
        } | {
            "export_count": self.export_count,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }


@dataclass(frozen=True)
class CellChange:
    """A single facet value that changed in a reducer step."""

    section: Section
    facet: Facet
    index: int
    value: bool


@dataclass
class Comment:
    """A free-text note attached to a cell."""

    id: int | None
    cell_index: int
    section: Section
    comment: str
    created_by: int | None
    created_by_email: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cell_index": self.cell_index,
            "section": self.section.value,
            "comment": self.comment,
            "created_by": self.created_by,
            "created_by_email": self.created_by_email,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class HistoryEntry:
    """Append-only audit record of a cell change."""

    id: int | None
    cell_index: int
    section: str
    action: str
    changed_by: int | None
    changed_by_email: str | None
    changed_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cell_index": self.cell_index,
            "section": self.section,
            "action": self.action,
            "changed_by": self.changed_by,
            "changed_by_email": self.changed_by_email,
            "changed_at": self.changed_at,
        }


@dataclass
class SuraRow:
    """Represents one row of the Suras reference table."""

    number: int
    name: str
    cassette_count: str | None
    updated_at: str | None = None
    updated_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "name": self.name,
            "cassette_count": self.cassette_count,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }


@dataclass
class UserAccount:
    """A signed-in user and their role."""

    id: int
    email: str
    display_name: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
        }
