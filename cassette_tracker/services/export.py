"""CSV and spreadsheet-XML exports of the tracker grid.

Both formats are pure functions of the tracker state and the comment
list. The first comment per cell (most recent first) is exported.
"""

from __future__ import annotations

from typing import Iterable
from xml.sax.saxutils import escape

from cassette_tracker.config import CELL_COUNT
from cassette_tracker.models import Comment, Facet, Section, TrackerState
from cassette_tracker.services.stats import derive_stats

CSV_FILENAME = "video-tracker-export.csv"
CSV_MIMETYPE = "text/csv"
EXCEL_FILENAME = "video-tracker-export.xls"
EXCEL_MIMETYPE = "application/vnd.ms-excel"

CSV_HEADER = (
    "Number",
    "Edited",
    "Re-Edit",
    "Edit Paid",
    "Edit Comment",
    "Captured",
    "Re-Capture",
    "Capt Paid",
    "Capture Comment",
)

CHECKMARK = "✓"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}

_FILL_STYLES = {
    (Section.EDITED, Facet.MAIN): "EditedFilled",
    (Section.CAPTURED, Facet.MAIN): "CapturedFilled",
    (Section.EDITED, Facet.RE_ACTION): "ReAction",
    (Section.CAPTURED, Facet.RE_ACTION): "ReAction",
    (Section.EDITED, Facet.PAID): "Paid",
    (Section.CAPTURED, Facet.PAID): "Paid",
}


def comment_lookup(comments: Iterable[Comment]) -> dict[tuple[Section, int], str]:
    """Map each cell to the text of its first listed comment."""

    lookup: dict[tuple[Section, int], str] = {}
    for comment in comments:
        lookup.setdefault((comment.section, comment.cell_index), comment.comment)
    return lookup


def summary_rows(state: TrackerState) -> list[tuple[str, int]]:
    stats = derive_stats(state)
    return [
        ("Edited", stats.edited.count),
        ("Re-Edit", stats.edited.re_action),
        ("Edit Paid", stats.edited.paid),
        ("Captured", stats.captured.count),
        ("Re-Capture", stats.captured.re_action),
        ("Capt Paid", stats.captured.paid),
        ("Exported", stats.export_count),
    ]


def _csv_quote(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def _csv_flag(value: bool) -> str:
    return "Yes" if value else ""


def export_csv(state: TrackerState, comments: Iterable[Comment]) -> str:
    """Render the grid as CSV with a trailing summary block."""

    lookup = comment_lookup(comments)
    lines = [",".join(CSV_HEADER)]
    for index in range(CELL_COUNT):
        fields = [str(index + 1)]
        for section in Section:
            cells = state.section(section)
            fields.extend(
                [
                    _csv_flag(cells.main[index]),
                    _csv_flag(cells.re_action[index]),
                    _csv_flag(cells.paid[index]),
                    _csv_quote(lookup.get((section, index), "")),
                ]
            )
        lines.append(",".join(fields))
    lines.append("")
    lines.append("Summary")
    for label, count in summary_rows(state):
        lines.append(f"{label},{count}")
    return "\n".join(lines) + "\n"


def xml_escape(text: str) -> str:
    """Escape the five XML special characters."""

    return escape(text, _XML_ENTITIES)


def _string_cell(text: str, style: str | None = None) -> str:
    style_attr = f' ss:StyleID="{style}"' if style else ""
    return f'<Cell{style_attr}><Data ss:Type="String">{xml_escape(text)}</Data></Cell>'


def _number_cell(value: int, style: str | None = None) -> str:
    style_attr = f' ss:StyleID="{style}"' if style else ""
    return f'<Cell{style_attr}><Data ss:Type="Number">{value}</Data></Cell>'


def _flag_cell(value: bool, style: str) -> str:
    if value:
        return _string_cell(CHECKMARK, style)
    return _string_cell("", "Default")


def _row(cells: list[str]) -> str:
    return "      <Row>" + "".join(cells) + "</Row>"


def _worksheet(
    state: TrackerState, section: Section, lookup: dict[tuple[Section, int], str]
) -> list[str]:
    cells = state.section(section)
    lines = [
        f'  <Worksheet ss:Name="{xml_escape(section.label)}">',
        "    <Table>",
        _row(
            [
                _string_cell(label, "Header")
                for label in ("Number", section.label, section.re_action_label, "Paid", "Comment")
            ]
        ),
    ]
    for index in range(CELL_COUNT):
        lines.append(
            _row(
                [
                    _number_cell(index + 1, "Default"),
                    _flag_cell(cells.main[index], _FILL_STYLES[(section, Facet.MAIN)]),
                    _flag_cell(cells.re_action[index], _FILL_STYLES[(section, Facet.RE_ACTION)]),
                    _flag_cell(cells.paid[index], _FILL_STYLES[(section, Facet.PAID)]),
                    _string_cell(lookup.get((section, index), ""), "Default"),
                ]
            )
        )
    lines.append("      <Row></Row>")
    lines.append(_row([_string_cell("Summary", "Header")]))
    summary = [
        (section.label, cells.count(Facet.MAIN)),
        (section.re_action_label, cells.count(Facet.RE_ACTION)),
        ("Paid", cells.count(Facet.PAID)),
        ("Remaining", CELL_COUNT - cells.count(Facet.MAIN)),
    ]
    if section is Section.EDITED:
        summary.append(("Exported", state.export_count))
    for label, count in summary:
        lines.append(_row([_string_cell(label), _number_cell(count)]))
    lines.append("    </Table>")
    lines.append("  </Worksheet>")
    return lines


def _style(style_id: str, color: str | None, bold: bool = False) -> list[str]:
    lines = [f'    <Style ss:ID="{style_id}">']
    lines.append('      <Alignment ss:Horizontal="Center"/>')
    if bold:
        lines.append('      <Font ss:Bold="1"/>')
    if color:
        lines.append(f'      <Interior ss:Color="{color}" ss:Pattern="Solid"/>')
    lines.append("    </Style>")
    return lines


def export_excel_xml(state: TrackerState, comments: Iterable[Comment]) -> str:
    """Render the grid as a legacy Excel XML workbook, one sheet per section."""

    lookup = comment_lookup(comments)
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<?mso-application progid="Excel.Sheet"?>',
        '<Workbook xmlns="urn:schemas-microsoft-com:office:spreadsheet"',
        '  xmlns:ss="urn:schemas-microsoft-com:office:spreadsheet">',
        "  <Styles>",
        *_style("Default", None),
        *_style("Header", "#D9D9D9", bold=True),
        *_style("EditedFilled", "#E6C15C"),
        *_style("CapturedFilled", "#048A8C"),
        *_style("ReAction", "#A44848"),
        *_style("Paid", "#52B788"),
        "  </Styles>",
    ]
    for section in Section:
        lines.extend(_worksheet(state, section, lookup))
    lines.append("</Workbook>")
    return "\n".join(lines) + "\n"
