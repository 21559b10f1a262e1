"""Persistence gateway: table CRUD plus change notifications.

Every write publishes the new row image on the change feed. Rows read
from the tracker table are decoded strictly; a malformed row raises
MalformedRowError instead of being replaced with blank arrays.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from cassette_tracker.config import CELL_COUNT, TRACKER_ROW_ID
from cassette_tracker.db import execute_write, get_connection, utc_now
from cassette_tracker.errors import MalformedRowError
from cassette_tracker.models import (
    Comment,
    Facet,
    HistoryEntry,
    Section,
    SectionCells,
    SuraRow,
    TrackerState,
)
from cassette_tracker.services.realtime import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

CELL_COLUMNS: dict[tuple[Section, Facet], str] = {
    (Section.EDITED, Facet.MAIN): "edited_cells",
    (Section.EDITED, Facet.RE_ACTION): "re_edited_cells",
    (Section.EDITED, Facet.PAID): "edited_paid_cells",
    (Section.CAPTURED, Facet.MAIN): "captured_cells",
    (Section.CAPTURED, Facet.RE_ACTION): "re_captured_cells",
    (Section.CAPTURED, Facet.PAID): "paid_cells",
}


def _decode_cells(raw: Any, column: str) -> tuple[bool, ...]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedRowError(f"{column} is not valid JSON.") from exc
    if not isinstance(raw, list):
        raise MalformedRowError(f"{column} must be a list.")
    if len(raw) != CELL_COUNT:
        raise MalformedRowError(
            f"{column} must hold {CELL_COUNT} entries, found {len(raw)}."
        )
    if not all(isinstance(value, bool) for value in raw):
        raise MalformedRowError(f"{column} must hold only booleans.")
    return tuple(raw)


def decode_tracker_row(row: dict[str, Any]) -> TrackerState:
    """Decode and validate a tracker_data row image."""

    sections: dict[Section, SectionCells] = {}
    for section in Section:
        arrays = {}
        for facet in Facet:
            column = CELL_COLUMNS[(section, facet)]
            if column not in row:
                raise MalformedRowError(f"Tracker row is missing {column}.")
            arrays[facet.value] = _decode_cells(row[column], column)
        sections[section] = SectionCells(**arrays)
    export_count = row.get("export_count", 0)
    if isinstance(export_count, bool) or not isinstance(export_count, int) or export_count < 0:
        raise MalformedRowError("export_count must be a non-negative integer.")
    return TrackerState(
        edited=sections[Section.EDITED],
        captured=sections[Section.CAPTURED],
        export_count=export_count,
        updated_at=row.get("updated_at"),
        updated_by=row.get("updated_by"),
    )


def encode_tracker_row(state: TrackerState) -> dict[str, Any]:
    """Return a row image with JSON-encoded cell arrays."""

    row: dict[str, Any] = {"id": TRACKER_ROW_ID}
    for (section, facet), column in CELL_COLUMNS.items():
        row[column] = json.dumps(list(state.section(section).facet(facet)))
    row["export_count"] = state.export_count
    row["updated_at"] = state.updated_at or utc_now()
    row["updated_by"] = state.updated_by
    return row


def _comment_from_row(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        cell_index=row["cell_index"],
        section=Section(row["section"]),
        comment=row["comment"],
        created_by=row["created_by"],
        created_by_email=row["created_by_email"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PersistenceGateway:
    """Table CRUD over the tracker database."""

    def __init__(self, db_path: Path, feed: ChangeFeed | None = None) -> None:
        self.db_path = db_path
        self.feed = feed or ChangeFeed()

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def _publish(
        self, table: str, event_type: str, row: dict[str, Any], origin: str | None = None
    ) -> None:
        self.feed.publish(ChangeEvent(table=table, event_type=event_type, row=row, origin=origin))

    # Tracker row

    def load_tracker(self) -> TrackerState:
        """Return the tracker state, inserting the blank row on first use."""

        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM tracker_data WHERE id = ?", (TRACKER_ROW_ID,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            logger.info(
                "Tracker row missing, creating blank state",
                extra={"event": "tracker_row_seeded", "context": {"id": TRACKER_ROW_ID}},
            )
            return self.save_tracker(TrackerState.empty())
        return decode_tracker_row(dict(row))

    def save_tracker(self, state: TrackerState, origin: str | None = None) -> TrackerState:
        """Upsert the tracker row and publish the new image."""

        row = encode_tracker_row(state)
        row["updated_at"] = utc_now()
        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != "id")
        conn = self._connect()
        try:
            execute_write(
                conn,
                f"INSERT INTO tracker_data ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [row[column] for column in columns],
            )
        finally:
            conn.close()
        saved = decode_tracker_row(row)
        self._publish("tracker_data", "UPDATE", row, origin)
        return saved

    # History

    def append_history(self, entries: list[HistoryEntry]) -> None:
        if not entries:
            return
        conn = self._connect()
        try:
            conn.executemany(
                """
                INSERT INTO tracker_history
                    (cell_index, section, action, changed_by, changed_by_email, changed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        entry.cell_index,
                        entry.section,
                        entry.action,
                        entry.changed_by,
                        entry.changed_by_email,
                        entry.changed_at,
                    )
                    for entry in entries
                ],
            )
            conn.commit()
        finally:
            conn.close()
        for entry in entries:
            self._publish("tracker_history", "INSERT", entry.to_dict())

    def list_history(self, limit: int) -> list[HistoryEntry]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM tracker_history ORDER BY changed_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [
            HistoryEntry(
                id=row["id"],
                cell_index=row["cell_index"],
                section=row["section"],
                action=row["action"],
                changed_by=row["changed_by"],
                changed_by_email=row["changed_by_email"],
                changed_at=row["changed_at"],
            )
            for row in rows
        ]

    # Comments

    def list_comments(self) -> list[Comment]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM cell_comments ORDER BY created_at DESC, id DESC"
            ).fetchall()
        finally:
            conn.close()
        return [_comment_from_row(row) for row in rows]

    def get_comment(self, comment_id: int) -> Comment | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM cell_comments WHERE id = ?", (comment_id,)
            ).fetchone()
        finally:
            conn.close()
        return _comment_from_row(row) if row else None

    def find_comment(self, cell_index: int, section: Section) -> Comment | None:
        """Return the most recently created comment for a cell."""

        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT * FROM cell_comments
                WHERE cell_index = ? AND section = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (cell_index, section.value),
            ).fetchone()
        finally:
            conn.close()
        return _comment_from_row(row) if row else None

    def insert_comment(self, comment: Comment) -> Comment:
        conn = self._connect()
        try:
            cursor = execute_write(
                conn,
                """
                INSERT INTO cell_comments
                    (cell_index, section, comment, created_by, created_by_email,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    comment.cell_index,
                    comment.section.value,
                    comment.comment,
                    comment.created_by,
                    comment.created_by_email,
                    comment.created_at,
                    comment.updated_at,
                ),
            )
            comment.id = int(cursor.lastrowid)
        finally:
            conn.close()
        self._publish("cell_comments", "INSERT", comment.to_dict())
        return comment

    def update_comment(self, comment_id: int, text: str) -> Comment | None:
        conn = self._connect()
        try:
            cursor = execute_write(
                conn,
                "UPDATE cell_comments SET comment = ?, updated_at = ? WHERE id = ?",
                (text, utc_now(), comment_id),
            )
            updated = cursor.rowcount
        finally:
            conn.close()
        if not updated:
            return None
        comment = self.get_comment(comment_id)
        if comment:
            self._publish("cell_comments", "UPDATE", comment.to_dict())
        return comment

    def delete_comment(self, comment_id: int) -> bool:
        conn = self._connect()
        try:
            cursor = execute_write(
                conn, "DELETE FROM cell_comments WHERE id = ?", (comment_id,)
            )
            deleted = cursor.rowcount
        finally:
            conn.close()
        if deleted:
            self._publish("cell_comments", "DELETE", {"id": comment_id})
        return bool(deleted)

    # Suras

    def list_suras(self) -> list[SuraRow]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM suras_cassette_data ORDER BY sura_number ASC"
            ).fetchall()
        finally:
            conn.close()
        return [
            SuraRow(
                number=row["sura_number"],
                name=row["sura_name"],
                cassette_count=row["cassette_count"],
                updated_at=row["updated_at"],
                updated_by=row["updated_by"],
            )
            for row in rows
        ]

    def update_sura(
        self, number: int, cassette_count: str | None, updated_by: str | None
    ) -> SuraRow | None:
        now = utc_now()
        conn = self._connect()
        try:
            cursor = execute_write(
                conn,
                """
                UPDATE suras_cassette_data
                SET cassette_count = ?, updated_at = ?, updated_by = ?
                WHERE sura_number = ?
                """,
                (cassette_count, now, updated_by, number),
            )
            updated = cursor.rowcount
            row = conn.execute(
                "SELECT * FROM suras_cassette_data WHERE sura_number = ?", (number,)
            ).fetchone()
        finally:
            conn.close()
        if not updated or row is None:
            return None
        sura = SuraRow(
            number=row["sura_number"],
            name=row["sura_name"],
            cassette_count=row["cassette_count"],
            updated_at=row["updated_at"],
            updated_by=row["updated_by"],
        )
        self._publish("suras_cassette_data", "UPDATE", sura.to_dict())
        return sura

    # Users

    def insert_user(
        self, email: str, password_hash: str, display_name: str, role: str
    ) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (email, password_hash, display_name, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (email, password_hash, display_name, utc_now()),
            )
            user_id = int(cursor.lastrowid)
            conn.execute(
                "INSERT INTO user_roles (user_id, role) VALUES (?, ?)", (user_id, role)
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()
        return user_id

    def _fetch_user(self, where: str, value: Any) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            row = conn.execute(
                f"""
                SELECT users.*, COALESCE(user_roles.role, 'user') AS role
                FROM users
                LEFT JOIN user_roles ON user_roles.user_id = users.id
                WHERE {where}
                """,
                (value,),
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return self._fetch_user("LOWER(users.email) = LOWER(?)", email)

    def get_user(self, user_id: int) -> dict[str, Any] | None:
        return self._fetch_user("users.id = ?", user_id)

    def update_user(self, user_id: int, **fields: Any) -> None:
        allowed = {"display_name", "password_hash"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self._connect()
        try:
            execute_write(
                conn,
                f"UPDATE users SET {assignments} WHERE id = ?",
                [*fields.values(), user_id],
            )
        finally:
            conn.close()

    # Notification watermarks

    def get_last_seen(self, user_id: int) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT last_seen_at FROM user_comment_notifications WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return row["last_seen_at"] if row else None

    def set_last_seen(self, user_id: int, last_seen_at: str) -> None:
        conn = self._connect()
        try:
            execute_write(
                conn,
                """
                INSERT INTO user_comment_notifications (user_id, last_seen_at, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
                """,
                (user_id, last_seen_at, utc_now()),
            )
        finally:
            conn.close()
        self._publish(
            "user_comment_notifications",
            "UPDATE",
            {"user_id": user_id, "last_seen_at": last_seen_at},
        )
