"""SQLite database helpers and schema initialization.

The tracker keeps a single database holding the tracker row, comments,
history, the Suras table, and user accounts.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)

WRITE_RETRIES = 50
WRITE_RETRY_DELAY_SECONDS = 0.1

SCHEMA = """
CREATE TABLE IF NOT EXISTS tracker_data (
    id TEXT PRIMARY KEY,
    edited_cells TEXT NOT NULL,
    re_edited_cells TEXT NOT NULL,
    edited_paid_cells TEXT NOT NULL,
    captured_cells TEXT NOT NULL,
    re_captured_cells TEXT NOT NULL,
    paid_cells TEXT NOT NULL,
    export_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS cell_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cell_index INTEGER NOT NULL,
    section TEXT NOT NULL,
    comment TEXT NOT NULL,
    created_by INTEGER,
    created_by_email TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tracker_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cell_index INTEGER NOT NULL,
    section TEXT NOT NULL,
    action TEXT NOT NULL,
    changed_by INTEGER,
    changed_by_email TEXT,
    changed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS suras_cassette_data (
    sura_number INTEGER PRIMARY KEY,
    sura_name TEXT NOT NULL,
    cassette_count TEXT,
    updated_at TEXT NOT NULL,
    updated_by TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    display_name TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_roles (
    user_id INTEGER PRIMARY KEY,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS user_comment_notifications (
    user_id INTEGER PRIMARY KEY,
    last_seen_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id)
);
"""

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_comments_cell ON cell_comments(cell_index, section)",
    "CREATE INDEX IF NOT EXISTS idx_history_changed_at ON tracker_history(changed_at)",
)

_TABLES = (
    "tracker_data",
    "cell_comments",
    "tracker_history",
    "suras_cassette_data",
    "users",
    "user_roles",
    "user_comment_notifications",
)


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Apply WAL + timeout settings to reduce lock contention."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create a SQLite connection for the tracker database."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    _configure_connection(conn)
    return conn


def init_db(db_path: Path, seed_rows: Iterable[tuple[int, str]] = ()) -> None:
    """Initialize the schema and seed the Suras table if it is empty."""

    conn = get_connection(db_path)
    try:
        existing = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        conn.executescript(SCHEMA)
        for statement in INDEXES:
            conn.execute(statement)
        for table_name in _TABLES:
            if table_name not in existing:
                logger.info(
                    "Applied schema migration",
                    extra={
                        "event": "schema_migrated",
                        "context": {"migration": table_name, "db_path": str(db_path)},
                    },
                )
        _seed_suras(conn, seed_rows)
        conn.commit()
    finally:
        conn.close()


def _seed_suras(conn: sqlite3.Connection, seed_rows: Iterable[tuple[int, str]]) -> None:
    """Insert the fixed Suras rows when the table is empty."""

    count = conn.execute("SELECT COUNT(*) FROM suras_cassette_data").fetchone()[0]
    if count:
        return
    now = utc_now()
    rows = [(number, name, now) for number, name in seed_rows]
    if not rows:
        return
    conn.executemany(
        """
        INSERT INTO suras_cassette_data (sura_number, sura_name, cassette_count, updated_at)
        VALUES (?, ?, NULL, ?)
        """,
        rows,
    )
    logger.info(
        "Seeded suras table",
        extra={"event": "suras_seeded", "context": {"rows": len(rows)}},
    )


def execute_write(
    conn: sqlite3.Connection, statement: str, values: Iterable[Any] = ()
) -> sqlite3.Cursor:
    """Execute and commit a write, retrying briefly while the database is locked."""

    params = tuple(values)
    max_retries = WRITE_RETRIES
    for attempt in range(max_retries):
        try:
            cursor = conn.execute(statement, params)
            conn.commit()
            return cursor
        except sqlite3.OperationalError as exc:
            if "database is locked" not in str(exc).lower():
                raise
            if attempt == max_retries - 1:
                raise sqlite3.OperationalError(
                    f"Database is still locked after {max_retries} write attempts."
                ) from exc
            time.sleep(WRITE_RETRY_DELAY_SECONDS)
    raise sqlite3.OperationalError("Database write was not attempted.")
