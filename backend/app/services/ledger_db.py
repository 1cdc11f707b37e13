"""SQLite storage handle for the status ledger.

The handle is constructed explicitly (at app startup, in scripts, or in tests)
and passed to the services that need it. Each thread gets its own connection
so independent cases can be written in parallel; SQLite itself serializes the
short write transactions.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, List, Optional

from app.core.config import get_settings
from app.core.logging import logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso_utc(value: str | None) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


class LedgerDatabase:
    """Owns the database file, its schema, and per-thread connections."""

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_seconds: float | None = None) -> None:
        settings = get_settings()
        path = Path(db_path) if db_path else settings.resolved_ledger_db_path()
        self._db_path = path.expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = float(
            busy_timeout_seconds if busy_timeout_seconds is not None else settings.ledger_busy_timeout_seconds
        )
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_guard = Lock()
        self._closed = False
        self._initialize_schema()
        logger.info("Ledger database opened", path=str(self._db_path))

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=self._busy_timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout * 1000)}")
        with self._connections_guard:
            self._connections.append(conn)
        return conn

    def connection(self) -> sqlite3.Connection:
        """Connection bound to the calling thread."""
        if self._closed:
            raise RuntimeError(f"Ledger database {self._db_path} is closed")
        conn: Optional[sqlite3.Connection] = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One ``BEGIN IMMEDIATE`` unit: the write lock is taken before the first read."""
        conn = self.connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def _initialize_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cases (
                    case_id TEXT PRIMARY KEY,
                    vehicle_code TEXT,
                    driver_name TEXT,
                    initial_state TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transition_entries (
                    case_id TEXT NOT NULL,
                    sequence_no INTEGER NOT NULL CHECK (sequence_no >= 1),
                    previous_state TEXT,
                    new_state TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    entered_at TEXT NOT NULL,
                    exited_at TEXT,
                    duration_seconds REAL,
                    notes TEXT,
                    PRIMARY KEY (case_id, sequence_no),
                    FOREIGN KEY (case_id) REFERENCES cases (case_id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_open
                    ON transition_entries (case_id) WHERE exited_at IS NULL
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_entered ON transition_entries (entered_at)"
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_entries_first
                    ON transition_entries (entered_at) WHERE sequence_no = 1
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_idempotency_time ON idempotency (stored_at)"
            )

    def get_idempotent(self, key: str) -> Optional[dict]:
        row = self.connection().execute(
            "SELECT response_json FROM idempotency WHERE key_name = ?",
            (key,),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: dict) -> None:
        max_entries = max(1, int(get_settings().idempotency_max_entries))
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, to_iso(utc_now()), json_dumps(response)),
            )
            conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT ?
                )
                """,
                (max_entries,),
            )

    def close(self) -> None:
        with self._connections_guard:
            connections, self._connections = self._connections, []
            self._closed = True
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as exc:
                logger.warning("Failed to close ledger connection", error=str(exc))
        logger.info("Ledger database closed", path=str(self._db_path))
