"""Transition ledger: the append-only record of every state a case occupies.

Each call to :meth:`TransitionLedger.transition` closes the case's open entry
and opens the next one inside a single ``BEGIN IMMEDIATE`` transaction, while a
per-case lock keeps writers for the same case in line inside this process.
Different cases never share a lock.
"""
from __future__ import annotations

import sqlite3
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar

from app.core.config import get_settings
from app.core.errors import (
    AlreadyInitialized,
    CaseNotFound,
    ConcurrentModification,
    SequenceMismatch,
    TerminalStateViolation,
)
from app.core.logging import logger
from app.models.ledger import TrackingState, TransitionEntry
from app.services import state_catalog
from app.services.case_registry import CaseStore
from app.services.ledger_db import LedgerDatabase, parse_iso_utc, to_iso, utc_now

T = TypeVar("T")

_ENTRY_COLUMNS = (
    "case_id, sequence_no, previous_state, new_state, actor, "
    "entered_at, exited_at, duration_seconds, notes"
)


def _clean_actor(actor: Any) -> str:
    cleaned = " ".join(str(actor or "").split()).strip()
    if not cleaned:
        raise ValueError("actor is required")
    return cleaned


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    text = str(notes).strip()
    return text or None


def _is_lock_contention(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _row_to_entry(row: Any) -> TransitionEntry:
    return TransitionEntry(
        case_id=row["case_id"],
        sequence_no=int(row["sequence_no"]),
        previous_state=TrackingState(row["previous_state"]) if row["previous_state"] else None,
        new_state=TrackingState(row["new_state"]),
        actor=row["actor"],
        entered_at=parse_iso_utc(row["entered_at"]),
        exited_at=parse_iso_utc(row["exited_at"]),
        duration_seconds=row["duration_seconds"],
        notes=row["notes"],
    )


class TransitionLedger:
    """Sole writer of ``transition_entries`` rows."""

    # (db path, case_id) -> [lock, holders]; an entry lives only while someone holds or waits on it.
    _lock_registry: dict[Tuple[str, str], list] = {}
    _lock_registry_guard = Lock()

    def __init__(
        self,
        database: LedgerDatabase,
        cases: CaseStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._db = database
        self._cases = cases
        self._clock = clock or utc_now
        self._max_retries = max(0, int(settings.ledger_max_retries if max_retries is None else max_retries))
        self._retry_backoff = max(
            0.0,
            float(settings.ledger_retry_backoff_seconds if retry_backoff_seconds is None else retry_backoff_seconds),
        )

    @classmethod
    def active_case_locks(cls, db_key: str) -> int:
        with cls._lock_registry_guard:
            return sum(1 for key in cls._lock_registry if key[0] == db_key)

    @contextmanager
    def _case_lock(self, case_id: str) -> Iterator[None]:
        cls = type(self)
        key = (str(self._db.path), case_id)
        with cls._lock_registry_guard:
            slot = cls._lock_registry.get(key)
            if slot is None:
                slot = cls._lock_registry[key] = [RLock(), 0]
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with cls._lock_registry_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    cls._lock_registry.pop(key, None)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    # ------------------------------------------------------------------ writes

    def transition(
        self,
        case_id: str,
        new_state: TrackingState | str,
        actor: str,
        notes: Optional[str] = None,
        *,
        expected_sequence_no: Optional[int] = None,
    ) -> TransitionEntry:
        """Close the case's current entry and open one for ``new_state``."""
        state = state_catalog.parse_state(new_state)
        operator = _clean_actor(actor)
        return self._with_retries(
            case_id,
            "transition",
            lambda: self._append(
                case_id,
                state,
                operator,
                _clean_notes(notes),
                expected_sequence_no=expected_sequence_no,
                first_only=False,
            ),
        )

    def initialize_first(
        self,
        case_id: str,
        initial_state: TrackingState | str,
        actor: str,
        notes: Optional[str] = None,
    ) -> TransitionEntry:
        """Open sequence 1 for a case that has no entries yet."""
        state = state_catalog.parse_state(initial_state)
        operator = _clean_actor(actor)
        return self._with_retries(
            case_id,
            "initialize_first",
            lambda: self._append(case_id, state, operator, _clean_notes(notes), first_only=True),
        )

    def _with_retries(self, case_id: str, operation: str, action: Callable[[], T]) -> T:
        attempts = self._max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                return action()
            except SequenceMismatch:
                raise
            except ConcurrentModification as exc:
                if attempt >= attempts:
                    logger.error(
                        "Ledger write conflict persisted after retries",
                        case_id=case_id,
                        operation=operation,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                logger.warning(
                    "Retrying ledger write after conflict",
                    case_id=case_id,
                    operation=operation,
                    attempt=attempt,
                    error=str(exc),
                )
                if self._retry_backoff:
                    time.sleep(self._retry_backoff * attempt)

    def _append(
        self,
        case_id: str,
        new_state: TrackingState,
        actor: str,
        notes: Optional[str],
        *,
        expected_sequence_no: Optional[int] = None,
        first_only: bool,
    ) -> TransitionEntry:
        with self._case_lock(case_id):
            try:
                with self._db.transaction() as conn:
                    if not self._cases.case_exists(case_id):
                        raise CaseNotFound(case_id)
                    latest = self._latest_entry(conn, case_id)
                    if first_only and latest is not None:
                        raise AlreadyInitialized(case_id)
                    if latest is not None and state_catalog.is_terminal(latest.new_state):
                        raise TerminalStateViolation(case_id)
                    current_seq = latest.sequence_no if latest else 0
                    if expected_sequence_no is not None and int(expected_sequence_no) != current_seq:
                        raise SequenceMismatch(case_id, int(expected_sequence_no), current_seq)

                    now = self._now()
                    entered_at = now
                    if latest is not None:
                        if latest.is_open:
                            # Never stamp an exit before the entry began.
                            exited_at = max(now, latest.entered_at)
                            closed = conn.execute(
                                """
                                UPDATE transition_entries
                                SET exited_at = ?, duration_seconds = ?
                                WHERE case_id = ? AND sequence_no = ? AND exited_at IS NULL
                                """,
                                (
                                    to_iso(exited_at),
                                    (exited_at - latest.entered_at).total_seconds(),
                                    case_id,
                                    latest.sequence_no,
                                ),
                            )
                            if closed.rowcount != 1:
                                raise ConcurrentModification(
                                    f"Open entry {case_id}#{latest.sequence_no} was closed by another writer",
                                    case_id=case_id,
                                )
                            entered_at = exited_at
                        else:
                            entered_at = max(now, latest.exited_at)

                    terminal = state_catalog.is_terminal(new_state)
                    entry = TransitionEntry(
                        case_id=case_id,
                        sequence_no=current_seq + 1,
                        previous_state=latest.new_state if latest else None,
                        new_state=new_state,
                        actor=actor,
                        entered_at=entered_at,
                        exited_at=entered_at if terminal else None,
                        duration_seconds=0.0 if terminal else None,
                        notes=notes,
                    )
                    conn.execute(
                        f"""
                        INSERT INTO transition_entries ({_ENTRY_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry.case_id,
                            entry.sequence_no,
                            entry.previous_state.value if entry.previous_state else None,
                            entry.new_state.value,
                            entry.actor,
                            to_iso(entry.entered_at),
                            to_iso(entry.exited_at),
                            entry.duration_seconds,
                            entry.notes,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                raise ConcurrentModification(
                    f"Conflicting ledger write for {case_id}: {exc}",
                    case_id=case_id,
                ) from exc
            except sqlite3.OperationalError as exc:
                if not _is_lock_contention(exc):
                    raise
                raise ConcurrentModification(
                    f"Ledger for {case_id} is locked by another writer: {exc}",
                    case_id=case_id,
                ) from exc

        if entry.previous_state is not None and not state_catalog.is_valid_transition(
            entry.previous_state, entry.new_state
        ):
            logger.warning(
                "Transition outside catalog graph",
                case_id=case_id,
                sequence_no=entry.sequence_no,
                from_state=entry.previous_state.value,
                to_state=entry.new_state.value,
                actor=actor,
            )
        logger.info(
            "Status transition recorded",
            case_id=case_id,
            sequence_no=entry.sequence_no,
            from_state=entry.previous_state.value if entry.previous_state else None,
            to_state=entry.new_state.value,
            actor=actor,
            retired=terminal,
        )
        return entry

    # ------------------------------------------------------------------- reads

    @staticmethod
    def _latest_entry(conn: sqlite3.Connection, case_id: str) -> Optional[TransitionEntry]:
        row = conn.execute(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM transition_entries
            WHERE case_id = ?
            ORDER BY sequence_no DESC
            LIMIT 1
            """,
            (case_id,),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def _require_case(self, case_id: str) -> None:
        if not self._cases.case_exists(case_id):
            raise CaseNotFound(case_id)

    def current_entry(self, case_id: str) -> Optional[TransitionEntry]:
        """Open entry, else the last (terminal) entry, else ``None`` when no ledger exists.

        Safe to call after a timed-out ``transition`` to learn whether it landed.
        """
        self._require_case(case_id)
        conn = self._db.connection()
        row = conn.execute(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM transition_entries
            WHERE case_id = ? AND exited_at IS NULL
            """,
            (case_id,),
        ).fetchone()
        if row:
            return _row_to_entry(row)
        return self._latest_entry(conn, case_id)

    def full_history(self, case_id: str) -> List[TransitionEntry]:
        self._require_case(case_id)
        rows = self._db.connection().execute(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM transition_entries
            WHERE case_id = ?
            ORDER BY sequence_no ASC
            """,
            (case_id,),
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def is_retired(self, case_id: str) -> bool:
        latest = self.current_entry(case_id)
        return latest is not None and not latest.is_open and state_catalog.is_terminal(latest.new_state)

    def histories(
        self,
        case_ids: Optional[Iterable[str]] = None,
        *,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None,
    ) -> Dict[str, List[TransitionEntry]]:
        """Histories for many cases, optionally limited to cases whose first entry falls in a window.

        The window is applied to ``sequence_no = 1`` rows in SQL; timestamps are
        stored as fixed-width UTC ISO strings, so text comparison orders them.
        """
        conditions = ["sequence_no = 1"]
        params: List[Any] = []
        if started_from is not None:
            conditions.append("entered_at >= ?")
            params.append(to_iso(started_from))
        if started_to is not None:
            conditions.append("entered_at <= ?")
            params.append(to_iso(started_to))
        if case_ids is not None:
            wanted = sorted(set(case_ids))
            if not wanted:
                return {}
            conditions.append(f"case_id IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)

        rows = self._db.connection().execute(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM transition_entries
            WHERE case_id IN (
                SELECT case_id FROM transition_entries
                WHERE {' AND '.join(conditions)}
            )
            ORDER BY case_id ASC, sequence_no ASC
            """,
            params,
        ).fetchall()

        grouped: Dict[str, List[TransitionEntry]] = defaultdict(list)
        for row in rows:
            grouped[row["case_id"]].append(_row_to_entry(row))
        return dict(grouped)
