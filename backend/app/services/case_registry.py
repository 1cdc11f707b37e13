"""Minimal case store: existence checks, registration, and cascading deletion.

Case metadata proper (vehicle, driver, notes) is owned by the dashboard; the
ledger only needs to know that a case id exists.
"""
from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, List, Optional, Protocol

from app.core.errors import CaseNotFound
from app.core.logging import logger
from app.models.ledger import CaseRecord, TrackingState
from app.services.ledger_db import LedgerDatabase, json_dumps, parse_iso_utc, to_iso, utc_now


class CaseStore(Protocol):
    """The one question the ledger asks of whoever owns cases."""

    def case_exists(self, case_id: str) -> bool:
        ...


_CASE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{0,127}$")


def normalize_case_id(value: Any) -> str:
    case_id = str(value or "").strip()
    if not case_id:
        raise ValueError("case_id is required")
    if not _CASE_ID_PATTERN.match(case_id):
        raise ValueError(f"Invalid case_id '{case_id}'")
    return case_id


class CaseRegistry:
    """SQLite-backed case store sharing the ledger's database handle."""

    def __init__(self, database: LedgerDatabase) -> None:
        self._db = database

    def case_exists(self, case_id: str) -> bool:
        row = self._db.connection().execute(
            "SELECT 1 FROM cases WHERE case_id = ?",
            (case_id,),
        ).fetchone()
        return row is not None

    def register_case(
        self,
        *,
        created_by: str,
        case_id: Optional[str] = None,
        vehicle_code: Optional[str] = None,
        driver_name: Optional[str] = None,
        initial_state: TrackingState = TrackingState.AWAITING_TECHNICIAN,
        details: Optional[Dict[str, Any]] = None,
    ) -> CaseRecord:
        """Insert a case row. Raises ``ValueError`` if the id is already taken."""
        record = CaseRecord(
            case_id=normalize_case_id(case_id) if case_id else f"CASE-{uuid.uuid4().hex[:12].upper()}",
            vehicle_code=vehicle_code,
            driver_name=driver_name,
            initial_state=initial_state,
            created_by=created_by,
            created_at=utc_now(),
            details=details or {},
        )
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM cases WHERE case_id = ?",
                (record.case_id,),
            ).fetchone()
            if existing:
                raise ValueError(f"Case '{record.case_id}' already exists")
            conn.execute(
                """
                INSERT INTO cases (case_id, vehicle_code, driver_name, initial_state, created_by, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.case_id,
                    record.vehicle_code,
                    record.driver_name,
                    record.initial_state.value,
                    record.created_by,
                    to_iso(record.created_at),
                    json_dumps(record.details),
                ),
            )
        logger.info("Case registered", case_id=record.case_id, created_by=created_by)
        return record

    @staticmethod
    def _row_to_record(row: Any) -> CaseRecord:
        return CaseRecord(
            case_id=row["case_id"],
            vehicle_code=row["vehicle_code"],
            driver_name=row["driver_name"],
            initial_state=TrackingState(row["initial_state"]),
            created_by=row["created_by"],
            created_at=parse_iso_utc(row["created_at"]),
            details=json.loads(row["data_json"] or "{}"),
        )

    def get_case(self, case_id: str) -> CaseRecord:
        row = self._db.connection().execute(
            "SELECT * FROM cases WHERE case_id = ?",
            (case_id,),
        ).fetchone()
        if row is None:
            raise CaseNotFound(case_id)
        return self._row_to_record(row)

    def list_cases(self) -> List[CaseRecord]:
        rows = self._db.connection().execute(
            "SELECT * FROM cases ORDER BY created_at DESC"
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete_case(self, case_id: str) -> int:
        """Delete a case; its ledger rows go with it. Returns the number of entries removed."""
        with self._db.transaction() as conn:
            if conn.execute("SELECT 1 FROM cases WHERE case_id = ?", (case_id,)).fetchone() is None:
                raise CaseNotFound(case_id)
            removed = conn.execute(
                "SELECT COUNT(*) AS c FROM transition_entries WHERE case_id = ?",
                (case_id,),
            ).fetchone()["c"]
            conn.execute("DELETE FROM cases WHERE case_id = ?", (case_id,))
        logger.info("Case deleted", case_id=case_id, entries_removed=int(removed))
        return int(removed)
