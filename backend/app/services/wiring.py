"""Explicit construction of the ledger services around one storage handle."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from app.services.case_registry import CaseRegistry
from app.services.duration_analyzer import DurationAnalyzer
from app.services.fleet_reporter import FleetReporter
from app.services.ledger_db import LedgerDatabase
from app.services.transition_ledger import TransitionLedger


@dataclass
class LedgerServices:
    database: LedgerDatabase
    cases: CaseRegistry
    ledger: TransitionLedger
    analyzer: DurationAnalyzer
    reporter: FleetReporter

    def close(self) -> None:
        self.database.close()


def open_services(
    db_path: str | Path | None = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> LedgerServices:
    """Open storage and wire every service to it. Call ``close()`` at shutdown."""
    database = LedgerDatabase(db_path)
    cases = CaseRegistry(database)
    ledger = TransitionLedger(database, cases, clock=clock)
    analyzer = DurationAnalyzer(ledger, clock=clock)
    reporter = FleetReporter(ledger, analyzer)
    return LedgerServices(
        database=database,
        cases=cases,
        ledger=ledger,
        analyzer=analyzer,
        reporter=reporter,
    )
