#!/usr/bin/env python3
"""Seed synthetic breakdown cases or print a fleet report from a ledger database."""

from __future__ import annotations

import argparse
import json
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import List, Optional

# Ensure `app` package is importable when script is run directly.
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.models.ledger import ReportWindow, TrackingState
from app.services import state_catalog
from app.services.wiring import open_services


OPERATORS = ["Ana Souza", "Bruno Lima", "Carla Mendes", "Diego Alves"]


class SteppingClock:
    """Clock that callers advance explicitly, so seeded dwell times are deterministic."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _walk(rng: random.Random, max_steps: int) -> List[TrackingState]:
    """Random path through the catalog graph, ending at a terminal state when it gets there."""
    path = [TrackingState.AWAITING_TECHNICIAN]
    while len(path) < max_steps:
        options = sorted(state_catalog.reachable_from(path[-1]), key=state_catalog.declaration_index)
        if not options:
            break
        path.append(rng.choice(options))
    return path


def seed(db_path: Optional[str], cases: int, seed_value: int, days: int) -> List[str]:
    rng = random.Random(seed_value)
    start = datetime.now(timezone.utc) - timedelta(days=days)
    clock = SteppingClock(start)
    services = open_services(db_path, clock=clock)
    created: List[str] = []
    try:
        for _ in range(cases):
            clock.now = start + timedelta(seconds=rng.randint(0, days * 86400 // 2))
            actor = rng.choice(OPERATORS)
            case = services.cases.register_case(
                created_by=actor,
                vehicle_code=f"LH-{rng.randint(1000, 9999)}",
                driver_name=rng.choice(["J. Pereira", "M. Costa", "R. Santos"]),
            )
            services.ledger.initialize_first(case.case_id, TrackingState.AWAITING_TECHNICIAN, actor)
            for state in _walk(rng, max_steps=rng.randint(2, 7))[1:]:
                clock.advance(rng.randint(5 * 60, 8 * 3600))
                services.ledger.transition(case.case_id, state, rng.choice(OPERATORS))
            created.append(case.case_id)
    finally:
        services.close()
    return created


def report(db_path: Optional[str], start: Optional[str], end: Optional[str], days: int) -> dict:
    window_end = datetime.fromisoformat(end) if end else datetime.now(timezone.utc)
    window_start = datetime.fromisoformat(start) if start else window_end - timedelta(days=days)
    services = open_services(db_path)
    try:
        result = services.reporter.build(ReportWindow(start=window_start, end=window_end))
    finally:
        services.close()
    return result.model_dump(mode="json")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db", default=None, help="Ledger database path (defaults to LEDGER_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    seed_parser = sub.add_parser("seed", help="Create synthetic cases with random status walks")
    seed_parser.add_argument("--cases", type=int, default=25)
    seed_parser.add_argument("--seed", type=int, default=7)
    seed_parser.add_argument("--days", type=int, default=14)

    report_parser = sub.add_parser("report", help="Print a fleet report as JSON")
    report_parser.add_argument("--start", default=None, help="ISO-8601 window start")
    report_parser.add_argument("--end", default=None, help="ISO-8601 window end")
    report_parser.add_argument("--days", type=int, default=30)
    report_parser.add_argument("--indent", type=int, default=2)

    args = parser.parse_args()
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    if args.command == "seed":
        created = seed(args.db, args.cases, args.seed, args.days)
        print(f"[OK] seeded {len(created)} cases")
        return 0

    print(json.dumps(report(args.db, args.start, args.end, args.days), indent=args.indent))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
