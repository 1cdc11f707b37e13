"""Shared fixtures: a controllable clock and ledger services on a temp database."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_ledger"
TMP.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("LEDGER_DB_PATH", str(TMP / "status_ledger.db"))
os.environ.setdefault("LEDGER_RETRY_BACKOFF_SECONDS", "0")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.models.ledger import TrackingState, TransitionEntry  # noqa: E402
from app.services.wiring import open_services  # noqa: E402


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(tmp_path, clock):
    opened = open_services(tmp_path / "ledger.db", clock=clock)
    try:
        yield opened
    finally:
        opened.close()


def make_history(*steps, open_tail: bool = True, case_id: str = "CASE-A", start: datetime = T0):
    """Well-formed history from ``(state, seconds)`` pairs.

    The last pair's seconds are ignored when ``open_tail`` is set; a finalized
    step is closed on arrival.
    """
    entries = []
    at = start
    previous = None
    for index, (state, seconds) in enumerate(steps, start=1):
        last = index == len(steps)
        if state == TrackingState.FINALIZED:
            exited, duration = at, 0.0
        elif last and open_tail:
            exited, duration = None, None
        else:
            exited, duration = at + timedelta(seconds=seconds), float(seconds)
        entries.append(
            TransitionEntry(
                case_id=case_id,
                sequence_no=index,
                previous_state=previous,
                new_state=state,
                actor="Ana",
                entered_at=at,
                exited_at=exited,
                duration_seconds=duration,
            )
        )
        previous = state
        if exited is not None:
            at = exited
    return entries
