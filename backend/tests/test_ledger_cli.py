"""Smoke tests for the ledger command-line tooling."""
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path


def _run(backend_root: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "scripts/ledger_cli.py", *args],
        cwd=str(backend_root),
        capture_output=True,
        text=True,
        check=False,
    )


def test_seed_then_report_emits_fleet_json(tmp_path: Path):
    backend_root = Path(__file__).resolve().parents[1]
    db_path = tmp_path / "cli_ledger.db"

    seeded = _run(backend_root, "--db", str(db_path), "seed", "--cases", "5", "--seed", "11", "--days", "10")
    assert seeded.returncode == 0, f"seed failed:\nSTDOUT:\n{seeded.stdout}\nSTDERR:\n{seeded.stderr}"
    assert "[OK] seeded 5 cases" in seeded.stdout

    reported = _run(backend_root, "--db", str(db_path), "report", "--days", "30", "--indent", "0")
    assert reported.returncode == 0, f"report failed:\nSTDOUT:\n{reported.stdout}\nSTDERR:\n{reported.stderr}"

    payload = json.loads(reported.stdout)
    assert payload["total_cases"] == 5
    assert payload["completed_cases"] + payload["active_cases"] == 5
    assert payload["total_tracked_seconds"] > 0
    shares = [row["percentage_of_total"] for row in payload["status_performance"]]
    assert abs(sum(shares) - 100.0) < 1e-6
