"""API-level tests for the ledger and report routers."""
from __future__ import annotations

import sqlite3

import pytest
from fastapi.testclient import TestClient

from app.main import app


MANAGER = {"X-Operator-Name": "Marta", "X-Operator-Role": "manager"}


@pytest.fixture
def client(services):
    with TestClient(app) as test_client:
        opened_at_startup = app.state.ledger_services
        app.state.ledger_services = services
        try:
            yield test_client
        finally:
            app.state.ledger_services = opened_at_startup


def _create_case(client, case_id="CASE-API-1", **extra):
    payload = {"case_id": case_id, "actor": "Ana", "vehicle_code": "LH-2041", **extra}
    response = client.post("/ledger/cases", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_root_and_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["ledger"] == "/ledger"


def test_state_catalog_endpoint(client):
    response = client.get("/ledger/states")
    assert response.status_code == 200
    rows = response.json()
    assert rows[0]["state"] == "awaiting_technician"
    finalized = next(row for row in rows if row["state"] == "finalized")
    assert finalized["terminal"] is True
    assert finalized["reachable"] == []


def test_case_lifecycle_flow(client, clock):
    created = _create_case(client)
    assert created["case"]["case_id"] == "CASE-API-1"
    assert created["entry"]["sequence_no"] == 1
    assert created["entry"]["exited_at"] is None

    clock.advance(600)
    moved = client.post(
        "/ledger/cases/CASE-API-1/transitions",
        json={"new_state": "awaiting_mechanic", "actor": "  Bruno   Lima ", "notes": "tow requested"},
    )
    assert moved.status_code == 200, moved.text
    assert moved.json()["sequence_no"] == 2
    assert moved.json()["actor"] == "Bruno Lima"

    clock.advance(300)
    final = client.post(
        "/ledger/cases/CASE-API-1/transitions",
        json={"new_state": "finalized", "actor": "Ana"},
    )
    assert final.status_code == 200

    history = client.get("/ledger/cases/CASE-API-1/history").json()
    assert history["retired"] is True
    assert [entry["new_state"] for entry in history["entries"]] == [
        "awaiting_technician",
        "awaiting_mechanic",
        "finalized",
    ]

    analysis = client.get("/ledger/cases/CASE-API-1/analysis").json()
    assert analysis["is_completed"] is True
    assert analysis["total_elapsed_seconds"] == pytest.approx(900.0)
    assert [row["state"] for row in analysis["breakdown"]] == ["awaiting_technician", "awaiting_mechanic"]
    assert round(analysis["breakdown"][0]["percentage_of_total"], 1) == 66.7

    current = client.get("/ledger/cases/CASE-API-1/current").json()
    assert current["retired"] is True
    assert current["entry"]["new_state"] == "finalized"

    rejected = client.post(
        "/ledger/cases/CASE-API-1/transitions",
        json={"new_state": "trip_restarting", "actor": "Ana"},
    )
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["code"] == "case_finalized"


def test_case_listing_and_duplicate_ids(client):
    _create_case(client, "CASE-API-2")
    listed = client.get("/ledger/cases").json()
    assert [row["case_id"] for row in listed] == ["CASE-API-2"]

    duplicate = client.post("/ledger/cases", json={"case_id": "CASE-API-2", "actor": "Ana"})
    assert duplicate.status_code == 400


def test_generated_case_id(client):
    created = _create_case(client, case_id=None)
    assert created["case"]["case_id"].startswith("CASE-")


def test_initialize_endpoint_rejects_second_call(client):
    _create_case(client, "CASE-API-3")
    again = client.post("/ledger/cases/CASE-API-3/initialize", json={"actor": "Ana"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "already_initialized"


def test_idempotent_transition_replay(client, clock):
    _create_case(client, "CASE-API-4")
    clock.advance(60)
    headers = {"Idempotency-Key": "evt-7781"}
    body = {"new_state": "in_maintenance", "actor": "Ana"}

    first = client.post("/ledger/cases/CASE-API-4/transitions", json=body, headers=headers)
    clock.advance(60)
    replay = client.post("/ledger/cases/CASE-API-4/transitions", json=body, headers=headers)

    assert first.status_code == 200
    assert replay.status_code == 200
    assert replay.json() == first.json()
    assert len(client.get("/ledger/cases/CASE-API-4/history").json()["entries"]) == 2


def test_expected_sequence_conflict(client, clock):
    _create_case(client, "CASE-API-5")
    clock.advance(60)
    stale = client.post(
        "/ledger/cases/CASE-API-5/transitions",
        json={"new_state": "in_maintenance", "actor": "Ana", "expected_sequence_no": 4},
    )
    assert stale.status_code == 409
    assert stale.json()["detail"]["code"] == "sequence_mismatch"


def test_unknown_case_and_invalid_payloads(client):
    assert client.get("/ledger/cases/NOPE/history").status_code == 404
    missing = client.post("/ledger/cases/NOPE/transitions", json={"new_state": "in_maintenance", "actor": "Ana"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "case_not_found"

    _create_case(client, "CASE-API-6")
    bad_state = client.post("/ledger/cases/CASE-API-6/transitions", json={"new_state": "resolved", "actor": "Ana"})
    assert bad_state.status_code == 422
    blank_actor = client.post("/ledger/cases/CASE-API-6/transitions", json={"new_state": "in_maintenance", "actor": " "})
    assert blank_actor.status_code == 422


def test_delete_requires_manager_role(client, clock):
    _create_case(client, "CASE-API-7")
    clock.advance(30)
    client.post("/ledger/cases/CASE-API-7/transitions", json={"new_state": "no_estimate", "actor": "Ana"})

    assert client.delete("/ledger/cases/CASE-API-7").status_code == 403
    bad_role = client.delete("/ledger/cases/CASE-API-7", headers={"X-Operator-Role": "dispatcher"})
    assert bad_role.status_code == 400

    deleted = client.delete("/ledger/cases/CASE-API-7", headers=MANAGER)
    assert deleted.status_code == 200
    assert deleted.json()["entries_removed"] == 2
    assert client.get("/ledger/cases/CASE-API-7/history").status_code == 404


def test_fleet_report_endpoint(client, clock):
    _create_case(client, "CASE-API-8")
    clock.advance(4 * 3600)
    client.post("/ledger/cases/CASE-API-8/transitions", json={"new_state": "trip_restarting", "actor": "Ana"})
    clock.advance(600)
    client.post("/ledger/cases/CASE-API-8/transitions", json={"new_state": "finalized", "actor": "Ana"})

    params = {"start": "2026-03-01T00:00:00Z", "end": "2026-03-03T00:00:00Z"}
    assert client.get("/reports/fleet", params=params).status_code == 403

    response = client.get("/reports/fleet", params=params, headers=MANAGER)
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["total_cases"] == 1
    assert data["completed_cases"] == 1
    assert data["average_completion_seconds"] == pytest.approx(4 * 3600 + 600)
    assert data["status_performance"][0]["state"] == "awaiting_technician"
    assert data["recommendations"][0]["type"] == "bottleneck"
    assert data["off_graph_transitions"] == 1

    inverted = client.get(
        "/reports/fleet",
        params={"start": params["end"], "end": params["start"]},
        headers=MANAGER,
    )
    assert inverted.status_code == 422


def test_report_window_defaults_to_recent_days(client):
    response = client.get("/reports/fleet", params={"days": 7}, headers=MANAGER)
    assert response.status_code == 200
    data = response.json()
    assert data["total_cases"] == 0
    assert data["window"]["start"] < data["window"]["end"]


def test_create_case_is_rolled_back_when_storage_fails(client, services, monkeypatch):
    def failing_initialize(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(services.ledger, "initialize_first", failing_initialize)
    response = client.post(
        "/ledger/cases",
        json={"case_id": "CASE-API-9", "actor": "Ana", "vehicle_code": "LH-2041"},
    )
    assert response.status_code == 400
    assert "disk I/O error" in response.json()["detail"]
    assert not services.cases.case_exists("CASE-API-9")
