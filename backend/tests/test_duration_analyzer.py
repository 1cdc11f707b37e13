"""Unit tests for per-case duration analysis."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.models.ledger import TrackingState
from app.services.duration_analyzer import analyze

from conftest import T0, make_history as _history


S = TrackingState


def test_finalized_case_breakdown_and_percentages():
    history = _history((S.AWAITING_TECHNICIAN, 600), (S.AWAITING_MECHANIC, 300), (S.FINALIZED, 0))
    result = analyze(history, T0 + timedelta(days=3))

    assert result.is_completed
    assert result.total_elapsed_seconds == pytest.approx(900.0)
    assert result.ended_at == T0 + timedelta(seconds=900)
    assert [row.state for row in result.breakdown] == [S.AWAITING_TECHNICIAN, S.AWAITING_MECHANIC]
    assert result.breakdown[0].total_seconds == pytest.approx(600.0)
    assert result.breakdown[0].percentage_of_total == pytest.approx(66.6667, abs=1e-3)
    assert result.breakdown[1].percentage_of_total == pytest.approx(33.3333, abs=1e-3)
    assert result.current.state == S.FINALIZED
    assert result.current.is_open is False
    assert result.current.live_seconds == 0.0
    assert [b.state for b in result.bottlenecks] == [S.AWAITING_TECHNICIAN, S.AWAITING_MECHANIC]


def test_single_open_entry_counts_live_time():
    history = _history((S.AWAITING_TECHNICIAN, 0))
    result = analyze(history, T0 + timedelta(seconds=120))

    assert not result.is_completed
    assert result.ended_at is None
    assert result.total_elapsed_seconds == pytest.approx(120.0)
    assert len(result.breakdown) == 1
    row = result.breakdown[0]
    assert row.total_seconds == pytest.approx(120.0)
    assert row.live_seconds == pytest.approx(120.0)
    assert row.closed_occurrences == 0
    assert row.average_seconds == 0.0
    assert row.percentage_of_total == pytest.approx(100.0)
    assert result.current.live_seconds == pytest.approx(120.0)
    assert result.current.is_open


def test_empty_history_yields_empty_analysis():
    result = analyze([], T0, case_id="NONE")
    assert result.case_id == "NONE"
    assert result.breakdown == []
    assert result.current is None
    assert result.bottlenecks == []
    assert result.total_elapsed_seconds == 0.0


def test_now_before_entry_never_goes_negative():
    history = _history((S.IN_MAINTENANCE, 0))
    result = analyze(history, T0 - timedelta(hours=1))
    assert result.total_elapsed_seconds == 0.0
    assert result.breakdown[0].total_seconds == 0.0
    assert result.breakdown[0].percentage_of_total == 0.0


def test_equal_totals_break_ties_by_declaration_order():
    history = _history(
        (S.TRANSFER_PREPARING, 300),
        (S.AWAITING_MECHANIC, 300),
        (S.IN_MAINTENANCE, 300),
        open_tail=False,
    )
    result = analyze(history, T0 + timedelta(hours=1))
    assert [row.state for row in result.breakdown] == [
        S.AWAITING_MECHANIC,
        S.IN_MAINTENANCE,
        S.TRANSFER_PREPARING,
    ]


def test_totals_and_percentages_add_up():
    history = _history(
        (S.AWAITING_TECHNICIAN, 1200),
        (S.IN_MAINTENANCE, 5400),
        (S.TRANSFER_PREPARING, 900),
        (S.TRANSFER_IN_PROGRESS, 0),
    )
    now = T0 + timedelta(seconds=1200 + 5400 + 900 + 1500)
    result = analyze(history, now)

    assert sum(row.total_seconds for row in result.breakdown) == pytest.approx(result.total_elapsed_seconds)
    assert sum(row.percentage_of_total for row in result.breakdown) == pytest.approx(100.0)
    assert result.breakdown[0].state == S.IN_MAINTENANCE
    assert result.current.state == S.TRANSFER_IN_PROGRESS
    assert result.current.live_seconds == pytest.approx(1500.0)


def test_analysis_is_a_pure_function_of_history_and_now():
    history = _history((S.AWAITING_TECHNICIAN, 600), (S.AWAITING_MECHANIC, 0))
    snapshot = [entry.model_copy() for entry in history]
    now = T0 + timedelta(seconds=1000)

    first = analyze(history, now)
    second = analyze(history, now)

    assert first == second
    assert history == snapshot
    later = analyze(history, now + timedelta(seconds=50))
    assert later.current.live_seconds == pytest.approx(first.current.live_seconds + 50)


def test_repeated_state_splits_closed_and_live_time():
    history = _history(
        (S.NO_ESTIMATE, 100),
        (S.AWAITING_MECHANIC, 50),
        (S.NO_ESTIMATE, 300),
        (S.AWAITING_MECHANIC, 40),
        (S.NO_ESTIMATE, 0),
    )
    now = T0 + timedelta(seconds=100 + 50 + 300 + 40 + 25)
    result = analyze(history, now)
    row = next(row for row in result.breakdown if row.state == S.NO_ESTIMATE)

    assert row.occurrences == 3
    assert row.closed_occurrences == 2
    assert row.closed_total_seconds == pytest.approx(400.0)
    assert row.live_seconds == pytest.approx(25.0)
    assert row.total_seconds == pytest.approx(425.0)
    assert row.average_seconds == pytest.approx(200.0)
    assert row.min_seconds == pytest.approx(100.0)
    assert row.max_seconds == pytest.approx(300.0)
    assert row.longest_sequence_no == 3


def test_transition_steps_flag_edges_outside_the_graph():
    history = _history(
        (S.AWAITING_TECHNICIAN, 60),
        (S.TRANSFER_DONE, 60),
        (S.TRIP_RESTARTING, 0),
    )
    result = analyze(history, T0 + timedelta(seconds=200))

    assert [(step.from_state, step.to_state) for step in result.transitions] == [
        (S.AWAITING_TECHNICIAN, S.TRANSFER_DONE),
        (S.TRANSFER_DONE, S.TRIP_RESTARTING),
    ]
    assert result.transitions[0].in_catalog_graph is False
    assert result.transitions[1].in_catalog_graph is True
    assert result.transitions[0].seconds_in_from_state == pytest.approx(60.0)
    assert result.off_graph_transitions == 1


def test_bottlenecks_are_capped():
    history = _history(
        (S.AWAITING_TECHNICIAN, 100),
        (S.AWAITING_MECHANIC, 400),
        (S.IN_MAINTENANCE, 300),
        (S.TRANSFER_PREPARING, 200),
        open_tail=False,
    )
    result = analyze(history, T0 + timedelta(hours=2))
    assert [b.state for b in result.bottlenecks] == [
        S.AWAITING_MECHANIC,
        S.IN_MAINTENANCE,
        S.TRANSFER_PREPARING,
    ]
    assert analyze(history, T0, bottleneck_count=1).bottlenecks[0].state == S.AWAITING_MECHANIC
    assert result.efficiency.most_time_consuming_state == S.AWAITING_MECHANIC
    assert result.efficiency.least_time_consuming_state == S.AWAITING_TECHNICIAN
    assert result.efficiency.average_seconds_per_state == pytest.approx(250.0)


def test_naive_now_is_treated_as_utc():
    history = _history((S.AWAITING_TECHNICIAN, 0))
    naive = datetime(2026, 3, 2, 8, 10)
    result = analyze(history, naive)
    assert result.total_elapsed_seconds == pytest.approx(600.0)


def test_analyzer_service_reads_from_the_ledger(services, clock):
    services.cases.register_case(created_by="Ana", case_id="LIVE")
    services.ledger.initialize_first("LIVE", S.AWAITING_TECHNICIAN, "Ana")
    clock.advance(600)
    services.ledger.transition("LIVE", S.AWAITING_MECHANIC, "Ana")
    clock.advance(300)
    services.ledger.transition("LIVE", S.FINALIZED, "Ana")
    clock.advance(3600)

    result = services.analyzer.analyze_case("LIVE")
    assert result.case_id == "LIVE"
    assert result.analyzed_at == clock.now
    assert result.total_elapsed_seconds == pytest.approx(900.0)
    assert [round(row.percentage_of_total, 1) for row in result.breakdown] == [66.7, 33.3]
