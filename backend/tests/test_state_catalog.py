"""Unit tests for the tracking state catalog."""
from __future__ import annotations

import pytest

from app.core.errors import InvalidState
from app.models.ledger import StateCategory, TrackingState
from app.services import state_catalog


def test_every_state_has_a_catalog_row():
    described = state_catalog.describe()
    assert [row.state for row in described] == list(TrackingState)


def test_finalized_is_the_only_terminal_state():
    assert state_catalog.terminal_states() == frozenset({TrackingState.FINALIZED})
    assert state_catalog.reachable_from(TrackingState.FINALIZED) == frozenset()
    assert state_catalog.is_terminal("finalized")
    assert not state_catalog.is_terminal(TrackingState.TRIP_RESTARTING)


def test_transition_graph_membership():
    assert state_catalog.is_valid_transition(TrackingState.AWAITING_TECHNICIAN, TrackingState.AWAITING_MECHANIC)
    assert state_catalog.is_valid_transition("trip_restarting", "finalized")
    assert not state_catalog.is_valid_transition(TrackingState.AWAITING_MECHANIC, TrackingState.FINALIZED)
    assert not state_catalog.is_valid_transition(TrackingState.FINALIZED, TrackingState.AWAITING_TECHNICIAN)


def test_categories_and_labels():
    assert state_catalog.category(TrackingState.AWAITING_TECHNICIAN) == StateCategory.INITIAL
    assert state_catalog.category(TrackingState.NO_ESTIMATE) == StateCategory.INTERMEDIATE
    assert state_catalog.category(TrackingState.TRANSFER_DONE) == StateCategory.TRANSFER
    assert state_catalog.category(TrackingState.FINALIZED) == StateCategory.FINAL
    assert state_catalog.label(TrackingState.IN_MAINTENANCE) == "In Maintenance"


def test_declaration_order_drives_tie_breaking_index():
    indexes = [state_catalog.declaration_index(state) for state in TrackingState]
    assert indexes == list(range(len(TrackingState)))


def test_unknown_state_is_rejected():
    with pytest.raises(InvalidState):
        state_catalog.parse_state("resolved")
    with pytest.raises(InvalidState):
        state_catalog.reachable_from(None)
    assert state_catalog.parse_state(" Awaiting_Mechanic ") == TrackingState.AWAITING_MECHANIC
