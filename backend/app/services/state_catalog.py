"""Static catalog of breakdown tracking states and the advisory transition graph."""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping

from app.core.errors import InvalidState
from app.models.ledger import StateCategory, StateDescriptor, TrackingState


@dataclass(frozen=True)
class StateConfig:
    label: str
    category: StateCategory
    reachable: FrozenSet[TrackingState]


_S = TrackingState

# Keyed by the enum, so two rows can never share a state.
_CATALOG: Mapping[TrackingState, StateConfig] = MappingProxyType(
    {
        _S.AWAITING_TECHNICIAN: StateConfig(
            label="Awaiting Technician",
            category=StateCategory.INITIAL,
            reachable=frozenset({_S.AWAITING_MECHANIC, _S.IN_MAINTENANCE, _S.TRANSFER_PREPARING}),
        ),
        _S.AWAITING_MECHANIC: StateConfig(
            label="Awaiting Mechanic",
            category=StateCategory.INITIAL,
            reachable=frozenset({_S.IN_MAINTENANCE, _S.TRANSFER_PREPARING}),
        ),
        _S.IN_MAINTENANCE: StateConfig(
            label="In Maintenance",
            category=StateCategory.INTERMEDIATE,
            reachable=frozenset({_S.TRANSFER_PREPARING, _S.TRANSFER_IN_PROGRESS, _S.TRIP_RESTARTING}),
        ),
        _S.NO_ESTIMATE: StateConfig(
            label="No Estimate",
            category=StateCategory.INTERMEDIATE,
            reachable=frozenset(
                {
                    _S.AWAITING_TECHNICIAN,
                    _S.AWAITING_MECHANIC,
                    _S.IN_MAINTENANCE,
                    _S.TRANSFER_PREPARING,
                    _S.TRIP_RESTARTING,
                }
            ),
        ),
        _S.TRANSFER_PREPARING: StateConfig(
            label="Transfer - Tractor Swap",
            category=StateCategory.TRANSFER,
            reachable=frozenset({_S.TRANSFER_IN_PROGRESS, _S.TRIP_RESTARTING}),
        ),
        _S.TRANSFER_IN_PROGRESS: StateConfig(
            label="Transfer In Progress",
            category=StateCategory.TRANSFER,
            reachable=frozenset({_S.TRANSFER_DONE, _S.TRIP_RESTARTING}),
        ),
        _S.TRANSFER_DONE: StateConfig(
            label="Transfer Done",
            category=StateCategory.TRANSFER,
            reachable=frozenset({_S.TRIP_RESTARTING}),
        ),
        _S.TRIP_RESTARTING: StateConfig(
            label="Trip Restarting",
            category=StateCategory.FINAL,
            reachable=frozenset({_S.FINALIZED}),
        ),
        _S.FINALIZED: StateConfig(
            label="Finalized",
            category=StateCategory.FINAL,
            reachable=frozenset(),
        ),
    }
)

_DECLARATION_INDEX: Dict[TrackingState, int] = {state: idx for idx, state in enumerate(TrackingState)}


def parse_state(value: Any) -> TrackingState:
    """Coerce a wire value or enum member into a ``TrackingState``."""
    if isinstance(value, TrackingState):
        return value
    text = str(value or "").strip().lower()
    try:
        return TrackingState(text)
    except ValueError:
        raise InvalidState(value) from None


def _config(state: Any) -> StateConfig:
    return _CATALOG[parse_state(state)]


def reachable_from(state: Any) -> FrozenSet[TrackingState]:
    return _config(state).reachable


def is_valid_transition(from_state: Any, to_state: Any) -> bool:
    return parse_state(to_state) in reachable_from(from_state)


def category(state: Any) -> StateCategory:
    return _config(state).category


def label(state: Any) -> str:
    return _config(state).label


def is_terminal(state: Any) -> bool:
    """A state with nothing reachable from it; entering it retires the case."""
    return not _config(state).reachable


def declaration_index(state: Any) -> int:
    """Position in the enumeration, used as the deterministic tie-breaker."""
    return _DECLARATION_INDEX[parse_state(state)]


def terminal_states() -> FrozenSet[TrackingState]:
    return frozenset(state for state, config in _CATALOG.items() if not config.reachable)


def describe() -> List[StateDescriptor]:
    return [
        StateDescriptor(
            state=state,
            label=config.label,
            category=config.category,
            reachable=sorted(config.reachable, key=declaration_index),
            terminal=not config.reachable,
        )
        for state, config in _CATALOG.items()
    ]
