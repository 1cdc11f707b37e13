"""Per-case dwell-time analytics computed from a ledger history.

:func:`analyze` is a pure function of ``(history, now)``: the live duration of
the open state is derived on demand rather than tracked by a timer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from app.core.config import get_settings
from app.models.ledger import (
    Bottleneck,
    CaseAnalysis,
    CurrentStateInfo,
    EfficiencyMetrics,
    StateBreakdown,
    TrackingState,
    TransitionEntry,
    TransitionStep,
)
from app.services import state_catalog
from app.services.transition_ledger import TransitionLedger


@dataclass
class _StateAccumulator:
    state: TrackingState
    total: float = 0.0
    occurrences: int = 0
    closed: List[float] = field(default_factory=list)
    live: float = 0.0
    longest: float = -1.0
    longest_sequence_no: Optional[int] = None

    def add(self, seconds: float, sequence_no: int, *, is_live: bool) -> None:
        self.total += seconds
        self.occurrences += 1
        if is_live:
            self.live += seconds
        else:
            self.closed.append(seconds)
        if seconds > self.longest:
            self.longest = seconds
            self.longest_sequence_no = sequence_no

    def to_breakdown(self, total_elapsed: float) -> StateBreakdown:
        closed_total = sum(self.closed)
        return StateBreakdown(
            state=self.state,
            label=state_catalog.label(self.state),
            category=state_catalog.category(self.state),
            total_seconds=self.total,
            occurrences=self.occurrences,
            closed_occurrences=len(self.closed),
            closed_total_seconds=closed_total,
            live_seconds=self.live,
            average_seconds=closed_total / len(self.closed) if self.closed else 0.0,
            min_seconds=min(self.closed) if self.closed else 0.0,
            max_seconds=max(self.closed) if self.closed else 0.0,
            percentage_of_total=(self.total / total_elapsed * 100.0) if total_elapsed > 0 else 0.0,
            longest_sequence_no=self.longest_sequence_no,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def closed_duration(entry: TransitionEntry) -> float:
    """Stored duration of a closed entry, recomputed from timestamps if missing."""
    if entry.duration_seconds is not None:
        return float(entry.duration_seconds)
    if entry.exited_at is None:
        return 0.0
    return max(0.0, (entry.exited_at - entry.entered_at).total_seconds())


def live_duration(entered_at: datetime, now: datetime) -> float:
    return max(0.0, (_as_utc(now) - _as_utc(entered_at)).total_seconds())


def breakdown_sort_key(row: StateBreakdown) -> tuple:
    return (-row.total_seconds, state_catalog.declaration_index(row.state))


def _efficiency(breakdown: List[StateBreakdown]) -> EfficiencyMetrics:
    averages = [row.average_seconds for row in breakdown if row.closed_occurrences and row.average_seconds > 0]
    return EfficiencyMetrics(
        average_seconds_per_state=sum(averages) / len(averages) if averages else 0.0,
        fastest_state_average_seconds=min(averages) if averages else 0.0,
        slowest_state_average_seconds=max(averages) if averages else 0.0,
        most_time_consuming_state=breakdown[0].state if breakdown else None,
        least_time_consuming_state=breakdown[-1].state if breakdown else None,
    )


def analyze(
    history: Sequence[TransitionEntry],
    now: datetime,
    *,
    case_id: Optional[str] = None,
    bottleneck_count: int = 3,
) -> CaseAnalysis:
    """Duration breakdown, live current state, and bottlenecks for one case."""
    now = _as_utc(now)
    entries = sorted(history, key=lambda entry: entry.sequence_no)
    if not entries:
        return CaseAnalysis(case_id=case_id, analyzed_at=now)

    first, last = entries[0], entries[-1]
    case_id = case_id or first.case_id
    open_entry = last if last.is_open else None

    if open_entry is not None:
        total_elapsed = live_duration(first.entered_at, now)
    else:
        total_elapsed = max(0.0, (last.exited_at - first.entered_at).total_seconds())

    accumulators: Dict[TrackingState, _StateAccumulator] = {}
    transitions: List[TransitionStep] = []
    previous: Optional[TransitionEntry] = None
    for entry in entries:
        if entry is open_entry:
            seconds, is_live = live_duration(entry.entered_at, now), True
        else:
            seconds, is_live = closed_duration(entry), False
        # Terminal entries are closed on arrival and carry no dwell time.
        if not state_catalog.is_terminal(entry.new_state):
            acc = accumulators.get(entry.new_state)
            if acc is None:
                acc = accumulators[entry.new_state] = _StateAccumulator(state=entry.new_state)
            acc.add(seconds, entry.sequence_no, is_live=is_live)

        if previous is not None:
            from_state = entry.previous_state or previous.new_state
            transitions.append(
                TransitionStep(
                    sequence_no=entry.sequence_no,
                    from_state=from_state,
                    to_state=entry.new_state,
                    seconds_in_from_state=closed_duration(previous),
                    actor=entry.actor,
                    at=entry.entered_at,
                    in_catalog_graph=state_catalog.is_valid_transition(from_state, entry.new_state),
                )
            )
        previous = entry

    breakdown = sorted(
        (acc.to_breakdown(total_elapsed) for acc in accumulators.values()),
        key=breakdown_sort_key,
    )
    bottlenecks = [
        Bottleneck(
            state=row.state,
            label=row.label,
            total_seconds=row.total_seconds,
            percentage=row.percentage_of_total,
            longest_sequence_no=row.longest_sequence_no,
        )
        for row in breakdown[: max(0, bottleneck_count)]
    ]

    current_source = open_entry or last
    current = CurrentStateInfo(
        state=current_source.new_state,
        label=state_catalog.label(current_source.new_state),
        actor=current_source.actor,
        entered_at=current_source.entered_at,
        live_seconds=live_duration(current_source.entered_at, now) if open_entry is not None else 0.0,
        sequence_no=current_source.sequence_no,
        is_open=open_entry is not None,
        notes=current_source.notes,
    )
    is_completed = open_entry is None and state_catalog.is_terminal(last.new_state)

    return CaseAnalysis(
        case_id=case_id,
        analyzed_at=now,
        started_at=first.entered_at,
        ended_at=last.exited_at if is_completed else None,
        is_completed=is_completed,
        total_elapsed_seconds=total_elapsed,
        total_transitions=len(entries),
        breakdown=breakdown,
        current=current,
        bottlenecks=bottlenecks,
        transitions=transitions,
        off_graph_transitions=sum(1 for step in transitions if not step.in_catalog_graph),
        efficiency=_efficiency(breakdown),
    )


class DurationAnalyzer:
    """Reads a case's history from the ledger and analyzes it at the current time."""

    def __init__(
        self,
        ledger: TransitionLedger,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        bottleneck_count: Optional[int] = None,
    ) -> None:
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._bottleneck_count = (
            get_settings().bottleneck_count if bottleneck_count is None else bottleneck_count
        )

    def analyze_case(self, case_id: str, now: Optional[datetime] = None) -> CaseAnalysis:
        history = self._ledger.full_history(case_id)
        return analyze(
            history,
            now or self._clock(),
            case_id=case_id,
            bottleneck_count=self._bottleneck_count,
        )

    def analyze_histories(
        self,
        histories: Dict[str, List[TransitionEntry]],
        now: Optional[datetime] = None,
    ) -> List[CaseAnalysis]:
        moment = now or self._clock()
        return [
            analyze(entries, moment, case_id=case_id, bottleneck_count=self._bottleneck_count)
            for case_id, entries in histories.items()
        ]
