"""Fleet-wide managerial report built from many per-case analyses."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from app.core.config import get_settings
from app.core.logging import logger
from app.models.ledger import (
    CaseAnalysis,
    EfficiencyTrendPoint,
    FleetReport,
    Recommendation,
    RecommendationImpact,
    RecommendationType,
    ReportWindow,
    StateBreakdown,
    TrackingState,
    TransitionPattern,
)
from app.services import state_catalog
from app.services.duration_analyzer import DurationAnalyzer, breakdown_sort_key
from app.services.transition_ledger import TransitionLedger


@dataclass(frozen=True)
class ReportThresholds:
    bottleneck_share_pct: float = 40.0
    slow_completion_seconds: float = 24 * 3600.0
    active_case_threshold: int = 20

    @classmethod
    def from_settings(cls) -> "ReportThresholds":
        settings = get_settings()
        return cls(
            bottleneck_share_pct=settings.report_bottleneck_share_pct,
            slow_completion_seconds=settings.report_slow_completion_seconds,
            active_case_threshold=settings.report_active_case_threshold,
        )


def _merge_status_performance(cases: Sequence[CaseAnalysis]) -> List[StateBreakdown]:
    merged: Dict[TrackingState, dict] = {}
    for analysis in cases:
        for row in analysis.breakdown:
            acc = merged.setdefault(
                row.state,
                {
                    "total": 0.0,
                    "occurrences": 0,
                    "closed_occurrences": 0,
                    "closed_total": 0.0,
                    "live": 0.0,
                    "mins": [],
                    "maxes": [],
                },
            )
            acc["total"] += row.total_seconds
            acc["occurrences"] += row.occurrences
            acc["closed_occurrences"] += row.closed_occurrences
            acc["closed_total"] += row.closed_total_seconds
            acc["live"] += row.live_seconds
            if row.closed_occurrences:
                acc["mins"].append(row.min_seconds)
                acc["maxes"].append(row.max_seconds)

    fleet_total = sum(acc["total"] for acc in merged.values())
    rows = [
        StateBreakdown(
            state=state,
            label=state_catalog.label(state),
            category=state_catalog.category(state),
            total_seconds=acc["total"],
            occurrences=acc["occurrences"],
            closed_occurrences=acc["closed_occurrences"],
            closed_total_seconds=acc["closed_total"],
            live_seconds=acc["live"],
            average_seconds=acc["closed_total"] / acc["closed_occurrences"] if acc["closed_occurrences"] else 0.0,
            min_seconds=min(acc["mins"]) if acc["mins"] else 0.0,
            max_seconds=max(acc["maxes"]) if acc["maxes"] else 0.0,
            percentage_of_total=(acc["total"] / fleet_total * 100.0) if fleet_total > 0 else 0.0,
        )
        for state, acc in merged.items()
    ]
    return sorted(rows, key=breakdown_sort_key)


def _transition_patterns(cases: Sequence[CaseAnalysis]) -> List[TransitionPattern]:
    counts: Dict[Tuple[TrackingState, TrackingState], List[float]] = defaultdict(list)
    for analysis in cases:
        for step in analysis.transitions:
            counts[(step.from_state, step.to_state)].append(step.seconds_in_from_state)
    patterns = [
        TransitionPattern(
            from_state=from_state,
            to_state=to_state,
            frequency=len(dwell),
            average_seconds_in_from_state=sum(dwell) / len(dwell),
            in_catalog_graph=state_catalog.is_valid_transition(from_state, to_state),
        )
        for (from_state, to_state), dwell in counts.items()
    ]
    return sorted(
        patterns,
        key=lambda p: (
            -p.frequency,
            state_catalog.declaration_index(p.from_state),
            state_catalog.declaration_index(p.to_state),
        ),
    )


def _efficiency_trends(completed: Sequence[CaseAnalysis]) -> List[EfficiencyTrendPoint]:
    by_day: Dict[date, List[float]] = defaultdict(list)
    for analysis in completed:
        by_day[analysis.ended_at.date()].append(analysis.total_elapsed_seconds)
    return [
        EfficiencyTrendPoint(
            day=day,
            completed_cases=len(values),
            average_completion_seconds=sum(values) / len(values),
        )
        for day, values in sorted(by_day.items())
    ]


def _average_extremes(rows: Sequence[StateBreakdown]) -> Tuple[Optional[TrackingState], float, float]:
    """Slowest state by closed-stay average, plus the fastest and slowest averages."""
    timed = sorted(
        (row for row in rows if row.closed_occurrences and row.average_seconds > 0),
        key=lambda row: (-row.average_seconds, state_catalog.declaration_index(row.state)),
    )
    if not timed:
        return None, 0.0, 0.0
    return timed[0].state, timed[-1].average_seconds, timed[0].average_seconds


def _bottleneck_rule(report: FleetReport, thresholds: ReportThresholds) -> Optional[Recommendation]:
    if not report.status_performance:
        return None
    top = report.status_performance[0]
    if top.percentage_of_total <= thresholds.bottleneck_share_pct:
        return None
    return Recommendation(
        type=RecommendationType.BOTTLENECK,
        impact=RecommendationImpact.HIGH,
        description=f'Status "{top.label}" consumes {top.percentage_of_total:.1f}% of total fleet time',
        suggested_action=(
            f'Review the process behind "{top.label}". Consider adding resources '
            "or tightening the procedure for this stage."
        ),
        metric=round(top.percentage_of_total, 4),
    )


def _efficiency_rule(report: FleetReport, thresholds: ReportThresholds) -> Optional[Recommendation]:
    if report.average_completion_seconds <= thresholds.slow_completion_seconds:
        return None
    hours = int(report.average_completion_seconds // 3600)
    return Recommendation(
        type=RecommendationType.EFFICIENCY,
        impact=RecommendationImpact.MEDIUM,
        description=f"Average completion time is {hours} hours, above the target",
        suggested_action="Improve the slowest stages and automate repetitive hand-offs.",
        metric=round(report.average_completion_seconds, 3),
    )


def _load_rule(report: FleetReport, thresholds: ReportThresholds) -> Optional[Recommendation]:
    if report.active_cases <= thresholds.active_case_threshold:
        return None
    return Recommendation(
        type=RecommendationType.LOAD,
        impact=RecommendationImpact.MEDIUM,
        description=f"{report.active_cases} active cases may indicate operational overload",
        suggested_action="Consider adding staff or redistributing the open cases across the team.",
        metric=float(report.active_cases),
    )


RECOMMENDATION_RULES: Tuple[Callable[[FleetReport, ReportThresholds], Optional[Recommendation]], ...] = (
    _bottleneck_rule,
    _efficiency_rule,
    _load_rule,
)


def report(
    cases: Sequence[CaseAnalysis],
    window: ReportWindow,
    *,
    thresholds: Optional[ReportThresholds] = None,
    generated_at: Optional[datetime] = None,
) -> FleetReport:
    """Aggregate analyses of cases that started inside ``window``."""
    if window.start > window.end:
        raise ValueError("Report window start must not be after its end")
    thresholds = thresholds or ReportThresholds.from_settings()

    in_window = [analysis for analysis in cases if window.contains(analysis.started_at)]
    completed = [
        analysis for analysis in in_window if analysis.is_completed and window.contains(analysis.ended_at)
    ]
    status_performance = _merge_status_performance(in_window)
    most_time_consuming, fastest_average, slowest_average = _average_extremes(status_performance)

    result = FleetReport(
        window=window,
        generated_at=generated_at or datetime.now(timezone.utc),
        total_cases=len(in_window),
        completed_cases=len(completed),
        active_cases=len(in_window) - len(completed),
        average_completion_seconds=(
            sum(analysis.total_elapsed_seconds for analysis in completed) / len(completed) if completed else 0.0
        ),
        total_tracked_seconds=sum(row.total_seconds for row in status_performance),
        total_status_changes=sum(analysis.total_transitions for analysis in in_window),
        most_time_consuming_state=most_time_consuming,
        fastest_state_average_seconds=fastest_average,
        slowest_state_average_seconds=slowest_average,
        status_performance=status_performance,
        transition_patterns=_transition_patterns(in_window),
        efficiency_trends=_efficiency_trends(completed),
        off_graph_transitions=sum(analysis.off_graph_transitions for analysis in in_window),
    )
    result.recommendations = [
        recommendation
        for recommendation in (rule(result, thresholds) for rule in RECOMMENDATION_RULES)
        if recommendation is not None
    ]
    return result


class FleetReporter:
    """Builds fleet reports straight from ledger storage."""

    def __init__(
        self,
        ledger: TransitionLedger,
        analyzer: DurationAnalyzer,
        *,
        thresholds: Optional[ReportThresholds] = None,
    ) -> None:
        self._ledger = ledger
        self._analyzer = analyzer
        self._thresholds = thresholds

    def build(self, window: ReportWindow, now: Optional[datetime] = None) -> FleetReport:
        histories = self._ledger.histories(started_from=window.start, started_to=window.end)
        analyses = self._analyzer.analyze_histories(histories, now)
        result = report(analyses, window, thresholds=self._thresholds or ReportThresholds.from_settings())
        logger.info(
            "Fleet report generated",
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            total_cases=result.total_cases,
            completed_cases=result.completed_cases,
            recommendations=len(result.recommendations),
        )
        return result
