"""Domain models for the breakdown status ledger and its time analytics."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_actor(value: str) -> str:
    cleaned = " ".join(str(value or "").split()).strip()
    if not cleaned:
        raise ValueError("actor must be a non-empty operator name")
    return cleaned


class TrackingState(str, Enum):
    """Operational status of a breakdown case. Declaration order is significant."""

    AWAITING_TECHNICIAN = "awaiting_technician"
    AWAITING_MECHANIC = "awaiting_mechanic"
    IN_MAINTENANCE = "in_maintenance"
    NO_ESTIMATE = "no_estimate"
    TRANSFER_PREPARING = "transfer_preparing"
    TRANSFER_IN_PROGRESS = "transfer_in_progress"
    TRANSFER_DONE = "transfer_done"
    TRIP_RESTARTING = "trip_restarting"
    FINALIZED = "finalized"


class StateCategory(str, Enum):
    """Coarse grouping used by dashboards."""

    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    TRANSFER = "transfer"
    FINAL = "final"


class OperatorRole(str, Enum):
    """Supported UI/API operator roles."""

    OPERATOR = "operator"
    MANAGER = "manager"
    ADMIN = "admin"


class StateDescriptor(BaseModel):
    """Catalog row for one state."""

    state: TrackingState
    label: str
    category: StateCategory
    reachable: List[TrackingState] = Field(default_factory=list)
    terminal: bool = False


class TransitionEntry(BaseModel):
    """One occupied state for one case."""

    case_id: str
    sequence_no: int = Field(ge=1)
    previous_state: Optional[TrackingState] = None
    new_state: TrackingState
    actor: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None


class CaseRecord(BaseModel):
    """Minimal case metadata kept by the case registry."""

    case_id: str
    vehicle_code: Optional[str] = None
    driver_name: Optional[str] = None
    initial_state: TrackingState = TrackingState.AWAITING_TECHNICIAN
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class _OperatorPayload(BaseModel):
    """Base for write requests that name the acting operator."""

    actor: str

    @field_validator("actor")
    @classmethod
    def normalize_actor(cls, value: str) -> str:
        return _clean_actor(value)


class CaseCreateRequest(_OperatorPayload):
    """Register a case and open its first ledger entry."""

    case_id: Optional[str] = None
    vehicle_code: Optional[str] = None
    driver_name: Optional[str] = None
    initial_state: TrackingState = TrackingState.AWAITING_TECHNICIAN
    notes: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class InitializeRequest(_OperatorPayload):
    """Open the first entry for a case that has none."""

    initial_state: TrackingState = TrackingState.AWAITING_TECHNICIAN
    notes: Optional[str] = None


class TransitionRequest(_OperatorPayload):
    """Move a case to its next operational state."""

    new_state: TrackingState
    notes: Optional[str] = None
    expected_sequence_no: Optional[int] = Field(default=None, ge=1)


class CaseCreateResponse(BaseModel):
    case: CaseRecord
    entry: TransitionEntry


class HistoryResponse(BaseModel):
    case_id: str
    entries: List[TransitionEntry]
    retired: bool = False


class StateBreakdown(BaseModel):
    """Time spent in one state.

    ``average_seconds``, ``min_seconds`` and ``max_seconds`` cover closed stays
    only; ``live_seconds`` is the still-running stay, reported apart.
    """

    state: TrackingState
    label: str
    category: StateCategory
    total_seconds: float = 0.0
    occurrences: int = 0
    closed_occurrences: int = 0
    closed_total_seconds: float = 0.0
    live_seconds: float = 0.0
    average_seconds: float = 0.0
    min_seconds: float = 0.0
    max_seconds: float = 0.0
    percentage_of_total: float = 0.0
    longest_sequence_no: Optional[int] = None


class CurrentStateInfo(BaseModel):
    state: TrackingState
    label: str
    actor: str
    entered_at: datetime
    live_seconds: float = 0.0
    sequence_no: int
    is_open: bool = True
    notes: Optional[str] = None


class Bottleneck(BaseModel):
    state: TrackingState
    label: str
    total_seconds: float
    percentage: float
    longest_sequence_no: Optional[int] = None


class TransitionStep(BaseModel):
    """One edge walked by a case, with the dwell time in the state it left."""

    sequence_no: int
    from_state: TrackingState
    to_state: TrackingState
    seconds_in_from_state: float = 0.0
    actor: str
    at: datetime
    in_catalog_graph: bool = True


class EfficiencyMetrics(BaseModel):
    average_seconds_per_state: float = 0.0
    fastest_state_average_seconds: float = 0.0
    slowest_state_average_seconds: float = 0.0
    most_time_consuming_state: Optional[TrackingState] = None
    least_time_consuming_state: Optional[TrackingState] = None


class CaseAnalysis(BaseModel):
    """Per-case duration analysis at a point in time."""

    case_id: Optional[str] = None
    analyzed_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    is_completed: bool = False
    total_elapsed_seconds: float = 0.0
    total_transitions: int = 0
    breakdown: List[StateBreakdown] = Field(default_factory=list)
    current: Optional[CurrentStateInfo] = None
    bottlenecks: List[Bottleneck] = Field(default_factory=list)
    transitions: List[TransitionStep] = Field(default_factory=list)
    off_graph_transitions: int = 0
    efficiency: EfficiencyMetrics = Field(default_factory=EfficiencyMetrics)


class ReportWindow(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        return self.start <= moment <= self.end


class RecommendationType(str, Enum):
    BOTTLENECK = "bottleneck"
    EFFICIENCY = "efficiency"
    LOAD = "load"


class RecommendationImpact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Recommendation(BaseModel):
    type: RecommendationType
    impact: RecommendationImpact
    description: str
    suggested_action: str
    metric: float = 0.0


class TransitionPattern(BaseModel):
    from_state: TrackingState
    to_state: TrackingState
    frequency: int
    average_seconds_in_from_state: float = 0.0
    in_catalog_graph: bool = True


class EfficiencyTrendPoint(BaseModel):
    day: date
    completed_cases: int
    average_completion_seconds: float


class FleetReport(BaseModel):
    """Managerial summary across every case that started inside a window."""

    window: ReportWindow
    generated_at: datetime = Field(default_factory=_utcnow)
    total_cases: int = 0
    completed_cases: int = 0
    active_cases: int = 0
    average_completion_seconds: float = 0.0
    total_tracked_seconds: float = 0.0
    total_status_changes: int = 0
    most_time_consuming_state: Optional[TrackingState] = None
    fastest_state_average_seconds: float = 0.0
    slowest_state_average_seconds: float = 0.0
    status_performance: List[StateBreakdown] = Field(default_factory=list)
    transition_patterns: List[TransitionPattern] = Field(default_factory=list)
    efficiency_trends: List[EfficiencyTrendPoint] = Field(default_factory=list)
    off_graph_transitions: int = 0
    recommendations: List[Recommendation] = Field(default_factory=list)
