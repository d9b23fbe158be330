"""Per-user lifecycle read models: events, transitions, snapshots, predictions."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from lifecycle.fsm.states import EventSource, JourneyPhase, LifecycleStage, UserSegment


class TrackingOptions(BaseModel):
    """Per-call options for track_event."""

    skip_stage_transition: bool = False
    skip_milestones: bool = False
    custom_properties: Dict[str, Any] = {}
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    admin_id: Optional[str] = None


class TrackEventRequest(BaseModel):
    """One item of a tracking batch (also the body of POST /events)."""

    user_id: str
    event_type: str
    event_data: Dict[str, Any] = {}
    source: EventSource = EventSource.USER_ACTION
    options: TrackingOptions = Field(default_factory=TrackingOptions)


class EventRecord(BaseModel):
    """A stored lifecycle event."""

    id: int
    user_id: str
    event_type: str
    description: str
    metadata: Dict[str, Any] = {}
    source: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    admin_id: Optional[str] = None
    created_at: datetime

    @property
    def event_data(self) -> Dict[str, Any]:
        data = self.metadata.get("event_data")
        return data if isinstance(data, dict) else {}


class EventHistory(BaseModel):
    events: List[EventRecord]
    total: int
    limit: int
    offset: int


class UserEventCount(BaseModel):
    user_id: str
    event_count: int


class EventAnalytics(BaseModel):
    date_from: datetime
    date_to: datetime
    total_events: int
    unique_users: int
    event_breakdown: Dict[str, int]
    daily_events: Dict[str, int]
    top_users: List[UserEventCount]


class StageTransitionRecord(BaseModel):
    """A recorded stage change (automatic or forced)."""

    id: Optional[int] = None
    user_id: str
    from_stage: Optional[LifecycleStage] = None
    to_stage: LifecycleStage
    trigger_event: Optional[str] = None
    trigger_event_id: Optional[int] = None
    days_in_previous_stage: int = 0
    transitioned_at: datetime
    forced: bool = False
    reason: Optional[str] = None
    admin_id: Optional[str] = None


class Milestone(BaseModel):
    milestone_id: str
    category: str
    name: str
    threshold: float
    value: float
    achieved_at: datetime


class UserLifecycleMetrics(BaseModel):
    time_to_first_login_hours: Optional[float] = None
    time_to_first_task_hours: Optional[float] = None
    time_to_first_earning_hours: Optional[float] = None
    time_to_first_referral_days: Optional[float] = None
    total_video_tasks: int = 0
    total_earnings: float = 0
    total_referrals: int = 0
    average_daily_tasks: float = 0
    current_streak: int = 0
    longest_streak: int = 0
    total_deposits: float = 0
    total_withdrawals: float = 0
    current_balance: float = 0
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    milestones: List[Milestone] = []


class LifetimeValuePrediction(BaseModel):
    predicted_value: float
    confidence_low: float
    confidence_high: float
    time_horizon_days: int = 365


class UserLifecycleSnapshot(BaseModel):
    """Derived view of one user; recomputed on every read."""

    user_id: str
    current_stage: LifecycleStage
    previous_stage: Optional[LifecycleStage] = None
    stage_entered_at: datetime
    days_since_registration: int
    days_since_last_activity: int
    total_lifetime_value: float
    engagement_score: int
    risk_score: int
    segment: UserSegment
    journey_phase: JourneyPhase
    stage_history: List[StageTransitionRecord]
    metrics: UserLifecycleMetrics
    churn_probability: float
    next_stage_timeline_days: Optional[int] = None
    lifetime_value_prediction: LifetimeValuePrediction
    computed_at: datetime


class UserLifecycleFilters(BaseModel):
    """Filters for listing users. Stage/segment/phase/score/LTV ones are derived."""

    stages: Optional[List[LifecycleStage]] = None
    segments: Optional[List[UserSegment]] = None
    journey_phases: Optional[List[JourneyPhase]] = None
    registration_date_from: Optional[datetime] = None
    registration_date_to: Optional[datetime] = None
    last_activity_from: Optional[datetime] = None
    last_activity_to: Optional[datetime] = None
    engagement_score_min: Optional[int] = None
    engagement_score_max: Optional[int] = None
    risk_score_min: Optional[int] = None
    risk_score_max: Optional[int] = None
    lifetime_value_min: Optional[float] = None
    lifetime_value_max: Optional[float] = None
    has_referrals: Optional[bool] = None
    position_levels: Optional[List[str]] = None
    search_term: Optional[str] = None

    def has_derived_filters(self) -> bool:
        return any(
            value is not None
            for value in (
                self.stages,
                self.segments,
                self.journey_phases,
                self.engagement_score_min,
                self.engagement_score_max,
                self.risk_score_min,
                self.risk_score_max,
                self.lifetime_value_min,
                self.lifetime_value_max,
            )
        )

    def matches(self, snapshot: UserLifecycleSnapshot) -> bool:
        """Apply the derived filters to a computed snapshot."""
        if self.stages and snapshot.current_stage not in self.stages:
            return False
        if self.segments and snapshot.segment not in self.segments:
            return False
        if self.journey_phases and snapshot.journey_phase not in self.journey_phases:
            return False
        bounds = (
            (self.engagement_score_min, self.engagement_score_max, snapshot.engagement_score),
            (self.risk_score_min, self.risk_score_max, snapshot.risk_score),
            (self.lifetime_value_min, self.lifetime_value_max, snapshot.total_lifetime_value),
        )
        for low, high, value in bounds:
            if low is not None and value < low:
                return False
            if high is not None and value > high:
                return False
        return True


class PaginatedSnapshots(BaseModel):
    items: List[UserLifecycleSnapshot]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class RiskFactor(BaseModel):
    key: str
    name: str
    description: str
    value: float
    severity: str
    weight: float


class ChurnPrediction(BaseModel):
    user_id: str
    churn_probability: float
    risk_factors: List[RiskFactor]
    recommended_actions: List[str]
    confidence_score: float
    prediction_date: datetime
    time_to_churn_days: Optional[int] = None


class JourneyStep(BaseModel):
    stage: LifecycleStage
    phase: JourneyPhase
    entered_at: datetime
    left_at: Optional[datetime] = None
    days_in_stage: float


class UserJourneyAnalytics(BaseModel):
    user_id: str
    current_stage: LifecycleStage
    current_phase: JourneyPhase
    steps: List[JourneyStep]
    days_per_phase: Dict[str, float] = Field(default_factory=dict)
    total_journey_days: float


class ForceStageTransitionRequest(BaseModel):
    """Admin override body. The stage is validated by the engine (400 on unknown)."""

    to_stage: str
    reason: str = Field(min_length=1)


class LifecycleReportRequest(BaseModel):
    date_from: datetime
    date_to: datetime
    filters: Optional[UserLifecycleFilters] = None
