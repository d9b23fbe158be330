"""Aggregate analytics read models. Rates are percentages (0-100)."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from lifecycle.fsm.states import (
    CohortPeriod,
    InsightCategory,
    InsightImpact,
    JourneyPhase,
    TrendGrouping,
    UserSegment,
)


class DashboardOverview(BaseModel):
    total_users: int = 0
    active_users: int = 0
    new_users_today: int = 0
    churn_rate: float = 0
    average_engagement_score: float = 0
    total_lifetime_value: float = 0
    conversion_rate: float = 0


class JourneyMetrics(BaseModel):
    average_hours_to_first_task: Optional[float] = None
    average_hours_to_first_earning: Optional[float] = None
    average_days_to_first_referral: Optional[float] = None
    users_measured: int = 0


class TrendPoint(BaseModel):
    period: str
    value: float


class TrendSeries(BaseModel):
    user_growth: List[TrendPoint] = []
    engagement_trend: List[TrendPoint] = []
    churn_trend: List[TrendPoint] = []


class SegmentPerformance(BaseModel):
    segment: UserSegment
    user_count: int
    growth_rate: float
    average_lifetime_value: float


class DashboardMetrics(BaseModel):
    date_from: datetime
    date_to: datetime
    group_by: TrendGrouping
    overview: DashboardOverview = Field(default_factory=DashboardOverview)
    stage_distribution: Dict[str, int] = {}
    segment_distribution: Dict[str, int] = {}
    journey_metrics: JourneyMetrics = Field(default_factory=JourneyMetrics)
    trends: TrendSeries = Field(default_factory=TrendSeries)
    top_segments: List[SegmentPerformance] = []
    generated_at: datetime
    complete: bool = True
    missing_sections: List[str] = []
    from_cache: bool = False


class ActivityHeatmap(BaseModel):
    date_from: datetime
    date_to: datetime
    timezone: str
    total_events: int
    hourly: Dict[int, int]
    daily: Dict[str, int]
    weekly: Dict[int, int]
    monthly: Dict[str, int]


class TransitionStat(BaseModel):
    from_stage: Optional[str] = None
    to_stage: str
    count: int
    average_days_in_previous_stage: float
    conversion_rate: float


class DropOffPoint(BaseModel):
    from_stage: Optional[str] = None
    to_stage: str
    population: int
    conversion_rate: float
    drop_off_count: int
    drop_off_rate: float
    next_stage_count: int


class CommonPath(BaseModel):
    path: List[str]
    user_count: int
    percentage: float
    average_days_to_complete: float


class JourneyFlow(BaseModel):
    date_from: datetime
    date_to: datetime
    total_transitions: int
    users_with_transitions: int
    transitions: List[TransitionStat]
    drop_off_points: List[DropOffPoint]
    common_paths: List[CommonPath]
    skipped_records: int = 0


class CohortRow(BaseModel):
    cohort_id: str
    period_start: date
    size: int
    retention: Dict[int, float]
    average_lifetime_value: float


class CohortAnalysis(BaseModel):
    period: CohortPeriod
    offsets: List[int]
    cohorts: List[CohortRow]
    average_retention: Dict[int, float]
    retention_by_segment: Dict[str, Dict[int, float]] = {}


class Insight(BaseModel):
    id: str
    category: InsightCategory
    impact: InsightImpact
    title: str
    description: str
    recommendation: str
    confidence: float
    data: Dict[str, Any] = {}
    actionable: bool = True
    created_at: datetime


class InsightReport(BaseModel):
    date_from: datetime
    date_to: datetime
    insights: List[Insight]
    complete: bool = True
    missing_sections: List[str] = []


class SegmentAnalysis(BaseModel):
    segment: UserSegment
    user_count: int
    percentage: float
    average_engagement_score: float
    average_lifetime_value: float
    retention_rate: float
    conversion_rate: float
    top_stages: List[str]


class PhaseMetrics(BaseModel):
    phase: JourneyPhase
    user_count: int
    reached_count: int
    conversion_rate: Optional[float] = None
    drop_off_rate: Optional[float] = None
    average_days_in_phase: Optional[float] = None


class DropOffAnalysis(BaseModel):
    stage: str
    next_stage: str
    drop_off_count: int
    drop_off_rate: float
    common_reasons: List[str]
    suggested_actions: List[str]


class JourneyFunnel(BaseModel):
    phases: List[PhaseMetrics]
    overall_conversion_rate: float
    average_journey_days: Optional[float] = None
    drop_off_points: List[DropOffAnalysis]


class ReportOverview(BaseModel):
    total_users: int
    new_users: int
    active_users: int
    churned_users: int
    reactivated_users: int


class LifecycleReport(BaseModel):
    date_from: datetime
    date_to: datetime
    generated_at: datetime
    overview: Optional[ReportOverview] = None
    stage_distribution: Dict[str, int] = {}
    segment_analysis: List[SegmentAnalysis] = []
    journey_funnel: Optional[JourneyFunnel] = None
    cohort_analysis: Optional[CohortAnalysis] = None
    insights: List[Insight] = []
    complete: bool = True
    missing_sections: List[str] = []
