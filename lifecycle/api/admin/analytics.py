"""
Admin API for lifecycle analytics: dashboard, heatmap, journey flow, cohorts,
insights, funnel and segment analysis.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from lifecycle.api.deps import get_admin_user, get_analytics_service
from lifecycle.config import settings
from lifecycle.fsm.states import CohortPeriod, TrendGrouping
from lifecycle.schemas.analytics import (
    ActivityHeatmap,
    CohortAnalysis,
    DashboardMetrics,
    InsightReport,
    JourneyFlow,
    JourneyFunnel,
    SegmentAnalysis,
)
from lifecycle.services.analytics_service import LifecycleAnalyticsService

router = APIRouter(prefix="/analytics", dependencies=[Depends(get_admin_user)])


@router.get("/dashboard", response_model=DashboardMetrics)
async def get_dashboard(
    date_from: datetime,
    date_to: datetime,
    group_by: TrendGrouping = TrendGrouping.DAY,
    use_cache: bool = True,
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    """Dashboard metrics. Incomplete results list their missing sections."""
    return await analytics.get_dashboard_metrics(
        date_from,
        date_to,
        group_by,
        timeout=settings.analytics_timeout_seconds,
        use_cache=use_cache,
    )


@router.get("/heatmap", response_model=ActivityHeatmap)
async def get_heatmap(
    date_from: datetime,
    date_to: datetime,
    event_types: Optional[List[str]] = Query(None),
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.get_activity_heatmap(date_from, date_to, event_types)


@router.get("/journey-flow", response_model=JourneyFlow)
async def get_journey_flow(
    date_from: datetime,
    date_to: datetime,
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.get_journey_flow(date_from, date_to)


@router.get("/cohorts", response_model=CohortAnalysis)
async def get_cohorts(
    date_from: datetime,
    date_to: datetime,
    period: CohortPeriod = CohortPeriod.MONTHLY,
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.get_cohort_analysis(date_from, date_to, period)


@router.get("/insights", response_model=InsightReport)
async def get_insights(
    date_from: datetime,
    date_to: datetime,
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.generate_insights(
        date_from,
        date_to,
        timeout=settings.analytics_timeout_seconds,
    )


@router.get("/funnel", response_model=JourneyFunnel)
async def get_funnel(
    date_from: datetime,
    date_to: datetime,
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.get_journey_funnel(date_from, date_to)


@router.get("/segments", response_model=List[SegmentAnalysis])
async def get_segment_analysis(
    analytics: LifecycleAnalyticsService = Depends(get_analytics_service),
):
    return await analytics.get_segment_analysis()
