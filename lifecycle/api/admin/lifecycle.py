"""
Admin API for per-user lifecycle data, event history and stage overrides.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from lifecycle.api.deps import get_admin_user, get_event_tracker, get_lifecycle_service
from lifecycle.config import settings
from lifecycle.fsm.states import JourneyPhase, LifecycleStage, UserSegment
from lifecycle.schemas.analytics import LifecycleReport
from lifecycle.schemas.lifecycle import (
    ChurnPrediction,
    EventAnalytics,
    EventHistory,
    EventRecord,
    ForceStageTransitionRequest,
    LifecycleReportRequest,
    PaginatedSnapshots,
    StageTransitionRecord,
    TrackEventRequest,
    UserJourneyAnalytics,
    UserLifecycleFilters,
    UserLifecycleSnapshot,
)
from lifecycle.services.event_tracker import EventTracker
from lifecycle.services.lifecycle_service import UserLifecycleService

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(get_admin_user)])


def _not_found(user_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")


@router.get("/users", response_model=PaginatedSnapshots)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    stages: Optional[List[LifecycleStage]] = Query(None),
    segments: Optional[List[UserSegment]] = Query(None),
    journey_phases: Optional[List[JourneyPhase]] = Query(None),
    registration_date_from: Optional[datetime] = None,
    registration_date_to: Optional[datetime] = None,
    last_activity_from: Optional[datetime] = None,
    last_activity_to: Optional[datetime] = None,
    engagement_score_min: Optional[int] = None,
    engagement_score_max: Optional[int] = None,
    risk_score_min: Optional[int] = None,
    risk_score_max: Optional[int] = None,
    lifetime_value_min: Optional[float] = None,
    lifetime_value_max: Optional[float] = None,
    has_referrals: Optional[bool] = None,
    position_levels: Optional[List[str]] = Query(None),
    search_term: Optional[str] = None,
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    """List users' lifecycle snapshots, newest registrations first."""
    filters = UserLifecycleFilters(
        stages=stages,
        segments=segments,
        journey_phases=journey_phases,
        registration_date_from=registration_date_from,
        registration_date_to=registration_date_to,
        last_activity_from=last_activity_from,
        last_activity_to=last_activity_to,
        engagement_score_min=engagement_score_min,
        engagement_score_max=engagement_score_max,
        risk_score_min=risk_score_min,
        risk_score_max=risk_score_max,
        lifetime_value_min=lifetime_value_min,
        lifetime_value_max=lifetime_value_max,
        has_referrals=has_referrals,
        position_levels=position_levels,
        search_term=search_term,
    )
    return await service.get_users_lifecycle_data(filters, page=page, limit=limit)


@router.get("/users/{user_id}", response_model=UserLifecycleSnapshot)
async def get_user(
    user_id: str,
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    snapshot = await service.get_user_lifecycle_data(user_id)
    if snapshot is None:
        raise _not_found(user_id)
    return snapshot


@router.get("/users/{user_id}/churn-prediction", response_model=ChurnPrediction)
async def get_churn_prediction(
    user_id: str,
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    prediction = await service.predict_user_churn(user_id)
    if prediction is None:
        raise _not_found(user_id)
    return prediction


@router.get("/users/{user_id}/journey", response_model=UserJourneyAnalytics)
async def get_user_journey(
    user_id: str,
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    journey = await service.get_user_journey_analytics(user_id)
    if journey is None:
        raise _not_found(user_id)
    return journey


@router.get("/users/{user_id}/events", response_model=EventHistory)
async def get_user_events(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    event_types: Optional[List[str]] = Query(None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    include_transitions: bool = False,
    tracker: EventTracker = Depends(get_event_tracker),
):
    """Event history, newest first. Stage transitions when asked for by type or flag."""
    return await tracker.get_user_event_history(
        user_id,
        limit=limit,
        offset=offset,
        event_types=event_types,
        date_from=date_from,
        date_to=date_to,
        include_transitions=include_transitions,
    )


@router.get("/users/{user_id}/event-counts", response_model=Dict[str, int])
async def get_user_event_counts(
    user_id: str,
    event_types: Optional[List[str]] = Query(None),
    time_window_days: Optional[int] = Query(None, ge=1),
    tracker: EventTracker = Depends(get_event_tracker),
):
    return await tracker.get_user_event_counts(user_id, event_types, time_window_days)


@router.post("/users/{user_id}/stage", response_model=StageTransitionRecord)
async def force_stage(
    user_id: str,
    body: ForceStageTransitionRequest,
    x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id"),
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    """Force a user into a stage. Unknown users are 404, unknown stages 400."""
    record = await service.force_stage_transition(user_id, body.to_stage, body.reason, x_admin_id)
    logger.info(f"Admin {x_admin_id or 'unknown'} forced {user_id} into {record.to_stage.value}")
    return record


@router.get("/distribution/stages", response_model=Dict[str, int])
async def get_stage_distribution(service: UserLifecycleService = Depends(get_lifecycle_service)):
    return await service.get_stage_distribution()


@router.get("/distribution/segments", response_model=Dict[str, int])
async def get_segment_distribution(service: UserLifecycleService = Depends(get_lifecycle_service)):
    return await service.get_segment_distribution()


@router.get("/events/analytics", response_model=EventAnalytics)
async def get_event_analytics(
    date_from: datetime,
    date_to: datetime,
    event_types: Optional[List[str]] = Query(None),
    tracker: EventTracker = Depends(get_event_tracker),
):
    return await tracker.get_event_analytics(date_from, date_to, event_types)


@router.post("/report", response_model=LifecycleReport)
async def generate_report(
    body: LifecycleReportRequest,
    service: UserLifecycleService = Depends(get_lifecycle_service),
):
    return await service.generate_lifecycle_report(
        body.date_from,
        body.date_to,
        body.filters,
        timeout=settings.analytics_timeout_seconds,
    )


# Ingestion for collaborators that are not in-process
events_router = APIRouter(dependencies=[Depends(get_admin_user)])


@events_router.post("/events", response_model=Optional[EventRecord])
async def track_event(
    body: TrackEventRequest,
    tracker: EventTracker = Depends(get_event_tracker),
):
    """Record one event. Returns null when the event could not be recorded."""
    return await tracker.track_event(
        body.user_id,
        body.event_type,
        body.event_data,
        body.source,
        body.options,
    )


@events_router.post("/events/batch", response_model=List[Optional[EventRecord]])
async def track_events(
    body: List[TrackEventRequest],
    tracker: EventTracker = Depends(get_event_tracker),
):
    return await tracker.track_events(body)
