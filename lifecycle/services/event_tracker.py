"""
Event Tracker - the single ingestion entry point for lifecycle events.

Tracking never raises into the caller's business operation: storage failures
are logged to the system error channel and the call returns None. After a
successful write the user's stage is re-evaluated and milestones are checked,
both best-effort. There is no dedup; callers that care about "first" events
check has_user_triggered_event first.
"""

import logging
import secrets
import string
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.fsm.rules import DEFAULT_CONFIG, LifecycleConfig
from lifecycle.fsm.states import MILESTONE_EVENTS, EventSource, LifecycleEvent
from lifecycle.logging_config import SYSTEM_ERROR_LOGGER
from lifecycle.schemas.lifecycle import (
    EventAnalytics,
    EventHistory,
    EventRecord,
    TrackEventRequest,
    TrackingOptions,
    UserEventCount,
)
from lifecycle.schemas.payloads import describe_event, parse_event_payload
from lifecycle.services.event_store import EventStore, build_event_metadata, to_event_record
from lifecycle.services.locks import UserLockRegistry
from lifecycle.services.milestones import MilestoneChecker
from lifecycle.services.stage_engine import StageTransitionEngine
from lifecycle.timeutils import Clock, get_timezone, iter_days, local_date, utcnow

logger = logging.getLogger(__name__)
system_error_logger = logging.getLogger(SYSTEM_ERROR_LOGGER)

_SESSION_ALPHABET = string.digits + string.ascii_lowercase


def generate_session_id(now: datetime) -> str:
    """session_<epoch-ms>_<9 random base36 chars>"""
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{int(now.timestamp() * 1000)}_{suffix}"


def _type_value(event_type: Union[LifecycleEvent, str]) -> str:
    return event_type.value if isinstance(event_type, LifecycleEvent) else str(event_type)


class EventTracker:
    """Records lifecycle events and answers per-user event queries."""

    def __init__(
        self,
        db: AsyncSession,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
        locks: Optional[UserLockRegistry] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.store = EventStore(db)
        self.stage_engine = StageTransitionEngine(db, config=config, clock=clock, locks=locks)
        self.milestones = MilestoneChecker(db, config=config, clock=clock)

    async def track_event(
        self,
        user_id: str,
        event_type: Union[LifecycleEvent, str],
        event_data: Optional[Dict[str, Any]] = None,
        source: Union[EventSource, str] = EventSource.USER_ACTION,
        options: Optional[TrackingOptions] = None,
    ) -> Optional[EventRecord]:
        """
        Persist one event, then run stage evaluation and milestone checks.

        Returns the stored event, or None when it could not be stored.
        """
        options = options or TrackingOptions()
        error_extra = {"user_id": user_id, "event_type": _type_value(event_type), "source": str(source)}

        try:
            event = LifecycleEvent(event_type)
            source = EventSource(source)
        except ValueError as e:
            system_error_logger.error(f"Rejected lifecycle event for user {user_id}: {e}", extra=error_extra)
            return None

        data = dict(event_data or {})
        try:
            parse_event_payload(event, data)
        except ValidationError as e:
            # Stored as given; payload shape never blocks ingestion
            logger.warning(f"{event.value} payload for user {user_id} did not validate: {e.error_count()} error(s)")

        now = self.clock()
        context = {
            "session_id": options.session_id or generate_session_id(now),
            "ip_address": options.ip_address,
            "user_agent": options.user_agent,
            "device_id": options.device_id,
        }

        try:
            row = await self.store.append(
                user_id=user_id,
                activity=event.value,
                description=describe_event(event, data),
                metadata=build_event_metadata(
                    data,
                    source.value,
                    {key: value for key, value in context.items() if value is not None},
                    options.custom_properties,
                ),
                created_at=now,
                source=source.value,
                session_id=context["session_id"],
                ip_address=options.ip_address,
                user_agent=options.user_agent,
                device_id=options.device_id,
                admin_id=options.admin_id,
            )
        except SQLAlchemyError as e:
            system_error_logger.error(
                f"Failed to track {event.value} for user {user_id}: {e}",
                extra=error_extra,
                exc_info=True,
            )
            return None

        record = to_event_record(row)
        logger.info(f"Tracked {event.value} for user {user_id}", extra={"user_id": user_id, "event_type": event.value})

        # Milestone events are themselves produced by the checks below
        if event not in MILESTONE_EVENTS:
            if not options.skip_stage_transition:
                await self._evaluate_stage(user_id, event)
            if not options.skip_milestones:
                await self._check_milestones(user_id)

        return record

    async def _evaluate_stage(self, user_id: str, event: LifecycleEvent) -> None:
        try:
            await self.stage_engine.evaluate(user_id, trigger_event=event.value)
        except Exception as e:
            logger.error(f"Stage evaluation failed for user {user_id} after {event.value}: {e}", exc_info=True)

    async def _check_milestones(self, user_id: str) -> None:
        try:
            await self.milestones.check(user_id)
        except Exception as e:
            logger.error(f"Milestone check failed for user {user_id}: {e}", exc_info=True)

    async def track_events(self, batch: Iterable[TrackEventRequest]) -> List[Optional[EventRecord]]:
        """Track each item independently; a failed item yields None."""
        results = []
        for item in batch:
            try:
                record = await self.track_event(
                    item.user_id,
                    item.event_type,
                    item.event_data,
                    item.source,
                    item.options,
                )
            except Exception as e:
                system_error_logger.error(
                    f"Batch item {item.event_type} for user {item.user_id} failed: {e}",
                    extra={"user_id": item.user_id, "event_type": item.event_type},
                    exc_info=True,
                )
                record = None
            results.append(record)
        return results

    async def get_user_event_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        event_types: Optional[Sequence[Union[LifecycleEvent, str]]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        include_transitions: bool = False,
    ) -> EventHistory:
        """
        Paged events, newest first.

        STAGE_TRANSITION rows share the log but are left out by default, since
        stage history has its own reader. Pass ``include_transitions`` or name
        STAGE_TRANSITION in ``event_types`` to get them.
        """
        rows, total = await self.store.history(
            user_id,
            limit=limit,
            offset=offset,
            activities=[_type_value(t) for t in event_types] if event_types else None,
            date_from=date_from,
            date_to=date_to,
            include_transitions=include_transitions,
        )
        return EventHistory(
            events=[to_event_record(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_user_event_counts(
        self,
        user_id: str,
        event_types: Optional[Sequence[Union[LifecycleEvent, str]]] = None,
        time_window_days: Optional[int] = None,
    ) -> Dict[str, int]:
        """Count per event type; requested types with no events report 0."""
        activities = [_type_value(t) for t in event_types] if event_types else None
        since = self.clock() - timedelta(days=time_window_days) if time_window_days else None
        counts = await self.store.count_by_type(user_id, activities, since)
        if activities:
            return {activity: counts.get(activity, 0) for activity in activities}
        return counts

    async def has_user_triggered_event(
        self,
        user_id: str,
        event_type: Union[LifecycleEvent, str],
        time_window_days: Optional[int] = None,
    ) -> bool:
        since = self.clock() - timedelta(days=time_window_days) if time_window_days else None
        return await self.store.exists(user_id, _type_value(event_type), since)

    async def get_user_first_event(
        self,
        user_id: str,
        event_type: Union[LifecycleEvent, str],
    ) -> Optional[EventRecord]:
        row = await self.store.first_of_type(user_id, _type_value(event_type))
        return to_event_record(row) if row else None

    async def get_event_analytics(
        self,
        date_from: datetime,
        date_to: datetime,
        event_types: Optional[Sequence[Union[LifecycleEvent, str]]] = None,
        user_ids: Optional[Sequence[str]] = None,
    ) -> EventAnalytics:
        """Totals, per-type breakdown, per-day counts and the 10 busiest users."""
        tz = get_timezone()
        rows = await self.store.events_in_range(
            date_from,
            date_to,
            activities=[_type_value(t) for t in event_types] if event_types else None,
            user_ids=user_ids,
        )

        breakdown: Counter = Counter()
        per_user: Counter = Counter()
        daily = {
            day.isoformat(): 0
            for day in iter_days(local_date(date_from, tz), local_date(date_to, tz))
        }
        for row in rows:
            breakdown[row.activity] += 1
            per_user[row.user_id] += 1
            day = local_date(row.created_at, tz).isoformat()
            if day in daily:
                daily[day] += 1

        top_users = sorted(per_user.items(), key=lambda item: (-item[1], item[0]))[:10]
        return EventAnalytics(
            date_from=date_from,
            date_to=date_to,
            total_events=len(rows),
            unique_users=len(per_user),
            event_breakdown=dict(breakdown),
            daily_events=daily,
            top_users=[UserEventCount(user_id=uid, event_count=count) for uid, count in top_users],
        )
