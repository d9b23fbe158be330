"""
Event Store - append-only access to activity_logs.

Every lifecycle component reads and writes events through this adapter. It
never updates or deletes rows. Stage transitions are rows with activity
STAGE_TRANSITION; ``transition_from_row`` turns one into a typed record or
None when its metadata is unusable.
"""

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.fsm.states import MILESTONE_EVENTS, STAGE_TRANSITION_ACTIVITY, LifecycleStage
from lifecycle.models.activity_log import ActivityLog
from lifecycle.schemas.lifecycle import EventRecord, StageTransitionRecord
from lifecycle.timeutils import ensure_utc

logger = logging.getLogger(__name__)

EventCountKey = Tuple[str, Optional[int]]


def _metadata_dict(raw: Any) -> Optional[Dict[str, Any]]:
    """Metadata as a dict; JSON text is decoded, anything else is None."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


METADATA_VERSION = "1.0"


def build_event_metadata(
    data: Dict[str, Any],
    source: str,
    context: Optional[Dict[str, Any]] = None,
    custom_properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Metadata layout shared by every tracked event."""
    return {
        "event_data": data,
        "version": METADATA_VERSION,
        "source": source,
        "context": context or {},
        "custom_properties": custom_properties or {},
    }


def event_data(row: ActivityLog) -> Dict[str, Any]:
    """The producer-supplied payload stored under metadata["event_data"]."""
    metadata = _metadata_dict(row.event_metadata) or {}
    data = metadata.get("event_data")
    return data if isinstance(data, dict) else {}


def event_amount(row: ActivityLog) -> float:
    try:
        return float(event_data(row).get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


def is_verified_task(row: ActivityLog) -> bool:
    return event_data(row).get("verified") is not False


def to_event_record(row: ActivityLog) -> EventRecord:
    return EventRecord(
        id=row.id,
        user_id=row.user_id,
        event_type=row.activity,
        description=row.description,
        metadata=_metadata_dict(row.event_metadata) or {},
        source=row.source,
        session_id=row.session_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_id=row.device_id,
        admin_id=row.admin_id,
        created_at=ensure_utc(row.created_at),
    )


def transition_from_row(row: ActivityLog) -> Optional[StageTransitionRecord]:
    """Parse a STAGE_TRANSITION row; None when the metadata is malformed."""
    metadata = _metadata_dict(row.event_metadata)
    if metadata is None:
        logger.warning(f"Stage transition {row.id} for user {row.user_id} has unreadable metadata")
        return None

    try:
        to_stage = LifecycleStage.parse(metadata["to_stage"])
        from_raw = metadata.get("from_stage")
        from_stage = LifecycleStage.parse(from_raw) if from_raw is not None else None
        return StageTransitionRecord(
            id=row.id,
            user_id=row.user_id,
            from_stage=from_stage,
            to_stage=to_stage,
            trigger_event=metadata.get("trigger_event"),
            trigger_event_id=metadata.get("trigger_event_id"),
            days_in_previous_stage=int(metadata.get("days_in_previous_stage") or 0),
            transitioned_at=ensure_utc(row.created_at),
            forced=bool(metadata.get("forced", False)),
            reason=metadata.get("reason"),
            admin_id=metadata.get("admin_id") or row.admin_id,
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"Stage transition {row.id} for user {row.user_id} is malformed: {e}")
        return None


class EventStore:
    """Read/write contract over the activity_logs table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(
        self,
        user_id: str,
        activity: str,
        description: str,
        metadata: Dict[str, Any],
        created_at: datetime,
        source: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> ActivityLog:
        """Insert one event inside a savepoint so a failure leaves the caller's transaction usable."""
        row = ActivityLog(
            user_id=user_id,
            activity=activity,
            description=description,
            event_metadata=metadata,
            source=source,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_id=device_id,
            admin_id=admin_id,
            created_at=created_at,
        )
        async with self.db.begin_nested():
            self.db.add(row)
        return row

    # ------------------------------------------------------------------
    # Per-user reads
    # ------------------------------------------------------------------

    def _user_filters(
        self,
        user_id: str,
        activities: Optional[Sequence[str]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list:
        clauses = [ActivityLog.user_id == user_id]
        if activities:
            clauses.append(ActivityLog.activity.in_(list(activities)))
        if date_from is not None:
            clauses.append(ActivityLog.created_at >= date_from)
        if date_to is not None:
            clauses.append(ActivityLog.created_at <= date_to)
        return clauses

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        activities: Optional[Sequence[str]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        include_transitions: bool = False,
    ) -> Tuple[List[ActivityLog], int]:
        """
        Events newest-first plus the total matching count.

        Stage transitions are left out unless asked for by type or with
        ``include_transitions``.
        """
        clauses = self._user_filters(user_id, activities, date_from, date_to)
        if not activities and not include_transitions:
            clauses.append(ActivityLog.activity != STAGE_TRANSITION_ACTIVITY)

        result = await self.db.execute(
            select(ActivityLog)
            .where(*clauses)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = list(result.scalars().all())

        total_result = await self.db.execute(
            select(func.count(ActivityLog.id)).where(*clauses)
        )
        return rows, total_result.scalar() or 0

    async def count_by_type(
        self,
        user_id: str,
        activities: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> Dict[str, int]:
        clauses = self._user_filters(user_id, activities, date_from=since)
        result = await self.db.execute(
            select(ActivityLog.activity, func.count(ActivityLog.id))
            .where(*clauses)
            .group_by(ActivityLog.activity)
        )
        return {activity: count for activity, count in result.all()}

    async def count_for_keys(
        self,
        user_id: str,
        keys: Iterable[EventCountKey],
        now: datetime,
    ) -> Dict[EventCountKey, int]:
        """Counts for (activity, window_days) pairs; one query per distinct window."""
        by_window: Dict[Optional[int], set] = defaultdict(set)
        for activity, window in keys:
            by_window[window].add(activity)

        counts: Dict[EventCountKey, int] = {}
        for window, activities in by_window.items():
            since = now - timedelta(days=window) if window else None
            found = await self.count_by_type(user_id, sorted(activities), since)
            for activity in activities:
                counts[(activity, window)] = found.get(activity, 0)
        return counts

    async def first_of_type(self, user_id: str, activity: str) -> Optional[ActivityLog]:
        result = await self.db.execute(
            select(ActivityLog)
            .where(ActivityLog.user_id == user_id, ActivityLog.activity == activity)
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_of_type(self, user_id: str, activities: Sequence[str]) -> Optional[ActivityLog]:
        result = await self.db.execute(
            select(ActivityLog)
            .where(ActivityLog.user_id == user_id, ActivityLog.activity.in_(list(activities)))
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def exists(
        self,
        user_id: str,
        activity: str,
        since: Optional[datetime] = None,
    ) -> bool:
        clauses = self._user_filters(user_id, [activity], date_from=since)
        result = await self.db.execute(
            select(ActivityLog.id).where(*clauses).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def latest_event(self, user_id: str) -> Optional[ActivityLog]:
        """Most recent event that is not a stage transition."""
        result = await self.db.execute(
            select(ActivityLog)
            .where(
                ActivityLog.user_id == user_id,
                ActivityLog.activity != STAGE_TRANSITION_ACTIVITY,
            )
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_transition(self, user_id: str) -> Optional[ActivityLog]:
        result = await self.db.execute(
            select(ActivityLog)
            .where(
                ActivityLog.user_id == user_id,
                ActivityLog.activity == STAGE_TRANSITION_ACTIVITY,
            )
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transitions(self, user_id: str) -> List[ActivityLog]:
        """All transitions for a user, newest first."""
        result = await self.db.execute(
            select(ActivityLog)
            .where(
                ActivityLog.user_id == user_id,
                ActivityLog.activity == STAGE_TRANSITION_ACTIVITY,
            )
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        )
        return list(result.scalars().all())

    async def milestones_for_user(self, user_id: str) -> List[ActivityLog]:
        """Recorded milestone events, oldest first."""
        result = await self.db.execute(
            select(ActivityLog)
            .where(
                ActivityLog.user_id == user_id,
                ActivityLog.activity.in_([event.value for event in MILESTONE_EVENTS]),
            )
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Bulk reads (analytics, batch snapshots)
    # ------------------------------------------------------------------

    async def latest_transitions_for_users(
        self,
        user_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, ActivityLog]:
        """Most recent STAGE_TRANSITION row per user."""
        ranked = (
            select(
                ActivityLog.id.label("id"),
                func.row_number()
                .over(
                    partition_by=ActivityLog.user_id,
                    order_by=(ActivityLog.created_at.desc(), ActivityLog.id.desc()),
                )
                .label("rank"),
            )
            .where(ActivityLog.activity == STAGE_TRANSITION_ACTIVITY)
        )
        if user_ids is not None:
            ranked = ranked.where(ActivityLog.user_id.in_(list(user_ids)))
        ranked = ranked.subquery()

        result = await self.db.execute(
            select(ActivityLog).join(
                ranked, and_(ActivityLog.id == ranked.c.id, ranked.c.rank == 1)
            )
        )
        return {row.user_id: row for row in result.scalars().all()}

    async def events_for_users(
        self,
        user_ids: Sequence[str],
        activities: Sequence[str],
        since: Optional[datetime] = None,
    ) -> Dict[str, List[ActivityLog]]:
        """Events of the given types per user, oldest first."""
        clauses = [
            ActivityLog.user_id.in_(list(user_ids)),
            ActivityLog.activity.in_(list(activities)),
        ]
        if since is not None:
            clauses.append(ActivityLog.created_at >= since)

        result = await self.db.execute(
            select(ActivityLog)
            .where(*clauses)
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        )
        grouped: Dict[str, List[ActivityLog]] = defaultdict(list)
        for row in result.scalars().all():
            grouped[row.user_id].append(row)
        return grouped

    async def counts_for_users(
        self,
        user_ids: Sequence[str],
        activities: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, int]]:
        """Per-user, per-type counts."""
        clauses = [ActivityLog.user_id.in_(list(user_ids))]
        if activities:
            clauses.append(ActivityLog.activity.in_(list(activities)))
        if since is not None:
            clauses.append(ActivityLog.created_at >= since)

        result = await self.db.execute(
            select(ActivityLog.user_id, ActivityLog.activity, func.count(ActivityLog.id))
            .where(*clauses)
            .group_by(ActivityLog.user_id, ActivityLog.activity)
        )
        counts: Dict[str, Dict[str, int]] = defaultdict(dict)
        for user_id, activity, count in result.all():
            counts[user_id][activity] = count
        return counts

    async def first_event_times(
        self,
        activities: Sequence[str],
        user_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, datetime]:
        """Earliest event of any of the given types, per user."""
        query = (
            select(ActivityLog.user_id, func.min(ActivityLog.created_at))
            .where(ActivityLog.activity.in_(list(activities)))
            .group_by(ActivityLog.user_id)
        )
        if user_ids is not None:
            query = query.where(ActivityLog.user_id.in_(list(user_ids)))
        result = await self.db.execute(query)
        return {user_id: ensure_utc(first_at) for user_id, first_at in result.all()}

    async def events_in_range(
        self,
        date_from: datetime,
        date_to: datetime,
        activities: Optional[Sequence[str]] = None,
        user_ids: Optional[Sequence[str]] = None,
        exclude_activities: Optional[Sequence[str]] = None,
    ) -> List[ActivityLog]:
        """Events in [date_from, date_to], oldest first."""
        clauses = [
            ActivityLog.created_at >= date_from,
            ActivityLog.created_at <= date_to,
        ]
        if activities:
            clauses.append(ActivityLog.activity.in_(list(activities)))
        if user_ids is not None:
            clauses.append(ActivityLog.user_id.in_(list(user_ids)))
        if exclude_activities:
            clauses.append(ActivityLog.activity.not_in(list(exclude_activities)))

        result = await self.db.execute(
            select(ActivityLog)
            .where(*clauses)
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        )
        return list(result.scalars().all())

    async def transitions_in_range(self, date_from: datetime, date_to: datetime) -> List[ActivityLog]:
        return await self.events_in_range(date_from, date_to, [STAGE_TRANSITION_ACTIVITY])
