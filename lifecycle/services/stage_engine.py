"""
Stage Transition Engine - derives and advances a user's lifecycle stage.

The current stage is never stored on the user: it is the to_stage of the
most recent STAGE_TRANSITION event (REGISTERED when there is none, or when
that event is unreadable). Evaluation moves a user at most one stage per
call. Event-driven rules consume each non-transition event once, so
re-evaluating without new events is a no-op unless a rule for the current
stage is time-based (idle users drift to AT_RISK, INACTIVE and CHURNED as
days pass).
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.exceptions import InvalidStageError, UserNotFoundError
from lifecycle.fsm.conditions import EvaluationContext
from lifecycle.fsm.machine import StageMachine
from lifecycle.fsm.rules import DEFAULT_CONFIG, LifecycleConfig
from lifecycle.fsm.states import (
    STAGE_TRANSITION_ACTIVITY,
    EventSource,
    LifecycleEvent,
    LifecycleStage,
)
from lifecycle.models.activity_log import ActivityLog
from lifecycle.schemas.lifecycle import StageTransitionRecord
from lifecycle.schemas.payloads import StageTransitionPayload
from lifecycle.services.event_store import EventStore, transition_from_row
from lifecycle.services.facts import FactsLoader
from lifecycle.services.locks import UserLockRegistry, stage_locks
from lifecycle.services.scoring import calculate_engagement_score
from lifecycle.timeutils import Clock, ensure_utc, utcnow, whole_days_between

logger = logging.getLogger(__name__)


class StageTransitionEngine:
    """Rule-driven stage evaluation plus admin overrides."""

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
        self.facts = FactsLoader(db, clock)
        self.machine = StageMachine(config.stage_rules)
        self.locks = locks or stage_locks

    async def get_current_stage(self, user_id: str) -> LifecycleStage:
        row = await self.store.latest_transition(user_id)
        if row is None:
            return LifecycleStage.REGISTERED
        record = transition_from_row(row)
        return record.to_stage if record else LifecycleStage.REGISTERED

    async def get_stage_history(self, user_id: str) -> List[StageTransitionRecord]:
        """Valid transitions, newest first."""
        history = []
        for row in await self.store.transitions(user_id):
            record = transition_from_row(row)
            if record is not None:
                history.append(record)
        return history

    async def evaluate(
        self,
        user_id: str,
        trigger_event: Optional[str] = None,
    ) -> Optional[StageTransitionRecord]:
        """Apply the first matching rule; returns the new transition or None."""
        async with self.locks.hold(user_id):
            return await self._evaluate_locked(user_id, trigger_event)

    async def _evaluate_locked(
        self,
        user_id: str,
        trigger_event: Optional[str],
    ) -> Optional[StageTransitionRecord]:
        latest_event = await self.store.latest_event(user_id)
        latest_row = await self.store.latest_transition(user_id)
        latest = transition_from_row(latest_row) if latest_row is not None else None

        # None is the null start: no transition recorded yet.
        if latest_row is None:
            stage = None
        else:
            stage = latest.to_stage if latest else LifecycleStage.REGISTERED

        # Time-based rules can match with no new event; the rest wait for one.
        if latest_event is not None and not self.machine.depends_on_time(stage):
            consumed = await self._last_consumed_event_id(user_id, latest_row, latest)
            if consumed == latest_event.id:
                logger.debug(f"User {user_id}: event {latest_event.id} already evaluated")
                return None

        facts = await self.facts.load(user_id)
        if facts is None:
            logger.warning(f"Stage evaluation skipped: user {user_id} not found")
            return None
        now = facts.now
        entered_at = facts.created_at if latest_row is None else ensure_utc(latest_row.created_at)

        keys = self.machine.required_event_counts(stage)
        counts = await self.store.count_for_keys(user_id, keys, now) if keys else {}
        engagement_score = calculate_engagement_score(facts, self.config.engagement_weights)

        ctx = EvaluationContext.build(
            user=facts.user_snapshot(),
            event_counts=counts,
            metrics=facts.calculated_metrics(engagement_score),
            now=now,
        )
        rule = self.machine.next_stage(stage, ctx)
        if rule is None:
            return None

        return await self._record(
            user_id,
            from_stage=stage,
            to_stage=rule.to_stage,
            trigger_event=trigger_event or (latest_event.activity if latest_event else None),
            trigger_event_id=latest_event.id if latest_event else None,
            days_in_previous_stage=max(whole_days_between(entered_at, now), 0),
            now=now,
            source=EventSource.SYSTEM_TRIGGER,
        )

    async def _last_consumed_event_id(
        self,
        user_id: str,
        latest_row: Optional[ActivityLog],
        latest: Optional[StageTransitionRecord],
    ) -> Optional[int]:
        """trigger_event_id of the newest automatic transition."""
        if latest is not None and not latest.forced:
            return latest.trigger_event_id
        if latest_row is None:
            return None
        for record in await self.get_stage_history(user_id):
            if not record.forced:
                return record.trigger_event_id
        return None

    async def force_transition(
        self,
        user_id: str,
        to_stage: Union[LifecycleStage, str],
        reason: str,
        admin_id: Optional[str] = None,
    ) -> StageTransitionRecord:
        """Record a transition without evaluating rules. Raises on failure."""
        try:
            target = LifecycleStage.parse(to_stage)
        except ValueError:
            raise InvalidStageError(to_stage) from None

        user = await self.facts.get_user(user_id)
        if not user:
            raise UserNotFoundError(user_id)

        async with self.locks.hold(user_id):
            now = self.clock()
            latest_row = await self.store.latest_transition(user_id)
            if latest_row is None:
                from_stage = LifecycleStage.REGISTERED
                entered_at = ensure_utc(user.created_at)
            else:
                latest = transition_from_row(latest_row)
                from_stage = latest.to_stage if latest else LifecycleStage.REGISTERED
                entered_at = ensure_utc(latest_row.created_at)

            record = await self._record(
                user_id,
                from_stage=from_stage,
                to_stage=target,
                trigger_event=LifecycleEvent.ADMIN_STAGE_OVERRIDE.value,
                trigger_event_id=None,
                days_in_previous_stage=max(whole_days_between(entered_at, now), 0),
                now=now,
                source=EventSource.ADMIN_ACTION,
                forced=True,
                reason=reason,
                admin_id=admin_id,
            )

        logger.info(f"Admin {admin_id} forced user {user_id} {from_stage.value} -> {target.value}: {reason}")
        return record

    async def _record(
        self,
        user_id: str,
        from_stage: Optional[LifecycleStage],
        to_stage: LifecycleStage,
        trigger_event: Optional[str],
        trigger_event_id: Optional[int],
        days_in_previous_stage: int,
        now: datetime,
        source: EventSource,
        forced: bool = False,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> StageTransitionRecord:
        payload = StageTransitionPayload(
            from_stage=from_stage.value if from_stage else None,
            to_stage=to_stage.value,
            trigger_event=trigger_event,
            trigger_event_id=trigger_event_id,
            days_in_previous_stage=days_in_previous_stage,
            timestamp=now,
            forced=forced,
            reason=reason,
            admin_id=admin_id,
        )
        from_label = from_stage.value if from_stage else "START"
        if forced:
            description = f"Admin forced stage transition from {from_label} to {to_stage.value}: {reason}"
        else:
            description = f"Stage transition from {from_label} to {to_stage.value}"

        row = await self.store.append(
            user_id=user_id,
            activity=STAGE_TRANSITION_ACTIVITY,
            description=description,
            metadata=payload.model_dump(mode="json"),
            created_at=now,
            source=source.value,
            admin_id=admin_id,
        )

        if not forced:
            logger.info(
                f"User {user_id} moved {from_label} -> {to_stage.value}",
                extra={"user_id": user_id, "stage": to_stage.value, "trigger_event": trigger_event},
            )
        return transition_from_row(row)
