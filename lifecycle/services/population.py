"""
Population - derived lifecycle state for many users at once.

Analytics and the lifecycle facade both need stage, scores and segment for
whole user sets; this loads them with grouped queries and no per-user I/O.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.fsm.rules import DEFAULT_CONFIG, LifecycleConfig
from lifecycle.fsm.states import STAGE_TRANSITION_ACTIVITY, JourneyPhase, LifecycleStage, UserSegment
from lifecycle.models.activity_log import ActivityLog
from lifecycle.models.user import User
from lifecycle.schemas.lifecycle import JourneyStep, StageTransitionRecord
from lifecycle.services.event_store import EventStore, transition_from_row
from lifecycle.services.facts import FactsLoader
from lifecycle.services.scoring import (
    UserFacts,
    calculate_engagement_score,
    calculate_risk_score,
)
from lifecycle.services.segmentation import determine_segment
from lifecycle.timeutils import Clock, SECONDS_PER_DAY, ensure_utc, utcnow

logger = logging.getLogger(__name__)


def stage_from_transition(row: Optional[ActivityLog]) -> LifecycleStage:
    """Current stage given the latest transition row (REGISTERED if none/malformed)."""
    if row is None:
        return LifecycleStage.REGISTERED
    record = transition_from_row(row)
    return record.to_stage if record else LifecycleStage.REGISTERED


@dataclass
class UserState:
    """One user's derived lifecycle state at a point in time."""

    facts: UserFacts
    stage: LifecycleStage
    engagement_score: int
    risk_score: int
    segment: UserSegment

    @property
    def user_id(self) -> str:
        return self.facts.user_id

    @property
    def phase(self) -> JourneyPhase:
        return self.stage.journey_phase

    @property
    def lifetime_value(self) -> float:
        return self.facts.lifetime_value


def derive_state(facts: UserFacts, stage: LifecycleStage, config: LifecycleConfig) -> UserState:
    engagement = calculate_engagement_score(facts, config.engagement_weights)
    risk = calculate_risk_score(facts, config.risk_weights, config.default_daily_task_target)
    segment = determine_segment(
        facts,
        stage,
        engagement,
        rules=config.segment_rules,
        risk_score=risk,
        default=config.default_segment,
    )
    return UserState(facts=facts, stage=stage, engagement_score=engagement, risk_score=risk, segment=segment)


class PopulationLoader:
    """Loads UserState for every user (or a given subset)."""

    def __init__(
        self,
        db: AsyncSession,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
        timezone_name: Optional[str] = None,
    ):
        self.db = db
        self.config = config
        self.store = EventStore(db)
        self.facts = FactsLoader(db, clock, timezone_name)

    async def load_users(self, users: Sequence[User]) -> List[UserState]:
        if not users:
            return []
        user_ids = [user.id for user in users]
        facts = await self.facts.load_many(users)
        latest = await self.store.latest_transitions_for_users(user_ids)
        return [
            derive_state(facts[user.id], stage_from_transition(latest.get(user.id)), self.config)
            for user in users
        ]

    async def load(self, user_ids: Optional[Sequence[str]] = None) -> List[UserState]:
        query = select(User).order_by(User.created_at.asc(), User.id.asc())
        if user_ids is not None:
            query = query.where(User.id.in_(list(user_ids)))
        result = await self.db.execute(query)
        return await self.load_users(list(result.scalars().all()))

    async def transitions_by_user(self, user_ids: Sequence[str]) -> Dict[str, List[StageTransitionRecord]]:
        """Valid transitions per user, oldest first."""
        rows = await self.store.events_for_users(user_ids, [STAGE_TRANSITION_ACTIVITY])
        history: Dict[str, List[StageTransitionRecord]] = {}
        for user_id, user_rows in rows.items():
            records = [record for record in map(transition_from_row, user_rows) if record is not None]
            history[user_id] = records
        return history


def stage_timeline(
    registered_at: datetime,
    transitions: Sequence[StageTransitionRecord],
    now: datetime,
) -> List[JourneyStep]:
    """
    Stages a user has been in, oldest first, with time spent in each.

    The journey starts in REGISTERED at registration; each transition closes
    the open step and opens the next one. The last step is still open.
    """
    steps: List[JourneyStep] = []
    stage = LifecycleStage.REGISTERED
    entered_at = ensure_utc(registered_at)

    for record in sorted(transitions, key=lambda r: (r.transitioned_at, r.id or 0)):
        left_at = ensure_utc(record.transitioned_at)
        if record.to_stage == stage:
            continue
        steps.append(_step(stage, entered_at, left_at))
        stage = record.to_stage
        entered_at = left_at

    steps.append(_step(stage, entered_at, None, now))
    return steps


def _step(
    stage: LifecycleStage,
    entered_at: datetime,
    left_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> JourneyStep:
    end = left_at or ensure_utc(now)
    days = max((end - entered_at).total_seconds(), 0) / SECONDS_PER_DAY
    return JourneyStep(
        stage=stage,
        phase=stage.journey_phase,
        entered_at=entered_at,
        left_at=left_at,
        days_in_stage=round(days, 2),
    )
