"""
Milestone Checker - records threshold crossings as events, once each.

Already recorded milestone ids are read before checking, so a threshold that
is crossed again (e.g. earnings dipping and recovering) never re-fires.
"""

import logging
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.fsm.rules import DEFAULT_CONFIG, LifecycleConfig, MilestoneDefinition
from lifecycle.fsm.states import EventSource, MilestoneCategory
from lifecycle.models.activity_log import ActivityLog
from lifecycle.schemas.lifecycle import Milestone
from lifecycle.schemas.payloads import MilestonePayload, describe_event
from lifecycle.services.event_store import (
    EventStore,
    build_event_metadata,
    event_data,
)
from lifecycle.services.facts import FactsLoader
from lifecycle.services.scoring import UserFacts, calculate_engagement_score
from lifecycle.timeutils import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


def milestones_from_rows(rows: Iterable[ActivityLog]) -> List[Milestone]:
    """Parse milestone events; unreadable ones are skipped."""
    milestones = []
    for row in rows:
        try:
            payload = MilestonePayload.model_validate(event_data(row))
        except ValidationError:
            logger.warning(f"Skipping unreadable milestone event {row.id} for user {row.user_id}")
            continue
        milestones.append(Milestone(
            milestone_id=payload.milestone_id,
            category=payload.category,
            name=payload.name,
            threshold=payload.threshold,
            value=payload.value,
            achieved_at=ensure_utc(row.created_at),
        ))
    return milestones


class MilestoneChecker:
    """Checks earnings, task, referral, streak and engagement thresholds."""

    def __init__(
        self,
        db: AsyncSession,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.store = EventStore(db)
        self.facts = FactsLoader(db, clock)

    async def get_milestones(self, user_id: str) -> List[Milestone]:
        """Recorded milestones, oldest first."""
        return milestones_from_rows(await self.store.milestones_for_user(user_id))

    def _current_values(self, facts: UserFacts) -> Dict[MilestoneCategory, float]:
        return {
            MilestoneCategory.EARNINGS: facts.lifetime_value,
            MilestoneCategory.TASKS: facts.total_video_tasks,
            MilestoneCategory.REFERRALS: facts.total_referrals,
            MilestoneCategory.STREAK: facts.streaks.longest,
            MilestoneCategory.ENGAGEMENT: calculate_engagement_score(facts, self.config.engagement_weights),
        }

    async def check(self, user_id: str, facts: Optional[UserFacts] = None) -> List[Milestone]:
        """Record every newly reached milestone; returns the new ones."""
        facts = facts or await self.facts.load(user_id)
        if facts is None:
            return []

        achieved = {milestone.milestone_id for milestone in await self.get_milestones(user_id)}
        values = self._current_values(facts)

        reached = []
        for definition in self.config.milestones:
            if definition.milestone_id in achieved:
                continue
            value = values.get(definition.category)
            if value is None or value < definition.threshold:
                continue
            reached.append(await self._record(user_id, definition, value, facts))

        if reached:
            logger.info(f"User {user_id} reached milestones: {[m.milestone_id for m in reached]}")
        return reached

    async def _record(
        self,
        user_id: str,
        definition: MilestoneDefinition,
        value: float,
        facts: UserFacts,
    ) -> Milestone:
        payload = MilestonePayload(
            milestone_id=definition.milestone_id,
            category=definition.category.value,
            threshold=definition.threshold,
            name=definition.name,
            value=value,
            description=definition.description,
        )
        data = payload.model_dump(mode="json")
        row = await self.store.append(
            user_id=user_id,
            activity=definition.event.value,
            description=f"{describe_event(definition.event, {})}: {definition.name}",
            metadata=build_event_metadata(data, EventSource.SYSTEM_TRIGGER.value),
            created_at=facts.now,
            source=EventSource.SYSTEM_TRIGGER.value,
        )
        return Milestone(
            milestone_id=definition.milestone_id,
            category=definition.category.value,
            name=definition.name,
            threshold=definition.threshold,
            value=value,
            achieved_at=ensure_utc(row.created_at),
        )
