"""
Facts Loader - gathers the inputs of scoring, segmentation and rule evaluation.

One user or a whole page of users is loaded with a fixed number of grouped
queries (per-type counts, the relevant events, referral counts), never one
query per user.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.fsm.states import (
    EARNING_EVENTS,
    LOGIN_EVENTS,
    TASK_EVENTS,
    WITHDRAWAL_EVENTS,
    LifecycleEvent,
)
from lifecycle.models.activity_log import ActivityLog
from lifecycle.models.user import User
from lifecycle.services.event_store import EventStore, event_amount, is_verified_task
from lifecycle.services.scoring import UserFacts, calculate_streaks
from lifecycle.timeutils import Clock, ensure_utc, get_timezone, local_date, utcnow

logger = logging.getLogger(__name__)

_TASKS = {event.value for event in TASK_EVENTS}
_LOGINS = {event.value for event in LOGIN_EVENTS}
_EARNINGS = {event.value for event in EARNING_EVENTS}
_WITHDRAWALS = {event.value for event in WITHDRAWAL_EVENTS}
_REFERRALS = {LifecycleEvent.FIRST_REFERRAL.value, LifecycleEvent.REFERRAL_MADE.value}

_FACT_EVENTS = sorted(
    _TASKS | _LOGINS | _EARNINGS | _WITHDRAWALS | _REFERRALS
    | {LifecycleEvent.DEPOSIT_MADE.value, LifecycleEvent.RETURNED_AFTER_INACTIVITY.value}
)


class FactsLoader:
    """Builds UserFacts for one or many users."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        timezone_name: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock
        self.store = EventStore(db)
        self.tz = get_timezone(timezone_name)

    async def get_user(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def load(self, user_id: str) -> Optional[UserFacts]:
        user = await self.get_user(user_id)
        if not user:
            return None
        facts = await self.load_many([user])
        return facts[user.id]

    async def load_many(self, users: Sequence[User]) -> Dict[str, UserFacts]:
        if not users:
            return {}

        now = self.clock()
        user_ids = [user.id for user in users]

        counts = await self.store.counts_for_users(user_ids)
        events = await self.store.events_for_users(user_ids, _FACT_EVENTS)
        referrals = await self._referral_counts(user_ids)

        loaded = {}
        for user in users:
            facts = UserFacts(
                user_id=user.id,
                created_at=ensure_utc(user.created_at),
                now=now,
                name=user.name,
                email=user.email,
                phone=user.phone,
                email_verified=bool(user.email_verified),
                phone_verified=bool(user.phone_verified),
                position_level=user.position_level,
                tasks_per_day=user.tasks_per_day,
                total_earnings=float(user.total_earnings or 0),
                wallet_balance=float(user.wallet_balance or 0),
                referred_by_id=user.referred_by_id,
                is_active=bool(user.is_active),
                last_login_at=ensure_utc(user.last_login_at),
                event_counts=dict(counts.get(user.id, {})),
                total_referrals=referrals.get(user.id, 0),
            )
            self._apply_events(facts, events.get(user.id, []))
            facts.streaks = calculate_streaks(facts.task_days, local_date(now, self.tz))
            loaded[user.id] = facts

        return loaded

    async def _referral_counts(self, user_ids: Sequence[str]) -> Dict[str, int]:
        result = await self.db.execute(
            select(User.referred_by_id, func.count(User.id))
            .where(User.referred_by_id.in_(list(user_ids)))
            .group_by(User.referred_by_id)
        )
        return {referrer_id: count for referrer_id, count in result.all()}

    def _apply_events(self, facts: UserFacts, rows: List[ActivityLog]) -> None:
        """Fold a user's events (oldest first) into the facts."""
        now = facts.now
        last_7 = now - timedelta(days=7)
        last_14 = now - timedelta(days=14)
        last_28 = now - timedelta(days=28)
        last_30 = now - timedelta(days=30)
        last_60 = now - timedelta(days=60)

        for row in rows:
            created_at = ensure_utc(row.created_at)
            activity = row.activity

            if activity in _TASKS:
                if not is_verified_task(row):
                    continue
                facts.total_video_tasks += 1
                facts.task_days.append(local_date(created_at, self.tz))
                if created_at >= last_7:
                    facts.tasks_last_7_days += 1
                if created_at >= last_30:
                    facts.tasks_last_30_days += 1
                if facts.first_task_at is None:
                    facts.first_task_at = created_at

            elif activity in _LOGINS:
                facts.login_count += 1
                if created_at >= last_30:
                    facts.logins_last_30_days += 1
                if created_at >= last_14:
                    facts.logins_last_14_days += 1
                elif created_at >= last_28:
                    facts.logins_prev_14_days += 1
                if facts.first_login_at is None:
                    facts.first_login_at = created_at

            elif activity in _EARNINGS:
                amount = event_amount(row)
                if created_at >= last_30:
                    facts.earnings_last_30_days += amount
                elif created_at >= last_60:
                    facts.earnings_prev_30_days += amount
                if facts.first_earning_at is None:
                    facts.first_earning_at = created_at

            elif activity in _WITHDRAWALS:
                facts.total_withdrawals += event_amount(row)

            elif activity == LifecycleEvent.DEPOSIT_MADE.value:
                facts.total_deposits += event_amount(row)

            elif activity in _REFERRALS:
                if facts.first_referral_at is None:
                    facts.first_referral_at = created_at

            elif activity == LifecycleEvent.RETURNED_AFTER_INACTIVITY.value:
                facts.reactivated_at = created_at
