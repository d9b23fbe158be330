"""
Lifecycle Integrations - hooks other subsystems call when users act.

Every hook is best-effort: it picks the right lifecycle event (first-time
variants, derived goal/streak/return events), hands it to the EventTracker
and never raises into the caller. Hooks return the tracked EventRecord, or
None when nothing was recorded.

The daily lifecycle check lives here too; it is what turns the passage of
time into events (LONG_INACTIVITY, MISSED_DAILY_TARGET, STREAK_BROKEN) so
that time-based stage rules get re-evaluated.
"""

import functools
import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle.config import settings
from lifecycle.fsm.rules import DEFAULT_CONFIG, LifecycleConfig
from lifecycle.fsm.states import LOGIN_EVENTS, TASK_EVENTS, EventSource, LifecycleEvent, LifecycleStage
from lifecycle.models.user import User
from lifecycle.schemas.lifecycle import EventRecord, TrackingOptions
from lifecycle.services.event_store import EventStore, is_verified_task, transition_from_row
from lifecycle.services.event_tracker import EventTracker
from lifecycle.services.facts import FactsLoader
from lifecycle.services.locks import UserLockRegistry
from lifecycle.services.scoring import calculate_streaks
from lifecycle.timeutils import (
    Clock,
    ensure_utc,
    get_timezone,
    local_date,
    start_of_day,
    utcnow,
    whole_days_between,
)

logger = logging.getLogger(__name__)

_TASKS = [event.value for event in TASK_EVENTS]
_LOGINS = [event.value for event in LOGIN_EVENTS]

LOGIN_FAILURE_THRESHOLD = 3
INACTIVITY_MIN_DAYS = 7
STREAK_LOOKBACK_DAYS = 90

ADMIN_ACTION_EVENTS = {
    "account_suspended": LifecycleEvent.ACCOUNT_SUSPENDED,
    "account_reactivated": LifecycleEvent.ACCOUNT_REACTIVATED,
    "balance_adjusted": LifecycleEvent.MANUAL_BALANCE_ADJUSTMENT,
}


def best_effort(hook):
    """Log and swallow any failure of an integration hook."""

    @functools.wraps(hook)
    async def wrapper(self, user_id: str, *args, **kwargs):
        try:
            return await hook(self, user_id, *args, **kwargs)
        except Exception as e:
            logger.error(f"Lifecycle hook {hook.__name__} failed for user {user_id}: {e}", exc_info=True)
            return None

    return wrapper


class LifecycleIntegrations:
    """Integration hooks plus the daily lifecycle check."""

    def __init__(
        self,
        db: AsyncSession,
        config: LifecycleConfig = DEFAULT_CONFIG,
        clock: Clock = utcnow,
        locks: Optional[UserLockRegistry] = None,
        timezone_name: Optional[str] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.tz = get_timezone(timezone_name)
        self.store = EventStore(db)
        self.facts = FactsLoader(db, clock, timezone_name)
        self.tracker = EventTracker(db, config=config, clock=clock, locks=locks)

    async def _track(
        self,
        user_id: str,
        event: LifecycleEvent,
        data: Optional[Dict[str, Any]] = None,
        source: EventSource = EventSource.USER_ACTION,
        options: Optional[TrackingOptions] = None,
    ) -> Optional[EventRecord]:
        clean = {key: value for key, value in (data or {}).items() if value is not None}
        return await self.tracker.track_event(user_id, event, clean, source, options)

    async def _first_or(
        self,
        user_id: str,
        first: LifecycleEvent,
        repeat: LifecycleEvent,
    ) -> LifecycleEvent:
        """``first`` unless the user already has it, else ``repeat``."""
        if await self.tracker.has_user_triggered_event(user_id, first):
            return repeat
        return first

    def _daily_target(self, user: Optional[User]) -> int:
        if user is not None and user.tasks_per_day and user.tasks_per_day > 0:
            return user.tasks_per_day
        return self.config.default_daily_task_target

    # ------------------------------------------------------------------
    # Registration and profile
    # ------------------------------------------------------------------

    @best_effort
    async def on_user_registered(
        self,
        user_id: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        referral_code: Optional[str] = None,
        registration_source: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[EventRecord]:
        record = await self._track(
            user_id,
            LifecycleEvent.USER_REGISTERED,
            {
                "email": email,
                "phone": phone,
                "referral_code": referral_code,
                "registration_source": registration_source,
            },
            options=TrackingOptions(ip_address=ip_address, user_agent=user_agent),
        )
        logger.info(f"User registration lifecycle tracking completed for {user_id}")
        return record

    @best_effort
    async def on_email_verified(self, user_id: str, email: str) -> Optional[EventRecord]:
        return await self._track(user_id, LifecycleEvent.EMAIL_VERIFIED, {"email": email})

    @best_effort
    async def on_phone_verified(self, user_id: str, phone: str) -> Optional[EventRecord]:
        return await self._track(user_id, LifecycleEvent.PHONE_VERIFIED, {"phone": phone})

    @best_effort
    async def on_profile_updated(self, user_id: str, updated_fields: Dict[str, Any]) -> Optional[EventRecord]:
        """PROFILE_UPDATED, then PROFILE_COMPLETED once name, verified email and phone are all present."""
        record = await self._track(
            user_id,
            LifecycleEvent.PROFILE_UPDATED,
            {"fields_updated": sorted(updated_fields)},
        )

        user = await self.facts.get_user(user_id)
        if user is None or not (user.name and user.email_verified and user.phone):
            return record
        if await self.tracker.has_user_triggered_event(user_id, LifecycleEvent.PROFILE_COMPLETED):
            return record

        await self._track(
            user_id,
            LifecycleEvent.PROFILE_COMPLETED,
            {"fields_updated": sorted(updated_fields)},
        )
        return record

    @best_effort
    async def on_bank_card_added(
        self,
        user_id: str,
        bank_card_id: str,
        bank_name: Optional[str] = None,
    ) -> Optional[EventRecord]:
        return await self._track(
            user_id,
            LifecycleEvent.BANK_CARD_ADDED,
            {"bank_card_id": bank_card_id, "bank_name": bank_name},
        )

    @best_effort
    async def on_password_changed(self, user_id: str) -> Optional[EventRecord]:
        return await self._track(user_id, LifecycleEvent.PASSWORD_CHANGED)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @best_effort
    async def on_user_login(
        self,
        user_id: str,
        login_method: str = "standard",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
        previous_login_at: Optional[datetime] = None,
    ) -> Optional[EventRecord]:
        """
        FIRST_LOGIN or LOGIN; RETURNED_AFTER_INACTIVITY as well when the
        previous login is at least ``inactivity_return_days`` old.
        """
        if previous_login_at is None:
            previous = await self.store.latest_of_type(user_id, _LOGINS)
            previous_login_at = ensure_utc(previous.created_at) if previous else None

        event = await self._first_or(user_id, LifecycleEvent.FIRST_LOGIN, LifecycleEvent.LOGIN)
        record = await self._track(
            user_id,
            event,
            {
                "login_method": login_method,
                "device_id": device_id,
                "previous_login_at": previous_login_at.isoformat() if previous_login_at else None,
            },
            options=TrackingOptions(ip_address=ip_address, user_agent=user_agent, device_id=device_id),
        )

        if previous_login_at is not None:
            days_away = whole_days_between(previous_login_at, self.clock())
            if days_away >= settings.inactivity_return_days:
                await self._track(
                    user_id,
                    LifecycleEvent.RETURNED_AFTER_INACTIVITY,
                    {"days_since_last_login": days_away},
                    EventSource.SYSTEM_TRIGGER,
                )
        return record

    @best_effort
    async def on_user_logout(self, user_id: str) -> Optional[EventRecord]:
        return await self._track(user_id, LifecycleEvent.LOGOUT)

    @best_effort
    async def on_login_failed(
        self,
        user_id: str,
        consecutive_failures: int,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[EventRecord]:
        if consecutive_failures < LOGIN_FAILURE_THRESHOLD:
            return None
        return await self._track(
            user_id,
            LifecycleEvent.MULTIPLE_LOGIN_FAILURES,
            {"consecutive_failures": consecutive_failures, "reason": reason},
            EventSource.SYSTEM_TRIGGER,
            TrackingOptions(ip_address=ip_address),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @best_effort
    async def on_video_task_completed(
        self,
        user_id: str,
        video_id: str,
        reward_earned: float = 0,
        video_title: Optional[str] = None,
        watch_duration: Optional[float] = None,
        position_level: Optional[str] = None,
        verified: bool = True,
    ) -> Optional[EventRecord]:
        event = await self._first_or(
            user_id,
            LifecycleEvent.FIRST_VIDEO_WATCHED,
            LifecycleEvent.VIDEO_TASK_COMPLETED,
        )
        record = await self._track(
            user_id,
            event,
            {
                "video_id": video_id,
                "video_title": video_title,
                "reward_earned": reward_earned,
                "watch_duration": watch_duration,
                "position_level": position_level,
                "verified": verified,
            },
        )
        if record is not None and verified:
            await self._check_task_goals(user_id)
        return record

    async def _task_days_since(self, user_id: str, since: date) -> List[datetime]:
        """Verified task timestamps from the start of local day ``since``."""
        rows = await self.store.events_for_users([user_id], _TASKS, start_of_day(since, self.tz))
        return [ensure_utc(row.created_at) for row in rows.get(user_id, []) if is_verified_task(row)]

    async def _check_task_goals(self, user_id: str) -> None:
        """Daily/weekly goals (once per day/week) and the start of a new streak."""
        now = self.clock()
        today = local_date(now, self.tz)
        week_start = today - timedelta(days=today.weekday())
        user = await self.facts.get_user(user_id)
        daily_target = self._daily_target(user)

        tasks = await self._task_days_since(user_id, min(week_start, today - timedelta(days=2)))
        days = [local_date(at, self.tz) for at in tasks]
        today_count = sum(1 for day in days if day == today)
        week_count = sum(1 for day in days if day >= week_start)

        if today_count >= daily_target and not await self.store.exists(
            user_id, LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED.value, start_of_day(today, self.tz)
        ):
            await self._track(
                user_id,
                LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED,
                {"tasks_completed": today_count, "target": daily_target, "date": today.isoformat()},
                EventSource.SYSTEM_TRIGGER,
            )

        weekly_target = daily_target * 7
        if week_count >= weekly_target and not await self.store.exists(
            user_id, LifecycleEvent.WEEKLY_TASK_GOAL_ACHIEVED.value, start_of_day(week_start, self.tz)
        ):
            await self._track(
                user_id,
                LifecycleEvent.WEEKLY_TASK_GOAL_ACHIEVED,
                {"tasks_completed": week_count, "target": weekly_target, "date": week_start.isoformat()},
                EventSource.SYSTEM_TRIGGER,
            )

        # A streak starts on the first task of the second consecutive day
        yesterday = today - timedelta(days=1)
        day_before = today - timedelta(days=2)
        if today_count == 1 and yesterday in days and day_before not in days:
            await self._track(
                user_id,
                LifecycleEvent.STREAK_STARTED,
                {"streak_days": 2},
                EventSource.SYSTEM_TRIGGER,
            )

    # ------------------------------------------------------------------
    # Money
    # ------------------------------------------------------------------

    @best_effort
    async def on_earning_received(
        self,
        user_id: str,
        amount: float,
        source: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[EventRecord]:
        event = await self._first_or(user_id, LifecycleEvent.FIRST_EARNING, LifecycleEvent.EARNING_RECEIVED)
        return await self._track(
            user_id,
            event,
            {"amount": amount, "source": source, "transaction_id": transaction_id},
            EventSource.SYSTEM_TRIGGER,
        )

    @best_effort
    async def on_withdrawal(
        self,
        user_id: str,
        amount: float,
        withdrawal_id: Optional[str] = None,
        bank_card_id: Optional[str] = None,
    ) -> Optional[EventRecord]:
        event = await self._first_or(user_id, LifecycleEvent.FIRST_WITHDRAWAL, LifecycleEvent.WITHDRAWAL_COMPLETED)
        return await self._track(
            user_id,
            event,
            {"amount": amount, "withdrawal_id": withdrawal_id, "bank_card_id": bank_card_id},
        )

    @best_effort
    async def on_deposit_made(
        self,
        user_id: str,
        amount: float,
        deposit_id: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Optional[EventRecord]:
        return await self._track(
            user_id,
            LifecycleEvent.DEPOSIT_MADE,
            {"amount": amount, "deposit_id": deposit_id, "payment_method": payment_method},
        )

    # ------------------------------------------------------------------
    # Positions and referrals
    # ------------------------------------------------------------------

    @best_effort
    async def on_position_upgraded(
        self,
        user_id: str,
        to_position: str,
        from_position: Optional[str] = None,
        from_intern: bool = False,
        deposit_amount: Optional[float] = None,
    ) -> Optional[EventRecord]:
        from_intern = from_intern or (from_position or "").strip().lower() == "intern"
        event = LifecycleEvent.INTERN_TO_PAID if from_intern else LifecycleEvent.POSITION_UPGRADED
        return await self._track(
            user_id,
            event,
            {
                "from_position": from_position,
                "to_position": to_position,
                "from_intern": from_intern,
                "deposit_amount": deposit_amount,
            },
        )

    @best_effort
    async def on_position_downgraded(
        self,
        user_id: str,
        to_position: str,
        from_position: Optional[str] = None,
    ) -> Optional[EventRecord]:
        return await self._track(
            user_id,
            LifecycleEvent.POSITION_DOWNGRADED,
            {"from_position": from_position, "to_position": to_position},
            EventSource.SYSTEM_TRIGGER,
        )

    @best_effort
    async def on_referral_made(
        self,
        user_id: str,
        referred_user_id: str,
        referral_code: Optional[str] = None,
    ) -> Optional[EventRecord]:
        event = await self._first_or(user_id, LifecycleEvent.FIRST_REFERRAL, LifecycleEvent.REFERRAL_MADE)
        return await self._track(
            user_id,
            event,
            {"referred_user_id": referred_user_id, "referral_code": referral_code},
            EventSource.SYSTEM_TRIGGER,
        )

    @best_effort
    async def on_referral_reward_earned(
        self,
        user_id: str,
        amount: float,
        referred_user_id: Optional[str] = None,
        level: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Optional[EventRecord]:
        return await self._track(
            user_id,
            LifecycleEvent.REFERRAL_REWARD_EARNED,
            {
                "amount": amount,
                "referred_user_id": referred_user_id,
                "level": level,
                "transaction_id": transaction_id,
            },
            EventSource.SYSTEM_TRIGGER,
        )

    # ------------------------------------------------------------------
    # Admin and campaigns
    # ------------------------------------------------------------------

    @best_effort
    async def on_admin_action(
        self,
        user_id: str,
        action: str,
        admin_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[EventRecord]:
        event = ADMIN_ACTION_EVENTS.get(action)
        if event is None:
            logger.warning(f"Ignoring unknown admin action '{action}' for user {user_id}")
            return None
        return await self._track(
            user_id,
            event,
            {**(data or {}), "admin_id": admin_id, "action": action},
            EventSource.ADMIN_ACTION,
            TrackingOptions(admin_id=admin_id),
        )

    @best_effort
    async def on_campaign_opened(
        self,
        user_id: str,
        campaign_id: str,
        channel: Optional[str] = None,
    ) -> Optional[EventRecord]:
        return await self._track(
            user_id,
            LifecycleEvent.RE_ENGAGEMENT_CAMPAIGN_OPENED,
            {"campaign_id": campaign_id, "channel": channel},
        )

    # ------------------------------------------------------------------
    # Daily check
    # ------------------------------------------------------------------

    async def run_daily_lifecycle_check(self) -> Dict[str, int]:
        """
        Emit the day's time-driven events.

        Events already emitted today are not repeated, so running the check
        twice on one day is harmless. A failing user is counted and skipped.
        """
        now = self.clock()
        today = local_date(now, self.tz)
        today_start = start_of_day(today, self.tz)

        result = await self.db.execute(
            select(User).where(User.is_active.is_(True)).order_by(User.created_at.asc(), User.id.asc())
        )
        users = list(result.scalars().all())
        user_ids = [user.id for user in users]

        stats = {
            "users_checked": len(users),
            "inactivity_events": 0,
            "missed_target_events": 0,
            "streaks_broken": 0,
            "errors": 0,
        }
        if not users:
            return stats

        emitted_today = await self.store.counts_for_users(
            user_ids,
            [
                LifecycleEvent.LONG_INACTIVITY.value,
                LifecycleEvent.MISSED_DAILY_TARGET.value,
                LifecycleEvent.STREAK_BROKEN.value,
            ],
            since=today_start,
        )
        task_rows = await self.store.events_for_users(
            user_ids,
            _TASKS,
            since=start_of_day(today - timedelta(days=STREAK_LOOKBACK_DAYS), self.tz),
        )
        latest_transitions = await self.store.latest_transitions_for_users(user_ids)

        for user in users:
            already = emitted_today.get(user.id, {})
            transition = latest_transitions.get(user.id)
            latest = transition_from_row(transition) if transition is not None else None
            stage = latest.to_stage if latest else LifecycleStage.REGISTERED
            task_days = Counter(
                local_date(row.created_at, self.tz)
                for row in task_rows.get(user.id, [])
                if is_verified_task(row)
            )
            try:
                tracked = await self._daily_checks_for_user(
                    user, stage, already, task_days, now, today, today_start
                )
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Daily lifecycle check failed for user {user.id}: {e}", exc_info=True)
                continue
            for key, ok in tracked.items():
                if ok:
                    stats[key] += 1
                elif ok is False:
                    stats["errors"] += 1

        logger.info(f"Daily lifecycle check completed: {stats}")
        return stats

    async def _daily_checks_for_user(
        self,
        user: User,
        stage: LifecycleStage,
        already: Dict[str, int],
        task_days: Counter,
        now: datetime,
        today: date,
        today_start: datetime,
    ) -> Dict[str, Optional[bool]]:
        """Per-check outcome: True tracked, False tracking failed, None not applicable."""
        outcome: Dict[str, Optional[bool]] = defaultdict(lambda: None)
        yesterday = today - timedelta(days=1)

        # Repeats daily until the stage rules have carried the user to CHURNED.
        last_login = ensure_utc(user.last_login_at)
        if (
            last_login is not None
            and stage != LifecycleStage.CHURNED
            and not already.get(LifecycleEvent.LONG_INACTIVITY.value)
        ):
            days = whole_days_between(last_login, now)
            if days >= INACTIVITY_MIN_DAYS:
                record = await self._track(
                    user.id,
                    LifecycleEvent.LONG_INACTIVITY,
                    {"days_since_last_login": days},
                    EventSource.SCHEDULED_TASK,
                )
                outcome["inactivity_events"] = record is not None

        registered_before_yesterday_ended = ensure_utc(user.created_at) < today_start
        if (
            user.tasks_per_day
            and user.tasks_per_day > 0
            and registered_before_yesterday_ended
            and not already.get(LifecycleEvent.MISSED_DAILY_TARGET.value)
        ):
            completed = task_days[yesterday]
            if completed < user.tasks_per_day:
                record = await self._track(
                    user.id,
                    LifecycleEvent.MISSED_DAILY_TARGET,
                    {"tasks_completed": completed, "target": user.tasks_per_day, "date": yesterday.isoformat()},
                    EventSource.SCHEDULED_TASK,
                )
                outcome["missed_target_events"] = record is not None

        if yesterday not in task_days and not already.get(LifecycleEvent.STREAK_BROKEN.value):
            previous = calculate_streaks([day for day in task_days if day < today], yesterday).current
            if previous >= 2:
                record = await self._track(
                    user.id,
                    LifecycleEvent.STREAK_BROKEN,
                    {"streak_days": 0, "previous_streak": previous},
                    EventSource.SCHEDULED_TASK,
                )
                outcome["streaks_broken"] = record is not None

        return outcome
