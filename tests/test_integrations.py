"""
Tests for integration hooks and the daily lifecycle check.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from lifecycle.fsm.states import LifecycleEvent, LifecycleStage
from lifecycle.services.integrations import LifecycleIntegrations

from conftest import NOW


@pytest.fixture
def integrations(db, clock, locks):
    return LifecycleIntegrations(db, clock=clock, locks=locks)


async def _count(integrations, user_id, event: LifecycleEvent) -> int:
    counts = await integrations.tracker.get_user_event_counts(user_id, [event])
    return counts[event.value]


class TestHooks:
    """Tests for the event-producing hooks."""

    @pytest.mark.asyncio
    async def test_registration(self, db, integrations, make_user):
        user = await make_user()

        record = await integrations.on_user_registered(
            user.id, email="asha@example.com", referral_code=None, ip_address="10.0.0.9"
        )

        assert record.event_type == "USER_REGISTERED"
        assert record.event_data == {"email": "asha@example.com"}
        assert record.ip_address == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_first_then_repeat_task(self, db, integrations, make_user):
        user = await make_user()

        first = await integrations.on_video_task_completed(user.id, "v1", reward_earned=2)
        second = await integrations.on_video_task_completed(user.id, "v2", reward_earned=2)

        assert first.event_type == "FIRST_VIDEO_WATCHED"
        assert second.event_type == "VIDEO_TASK_COMPLETED"

    @pytest.mark.asyncio
    async def test_daily_goal_fires_once_per_day(self, db, integrations, make_user):
        user = await make_user(tasks_per_day=2)

        await integrations.on_video_task_completed(user.id, "v1")
        assert await _count(integrations, user.id, LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED) == 0

        await integrations.on_video_task_completed(user.id, "v2")
        await integrations.on_video_task_completed(user.id, "v3")
        assert await _count(integrations, user.id, LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED) == 1

    @pytest.mark.asyncio
    async def test_unverified_task_skips_goal_checks(self, db, integrations, make_user):
        user = await make_user(tasks_per_day=1)

        await integrations.on_video_task_completed(user.id, "v1", verified=False)

        assert await _count(integrations, user.id, LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED) == 0

    @pytest.mark.asyncio
    async def test_streak_started_on_second_consecutive_day(self, db, integrations, make_user, add_event):
        user = await make_user()
        await add_event(user.id, LifecycleEvent.FIRST_VIDEO_WATCHED, created_at=NOW - timedelta(days=1))

        await integrations.on_video_task_completed(user.id, "v2")

        assert await _count(integrations, user.id, LifecycleEvent.STREAK_STARTED) == 1

    @pytest.mark.asyncio
    async def test_return_after_inactivity(self, db, integrations, make_user, add_event):
        user = await make_user()
        await add_event(user.id, LifecycleEvent.FIRST_LOGIN, created_at=NOW - timedelta(days=10))

        record = await integrations.on_user_login(user.id)

        assert record.event_type == "LOGIN"
        assert record.event_data["previous_login_at"] == (NOW - timedelta(days=10)).isoformat()
        assert await _count(integrations, user.id, LifecycleEvent.RETURNED_AFTER_INACTIVITY) == 1

    @pytest.mark.asyncio
    async def test_recent_login_is_not_a_return(self, db, integrations, make_user):
        user = await make_user()

        first = await integrations.on_user_login(user.id, previous_login_at=None)
        await integrations.on_user_login(user.id, previous_login_at=NOW - timedelta(days=2))

        assert first.event_type == "FIRST_LOGIN"
        assert await _count(integrations, user.id, LifecycleEvent.RETURNED_AFTER_INACTIVITY) == 0

    @pytest.mark.asyncio
    async def test_profile_completed_once(self, db, integrations, make_user):
        user = await make_user(name="Asha", email_verified=True, phone="+919800000000")

        await integrations.on_profile_updated(user.id, {"name": "Asha"})
        await integrations.on_profile_updated(user.id, {"phone": "+919800000000"})

        assert await _count(integrations, user.id, LifecycleEvent.PROFILE_UPDATED) == 2
        assert await _count(integrations, user.id, LifecycleEvent.PROFILE_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_incomplete_profile(self, db, integrations, make_user):
        user = await make_user(name="Asha")

        await integrations.on_profile_updated(user.id, {"name": "Asha"})

        assert await _count(integrations, user.id, LifecycleEvent.PROFILE_COMPLETED) == 0

    @pytest.mark.asyncio
    async def test_first_earning_then_repeat(self, db, integrations, make_user):
        user = await make_user()

        first = await integrations.on_earning_received(user.id, 10)
        second = await integrations.on_earning_received(user.id, 15)

        assert first.event_type == "FIRST_EARNING"
        assert second.event_type == "EARNING_RECEIVED"
        assert second.source == "SYSTEM_TRIGGER"

    @pytest.mark.asyncio
    async def test_intern_upgrade(self, db, integrations, make_user):
        user = await make_user()

        intern = await integrations.on_position_upgraded(user.id, "L1", from_position="Intern")
        upgrade = await integrations.on_position_upgraded(user.id, "L2", from_position="L1")

        assert intern.event_type == "INTERN_TO_PAID"
        assert upgrade.event_type == "POSITION_UPGRADED"

    @pytest.mark.asyncio
    async def test_login_failures_below_threshold(self, db, integrations, make_user):
        user = await make_user()

        assert await integrations.on_login_failed(user.id, 2) is None
        record = await integrations.on_login_failed(user.id, 3, reason="bad password")
        assert record.event_type == "MULTIPLE_LOGIN_FAILURES"

    @pytest.mark.asyncio
    async def test_admin_actions(self, db, integrations, make_user):
        user = await make_user()

        assert await integrations.on_admin_action(user.id, "delete_everything", "admin-1") is None

        record = await integrations.on_admin_action(user.id, "account_suspended", "admin-1", {"note": "fraud"})
        assert record.event_type == "ACCOUNT_SUSPENDED"
        assert record.admin_id == "admin-1"
        assert record.source == "ADMIN_ACTION"
        assert record.event_data["note"] == "fraud"

    @pytest.mark.asyncio
    async def test_hook_failure_is_swallowed(self, db, integrations, make_user):
        user = await make_user()
        with patch.object(integrations.tracker, "track_event", new=AsyncMock(side_effect=RuntimeError("boom"))):
            assert await integrations.on_user_logout(user.id) is None


class TestDailyCheck:
    """Tests for run_daily_lifecycle_check."""

    async def _population(self, make_user, add_event):
        inactive = await make_user(last_login_at=NOW - timedelta(days=10))
        behind = await make_user(tasks_per_day=3)
        await add_event(behind.id, LifecycleEvent.VIDEO_TASK_COMPLETED, created_at=NOW - timedelta(days=1))
        lapsed = await make_user()
        for days in (2, 3, 4):
            await add_event(lapsed.id, LifecycleEvent.VIDEO_TASK_COMPLETED, created_at=NOW - timedelta(days=days))
        await make_user(is_active=False, last_login_at=NOW - timedelta(days=10))
        return inactive, behind, lapsed

    @pytest.mark.asyncio
    async def test_emits_time_driven_events(self, db, integrations, make_user, add_event):
        inactive, behind, lapsed = await self._population(make_user, add_event)

        stats = await integrations.run_daily_lifecycle_check()

        assert stats == {
            "users_checked": 3,
            "inactivity_events": 1,
            "missed_target_events": 1,
            "streaks_broken": 1,
            "errors": 0,
        }
        assert await _count(integrations, inactive.id, LifecycleEvent.LONG_INACTIVITY) == 1
        assert await _count(integrations, behind.id, LifecycleEvent.MISSED_DAILY_TARGET) == 1

        broken = await integrations.tracker.get_user_event_history(
            lapsed.id, event_types=[LifecycleEvent.STREAK_BROKEN]
        )
        assert broken.events[0].event_data["previous_streak"] == 3

    @pytest.mark.asyncio
    async def test_second_run_same_day_is_idempotent(self, db, integrations, make_user, add_event):
        await self._population(make_user, add_event)
        await integrations.run_daily_lifecycle_check()

        stats = await integrations.run_daily_lifecycle_check()

        assert stats["users_checked"] == 3
        assert stats["inactivity_events"] == 0
        assert stats["missed_target_events"] == 0
        assert stats["streaks_broken"] == 0

    @pytest.mark.asyncio
    async def test_idle_user_walks_down_to_churned(self, db, integrations, clock, make_user, add_transition):
        user = await make_user(last_login_at=NOW - timedelta(days=8))
        await add_transition(
            user.id, LifecycleStage.FIRST_EARNING, LifecycleStage.REGULAR_USER, created_at=NOW - timedelta(days=20)
        )
        engine = integrations.tracker.stage_engine

        await integrations.run_daily_lifecycle_check()
        assert await engine.get_current_stage(user.id) == LifecycleStage.AT_RISK

        clock.advance(days=7)
        await integrations.run_daily_lifecycle_check()
        assert await engine.get_current_stage(user.id) == LifecycleStage.INACTIVE

        # the day-31 run never happened
        clock.advance(days=20)
        stats = await integrations.run_daily_lifecycle_check()
        assert stats["inactivity_events"] == 1
        assert await engine.get_current_stage(user.id) == LifecycleStage.CHURNED

        clock.advance(days=1)
        stats = await integrations.run_daily_lifecycle_check()
        assert stats["inactivity_events"] == 0
        assert await engine.get_current_stage(user.id) == LifecycleStage.CHURNED

    @pytest.mark.asyncio
    async def test_failing_user_is_counted(self, db, integrations, make_user, add_event):
        await self._population(make_user, add_event)

        with patch.object(
            integrations, "_daily_checks_for_user", new=AsyncMock(side_effect=RuntimeError("bad row"))
        ):
            stats = await integrations.run_daily_lifecycle_check()

        assert stats["users_checked"] == 3
        assert stats["errors"] == 3

    @pytest.mark.asyncio
    async def test_no_users(self, db, integrations):
        stats = await integrations.run_daily_lifecycle_check()
        assert stats["users_checked"] == 0
