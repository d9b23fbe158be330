"""
Tests for MilestoneChecker.
"""

from datetime import timedelta

import pytest

from lifecycle.fsm.states import LifecycleEvent
from lifecycle.services.milestones import MilestoneChecker

from conftest import NOW


@pytest.fixture
def checker(db, clock):
    return MilestoneChecker(db, clock=clock)


@pytest.mark.asyncio
async def test_earnings_thresholds_are_recorded(db, checker, make_user):
    user = await make_user(total_earnings=600)

    reached = await checker.check(user.id)

    assert {m.milestone_id for m in reached} == {"earnings_100", "earnings_500"}
    century = next(m for m in reached if m.milestone_id == "earnings_100")
    assert century.name == "Century Club"
    assert century.value == 600
    assert century.achieved_at == NOW


@pytest.mark.asyncio
async def test_milestones_never_refire(db, checker, make_user):
    """A threshold crossed again is not recorded twice."""
    user = await make_user(total_earnings=150)
    assert len(await checker.check(user.id)) == 1

    user.total_earnings = 50
    assert await checker.check(user.id) == []
    user.total_earnings = 200
    assert await checker.check(user.id) == []

    assert [m.milestone_id for m in await checker.get_milestones(user.id)] == ["earnings_100"]


@pytest.mark.asyncio
async def test_unverified_tasks_do_not_count(db, checker, make_user, add_event):
    user = await make_user()
    await add_event(user.id, LifecycleEvent.VIDEO_TASK_COMPLETED, data={"verified": False})
    assert await checker.check(user.id) == []

    await add_event(user.id, LifecycleEvent.VIDEO_TASK_COMPLETED, data={"verified": True})
    assert [m.milestone_id for m in await checker.check(user.id)] == ["tasks_1"]


@pytest.mark.asyncio
async def test_streak_milestone(db, checker, make_user, add_event):
    user = await make_user()
    for days in range(7):
        await add_event(user.id, LifecycleEvent.VIDEO_TASK_COMPLETED, created_at=NOW - timedelta(days=days))

    reached = {m.milestone_id for m in await checker.check(user.id)}

    assert "streak_7" in reached
    assert "streak_14" not in reached


@pytest.mark.asyncio
async def test_unknown_user_has_nothing_to_check(db, checker):
    assert await checker.check("missing-user") == []


@pytest.mark.asyncio
async def test_unreadable_milestone_rows_are_skipped(db, checker, make_user, add_event):
    user = await make_user()
    await add_event(user.id, LifecycleEvent.MILESTONE_EARNING, data={"note": "no milestone id"})
    assert await checker.get_milestones(user.id) == []
