"""
Tests for StageTransitionEngine.
"""

from datetime import timedelta

import pytest

from lifecycle.exceptions import InvalidStageError, UserNotFoundError
from lifecycle.fsm.states import LifecycleEvent, LifecycleStage
from lifecycle.services.stage_engine import StageTransitionEngine

from conftest import NOW


@pytest.fixture
def engine(db, clock, locks):
    return StageTransitionEngine(db, clock=clock, locks=locks)


@pytest.mark.asyncio
async def test_user_without_transitions_is_registered(db, engine, make_user):
    """The current stage defaults to REGISTERED."""
    user = await make_user()
    assert await engine.get_current_stage(user.id) == LifecycleStage.REGISTERED
    assert await engine.get_stage_history(user.id) == []


@pytest.mark.asyncio
async def test_onboarding_progression(db, engine, make_user, add_event):
    """Each new event moves the user at most one stage."""
    user = await make_user()

    registered = await add_event(user.id, LifecycleEvent.USER_REGISTERED)
    record = await engine.evaluate(user.id)
    assert record.from_stage is None
    assert record.to_stage == LifecycleStage.REGISTERED
    assert record.trigger_event == LifecycleEvent.USER_REGISTERED.value
    assert record.trigger_event_id == registered.id

    await add_event(user.id, LifecycleEvent.PROFILE_UPDATED)
    record = await engine.evaluate(user.id)
    assert record.to_stage == LifecycleStage.PROFILE_INCOMPLETE

    user.name = "Asha"
    user.email_verified = True
    await add_event(user.id, LifecycleEvent.EMAIL_VERIFIED)
    record = await engine.evaluate(user.id)
    assert record.to_stage == LifecycleStage.PROFILE_COMPLETE

    user.last_login_at = NOW
    await add_event(user.id, LifecycleEvent.FIRST_LOGIN)
    record = await engine.evaluate(user.id)
    assert record.to_stage == LifecycleStage.FIRST_LOGIN

    await add_event(user.id, LifecycleEvent.LOGIN)
    record = await engine.evaluate(user.id)
    assert record.to_stage == LifecycleStage.ONBOARDING_STARTED

    history = await engine.get_stage_history(user.id)
    assert [r.to_stage for r in history] == [
        LifecycleStage.ONBOARDING_STARTED,
        LifecycleStage.FIRST_LOGIN,
        LifecycleStage.PROFILE_COMPLETE,
        LifecycleStage.PROFILE_INCOMPLETE,
        LifecycleStage.REGISTERED,
    ]


@pytest.mark.asyncio
async def test_reevaluation_without_new_events_is_noop(db, engine, make_user, add_event):
    user = await make_user()
    await add_event(user.id, LifecycleEvent.USER_REGISTERED)

    assert await engine.evaluate(user.id) is not None
    assert await engine.evaluate(user.id) is None
    assert await engine.evaluate(user.id) is None
    assert len(await engine.get_stage_history(user.id)) == 1


@pytest.mark.asyncio
async def test_long_inactivity_moves_regular_user_to_at_risk(db, engine, make_user, add_event, add_transition):
    user = await make_user(last_login_at=NOW - timedelta(days=10))
    await add_transition(
        user.id,
        LifecycleStage.FIRST_EARNING,
        LifecycleStage.REGULAR_USER,
        created_at=NOW - timedelta(days=12),
    )
    await add_event(user.id, LifecycleEvent.LONG_INACTIVITY, data={"days_since_last_login": 10})

    record = await engine.evaluate(user.id)

    assert record.from_stage == LifecycleStage.REGULAR_USER
    assert record.to_stage == LifecycleStage.AT_RISK
    assert record.days_in_previous_stage == 12
    assert record.forced is False
    assert await engine.get_current_stage(user.id) == LifecycleStage.AT_RISK


@pytest.mark.asyncio
async def test_idle_user_moves_on_without_new_events(db, engine, clock, make_user, add_event, add_transition):
    """Time-based rules fire on re-evaluation even when the latest event was consumed."""
    user = await make_user(last_login_at=NOW - timedelta(days=3))
    login = await add_event(user.id, LifecycleEvent.LOGIN, created_at=NOW - timedelta(days=3))
    await add_transition(
        user.id,
        None,
        None,
        created_at=NOW - timedelta(days=3),
        metadata={
            "from_stage": LifecycleStage.FIRST_EARNING.value,
            "to_stage": LifecycleStage.REGULAR_USER.value,
            "trigger_event": LifecycleEvent.LOGIN.value,
            "trigger_event_id": login.id,
            "days_in_previous_stage": 4,
            "timestamp": (NOW - timedelta(days=3)).isoformat(),
            "forced": False,
        },
    )

    assert await engine.evaluate(user.id) is None

    clock.advance(days=5)
    record = await engine.evaluate(user.id)

    assert record.from_stage == LifecycleStage.REGULAR_USER
    assert record.to_stage == LifecycleStage.AT_RISK
    assert record.trigger_event_id == login.id
    # 8 idle days is not yet enough for INACTIVE
    assert await engine.evaluate(user.id) is None

    clock.advance(days=7)
    record = await engine.evaluate(user.id)
    assert record.to_stage == LifecycleStage.INACTIVE


@pytest.mark.asyncio
async def test_no_matching_rule_records_nothing(db, engine, make_user, add_event, add_transition):
    user = await make_user(last_login_at=NOW)
    await add_transition(user.id, LifecycleStage.ONBOARDING_STARTED, LifecycleStage.ONBOARDING_COMPLETED)
    await add_event(user.id, LifecycleEvent.LOGIN)

    assert await engine.evaluate(user.id) is None
    assert await engine.get_current_stage(user.id) == LifecycleStage.ONBOARDING_COMPLETED


@pytest.mark.asyncio
async def test_unknown_user_is_skipped(db, engine):
    assert await engine.evaluate("missing-user") is None


@pytest.mark.asyncio
async def test_malformed_latest_transition_reads_as_registered(db, engine, make_user, add_transition):
    user = await make_user()
    await add_transition(
        user.id, LifecycleStage.HIGHLY_ENGAGED, LifecycleStage.VIP_USER, created_at=NOW - timedelta(days=2)
    )
    await add_transition(user.id, None, None, metadata={"to_stage": "NOT_A_STAGE"})

    assert await engine.get_current_stage(user.id) == LifecycleStage.REGISTERED
    # the unreadable row is left out of the history
    assert len(await engine.get_stage_history(user.id)) == 1


@pytest.mark.asyncio
async def test_unparseable_metadata_reads_as_registered(db, engine, make_user, add_transition):
    user = await make_user()
    await add_transition(user.id, None, None, metadata="not json at all")
    assert await engine.get_current_stage(user.id) == LifecycleStage.REGISTERED


class TestForceTransition:
    """Tests for admin stage overrides."""

    @pytest.mark.asyncio
    async def test_forced_transition_is_recorded(self, db, engine, make_user, add_transition):
        user = await make_user()
        await add_transition(user.id, None, LifecycleStage.REGISTERED, created_at=NOW - timedelta(days=3))

        record = await engine.force_transition(user.id, "VIP_USER", "manual review", admin_id="admin-1")

        assert record.forced is True
        assert record.reason == "manual review"
        assert record.admin_id == "admin-1"
        assert record.from_stage == LifecycleStage.REGISTERED
        assert record.to_stage == LifecycleStage.VIP_USER
        assert record.trigger_event == LifecycleEvent.ADMIN_STAGE_OVERRIDE.value
        assert record.days_in_previous_stage == 3
        assert await engine.get_current_stage(user.id) == LifecycleStage.VIP_USER

    @pytest.mark.asyncio
    async def test_invalid_stage_raises(self, db, engine, make_user):
        user = await make_user()
        with pytest.raises(InvalidStageError):
            await engine.force_transition(user.id, "SUPER_USER", "typo")

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, db, engine):
        with pytest.raises(UserNotFoundError):
            await engine.force_transition("missing-user", LifecycleStage.CHURNED, "cleanup")

    @pytest.mark.asyncio
    async def test_forced_stage_does_not_replay_consumed_events(self, db, engine, make_user, add_event):
        user = await make_user()
        await add_event(user.id, LifecycleEvent.USER_REGISTERED)
        await engine.evaluate(user.id)

        await engine.force_transition(user.id, LifecycleStage.REGISTERED, "reset")

        # USER_REGISTERED was already consumed by the automatic transition
        assert await engine.evaluate(user.id) is None
