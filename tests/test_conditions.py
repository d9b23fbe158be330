"""
Tests for the rule condition interpreter and stage machine.
"""

from datetime import timedelta

import pytest

from lifecycle.fsm.conditions import (
    Condition,
    EvaluationContext,
    compare,
    evaluate_condition,
    resolve_path,
)
from lifecycle.fsm.machine import StageMachine
from lifecycle.fsm.rules import DEFAULT_STAGE_RULES
from lifecycle.fsm.states import (
    STAGE_TRANSITION_ACTIVITY,
    ConditionOperator as Op,
    ConditionType as CT,
    LifecycleStage,
)

from conftest import NOW


def _ctx(user=None, counts=None, metrics=None):
    return EvaluationContext.build(
        user=user or {},
        event_counts=counts or {},
        metrics=metrics or {
            "total_video_tasks": 0,
            "total_referrals": 0,
            "total_earnings": 0,
            "engagement_score": 0,
        },
        now=NOW,
    )


class TestCompare:
    """Tests for operator semantics."""

    def test_ordering(self):
        assert compare(Op.GREATER_THAN, 5, 3)
        assert compare(Op.LESS_EQUAL, 3, 3)
        assert not compare(Op.LESS_THAN, 3, 3)

    def test_membership(self):
        assert compare(Op.IN, "L1", ["L1", "L2"])
        assert compare(Op.NOT_IN, "L3", ["L1", "L2"])

    def test_ordering_against_none_raises(self):
        with pytest.raises(TypeError):
            compare(Op.GREATER_THAN, None, 3)

    def test_in_against_scalar_raises(self):
        with pytest.raises(TypeError):
            compare(Op.IN, "a", "abc")


class TestEvaluateCondition:
    """Tests for the four condition types."""

    def test_user_property_dotted_path(self):
        user = {"profile": {"address": {"city": "Pune"}}}
        assert resolve_path(user, "profile.address.city") == "Pune"
        assert resolve_path(user, "profile.phone.number") is None

        condition = Condition(CT.USER_PROPERTY, "profile.address.city", Op.EQUALS, "Pune")
        assert evaluate_condition(condition, _ctx(user=user))

    def test_exists_and_not_exists(self):
        assert evaluate_condition(Condition(CT.USER_PROPERTY, "name", Op.NOT_EXISTS), _ctx(user={}))
        assert evaluate_condition(Condition(CT.USER_PROPERTY, "name", Op.EXISTS), _ctx(user={"name": "A"}))

    def test_event_count_with_window(self):
        condition = Condition(CT.EVENT_COUNT, "LOGIN", Op.GREATER_EQUAL, 3, time_window_days=7)
        assert evaluate_condition(condition, _ctx(counts={("LOGIN", 7): 3}))
        assert not evaluate_condition(condition, _ctx(counts={("LOGIN", 7): 2}))

    def test_missing_count_is_false(self):
        condition = Condition(CT.EVENT_COUNT, "LOGIN", Op.GREATER_THAN, 0)
        assert evaluate_condition(condition, _ctx()) is False

    def test_time_based_whole_days(self):
        condition = Condition(CT.TIME_BASED, "last_login_at", Op.GREATER_THAN, 7)
        seven_and_a_half = NOW - timedelta(days=7, hours=12)
        eight = NOW - timedelta(days=8)
        assert not evaluate_condition(condition, _ctx(user={"last_login_at": seven_and_a_half}))
        assert evaluate_condition(condition, _ctx(user={"last_login_at": eight}))

    def test_time_based_missing_timestamp(self):
        condition = Condition(CT.TIME_BASED, "last_login_at", Op.GREATER_THAN, 7)
        assert evaluate_condition(condition, _ctx(user={})) is False
        missing = Condition(CT.TIME_BASED, "last_login_at", Op.NOT_EXISTS)
        assert evaluate_condition(missing, _ctx(user={}))

    def test_time_based_iso_string(self):
        condition = Condition(CT.TIME_BASED, "created_at", Op.GREATER_THAN, 3)
        user = {"created_at": (NOW - timedelta(days=5)).isoformat()}
        assert evaluate_condition(condition, _ctx(user=user))

    def test_unknown_metric_is_false(self):
        condition = Condition(CT.CALCULATED_METRIC, "karma", Op.GREATER_THAN, 1)
        assert evaluate_condition(condition, _ctx()) is False

    def test_type_mismatch_is_false(self):
        condition = Condition(CT.USER_PROPERTY, "name", Op.GREATER_THAN, 3)
        assert evaluate_condition(condition, _ctx(user={"name": "Asha"})) is False


class TestStageMachine:
    """Tests for rule selection."""

    def test_null_start_needs_registration_and_no_transition(self):
        machine = StageMachine()
        ctx = _ctx(counts={("USER_REGISTERED", None): 1, (STAGE_TRANSITION_ACTIVITY, None): 0})
        rule = machine.next_stage(None, ctx)
        assert rule.to_stage == LifecycleStage.REGISTERED

        ctx = _ctx(counts={("USER_REGISTERED", None): 0, (STAGE_TRANSITION_ACTIVITY, None): 0})
        assert machine.next_stage(None, ctx) is None

    def test_priority_order_wins(self):
        machine = StageMachine()
        metrics = {
            "total_video_tasks": 10,
            "total_referrals": 0,
            "total_earnings": 0,
            "engagement_score": 90,
        }
        counts = {
            ("POSITION_UPGRADED", None): 1,
            ("FIRST_REFERRAL", None): 1,
            (STAGE_TRANSITION_ACTIVITY, None): 5,
            ("USER_REGISTERED", None): 1,
        }
        rule = machine.next_stage(LifecycleStage.REGULAR_USER, _ctx(counts=counts, metrics=metrics))
        assert rule.to_stage == LifecycleStage.POSITION_UPGRADED

    def test_required_counts_cover_candidate_rules(self):
        keys = StageMachine().required_event_counts(LifecycleStage.ONBOARDING_STARTED)
        assert ("BANK_CARD_ADDED", None) in keys
        assert ("USER_REGISTERED", None) in keys

    def test_no_chaining(self):
        """A user eligible for several steps only moves one."""
        machine = StageMachine()
        ctx = _ctx(
            user={"name": None, "email_verified": True},
            counts={("USER_REGISTERED", None): 1, (STAGE_TRANSITION_ACTIVITY, None): 1},
        )
        rule = machine.next_stage(LifecycleStage.REGISTERED, ctx)
        assert rule.to_stage == LifecycleStage.PROFILE_INCOMPLETE

    def test_time_dependent_stages(self):
        machine = StageMachine()
        for stage in (
            LifecycleStage.FIRST_LOGIN,
            LifecycleStage.FIRST_EARNING,
            LifecycleStage.REGULAR_USER,
            LifecycleStage.AT_RISK,
            LifecycleStage.INACTIVE,
        ):
            assert machine.depends_on_time(stage) is True
        assert machine.depends_on_time(None) is False
        assert machine.depends_on_time(LifecycleStage.REGISTERED) is False
        assert machine.depends_on_time(LifecycleStage.CHURNED) is False


def test_stage_rule_order_is_pinned():
    """Reordering the stage rules changes which rule wins; update this list deliberately."""
    S = LifecycleStage
    assert [(rule.priority, rule.from_stage, rule.to_stage) for rule in DEFAULT_STAGE_RULES] == [
        (1, None, S.REGISTERED),
        (2, S.REGISTERED, S.PROFILE_INCOMPLETE),
        (3, S.PROFILE_INCOMPLETE, S.PROFILE_COMPLETE),
        (4, S.PROFILE_COMPLETE, S.FIRST_LOGIN),
        (5, S.FIRST_LOGIN, S.ONBOARDING_STARTED),
        (6, S.ONBOARDING_STARTED, S.ONBOARDING_COMPLETED),
        (7, S.ONBOARDING_COMPLETED, S.FIRST_VIDEO_TASK),
        (8, S.FIRST_VIDEO_TASK, S.FIRST_EARNING),
        (9, S.FIRST_EARNING, S.REGULAR_USER),
        (10, S.REGULAR_USER, S.POSITION_UPGRADED),
        (11, S.REGULAR_USER, S.FIRST_REFERRAL),
        (12, S.FIRST_REFERRAL, S.ACTIVE_REFERRER),
        (13, S.REGULAR_USER, S.HIGHLY_ENGAGED),
        (14, S.REGULAR_USER, S.MODERATELY_ENGAGED),
        (15, S.REGULAR_USER, S.AT_RISK),
        (16, S.AT_RISK, S.INACTIVE),
        (17, S.INACTIVE, S.CHURNED),
        (18, S.CHURNED, S.REACTIVATED),
        (19, S.HIGHLY_ENGAGED, S.VIP_USER),
    ]
