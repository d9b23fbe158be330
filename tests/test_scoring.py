"""
Tests for scores, streaks and prediction heuristics.
"""

from datetime import date, timedelta

import pytest

from lifecycle.fsm.rules import EngagementWeights
from lifecycle.services.scoring import (
    StreakInfo,
    UserFacts,
    assess_risk_factors,
    calculate_engagement_score,
    calculate_risk_score,
    calculate_streaks,
    churn_probability,
    predict_lifetime_value,
    time_to_churn,
)

from conftest import NOW


def _facts(**fields) -> UserFacts:
    fields.setdefault("created_at", NOW - timedelta(days=30))
    return UserFacts(user_id="u1", now=NOW, **fields)


class TestEngagementScore:
    """Tests for calculate_engagement_score."""

    def test_idle_user_scores_zero(self):
        assert calculate_engagement_score(_facts()) == 0

    def test_fully_engaged_user_hits_ceiling(self):
        facts = _facts(
            tasks_last_30_days=60,
            logins_last_30_days=45,
            total_earnings=5000,
            total_referrals=20,
            streaks=StreakInfo(current=30, longest=30),
        )
        # consistency bonus is capped at 50, so the ceiling is 90
        assert calculate_engagement_score(facts) == 90

    def test_weighted_components(self):
        facts = _facts(tasks_last_30_days=12, logins_last_30_days=30)
        # 40 * 0.35 + 100 * 0.15
        assert calculate_engagement_score(facts) == 29

    def test_garbage_inputs_do_not_break_the_range(self):
        facts = _facts(total_earnings=float("nan"), total_referrals=-5)
        score = calculate_engagement_score(facts)
        assert 0 <= score <= 100

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            EngagementWeights(daily_task_completion=0.5)


class TestRiskScore:
    """Tests for calculate_risk_score."""

    def test_never_logged_in_is_max_inactivity(self):
        # inactivity 100 * 0.35 + missed tasks 100 * 0.2
        assert calculate_risk_score(_facts()) == 55

    def test_active_user_is_low_risk(self):
        facts = _facts(last_login_at=NOW, tasks_last_7_days=7)
        assert calculate_risk_score(facts) == 0

    def test_negative_balance_adds_risk(self):
        base = _facts(last_login_at=NOW, tasks_last_7_days=7)
        negative = _facts(last_login_at=NOW, tasks_last_7_days=7, wallet_balance=-200)
        assert calculate_risk_score(negative) == calculate_risk_score(base) + 10


class TestStreaks:
    """Tests for calculate_streaks."""

    def test_empty(self):
        assert calculate_streaks([], date(2026, 3, 18)) == StreakInfo(0, 0)

    def test_current_streak_ending_today(self):
        today = date(2026, 3, 18)
        days = [today - timedelta(days=n) for n in range(4)]
        assert calculate_streaks(days, today) == StreakInfo(current=4, longest=4)

    def test_one_day_grace(self):
        today = date(2026, 3, 18)
        days = [today - timedelta(days=n) for n in (1, 2, 3)]
        assert calculate_streaks(days, today).current == 3

    def test_broken_streak_keeps_longest(self):
        today = date(2026, 3, 18)
        days = [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4), today]
        assert calculate_streaks(days, today) == StreakInfo(current=1, longest=4)

    def test_stale_streak_is_zero(self):
        today = date(2026, 3, 18)
        days = [today - timedelta(days=n) for n in (2, 3, 4)]
        assert calculate_streaks(days, today) == StreakInfo(current=0, longest=3)

    def test_duplicate_days_count_once(self):
        today = date(2026, 3, 18)
        assert calculate_streaks([today, today, today], today) == StreakInfo(1, 1)


class TestPredictions:
    """Tests for churn and lifetime value heuristics."""

    @pytest.mark.parametrize("days,expected", [
        (None, 0.9),
        (31, 0.9),
        (30, 0.7),
        (14, 0.4),
        (7, 0.2),
        (3, 0.1),
        (0, 0.1),
    ])
    def test_churn_probability(self, days, expected):
        assert churn_probability(days) == expected

    def test_time_to_churn(self):
        assert time_to_churn(0.9) == 7
        assert time_to_churn(0.7) == 14
        assert time_to_churn(0.1) is None

    def test_lifetime_value_bounds(self):
        prediction = predict_lifetime_value(_facts(total_earnings=300))
        # 10 per day over 365 days beats 1.5x current
        assert prediction.predicted_value == 3650
        assert prediction.confidence_low == pytest.approx(2555)
        assert prediction.confidence_high == pytest.approx(4745)

    def test_lifetime_value_floor(self):
        facts = _facts(total_earnings=100, created_at=NOW - timedelta(days=1000))
        assert predict_lifetime_value(facts).predicted_value == 150


class TestRiskFactors:
    """Tests for assess_risk_factors."""

    def test_inactive_user_factors(self):
        facts = _facts(
            last_login_at=NOW - timedelta(days=10),
            earnings_last_30_days=20,
            earnings_prev_30_days=100,
        )
        factors = {factor.key: factor for factor in assess_risk_factors(facts)}
        assert factors["INACTIVITY"].severity == "medium"
        assert factors["MISSED_TASKS"].severity == "high"
        assert factors["DECLINING_EARNINGS"].severity == "high"
        assert "NEGATIVE_BALANCE" not in factors

    def test_healthy_user_has_no_factors(self):
        facts = _facts(last_login_at=NOW, tasks_last_7_days=7)
        assert assess_risk_factors(facts) == []
