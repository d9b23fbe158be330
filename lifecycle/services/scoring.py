"""
Scoring Engine - engagement/risk scores, streaks and the prediction heuristics.

Everything here is a pure function of a UserFacts value; FactsLoader does the
I/O. Scores are integers in [0, 100]. The predictions are simple heuristics,
not statistical models.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lifecycle.fsm.rules import (
    DEFAULT_CONFIG,
    EngagementWeights,
    RiskFactorDefinition,
    RiskWeights,
    STAGE_TIMELINE_DAYS,
)
from lifecycle.fsm.states import LifecycleStage
from lifecycle.schemas.lifecycle import LifetimeValuePrediction, RiskFactor
from lifecycle.timeutils import whole_days_between

# Days used when a user has never logged in.
NEVER_LOGGED_IN_DAYS = 999


@dataclass(frozen=True)
class StreakInfo:
    current: int = 0
    longest: int = 0


@dataclass
class UserFacts:
    """Everything known about one user at ``now``, loaded in bulk by FactsLoader."""

    user_id: str
    created_at: datetime
    now: datetime
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False
    position_level: Optional[str] = None
    tasks_per_day: Optional[int] = None
    total_earnings: float = 0
    wallet_balance: float = 0
    referred_by_id: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None

    event_counts: Dict[str, int] = field(default_factory=dict)
    task_days: List[date] = field(default_factory=list)
    total_video_tasks: int = 0
    tasks_last_7_days: int = 0
    tasks_last_30_days: int = 0
    login_count: int = 0
    logins_last_30_days: int = 0
    logins_last_14_days: int = 0
    logins_prev_14_days: int = 0
    earnings_last_30_days: float = 0
    earnings_prev_30_days: float = 0
    total_referrals: int = 0
    total_deposits: float = 0
    total_withdrawals: float = 0

    first_login_at: Optional[datetime] = None
    first_task_at: Optional[datetime] = None
    first_earning_at: Optional[datetime] = None
    first_referral_at: Optional[datetime] = None
    reactivated_at: Optional[datetime] = None

    streaks: StreakInfo = field(default_factory=StreakInfo)

    @property
    def days_since_registration(self) -> int:
        return max(whole_days_between(self.created_at, self.now), 0)

    @property
    def days_since_last_login(self) -> Optional[int]:
        if self.last_login_at is None:
            return None
        return max(whole_days_between(self.last_login_at, self.now), 0)

    @property
    def days_since_last_activity(self) -> int:
        """Days since last login; registration when the user never logged in."""
        days = self.days_since_last_login
        return self.days_since_registration if days is None else days

    @property
    def days_since_reactivation(self) -> Optional[int]:
        if self.reactivated_at is None:
            return None
        return max(whole_days_between(self.reactivated_at, self.now), 0)

    @property
    def lifetime_value(self) -> float:
        return float(self.total_earnings or 0)

    def user_snapshot(self) -> Dict[str, Any]:
        """User record as seen by USER_PROPERTY and TIME_BASED conditions."""
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "email_verified": self.email_verified,
            "phone_verified": self.phone_verified,
            "position_level": self.position_level,
            "tasks_per_day": self.tasks_per_day,
            "total_earnings": self.total_earnings,
            "wallet_balance": self.wallet_balance,
            "referred_by_id": self.referred_by_id,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }

    def calculated_metrics(self, engagement_score: int) -> Dict[str, float]:
        return {
            "total_video_tasks": self.total_video_tasks,
            "total_referrals": self.total_referrals,
            "total_earnings": self.lifetime_value,
            "engagement_score": engagement_score,
        }


def _finite(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


def _clamp_score(score: float) -> int:
    return int(max(0, min(100, round(_finite(score)))))


def calculate_engagement_score(facts: UserFacts, weights: Optional[EngagementWeights] = None) -> int:
    """Weighted recent-activity score in [0, 100]."""
    weights = weights or DEFAULT_CONFIG.engagement_weights

    daily_task_completion = min(_finite(facts.tasks_last_30_days) / 30 * 100, 100)
    login_frequency = min(_finite(facts.logins_last_30_days) / 30 * 100, 100)
    earnings = _finite(facts.total_earnings)
    earnings_growth = min(earnings / 10, 100) if earnings > 0 else 0
    referral_activity = min(_finite(facts.total_referrals) * 10, 100)
    consistency_bonus = min(_finite(facts.streaks.current) * 5, 50)

    score = (
        daily_task_completion * weights.daily_task_completion
        + login_frequency * weights.login_frequency
        + earnings_growth * weights.earnings_growth
        + referral_activity * weights.referral_activity
        + consistency_bonus * weights.consistency_bonus
    )
    return _clamp_score(score)


def expected_weekly_tasks(facts: UserFacts, default_daily_target: int = 1) -> int:
    per_day = facts.tasks_per_day if facts.tasks_per_day and facts.tasks_per_day > 0 else default_daily_target
    return max(per_day * 7, 1)


def calculate_risk_score(
    facts: UserFacts,
    weights: Optional[RiskWeights] = None,
    default_daily_target: int = 1,
) -> int:
    """Weighted disengagement score in [0, 100]."""
    weights = weights or DEFAULT_CONFIG.risk_weights

    days = facts.days_since_last_login
    days = NEVER_LOGGED_IN_DAYS if days is None else days
    inactivity_penalty = min(_finite(days) / 30 * 100, 100)

    expected = expected_weekly_tasks(facts, default_daily_target)
    missed_tasks_penalty = max(0.0, (expected - _finite(facts.tasks_last_7_days)) / expected) * 100

    balance = _finite(facts.wallet_balance)
    negative_balance_penalty = min(abs(balance), 100) if balance < 0 else 0

    score = (
        inactivity_penalty * weights.inactivity
        + missed_tasks_penalty * weights.missed_tasks
        + negative_balance_penalty * weights.negative_balance
    )
    return _clamp_score(score)


def calculate_streaks(task_days: Iterable[date], today: date) -> StreakInfo:
    """
    Longest run of consecutive calendar days with a task, and the run ending
    today or yesterday (one day of grace), else 0.
    """
    days = sorted(set(task_days))
    if not days:
        return StreakInfo()

    longest = run = 1
    for previous, current in zip(days, days[1:]):
        if (current - previous).days == 1:
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    current_streak = 0
    if days[-1] >= today - timedelta(days=1) and days[-1] <= today:
        current_streak = 1
        for index in range(len(days) - 1, 0, -1):
            if (days[index] - days[index - 1]).days == 1:
                current_streak += 1
            else:
                break

    return StreakInfo(current=current_streak, longest=longest)


def churn_probability(days_since_last_login: Optional[int]) -> float:
    days = NEVER_LOGGED_IN_DAYS if days_since_last_login is None else days_since_last_login
    if days > 30:
        return 0.9
    if days > 14:
        return 0.7
    if days > 7:
        return 0.4
    if days > 3:
        return 0.2
    return 0.1


def predict_next_stage_timeline(stage: LifecycleStage, facts: UserFacts) -> Optional[int]:
    """Rough days until the next stage, or None when there is no estimate."""
    if stage == LifecycleStage.REGULAR_USER:
        return 7 if facts.total_video_tasks > 10 else 14
    return STAGE_TIMELINE_DAYS.get(stage)


def predict_lifetime_value(facts: UserFacts, horizon_days: int = 365) -> LifetimeValuePrediction:
    current = facts.lifetime_value
    daily_average = current / max(facts.days_since_registration, 1)
    predicted = max(daily_average * horizon_days, current * 1.5)
    return LifetimeValuePrediction(
        predicted_value=round(predicted, 2),
        confidence_low=round(predicted * 0.7, 2),
        confidence_high=round(predicted * 1.3, 2),
        time_horizon_days=horizon_days,
    )


def time_to_churn(probability: float) -> Optional[int]:
    if probability > 0.8:
        return 7
    if probability > 0.6:
        return 14
    if probability > 0.4:
        return 30
    return None


def _relative_change(recent: float, previous: float) -> float:
    """(recent - previous) / previous; 0 when there is no baseline."""
    if previous <= 0:
        return 0.0
    return (recent - previous) / previous


def risk_factor_values(facts: UserFacts, default_daily_target: int = 1) -> Dict[str, float]:
    days = facts.days_since_last_login
    expected = expected_weekly_tasks(facts, default_daily_target)
    return {
        "INACTIVITY": float(NEVER_LOGGED_IN_DAYS if days is None else days),
        "MISSED_TASKS": max(0.0, (expected - facts.tasks_last_7_days) / expected),
        "DECLINING_EARNINGS": _relative_change(facts.earnings_last_30_days, facts.earnings_prev_30_days),
        "REDUCED_LOGIN_FREQUENCY": _relative_change(facts.logins_last_14_days, facts.logins_prev_14_days),
        "NEGATIVE_BALANCE": _finite(facts.wallet_balance),
    }


def assess_risk_factors(
    facts: UserFacts,
    definitions: Tuple[RiskFactorDefinition, ...] = DEFAULT_CONFIG.risk_factors,
    default_daily_target: int = 1,
) -> List[RiskFactor]:
    """Triggered risk factors with their severity, in definition order."""
    values = risk_factor_values(facts, default_daily_target)
    factors = []
    for definition in definitions:
        value = values.get(definition.key)
        if value is None:
            continue
        severity = definition.severity(value)
        if severity is None:
            continue
        factors.append(RiskFactor(
            key=definition.key,
            name=definition.name,
            description=definition.description,
            value=round(value, 4),
            severity=severity,
            weight=definition.weight,
        ))
    return factors
