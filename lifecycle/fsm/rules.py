"""
Lifecycle configuration.

Stage transition rules, segment rules, scoring weights, thresholds, milestone
and risk-factor definitions. Declaration order is significant for both rule
lists: stage rules are tried by ascending priority and segment rules in the
order written here, first match wins. Reordering either list changes results.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from lifecycle.fsm.conditions import Condition
from lifecycle.fsm.states import (
    STAGE_TRANSITION_ACTIVITY,
    ConditionOperator as Op,
    ConditionType as CT,
    LifecycleEvent,
    LifecycleStage as Stage,
    MilestoneCategory,
    UserSegment,
)


@dataclass(frozen=True)
class StageTransitionRule:
    """Move from ``from_stage`` (None = any) to ``to_stage`` when all conditions hold."""

    from_stage: Optional[Stage]
    to_stage: Stage
    conditions: Tuple[Condition, ...]
    priority: int

    def applies_to(self, stage: Optional[Stage]) -> bool:
        return self.from_stage is None or self.from_stage == stage


@dataclass(frozen=True)
class SegmentRule:
    """Constraints a user must satisfy to fall in ``segment``. None = unconstrained."""

    segment: UserSegment
    stages: Optional[Tuple[Stage, ...]] = None
    max_days_from_registration: Optional[int] = None
    max_days_from_last_activity: Optional[int] = None
    min_engagement_score: Optional[int] = None
    max_engagement_score: Optional[int] = None
    min_lifetime_value: Optional[float] = None
    min_referrals: Optional[int] = None
    min_video_tasks: Optional[int] = None
    min_risk_score: Optional[int] = None
    max_days_from_reactivation: Optional[int] = None


@dataclass(frozen=True)
class EngagementWeights:
    daily_task_completion: float = 0.35
    login_frequency: float = 0.15
    earnings_growth: float = 0.15
    referral_activity: float = 0.15
    consistency_bonus: float = 0.20

    def __post_init__(self):
        total = (
            self.daily_task_completion
            + self.login_frequency
            + self.earnings_growth
            + self.referral_activity
            + self.consistency_bonus
        )
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"Engagement weights must sum to 1.0, got {total}")


@dataclass(frozen=True)
class RiskWeights:
    inactivity: float = 0.35
    missed_tasks: float = 0.2
    negative_balance: float = 0.1


@dataclass(frozen=True)
class ScoreBands:
    high: int
    medium: int
    low: int


@dataclass(frozen=True)
class InactivityThresholds:
    """Days without login before a user counts as at risk / inactive / churned."""

    at_risk: int = 7
    inactive: int = 14
    churned: int = 30


@dataclass(frozen=True)
class MilestoneDefinition:
    category: MilestoneCategory
    threshold: float
    event: LifecycleEvent
    name: str
    description: str

    @property
    def milestone_id(self) -> str:
        return f"{self.category.value.lower()}_{int(self.threshold)}"


@dataclass(frozen=True)
class RiskFactorDefinition:
    """Severity thresholds are compared with >= (or <= when ``descending``)."""

    key: str
    name: str
    description: str
    weight: float
    low: float
    medium: float
    high: float
    descending: bool = False

    def severity(self, value: float) -> Optional[str]:
        reached = (lambda t: value <= t) if self.descending else (lambda t: value >= t)
        if reached(self.high):
            return "high"
        if reached(self.medium):
            return "medium"
        if reached(self.low):
            return "low"
        return None


def _rule(from_stage, to_stage, priority, *conditions) -> StageTransitionRule:
    return StageTransitionRule(from_stage, to_stage, tuple(conditions), priority)


def _count(event, operator, value, window=None) -> Condition:
    name = event.value if isinstance(event, LifecycleEvent) else event
    return Condition(CT.EVENT_COUNT, name, operator, value, window)


DEFAULT_STAGE_RULES: Tuple[StageTransitionRule, ...] = (
    # Null start: only fires while no transition has been recorded.
    _rule(None, Stage.REGISTERED, 1,
          _count(LifecycleEvent.USER_REGISTERED, Op.GREATER_THAN, 0),
          _count(STAGE_TRANSITION_ACTIVITY, Op.EQUALS, 0)),
    _rule(Stage.REGISTERED, Stage.PROFILE_INCOMPLETE, 2,
          Condition(CT.USER_PROPERTY, "name", Op.NOT_EXISTS)),
    _rule(Stage.PROFILE_INCOMPLETE, Stage.PROFILE_COMPLETE, 3,
          Condition(CT.USER_PROPERTY, "name", Op.EXISTS),
          Condition(CT.USER_PROPERTY, "email_verified", Op.EQUALS, True)),
    _rule(Stage.PROFILE_COMPLETE, Stage.FIRST_LOGIN, 4,
          _count(LifecycleEvent.FIRST_LOGIN, Op.GREATER_THAN, 0)),
    _rule(Stage.FIRST_LOGIN, Stage.ONBOARDING_STARTED, 5,
          Condition(CT.TIME_BASED, "last_login_at", Op.LESS_THAN, 1)),
    _rule(Stage.ONBOARDING_STARTED, Stage.ONBOARDING_COMPLETED, 6,
          _count(LifecycleEvent.BANK_CARD_ADDED, Op.GREATER_THAN, 0)),
    _rule(Stage.ONBOARDING_COMPLETED, Stage.FIRST_VIDEO_TASK, 7,
          _count(LifecycleEvent.FIRST_VIDEO_WATCHED, Op.GREATER_THAN, 0)),
    _rule(Stage.FIRST_VIDEO_TASK, Stage.FIRST_EARNING, 8,
          _count(LifecycleEvent.FIRST_EARNING, Op.GREATER_THAN, 0)),
    _rule(Stage.FIRST_EARNING, Stage.REGULAR_USER, 9,
          Condition(CT.CALCULATED_METRIC, "total_video_tasks", Op.GREATER_EQUAL, 5),
          Condition(CT.TIME_BASED, "created_at", Op.GREATER_THAN, 3)),
    _rule(Stage.REGULAR_USER, Stage.POSITION_UPGRADED, 10,
          _count(LifecycleEvent.POSITION_UPGRADED, Op.GREATER_THAN, 0)),
    _rule(Stage.REGULAR_USER, Stage.FIRST_REFERRAL, 11,
          _count(LifecycleEvent.FIRST_REFERRAL, Op.GREATER_THAN, 0)),
    _rule(Stage.FIRST_REFERRAL, Stage.ACTIVE_REFERRER, 12,
          Condition(CT.CALCULATED_METRIC, "total_referrals", Op.GREATER_EQUAL, 5)),
    _rule(Stage.REGULAR_USER, Stage.HIGHLY_ENGAGED, 13,
          Condition(CT.CALCULATED_METRIC, "engagement_score", Op.GREATER_EQUAL, 80)),
    _rule(Stage.REGULAR_USER, Stage.MODERATELY_ENGAGED, 14,
          Condition(CT.CALCULATED_METRIC, "engagement_score", Op.GREATER_EQUAL, 50)),
    _rule(Stage.REGULAR_USER, Stage.AT_RISK, 15,
          Condition(CT.TIME_BASED, "last_login_at", Op.GREATER_THAN, 7)),
    _rule(Stage.AT_RISK, Stage.INACTIVE, 16,
          Condition(CT.TIME_BASED, "last_login_at", Op.GREATER_THAN, 14)),
    _rule(Stage.INACTIVE, Stage.CHURNED, 17,
          Condition(CT.TIME_BASED, "last_login_at", Op.GREATER_THAN, 30)),
    _rule(Stage.CHURNED, Stage.REACTIVATED, 18,
          _count(LifecycleEvent.RETURNED_AFTER_INACTIVITY, Op.GREATER_THAN, 0)),
    _rule(Stage.HIGHLY_ENGAGED, Stage.VIP_USER, 19,
          Condition(CT.CALCULATED_METRIC, "total_earnings", Op.GREATER_EQUAL, 10000),
          Condition(CT.CALCULATED_METRIC, "total_referrals", Op.GREATER_EQUAL, 10)),
)


SEGMENT_RULES: Tuple[SegmentRule, ...] = (
    SegmentRule(
        UserSegment.NEW_USERS,
        stages=(Stage.REGISTERED, Stage.PROFILE_INCOMPLETE, Stage.PROFILE_COMPLETE, Stage.FIRST_LOGIN),
        max_days_from_registration=7,
    ),
    SegmentRule(
        UserSegment.ACTIVE_USERS,
        stages=(Stage.REGULAR_USER, Stage.MODERATELY_ENGAGED, Stage.HIGHLY_ENGAGED),
        max_days_from_last_activity=7,
    ),
    SegmentRule(
        UserSegment.POWER_USERS,
        stages=(Stage.HIGHLY_ENGAGED, Stage.VIP_USER),
        min_engagement_score=80,
    ),
    SegmentRule(
        UserSegment.AT_RISK_USERS,
        stages=(Stage.AT_RISK, Stage.LOW_ENGAGEMENT),
        min_risk_score=50,
    ),
    SegmentRule(
        UserSegment.CHURNED_USERS,
        stages=(Stage.INACTIVE, Stage.CHURNED),
        max_days_from_last_activity=30,
    ),
    SegmentRule(
        UserSegment.HIGH_VALUE_USERS,
        stages=(Stage.POSITION_UPGRADED, Stage.HIGHLY_ENGAGED, Stage.VIP_USER),
        min_lifetime_value=5000,
    ),
    SegmentRule(
        UserSegment.REFERRAL_CHAMPIONS,
        stages=(Stage.ACTIVE_REFERRER,),
        min_referrals=10,
    ),
    SegmentRule(
        UserSegment.TASK_COMPLETERS,
        stages=(Stage.REGULAR_USER, Stage.MODERATELY_ENGAGED, Stage.HIGHLY_ENGAGED),
        min_video_tasks=50,
    ),
    SegmentRule(
        UserSegment.LOW_ENGAGEMENT,
        stages=(Stage.LOW_ENGAGEMENT,),
        max_engagement_score=25,
    ),
    SegmentRule(
        UserSegment.REACTIVATED_USERS,
        stages=(Stage.REACTIVATED,),
        max_days_from_reactivation=30,
    ),
)

DEFAULT_SEGMENT = UserSegment.ACTIVE_USERS


MILESTONE_THRESHOLDS: Dict[MilestoneCategory, Tuple[float, ...]] = {
    MilestoneCategory.EARNINGS: (100, 500, 1000, 5000, 10000, 50000, 100000),
    MilestoneCategory.TASKS: (1, 10, 50, 100, 500, 1000, 5000),
    MilestoneCategory.REFERRALS: (1, 5, 10, 25, 50, 100, 500),
    MilestoneCategory.STREAK: (7, 14, 30, 60, 100),
    MilestoneCategory.ENGAGEMENT: (80,),
}

MILESTONE_EVENTS: Dict[MilestoneCategory, LifecycleEvent] = {
    MilestoneCategory.EARNINGS: LifecycleEvent.MILESTONE_EARNING,
    MilestoneCategory.TASKS: LifecycleEvent.TASK_MILESTONE,
    MilestoneCategory.REFERRALS: LifecycleEvent.REFERRAL_MILESTONE,
    MilestoneCategory.STREAK: LifecycleEvent.STREAK_MILESTONE,
    MilestoneCategory.ENGAGEMENT: LifecycleEvent.ENGAGEMENT_MILESTONE,
}

# Named milestones; thresholds without a name get a generated one.
_MILESTONE_NAMES: Dict[Tuple[MilestoneCategory, float], Tuple[str, str]] = {
    (MilestoneCategory.EARNINGS, 100): ("Century Club", "Earned 100 in total rewards"),
    (MilestoneCategory.EARNINGS, 1000): ("High Roller", "Earned 1,000 in total rewards"),
    (MilestoneCategory.EARNINGS, 10000): ("Elite Earner", "Earned 10,000 in total rewards"),
    (MilestoneCategory.TASKS, 1): ("Getting Started", "Completed your first video task"),
    (MilestoneCategory.TASKS, 100): ("Task Master", "Completed 100 video tasks"),
    (MilestoneCategory.TASKS, 1000): ("Video Veteran", "Completed 1,000 video tasks"),
    (MilestoneCategory.REFERRALS, 1): ("First Referral", "Referred your first friend"),
    (MilestoneCategory.REFERRALS, 10): ("Network Builder", "Referred 10 friends"),
    (MilestoneCategory.REFERRALS, 50): ("Referral Champion", "Referred 50 friends"),
    (MilestoneCategory.STREAK, 7): ("Week Warrior", "Completed tasks 7 days in a row"),
    (MilestoneCategory.STREAK, 30): ("Month Master", "Completed tasks 30 days in a row"),
    (MilestoneCategory.ENGAGEMENT, 80): ("Highly Engaged", "Reached an engagement score of 80"),
}

_GENERATED_NAMES = {
    MilestoneCategory.EARNINGS: ("{n:,} Earned", "Earned {n:,} in total rewards"),
    MilestoneCategory.TASKS: ("{n:,} Tasks", "Completed {n:,} video tasks"),
    MilestoneCategory.REFERRALS: ("{n:,} Referrals", "Referred {n:,} friends"),
    MilestoneCategory.STREAK: ("{n}-Day Streak", "Completed tasks {n} days in a row"),
    MilestoneCategory.ENGAGEMENT: ("Engagement {n}", "Reached an engagement score of {n}"),
}


def _milestone_definitions() -> Tuple[MilestoneDefinition, ...]:
    definitions = []
    for category, thresholds in MILESTONE_THRESHOLDS.items():
        for threshold in thresholds:
            name, description = _MILESTONE_NAMES.get((category, threshold), (None, None))
            if name is None:
                name_fmt, desc_fmt = _GENERATED_NAMES[category]
                name = name_fmt.format(n=int(threshold))
                description = desc_fmt.format(n=int(threshold))
            definitions.append(MilestoneDefinition(
                category=category,
                threshold=threshold,
                event=MILESTONE_EVENTS[category],
                name=name,
                description=description,
            ))
    return tuple(definitions)


MILESTONE_DEFINITIONS = _milestone_definitions()


RISK_FACTORS: Tuple[RiskFactorDefinition, ...] = (
    RiskFactorDefinition(
        "INACTIVITY", "Inactivity", "User hasn't logged in recently",
        weight=0.35, low=3, medium=7, high=14,
    ),
    RiskFactorDefinition(
        "MISSED_TASKS", "Missed Tasks", "User is missing daily task targets",
        weight=0.2, low=0.1, medium=0.3, high=0.5,
    ),
    RiskFactorDefinition(
        "DECLINING_EARNINGS", "Declining Earnings", "User's earnings are decreasing over time",
        weight=0.15, low=-0.1, medium=-0.3, high=-0.5, descending=True,
    ),
    RiskFactorDefinition(
        "REDUCED_LOGIN_FREQUENCY", "Reduced Login Frequency", "User is logging in less frequently",
        weight=0.15, low=-0.2, medium=-0.5, high=-0.8, descending=True,
    ),
    RiskFactorDefinition(
        "NEGATIVE_BALANCE", "Negative Balance", "User has a negative wallet balance",
        weight=0.1, low=-10, medium=-100, high=-500, descending=True,
    ),
)

# Recommended action per risk factor, used by churn prediction.
RISK_FACTOR_ACTIONS: Dict[str, str] = {
    "INACTIVITY": "Send a personalised re-engagement message",
    "MISSED_TASKS": "Remind the user of today's task target",
    "DECLINING_EARNINGS": "Highlight higher-reward tasks available at their level",
    "REDUCED_LOGIN_FREQUENCY": "Schedule a login streak incentive",
    "NEGATIVE_BALANCE": "Contact the user about their wallet balance",
}

# Expected days until the next stage, by current stage.
STAGE_TIMELINE_DAYS: Dict[Stage, int] = {
    Stage.REGISTERED: 1,
    Stage.PROFILE_INCOMPLETE: 2,
    Stage.PROFILE_COMPLETE: 1,
    Stage.FIRST_LOGIN: 3,
    Stage.FIRST_VIDEO_TASK: 5,
}

# Why users stall at a stage and what to do about it (report drop-off points).
DROP_OFF_GUIDANCE: Dict[Stage, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    Stage.REGISTERED: (
        ("Profile form too long", "No clear next step after sign-up"),
        ("Send a welcome message with a profile checklist",),
    ),
    Stage.PROFILE_INCOMPLETE: (
        ("Email not verified", "Missing profile name"),
        ("Resend verification email", "Prompt for missing profile fields"),
    ),
    Stage.PROFILE_COMPLETE: (
        ("User never returned to log in",),
        ("Send a first-login reminder",),
    ),
    Stage.FIRST_LOGIN: (
        ("Onboarding not started",),
        ("Guide the user into onboarding on login",),
    ),
    Stage.ONBOARDING_STARTED: (
        ("Bank card step abandoned",),
        ("Explain why a bank card is needed", "Simplify card entry"),
    ),
    Stage.ONBOARDING_COMPLETED: (
        ("First video task not attempted",),
        ("Recommend a short first video",),
    ),
    Stage.FIRST_VIDEO_TASK: (
        ("Reward not yet credited",),
        ("Confirm task verification and credit rewards promptly",),
    ),
    Stage.FIRST_EARNING: (
        ("Too few tasks completed to form a habit",),
        ("Introduce daily task goals", "Offer a streak bonus"),
    ),
    Stage.REGULAR_USER: (
        ("Engagement plateau", "Inactivity"),
        ("Offer position upgrades", "Invite the user to refer friends"),
    ),
    Stage.AT_RISK: (
        ("No login for over a week",),
        ("Send an inactivity reminder",),
    ),
    Stage.INACTIVE: (
        ("No login for over two weeks",),
        ("Launch a win-back campaign",),
    ),
}

DEFAULT_DROP_OFF_GUIDANCE: Tuple[Tuple[str, ...], Tuple[str, ...]] = (
    ("Unclear value at this stage",),
    ("Review the experience around this stage",),
)


@dataclass(frozen=True)
class LifecycleConfig:
    """The single configuration value every lifecycle service receives."""

    stage_rules: Tuple[StageTransitionRule, ...] = DEFAULT_STAGE_RULES
    segment_rules: Tuple[SegmentRule, ...] = SEGMENT_RULES
    default_segment: UserSegment = DEFAULT_SEGMENT
    engagement_weights: EngagementWeights = field(default_factory=EngagementWeights)
    risk_weights: RiskWeights = field(default_factory=RiskWeights)
    engagement_bands: ScoreBands = ScoreBands(high=80, medium=50, low=25)
    risk_bands: ScoreBands = ScoreBands(high=75, medium=50, low=25)
    inactivity: InactivityThresholds = field(default_factory=InactivityThresholds)
    milestones: Tuple[MilestoneDefinition, ...] = MILESTONE_DEFINITIONS
    risk_factors: Tuple[RiskFactorDefinition, ...] = RISK_FACTORS
    default_daily_task_target: int = 1
    cohort_offsets: Tuple[int, ...] = (1, 3, 7, 14, 30, 60, 90)

    def sorted_stage_rules(self) -> Tuple[StageTransitionRule, ...]:
        return tuple(sorted(self.stage_rules, key=lambda rule: rule.priority))


DEFAULT_CONFIG = LifecycleConfig()
