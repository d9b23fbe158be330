"""
Lifecycle state definitions.
Stages, events, segments and journey phases used across the lifecycle engine.
"""

from enum import Enum

# Activity value of the special event that records a stage change.
STAGE_TRANSITION_ACTIVITY = "STAGE_TRANSITION"


class JourneyPhase(str, Enum):
    """Higher-level grouping of lifecycle stages."""

    ACQUISITION = "ACQUISITION"
    ACTIVATION = "ACTIVATION"
    RETENTION = "RETENTION"
    REVENUE = "REVENUE"
    REFERRAL = "REFERRAL"
    REACTIVATION = "REACTIVATION"
    CHURN = "CHURN"


class LifecycleStage(str, Enum):
    """
    All lifecycle stages a user can be in.
    The current stage is never stored; it is the to_stage of the latest
    STAGE_TRANSITION event, REGISTERED when there is none.
    """

    # Initial stages
    REGISTERED = "REGISTERED"
    PROFILE_INCOMPLETE = "PROFILE_INCOMPLETE"
    PROFILE_COMPLETE = "PROFILE_COMPLETE"

    # Onboarding stages
    FIRST_LOGIN = "FIRST_LOGIN"
    ONBOARDING_STARTED = "ONBOARDING_STARTED"
    ONBOARDING_COMPLETED = "ONBOARDING_COMPLETED"

    # Engagement stages
    FIRST_VIDEO_TASK = "FIRST_VIDEO_TASK"
    FIRST_EARNING = "FIRST_EARNING"
    REGULAR_USER = "REGULAR_USER"

    # Growth stages
    POSITION_UPGRADED = "POSITION_UPGRADED"
    FIRST_REFERRAL = "FIRST_REFERRAL"
    ACTIVE_REFERRER = "ACTIVE_REFERRER"

    # Retention stages
    HIGHLY_ENGAGED = "HIGHLY_ENGAGED"
    MODERATELY_ENGAGED = "MODERATELY_ENGAGED"
    LOW_ENGAGEMENT = "LOW_ENGAGEMENT"

    # Risk stages
    AT_RISK = "AT_RISK"
    INACTIVE = "INACTIVE"
    CHURNED = "CHURNED"

    # Recovery stages
    REACTIVATED = "REACTIVATED"

    # Special stages
    VIP_USER = "VIP_USER"
    PROBLEM_USER = "PROBLEM_USER"

    @property
    def journey_phase(self) -> JourneyPhase:
        """Journey phase this stage belongs to."""
        return STAGE_JOURNEY_PHASES[self]

    @classmethod
    def parse(cls, value) -> "LifecycleStage":
        """Coerce a stored value to a stage; raises ValueError when unknown."""
        if isinstance(value, cls):
            return value
        return cls(value)


STAGE_JOURNEY_PHASES = {
    LifecycleStage.REGISTERED: JourneyPhase.ACQUISITION,
    LifecycleStage.PROFILE_INCOMPLETE: JourneyPhase.ACQUISITION,
    LifecycleStage.PROFILE_COMPLETE: JourneyPhase.ACQUISITION,
    LifecycleStage.FIRST_LOGIN: JourneyPhase.ACTIVATION,
    LifecycleStage.ONBOARDING_STARTED: JourneyPhase.ACTIVATION,
    LifecycleStage.ONBOARDING_COMPLETED: JourneyPhase.ACTIVATION,
    LifecycleStage.FIRST_VIDEO_TASK: JourneyPhase.ACTIVATION,
    LifecycleStage.FIRST_EARNING: JourneyPhase.REVENUE,
    LifecycleStage.REGULAR_USER: JourneyPhase.RETENTION,
    LifecycleStage.POSITION_UPGRADED: JourneyPhase.REVENUE,
    LifecycleStage.FIRST_REFERRAL: JourneyPhase.REFERRAL,
    LifecycleStage.ACTIVE_REFERRER: JourneyPhase.REFERRAL,
    LifecycleStage.HIGHLY_ENGAGED: JourneyPhase.RETENTION,
    LifecycleStage.MODERATELY_ENGAGED: JourneyPhase.RETENTION,
    LifecycleStage.LOW_ENGAGEMENT: JourneyPhase.RETENTION,
    LifecycleStage.AT_RISK: JourneyPhase.CHURN,
    LifecycleStage.INACTIVE: JourneyPhase.CHURN,
    LifecycleStage.CHURNED: JourneyPhase.CHURN,
    LifecycleStage.REACTIVATED: JourneyPhase.REACTIVATION,
    LifecycleStage.VIP_USER: JourneyPhase.RETENTION,
    LifecycleStage.PROBLEM_USER: JourneyPhase.CHURN,
}


class LifecycleEvent(str, Enum):
    """Events the tracker accepts."""

    # Registration events
    USER_REGISTERED = "USER_REGISTERED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PHONE_VERIFIED = "PHONE_VERIFIED"

    # Profile events
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PROFILE_COMPLETED = "PROFILE_COMPLETED"
    BANK_CARD_ADDED = "BANK_CARD_ADDED"

    # Authentication events
    FIRST_LOGIN = "FIRST_LOGIN"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"

    # Task events
    FIRST_VIDEO_WATCHED = "FIRST_VIDEO_WATCHED"
    VIDEO_TASK_COMPLETED = "VIDEO_TASK_COMPLETED"
    DAILY_TASK_GOAL_ACHIEVED = "DAILY_TASK_GOAL_ACHIEVED"
    WEEKLY_TASK_GOAL_ACHIEVED = "WEEKLY_TASK_GOAL_ACHIEVED"
    TASK_MILESTONE = "TASK_MILESTONE"

    # Financial events
    FIRST_EARNING = "FIRST_EARNING"
    EARNING_RECEIVED = "EARNING_RECEIVED"
    MILESTONE_EARNING = "MILESTONE_EARNING"
    FIRST_WITHDRAWAL = "FIRST_WITHDRAWAL"
    WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
    DEPOSIT_MADE = "DEPOSIT_MADE"

    # Position events
    POSITION_UPGRADED = "POSITION_UPGRADED"
    POSITION_DOWNGRADED = "POSITION_DOWNGRADED"
    INTERN_TO_PAID = "INTERN_TO_PAID"

    # Referral events
    FIRST_REFERRAL = "FIRST_REFERRAL"
    REFERRAL_MADE = "REFERRAL_MADE"
    REFERRAL_MILESTONE = "REFERRAL_MILESTONE"
    REFERRAL_REWARD_EARNED = "REFERRAL_REWARD_EARNED"

    # Engagement events
    STREAK_STARTED = "STREAK_STARTED"
    STREAK_BROKEN = "STREAK_BROKEN"
    STREAK_MILESTONE = "STREAK_MILESTONE"
    ENGAGEMENT_MILESTONE = "ENGAGEMENT_MILESTONE"

    # Risk events
    MISSED_DAILY_TARGET = "MISSED_DAILY_TARGET"
    LONG_INACTIVITY = "LONG_INACTIVITY"
    MULTIPLE_LOGIN_FAILURES = "MULTIPLE_LOGIN_FAILURES"

    # Recovery events
    RETURNED_AFTER_INACTIVITY = "RETURNED_AFTER_INACTIVITY"
    RE_ENGAGEMENT_CAMPAIGN_OPENED = "RE_ENGAGEMENT_CAMPAIGN_OPENED"

    # Administrative events
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_REACTIVATED = "ACCOUNT_REACTIVATED"
    MANUAL_BALANCE_ADJUSTMENT = "MANUAL_BALANCE_ADJUSTMENT"
    ADMIN_STAGE_OVERRIDE = "ADMIN_STAGE_OVERRIDE"

    @property
    def description(self) -> str:
        """Human-readable description stored with the event."""
        return EVENT_DESCRIPTIONS.get(self, f"User triggered event: {self.value}")

    @property
    def category(self) -> str:
        """Event family (registration, auth, task, ...)."""
        for category, events in EVENT_CATEGORIES.items():
            if self in events:
                return category
        return "other"


# Events that count as a completed video task.
TASK_EVENTS = (LifecycleEvent.FIRST_VIDEO_WATCHED, LifecycleEvent.VIDEO_TASK_COMPLETED)

# Events that count as a login.
LOGIN_EVENTS = (LifecycleEvent.FIRST_LOGIN, LifecycleEvent.LOGIN)

# Events that carry an earned amount.
EARNING_EVENTS = (LifecycleEvent.FIRST_EARNING, LifecycleEvent.EARNING_RECEIVED)

WITHDRAWAL_EVENTS = (LifecycleEvent.FIRST_WITHDRAWAL, LifecycleEvent.WITHDRAWAL_COMPLETED)

MILESTONE_EVENTS = (
    LifecycleEvent.MILESTONE_EARNING,
    LifecycleEvent.TASK_MILESTONE,
    LifecycleEvent.REFERRAL_MILESTONE,
    LifecycleEvent.STREAK_MILESTONE,
    LifecycleEvent.ENGAGEMENT_MILESTONE,
)

EVENT_CATEGORIES = {
    "registration": (
        LifecycleEvent.USER_REGISTERED,
        LifecycleEvent.EMAIL_VERIFIED,
        LifecycleEvent.PHONE_VERIFIED,
    ),
    "profile": (
        LifecycleEvent.PROFILE_UPDATED,
        LifecycleEvent.PROFILE_COMPLETED,
        LifecycleEvent.BANK_CARD_ADDED,
    ),
    "auth": (
        LifecycleEvent.FIRST_LOGIN,
        LifecycleEvent.LOGIN,
        LifecycleEvent.LOGOUT,
        LifecycleEvent.PASSWORD_CHANGED,
    ),
    "task": (
        LifecycleEvent.FIRST_VIDEO_WATCHED,
        LifecycleEvent.VIDEO_TASK_COMPLETED,
        LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED,
        LifecycleEvent.WEEKLY_TASK_GOAL_ACHIEVED,
        LifecycleEvent.TASK_MILESTONE,
    ),
    "financial": (
        LifecycleEvent.FIRST_EARNING,
        LifecycleEvent.EARNING_RECEIVED,
        LifecycleEvent.MILESTONE_EARNING,
        LifecycleEvent.FIRST_WITHDRAWAL,
        LifecycleEvent.WITHDRAWAL_COMPLETED,
        LifecycleEvent.DEPOSIT_MADE,
    ),
    "position": (
        LifecycleEvent.POSITION_UPGRADED,
        LifecycleEvent.POSITION_DOWNGRADED,
        LifecycleEvent.INTERN_TO_PAID,
    ),
    "referral": (
        LifecycleEvent.FIRST_REFERRAL,
        LifecycleEvent.REFERRAL_MADE,
        LifecycleEvent.REFERRAL_MILESTONE,
        LifecycleEvent.REFERRAL_REWARD_EARNED,
    ),
    "engagement": (
        LifecycleEvent.STREAK_STARTED,
        LifecycleEvent.STREAK_BROKEN,
        LifecycleEvent.STREAK_MILESTONE,
        LifecycleEvent.ENGAGEMENT_MILESTONE,
    ),
    "risk": (
        LifecycleEvent.MISSED_DAILY_TARGET,
        LifecycleEvent.LONG_INACTIVITY,
        LifecycleEvent.MULTIPLE_LOGIN_FAILURES,
    ),
    "recovery": (
        LifecycleEvent.RETURNED_AFTER_INACTIVITY,
        LifecycleEvent.RE_ENGAGEMENT_CAMPAIGN_OPENED,
    ),
    "admin": (
        LifecycleEvent.ACCOUNT_SUSPENDED,
        LifecycleEvent.ACCOUNT_REACTIVATED,
        LifecycleEvent.MANUAL_BALANCE_ADJUSTMENT,
        LifecycleEvent.ADMIN_STAGE_OVERRIDE,
    ),
}

EVENT_DESCRIPTIONS = {
    LifecycleEvent.USER_REGISTERED: "User registered for the platform",
    LifecycleEvent.EMAIL_VERIFIED: "User verified their email address",
    LifecycleEvent.PHONE_VERIFIED: "User verified their phone number",
    LifecycleEvent.PROFILE_UPDATED: "User updated their profile information",
    LifecycleEvent.PROFILE_COMPLETED: "User completed their profile setup",
    LifecycleEvent.BANK_CARD_ADDED: "User added a bank card",
    LifecycleEvent.FIRST_LOGIN: "User logged in for the first time",
    LifecycleEvent.LOGIN: "User logged into the platform",
    LifecycleEvent.LOGOUT: "User logged out of the platform",
    LifecycleEvent.PASSWORD_CHANGED: "User changed their password",
    LifecycleEvent.FIRST_VIDEO_WATCHED: "User watched their first video",
    LifecycleEvent.VIDEO_TASK_COMPLETED: "User completed a video task",
    LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED: "User achieved their daily task goal",
    LifecycleEvent.WEEKLY_TASK_GOAL_ACHIEVED: "User achieved their weekly task goal",
    LifecycleEvent.TASK_MILESTONE: "User reached a task milestone",
    LifecycleEvent.FIRST_EARNING: "User earned their first reward",
    LifecycleEvent.EARNING_RECEIVED: "User received an earning",
    LifecycleEvent.MILESTONE_EARNING: "User reached an earnings milestone",
    LifecycleEvent.FIRST_WITHDRAWAL: "User made their first withdrawal",
    LifecycleEvent.WITHDRAWAL_COMPLETED: "User completed a withdrawal",
    LifecycleEvent.DEPOSIT_MADE: "User made a deposit",
    LifecycleEvent.POSITION_UPGRADED: "User upgraded their position level",
    LifecycleEvent.POSITION_DOWNGRADED: "User was downgraded to a lower position",
    LifecycleEvent.INTERN_TO_PAID: "User upgraded from intern to paid position",
    LifecycleEvent.FIRST_REFERRAL: "User made their first referral",
    LifecycleEvent.REFERRAL_MADE: "User referred another user",
    LifecycleEvent.REFERRAL_MILESTONE: "User reached a referral milestone",
    LifecycleEvent.REFERRAL_REWARD_EARNED: "User earned a referral reward",
    LifecycleEvent.STREAK_STARTED: "User started a task completion streak",
    LifecycleEvent.STREAK_BROKEN: "User's task completion streak was broken",
    LifecycleEvent.STREAK_MILESTONE: "User reached a streak milestone",
    LifecycleEvent.ENGAGEMENT_MILESTONE: "User reached an engagement milestone",
    LifecycleEvent.MISSED_DAILY_TARGET: "User missed their daily task target",
    LifecycleEvent.LONG_INACTIVITY: "User has been inactive for an extended period",
    LifecycleEvent.MULTIPLE_LOGIN_FAILURES: "User had multiple failed login attempts",
    LifecycleEvent.RETURNED_AFTER_INACTIVITY: "User returned after a period of inactivity",
    LifecycleEvent.RE_ENGAGEMENT_CAMPAIGN_OPENED: "User opened a re-engagement campaign",
    LifecycleEvent.ACCOUNT_SUSPENDED: "User account was suspended",
    LifecycleEvent.ACCOUNT_REACTIVATED: "User account was reactivated",
    LifecycleEvent.MANUAL_BALANCE_ADJUSTMENT: "Admin made a manual balance adjustment",
    LifecycleEvent.ADMIN_STAGE_OVERRIDE: "Admin forced a lifecycle stage change",
}


class EventSource(str, Enum):
    """Where an event originated."""

    USER_ACTION = "USER_ACTION"
    SYSTEM_TRIGGER = "SYSTEM_TRIGGER"
    ADMIN_ACTION = "ADMIN_ACTION"
    SCHEDULED_TASK = "SCHEDULED_TASK"
    EXTERNAL_API = "EXTERNAL_API"


class UserSegment(str, Enum):
    """Coarse behavioral classification of a user."""

    NEW_USERS = "NEW_USERS"
    ACTIVE_USERS = "ACTIVE_USERS"
    POWER_USERS = "POWER_USERS"
    AT_RISK_USERS = "AT_RISK_USERS"
    CHURNED_USERS = "CHURNED_USERS"
    HIGH_VALUE_USERS = "HIGH_VALUE_USERS"
    REFERRAL_CHAMPIONS = "REFERRAL_CHAMPIONS"
    TASK_COMPLETERS = "TASK_COMPLETERS"
    LOW_ENGAGEMENT = "LOW_ENGAGEMENT"
    REACTIVATED_USERS = "REACTIVATED_USERS"


class ConditionType(str, Enum):
    """What a rule condition inspects."""

    USER_PROPERTY = "USER_PROPERTY"
    EVENT_COUNT = "EVENT_COUNT"
    TIME_BASED = "TIME_BASED"
    CALCULATED_METRIC = "CALCULATED_METRIC"


class ConditionOperator(str, Enum):
    """Comparison applied by a rule condition."""

    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_EQUAL = "GREATER_EQUAL"
    LESS_EQUAL = "LESS_EQUAL"
    IN = "IN"
    NOT_IN = "NOT_IN"
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"


class MilestoneCategory(str, Enum):
    EARNINGS = "EARNINGS"
    TASKS = "TASKS"
    REFERRALS = "REFERRALS"
    STREAK = "STREAK"
    ENGAGEMENT = "ENGAGEMENT"


class InsightCategory(str, Enum):
    ENGAGEMENT = "ENGAGEMENT"
    RETENTION = "RETENTION"
    CONVERSION = "CONVERSION"
    REVENUE = "REVENUE"
    RISK = "RISK"
    OPPORTUNITY = "OPPORTUNITY"


class InsightImpact(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TrendGrouping(str, Enum):
    """Bucket size for dashboard trend series."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class CohortPeriod(str, Enum):
    """Registration period used to build retention cohorts."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
