"""
Typed event payloads.

Each event family has a payload model; unknown keys are kept (extra="allow")
so producers can attach properties the model does not know yet.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict

from lifecycle.fsm.states import LifecycleEvent


class EventPayload(BaseModel):
    """Base payload: any keys allowed."""

    model_config = ConfigDict(extra="allow")


class RegistrationPayload(EventPayload):
    email: Optional[str] = None
    phone: Optional[str] = None
    referral_code: Optional[str] = None
    registration_source: Optional[str] = None


class VerificationPayload(EventPayload):
    email: Optional[str] = None
    phone: Optional[str] = None


class ProfilePayload(EventPayload):
    fields_updated: List[str] = []


class BankCardPayload(EventPayload):
    bank_card_id: Optional[str] = None
    bank_name: Optional[str] = None


class LoginPayload(EventPayload):
    login_method: str = "standard"
    device_id: Optional[str] = None
    previous_login_at: Optional[datetime] = None


class VideoTaskPayload(EventPayload):
    video_id: Optional[str] = None
    video_title: Optional[str] = None
    reward_earned: float = 0
    watch_duration: Optional[float] = None
    position_level: Optional[str] = None
    verified: bool = True


class EarningPayload(EventPayload):
    amount: float
    source: Optional[str] = None
    transaction_id: Optional[str] = None


class WithdrawalPayload(EventPayload):
    amount: float
    withdrawal_id: Optional[str] = None
    bank_card_id: Optional[str] = None


class DepositPayload(EventPayload):
    amount: float
    deposit_id: Optional[str] = None
    payment_method: Optional[str] = None


class PositionChangePayload(EventPayload):
    from_position: Optional[str] = None
    to_position: Optional[str] = None
    from_intern: bool = False
    deposit_amount: Optional[float] = None


class ReferralPayload(EventPayload):
    referred_user_id: Optional[str] = None
    referral_code: Optional[str] = None
    referral_count: Optional[int] = None


class ReferralRewardPayload(EventPayload):
    amount: float = 0
    referred_user_id: Optional[str] = None
    level: Optional[str] = None
    transaction_id: Optional[str] = None


class MilestonePayload(EventPayload):
    milestone_id: str
    category: str
    threshold: float
    name: str
    value: float


class StreakPayload(EventPayload):
    streak_days: int = 0
    previous_streak: Optional[int] = None


class TaskTargetPayload(EventPayload):
    tasks_completed: int = 0
    target: int = 0
    date: Optional[str] = None


class InactivityPayload(EventPayload):
    days_since_last_login: Optional[int] = None


class LoginFailurePayload(EventPayload):
    reason: Optional[str] = None
    consecutive_failures: int = 0


class CampaignPayload(EventPayload):
    campaign_id: Optional[str] = None
    channel: Optional[str] = None


class AdminActionPayload(EventPayload):
    admin_id: Optional[str] = None
    action: Optional[str] = None
    reason: Optional[str] = None


class StageTransitionPayload(EventPayload):
    """Metadata of a STAGE_TRANSITION row."""

    from_stage: Optional[str] = None
    to_stage: str
    trigger_event: Optional[str] = None
    trigger_event_id: Optional[int] = None
    days_in_previous_stage: int = 0
    timestamp: datetime
    forced: bool = False
    reason: Optional[str] = None
    admin_id: Optional[str] = None


PAYLOAD_MODELS: Dict[LifecycleEvent, Type[EventPayload]] = {
    LifecycleEvent.USER_REGISTERED: RegistrationPayload,
    LifecycleEvent.EMAIL_VERIFIED: VerificationPayload,
    LifecycleEvent.PHONE_VERIFIED: VerificationPayload,
    LifecycleEvent.PROFILE_UPDATED: ProfilePayload,
    LifecycleEvent.PROFILE_COMPLETED: ProfilePayload,
    LifecycleEvent.BANK_CARD_ADDED: BankCardPayload,
    LifecycleEvent.FIRST_LOGIN: LoginPayload,
    LifecycleEvent.LOGIN: LoginPayload,
    LifecycleEvent.FIRST_VIDEO_WATCHED: VideoTaskPayload,
    LifecycleEvent.VIDEO_TASK_COMPLETED: VideoTaskPayload,
    LifecycleEvent.DAILY_TASK_GOAL_ACHIEVED: TaskTargetPayload,
    LifecycleEvent.WEEKLY_TASK_GOAL_ACHIEVED: TaskTargetPayload,
    LifecycleEvent.MISSED_DAILY_TARGET: TaskTargetPayload,
    LifecycleEvent.FIRST_EARNING: EarningPayload,
    LifecycleEvent.EARNING_RECEIVED: EarningPayload,
    LifecycleEvent.FIRST_WITHDRAWAL: WithdrawalPayload,
    LifecycleEvent.WITHDRAWAL_COMPLETED: WithdrawalPayload,
    LifecycleEvent.DEPOSIT_MADE: DepositPayload,
    LifecycleEvent.POSITION_UPGRADED: PositionChangePayload,
    LifecycleEvent.POSITION_DOWNGRADED: PositionChangePayload,
    LifecycleEvent.INTERN_TO_PAID: PositionChangePayload,
    LifecycleEvent.FIRST_REFERRAL: ReferralPayload,
    LifecycleEvent.REFERRAL_MADE: ReferralPayload,
    LifecycleEvent.REFERRAL_REWARD_EARNED: ReferralRewardPayload,
    LifecycleEvent.MILESTONE_EARNING: MilestonePayload,
    LifecycleEvent.TASK_MILESTONE: MilestonePayload,
    LifecycleEvent.REFERRAL_MILESTONE: MilestonePayload,
    LifecycleEvent.STREAK_MILESTONE: MilestonePayload,
    LifecycleEvent.ENGAGEMENT_MILESTONE: MilestonePayload,
    LifecycleEvent.STREAK_STARTED: StreakPayload,
    LifecycleEvent.STREAK_BROKEN: StreakPayload,
    LifecycleEvent.LONG_INACTIVITY: InactivityPayload,
    LifecycleEvent.RETURNED_AFTER_INACTIVITY: InactivityPayload,
    LifecycleEvent.MULTIPLE_LOGIN_FAILURES: LoginFailurePayload,
    LifecycleEvent.RE_ENGAGEMENT_CAMPAIGN_OPENED: CampaignPayload,
    LifecycleEvent.ACCOUNT_SUSPENDED: AdminActionPayload,
    LifecycleEvent.ACCOUNT_REACTIVATED: AdminActionPayload,
    LifecycleEvent.MANUAL_BALANCE_ADJUSTMENT: AdminActionPayload,
    LifecycleEvent.ADMIN_STAGE_OVERRIDE: AdminActionPayload,
}


def parse_event_payload(event_type: LifecycleEvent, data: Optional[Dict[str, Any]]) -> EventPayload:
    """Validate event data against its payload model (raises ValidationError)."""
    model = PAYLOAD_MODELS.get(event_type, EventPayload)
    return model.model_validate(data or {})


def describe_event(event_type: LifecycleEvent, data: Dict[str, Any]) -> str:
    """Event description with amount / video / referral context appended."""
    description = event_type.description
    if data.get("amount"):
        description += f" (Amount: {data['amount']})"
    if data.get("video_title"):
        description += f" (Video: {data['video_title']})"
    if data.get("referral_code"):
        description += f" (Referral: {data['referral_code']})"
    return description
