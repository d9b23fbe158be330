"""Services package."""

from lifecycle.services.event_store import EventStore
from lifecycle.services.event_tracker import EventTracker
from lifecycle.services.stage_engine import StageTransitionEngine
from lifecycle.services.milestones import MilestoneChecker
from lifecycle.services.lifecycle_service import UserLifecycleService
from lifecycle.services.analytics_service import LifecycleAnalyticsService
from lifecycle.services.integrations import LifecycleIntegrations

__all__ = [
    "EventStore",
    "EventTracker",
    "StageTransitionEngine",
    "MilestoneChecker",
    "UserLifecycleService",
    "LifecycleAnalyticsService",
    "LifecycleIntegrations",
]
