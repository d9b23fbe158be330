"""FSM package for lifecycle stage management."""

from lifecycle.fsm.states import LifecycleEvent, LifecycleStage, JourneyPhase, UserSegment
from lifecycle.fsm.machine import StageMachine

__all__ = ["LifecycleEvent", "LifecycleStage", "JourneyPhase", "UserSegment", "StageMachine"]
