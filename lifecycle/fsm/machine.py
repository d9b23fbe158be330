"""
FSM Machine - lifecycle stage selection over the transition rule set.

Pure: given the current stage (None for a user with no recorded transition)
and a frozen EvaluationContext, pick the first applicable rule by ascending
priority whose conditions all hold. Persistence lives in StageTransitionEngine.
"""

import logging
from typing import Iterable, Optional, Set, Tuple

from lifecycle.fsm.conditions import EvaluationContext, EventCountKey, evaluate_conditions
from lifecycle.fsm.rules import DEFAULT_STAGE_RULES, StageTransitionRule
from lifecycle.fsm.states import ConditionType, LifecycleStage

logger = logging.getLogger(__name__)


class StageMachine:
    """
    Stage transition rules, sorted once by priority.

    Strictly one transition per pass: ``next_stage`` returns at most one
    target and never chains rules.
    """

    def __init__(self, rules: Iterable[StageTransitionRule] = DEFAULT_STAGE_RULES):
        self.rules: Tuple[StageTransitionRule, ...] = tuple(
            sorted(rules, key=lambda rule: rule.priority)
        )

    def candidate_rules(self, stage: Optional[LifecycleStage]) -> Tuple[StageTransitionRule, ...]:
        """Rules whose from_stage is the given stage or the wildcard."""
        return tuple(rule for rule in self.rules if rule.applies_to(stage))

    def required_event_counts(self, stage: Optional[LifecycleStage]) -> Set[EventCountKey]:
        """Every (event type, window) an EVENT_COUNT condition of a candidate rule reads."""
        return {
            condition.count_key
            for rule in self.candidate_rules(stage)
            for condition in rule.conditions
            if condition.type == ConditionType.EVENT_COUNT
        }

    def depends_on_time(self, stage: Optional[LifecycleStage]) -> bool:
        """True when a candidate rule can start matching with no new event."""
        return any(
            condition.type == ConditionType.TIME_BASED
            for rule in self.candidate_rules(stage)
            for condition in rule.conditions
        )

    def select_rule(
        self,
        stage: Optional[LifecycleStage],
        ctx: EvaluationContext,
    ) -> Optional[StageTransitionRule]:
        for rule in self.candidate_rules(stage):
            if evaluate_conditions(rule.conditions, ctx):
                logger.debug(
                    f"Rule p{rule.priority} {stage.value if stage else 'START'} -> {rule.to_stage.value} matched"
                )
                return rule
        return None

    def next_stage(
        self,
        stage: Optional[LifecycleStage],
        ctx: EvaluationContext,
    ) -> Optional[StageTransitionRule]:
        """The matched rule when it moves the user somewhere new, else None."""
        rule = self.select_rule(stage, ctx)
        if rule is None or rule.to_stage == stage:
            return None
        return rule
