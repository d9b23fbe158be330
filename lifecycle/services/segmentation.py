"""
Segmentation Classifier.

First match wins over the declared rule order; a constraint whose fact is
unknown (e.g. no risk score supplied) is not satisfied.
"""

import operator as op
from typing import Optional, Sequence

from lifecycle.fsm.rules import DEFAULT_SEGMENT, SEGMENT_RULES, SegmentRule
from lifecycle.fsm.states import LifecycleStage, UserSegment
from lifecycle.services.scoring import UserFacts


def segment_rule_matches(
    rule: SegmentRule,
    facts: UserFacts,
    stage: LifecycleStage,
    engagement_score: int,
    risk_score: Optional[int] = None,
) -> bool:
    if rule.stages is not None and stage not in rule.stages:
        return False

    checks = (
        (rule.max_days_from_registration, facts.days_since_registration, op.le),
        (rule.max_days_from_last_activity, facts.days_since_last_activity, op.le),
        (rule.min_engagement_score, engagement_score, op.ge),
        (rule.max_engagement_score, engagement_score, op.le),
        (rule.min_lifetime_value, facts.lifetime_value, op.ge),
        (rule.min_referrals, facts.total_referrals, op.ge),
        (rule.min_video_tasks, facts.total_video_tasks, op.ge),
        (rule.min_risk_score, risk_score, op.ge),
        (rule.max_days_from_reactivation, facts.days_since_reactivation, op.le),
    )
    for limit, actual, within in checks:
        if limit is None:
            continue
        if actual is None or not within(actual, limit):
            return False
    return True


def determine_segment(
    facts: UserFacts,
    stage: LifecycleStage,
    engagement_score: int,
    rules: Sequence[SegmentRule] = SEGMENT_RULES,
    risk_score: Optional[int] = None,
    default: UserSegment = DEFAULT_SEGMENT,
) -> UserSegment:
    for rule in rules:
        if segment_rule_matches(rule, facts, stage, engagement_score, risk_score):
            return rule.segment
    return default
