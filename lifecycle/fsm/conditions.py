"""
Condition interpreter for stage transition rules.

A condition is a closed (type, operator) pair evaluated against an immutable
EvaluationContext. Evaluation is pure: all I/O (event counts, metrics) happens
before the context is built. Anything that cannot be evaluated is False.
"""

import logging
import operator as op
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from lifecycle.fsm.states import ConditionOperator, ConditionType
from lifecycle.timeutils import whole_days_between

logger = logging.getLogger(__name__)

# Metrics a CALCULATED_METRIC condition may reference.
CALCULATED_METRICS = frozenset({
    "total_video_tasks",
    "total_referrals",
    "total_earnings",
    "engagement_score",
})

EventCountKey = Tuple[str, Optional[int]]

_MISSING = object()


@dataclass(frozen=True)
class Condition:
    """One clause of a transition rule."""

    type: ConditionType
    field: str
    operator: ConditionOperator
    value: Any = None
    time_window_days: Optional[int] = None

    @property
    def count_key(self) -> EventCountKey:
        return (self.field, self.time_window_days)

    def describe(self) -> str:
        window = f" within {self.time_window_days}d" if self.time_window_days else ""
        return f"{self.type.value}({self.field}{window}) {self.operator.value} {self.value!r}"


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a condition may look at, frozen at evaluation time."""

    user: Mapping[str, Any]
    event_counts: Mapping[EventCountKey, int]
    metrics: Mapping[str, float]
    now: datetime

    @classmethod
    def build(
        cls,
        user: Dict[str, Any],
        event_counts: Dict[EventCountKey, int],
        metrics: Dict[str, float],
        now: datetime,
    ) -> "EvaluationContext":
        return cls(
            user=MappingProxyType(dict(user)),
            event_counts=MappingProxyType(dict(event_counts)),
            metrics=MappingProxyType(dict(metrics)),
            now=now,
        )


def _in(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (str, bytes)) or not isinstance(expected, Iterable):
        raise TypeError(f"IN expects a collection, got {type(expected).__name__}")
    return actual in expected


def _not_in(actual: Any, expected: Any) -> bool:
    return not _in(actual, expected)


def _ordered(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            raise TypeError("cannot order against a missing value")
        if isinstance(actual, bool) or isinstance(expected, bool):
            raise TypeError("cannot order booleans")
        return fn(actual, expected)
    return compare


_COMPARATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: op.eq,
    ConditionOperator.NOT_EQUALS: op.ne,
    ConditionOperator.GREATER_THAN: _ordered(op.gt),
    ConditionOperator.LESS_THAN: _ordered(op.lt),
    ConditionOperator.GREATER_EQUAL: _ordered(op.ge),
    ConditionOperator.LESS_EQUAL: _ordered(op.le),
    ConditionOperator.IN: _in,
    ConditionOperator.NOT_IN: _not_in,
    ConditionOperator.EXISTS: lambda actual, _: actual is not None,
    ConditionOperator.NOT_EXISTS: lambda actual, _: actual is None,
}


def compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    """Apply an operator; raises TypeError on incompatible operands."""
    return bool(_COMPARATORS[operator](actual, expected))


def resolve_path(data: Mapping[str, Any], path: str) -> Any:
    """Dotted-path lookup over nested mappings; None when any hop is absent."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        else:
            return None
        if current is _MISSING or current is None:
            return None
    return current


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise TypeError(f"not a timestamp: {value!r}")


def _evaluate_user_property(condition: Condition, ctx: EvaluationContext) -> bool:
    actual = resolve_path(ctx.user, condition.field)
    return compare(condition.operator, actual, condition.value)


def _evaluate_event_count(condition: Condition, ctx: EvaluationContext) -> bool:
    count = ctx.event_counts[condition.count_key]
    return compare(condition.operator, count, condition.value)


def _evaluate_time_based(condition: Condition, ctx: EvaluationContext) -> bool:
    timestamp = _as_datetime(resolve_path(ctx.user, condition.field))
    if timestamp is None:
        return condition.operator == ConditionOperator.NOT_EXISTS
    if condition.operator in (ConditionOperator.EXISTS, ConditionOperator.NOT_EXISTS):
        return condition.operator == ConditionOperator.EXISTS
    days = whole_days_between(timestamp, ctx.now)
    return compare(condition.operator, days, condition.value)


def _evaluate_calculated_metric(condition: Condition, ctx: EvaluationContext) -> bool:
    if condition.field not in CALCULATED_METRICS:
        raise KeyError(f"unknown metric '{condition.field}'")
    return compare(condition.operator, ctx.metrics[condition.field], condition.value)


_EVALUATORS: Dict[ConditionType, Callable[[Condition, EvaluationContext], bool]] = {
    ConditionType.USER_PROPERTY: _evaluate_user_property,
    ConditionType.EVENT_COUNT: _evaluate_event_count,
    ConditionType.TIME_BASED: _evaluate_time_based,
    ConditionType.CALCULATED_METRIC: _evaluate_calculated_metric,
}


def evaluate_condition(condition: Condition, ctx: EvaluationContext) -> bool:
    """Evaluate one condition. Never raises; failures are False."""
    try:
        return _EVALUATORS[condition.type](condition, ctx)
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        logger.warning(f"Condition {condition.describe()} could not be evaluated: {e}")
        return False


def evaluate_conditions(conditions: Iterable[Condition], ctx: EvaluationContext) -> bool:
    """Logical AND over a rule's conditions."""
    return all(evaluate_condition(condition, ctx) for condition in conditions)
