"""
Evaluation of the cross-family numeric conditions.

Family-specific condition keys are ignored here; ``FamilyStrategy.accepts``
checks them from ``RuleConditions.extra_conditions`` when a decision is rendered.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .models import EvaluationContext, RuleConditions, as_utc


CONDITION_POINTS = 5.0
CONDITION_VIOLATION_PENALTY = -100.0


def _lead_seconds(context: EvaluationContext, now: datetime) -> Optional[float]:
    if context.appointment_time is None:
        return None
    return (as_utc(context.appointment_time) - as_utc(now)).total_seconds()


def _utilization_below(threshold: float, context: EvaluationContext, now: datetime) -> bool:
    return context.utilization is not None and context.utilization < threshold


def _min_lead_minutes(threshold: float, context: EvaluationContext, now: datetime) -> bool:
    lead = _lead_seconds(context, now)
    return lead is not None and lead / 60.0 >= threshold


def _max_advance_days(threshold: float, context: EvaluationContext, now: datetime) -> bool:
    lead = _lead_seconds(context, now)
    return lead is not None and lead / 86400.0 <= threshold


def _min_order_value(threshold: float, context: EvaluationContext, now: datetime) -> bool:
    return context.order_value is not None and context.order_value >= threshold


# A context missing the field a condition reads does not satisfy it
CHECKS: Dict[str, Callable[[float, EvaluationContext, datetime], bool]] = {
    "utilization_below": _utilization_below,
    "min_lead_minutes": _min_lead_minutes,
    "max_advance_days": _max_advance_days,
    "min_order_value": _min_order_value,
}


def _configured(conditions: RuleConditions) -> List[Tuple[str, float]]:
    return [
        (name, getattr(conditions, name))
        for name in CHECKS
        if getattr(conditions, name) is not None
    ]


def conditions_satisfied(conditions: RuleConditions, context: EvaluationContext, now: datetime) -> bool:
    """Strict gate used by resolution."""
    return all(CHECKS[name](threshold, context, now) for name, threshold in _configured(conditions))


def score_conditions(
    conditions: RuleConditions, context: EvaluationContext, now: datetime
) -> Tuple[float, List[str], List[str]]:
    """Diagnostic variant of ``conditions_satisfied``."""
    score = 0.0
    matched: List[str] = []
    unmatched: List[str] = []

    for name, threshold in _configured(conditions):
        if CHECKS[name](threshold, context, now):
            score += CONDITION_POINTS
            matched.append(name)
        else:
            score += CONDITION_VIOLATION_PENALTY
            unmatched.append(name)

    return score, matched, unmatched
