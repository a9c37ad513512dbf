"""
Scope matching between a rule's scope and an evaluation context.

A dimension the rule leaves empty never restricts. A dimension the rule
populates is only satisfied by a context that supplies an overlapping value;
a context that omits the dimension does not satisfy it. The strict gate and
the diagnostic scorer share this reading.
"""

from typing import Dict, FrozenSet, List, Tuple

from .models import EvaluationContext, RuleScope, SCOPE_DIMENSIONS


# Diagnostic weights, most to least specific
SCOPE_WEIGHTS: Dict[str, float] = {
    "branches": 20.0,
    "services": 15.0,
    "specialists": 10.0,
    "customer_segments": 8.0,
    "channels": 5.0,
}
ORGANIZATION_POINTS = 10.0
ORGANIZATION_MISMATCH_SCORE = -1000.0
UNMATCHED_PENALTY_RATIO = 0.5

# Specificity weights used as a resolution tie-breaker
SPECIFICITY_WEIGHTS: Dict[str, int] = {
    "branches": 16,
    "services": 8,
    "specialists": 4,
    "customer_segments": 2,
    "channels": 1,
}

# Dimensions compared against a list-valued context field
LIST_DIMENSIONS = ("services", "customer_segments")


def context_values(dimension: str, context: EvaluationContext) -> FrozenSet[str]:
    """Context values compared against a scope dimension."""
    if dimension == "branches":
        return frozenset([context.branch_id]) if context.branch_id else frozenset()
    if dimension == "services":
        return context.service_ids
    if dimension == "specialists":
        return frozenset([context.specialist_id]) if context.specialist_id else frozenset()
    if dimension == "customer_segments":
        return context.customer_segments
    if dimension == "channels":
        return frozenset([context.channel]) if context.channel else frozenset()
    raise KeyError(dimension)


def in_scope(scope: RuleScope, context: EvaluationContext) -> bool:
    """Strict gate: exact organization, overlap on every populated dimension."""
    if scope.organization_id != context.organization_id:
        return False

    for dimension in SCOPE_DIMENSIONS:
        allowed = getattr(scope, dimension)
        if not allowed:
            continue
        if not allowed & context_values(dimension, context):
            return False

    return True


def score_scope(scope: RuleScope, context: EvaluationContext) -> Tuple[float, List[str], List[str]]:
    """Diagnostic scorer; never used as the production gate."""
    if scope.organization_id != context.organization_id:
        return ORGANIZATION_MISMATCH_SCORE, [], ["organization"]

    score = ORGANIZATION_POINTS
    matched = ["organization"]
    unmatched: List[str] = []

    for dimension in SCOPE_DIMENSIONS:
        allowed = getattr(scope, dimension)
        if not allowed:
            continue

        weight = SCOPE_WEIGHTS[dimension]
        requested = context_values(dimension, context)
        overlap = allowed & requested

        if not overlap:
            score -= weight * UNMATCHED_PENALTY_RATIO
            unmatched.append(dimension)
            continue

        if dimension in LIST_DIMENSIONS:
            # Partial credit: share of the requested values the rule covers
            score += weight * len(overlap) / len(requested)
        else:
            score += weight
        matched.append(dimension)

    return score, matched, unmatched


def specificity(scope: RuleScope) -> int:
    """Weighted count of populated dimensions; narrower scopes rank higher."""
    return sum(SPECIFICITY_WEIGHTS[name] for name in scope.populated_dimensions())
