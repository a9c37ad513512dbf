"""
Composition strategies: reduce an ordered list of matching rules to the
rule(s) a decision is computed from.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .models import Rule


class CompositionStrategy(ABC):
    """Reduce ordered rules to the rules that get applied."""

    name = "abstract"

    @abstractmethod
    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        """Return the rules to act on, in application order."""


class SingleWinner(CompositionStrategy):
    """Only the head of the ordered list applies."""

    name = "single_winner"

    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        return list(rules[:1])


class Stacking(CompositionStrategy):
    """Every matching rule applies; the handler adds up their effects."""

    name = "stacking"

    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        return list(rules)


class Merging(CompositionStrategy):
    """Fold all matches into one pseudo-rule by concatenating a payload list."""

    name = "merging"

    def __init__(self, field: str = "templates"):
        self.field = field

    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        if not rules:
            return []

        merged_items = []
        for rule in rules:
            merged_items.extend(rule.payload.get(self.field) or [])

        head = rules[0]
        payload = dict(head.payload)
        payload[self.field] = merged_items
        payload["merged_rule_ids"] = [rule.rule_id for rule in rules]

        return [head.model_copy(update={
            "rule_id": "merged:" + "+".join(rule.rule_id for rule in rules),
            "payload": payload,
        })]


def bucket_position(experiment_key: str, organization_id: str) -> float:
    """Stable position in [0, 1) for an (experiment, organization) pair."""
    digest = hashlib.sha256(f"{experiment_key}:{organization_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / float(2 ** 64)


def rule_weight(rule: Rule) -> float:
    try:
        return max(0.0, float(rule.payload.get("weight", 1.0)))
    except (TypeError, ValueError):
        return 0.0


def select_variant(rules: Sequence[Rule], experiment_key: str, organization_id: str) -> Optional[Rule]:
    """Weighted deterministic pick over the cumulative weight distribution."""
    weighted = [(rule, rule_weight(rule)) for rule in rules]
    total = sum(weight for _, weight in weighted)
    if total <= 0:
        return None

    target = bucket_position(experiment_key, organization_id) * total
    cumulative = 0.0
    for rule, weight in weighted:
        if weight <= 0:
            continue
        cumulative += weight
        if cumulative >= target:
            return rule

    # Float rounding can leave target a hair above the final boundary
    return next(rule for rule, weight in reversed(weighted) if weight > 0)


class ExperimentBucketing(CompositionStrategy):
    """Choose exactly one variant by hashing the experiment key and organization."""

    name = "experiment"

    def compose(self, rules: Sequence[Rule], family: str) -> List[Rule]:
        if not rules:
            return []
        head = rules[0]
        experiment_key = str(head.payload.get("experiment_key") or family)
        chosen = select_variant(rules, experiment_key, head.organization_id)
        return [chosen] if chosen is not None else []
