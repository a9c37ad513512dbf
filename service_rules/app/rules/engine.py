"""
Decision engine: resolve, compose and hand the result to the family's
decision handler.

Rendering a decision is pure. Auditing is the caller's business and happens
outside this module.
"""

from typing import Any, Mapping, Optional, Sequence

from shared.errors import ConfigurationError
from shared.logging import get_logger
from .families import FamilyRegistry, build_default_registry
from .models import (
    Decision, DecisionEvidence, EvaluationContext, NO_MATCHING_RULE, Rule, family_key,
)
from .resolver import RuleResolver


def render_decision(registry: FamilyRegistry, family: str, context: EvaluationContext,
                    rules: Sequence[Rule], inputs: Optional[Mapping[str, Any]] = None) -> Decision:
    """Filter ordered ``rules`` by the family's own conditions, compose them and run the handler."""
    family = family_key(family)
    strategy = registry.lookup(family)
    inputs = dict(inputs or {})
    accepted = [rule for rule in rules if strategy.accepts(rule, context, inputs)]
    composed = strategy.compose(accepted, family)
    matching_rule_ids = [rule.rule_id for rule in accepted]
    snapshot = context.snapshot()

    if not composed:
        return Decision(
            decision=NO_MATCHING_RULE,
            reason="No active rule applies to this context",
            confidence=0.0,
            evidence=DecisionEvidence(matching_rule_ids=matching_rule_ids, context=snapshot),
            family=family,
        )

    verdict = strategy.decide(composed, context, inputs)
    applied_rule_ids = list(verdict.applied_rule_ids) or [rule.rule_id for rule in composed]

    return Decision(
        decision=verdict.decision,
        reason=verdict.reason,
        confidence=verdict.confidence,
        evidence=DecisionEvidence(
            matching_rule_ids=matching_rule_ids,
            applied_rule_id=applied_rule_ids[0],
            applied_rule_ids=applied_rule_ids,
            context=snapshot,
        ),
        payload=verdict.payload,
        family=family,
    )


class DecisionEngine:
    """Turns a context and caller inputs into a Decision."""

    def __init__(self, resolver: RuleResolver, registry: Optional[FamilyRegistry] = None):
        self.resolver = resolver
        self.registry = registry or resolver.registry or build_default_registry()
        self.logger = get_logger("rules.engine")

    async def decide(self, family: str, context: EvaluationContext,
                     inputs: Optional[Mapping[str, Any]] = None) -> Decision:
        if context is None:
            raise ConfigurationError("context is required")
        context = self.resolver.prepare_context(context.organization_id, context)

        rules = await self.resolver.resolve(context.organization_id, family, context)
        decision = render_decision(self.registry, family, context, rules, inputs)

        self.logger.debug(
            "Decision rendered",
            organization_id=context.organization_id,
            family=decision.family,
            decision=decision.decision,
            applied_rule_id=decision.evidence.applied_rule_id
        )
        return decision
