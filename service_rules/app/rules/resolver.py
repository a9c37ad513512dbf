"""
Rule resolution.

``resolve`` is the production path: candidates from the cache (or the store on
a miss), hard gates for status, scope, time and conditions, then a stable
ordering. ``score`` is the diagnostic path used by authoring tools; it never
feeds a decision.
"""

import asyncio
from dataclasses import replace
from typing import List, Optional, Sequence

from shared.errors import ConfigurationError, RuleParseError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache import RuleCache
from ..clock import Clock, SystemClock
from ..persistence import RuleStoreAdapter
from .conditions import conditions_satisfied, score_conditions
from .families import FamilyRegistry, build_default_registry
from .models import EvaluationContext, Rule, RuleMatch, family_key
from .scope import in_scope, score_scope, specificity
from .temporal import is_temporally_active, score_temporal


DEFAULT_STORE_TIMEOUT_SECONDS = 2.0


def resolution_order(rule: Rule):
    """Sort key: priority, then specificity, then version, all descending."""
    return (-rule.priority, -specificity(rule.scope), -rule.version, rule.rule_id)


class RuleResolver:
    """Filters and orders the rules that apply to a context."""

    def __init__(self, adapter: RuleStoreAdapter, cache: Optional[RuleCache] = None,
                 registry: Optional[FamilyRegistry] = None, clock: Optional[Clock] = None,
                 store_timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS,
                 metrics: Optional[MetricsCollector] = None):
        self.adapter = adapter
        self.clock = clock or SystemClock()
        self.cache = cache if cache is not None else RuleCache(clock=self.clock, metrics=metrics)
        self.registry = registry or build_default_registry()
        self.store_timeout_seconds = store_timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("rules.resolver")

    def prepare_context(self, organization_id: Optional[str],
                        context: Optional[EvaluationContext] = None) -> EvaluationContext:
        """Check the organization and pin ``now`` to the clock when it is missing."""
        if not organization_id:
            raise ConfigurationError("organization_id is required")

        if context is None:
            context = EvaluationContext(organization_id=organization_id)
        elif not context.organization_id:
            context = replace(context, organization_id=organization_id)
        elif context.organization_id != organization_id:
            raise ConfigurationError(
                "Context belongs to a different organization",
                details={
                    "organization_id": organization_id,
                    "context_organization_id": context.organization_id,
                }
            )

        if context.now is None:
            context = context.with_now(self.clock.now())
        return context

    def _with_valid_payloads(self, rules: Sequence[Rule]) -> List[Rule]:
        valid = []
        for rule in rules:
            try:
                self.registry.lookup(rule.family_key).parse_payload(rule)
            except RuleParseError as e:
                self.logger.warning(
                    "Skipping rule with invalid payload",
                    rule_id=rule.rule_id,
                    family_code=rule.family_code,
                    error=e.message
                )
                if self.metrics:
                    self.metrics.increment_counter("rule_parse_failures_total")
                continue
            valid.append(rule)
        return valid

    async def candidates(self, organization_id: str, family: str) -> List[Rule]:
        """Cached candidates for (organization, family); empty when the store fails."""

        async def load() -> List[Rule]:
            rules = await asyncio.wait_for(
                self.adapter.fetch_rules(organization_id, family),
                timeout=self.store_timeout_seconds
            )
            return self._with_valid_payloads(rules)

        try:
            return await self.cache.get_or_load(organization_id, family, load)
        except asyncio.TimeoutError:
            self._store_failed(organization_id, family, "timeout", "Rule store fetch timed out")
        except Exception as e:
            self._store_failed(organization_id, family, "fetch", str(e) or type(e).__name__)
        return []

    def _store_failed(self, organization_id: str, family: str, operation: str, error: str) -> None:
        self.logger.warning(
            "Rule store unavailable, resolving without rules",
            organization_id=organization_id,
            family=family,
            error=error
        )
        if self.metrics:
            self.metrics.increment_counter("rule_store_failures_total", operation=operation)
            self.metrics.increment_counter("rule_resolutions_total", family=family, outcome="store_error")

    def applicable(self, rules: Sequence[Rule], context: EvaluationContext) -> List[Rule]:
        """Apply the production gates to already-fetched rules and order the survivors."""
        now = context.now or self.clock.now()
        survivors = [
            rule for rule in rules
            if rule.is_active
            and in_scope(rule.scope, context)
            and is_temporally_active(rule.conditions, now)
            and conditions_satisfied(rule.conditions, context, now)
        ]
        return sorted(survivors, key=resolution_order)

    async def resolve(self, organization_id: str, family: str,
                      context: Optional[EvaluationContext] = None) -> List[Rule]:
        """Ordered rules that apply to ``context``; never raises for store trouble."""
        if not family:
            raise ConfigurationError("family is required")
        context = self.prepare_context(organization_id, context)
        family = family_key(family)

        candidates = await self.candidates(organization_id, family)
        resolved = self.applicable(candidates, context)

        self.logger.debug(
            "Rules resolved",
            organization_id=organization_id,
            family=family,
            candidates=len(candidates),
            resolved=[rule.rule_id for rule in resolved]
        )
        if self.metrics and candidates:
            self.metrics.increment_counter(
                "rule_resolutions_total",
                family=family,
                outcome="matched" if resolved else "empty"
            )
        return resolved

    def score(self, rules: Sequence[Rule], context: EvaluationContext) -> List[RuleMatch]:
        """Diagnostic ranking of ``rules`` against ``context``, best first.

        Inactive and draft rules are scored like any other and tagged with
        ``status`` so authoring tools can see why they would not be used.
        """
        if not context.organization_id:
            raise ConfigurationError("organization_id is required")
        now = context.now or self.clock.now()

        matches = []
        for rule in rules:
            total = 0.0
            matched: List[str] = []
            unmatched: List[str] = []
            for score, hit, miss in (
                score_scope(rule.scope, context),
                score_temporal(rule.conditions, now),
                score_conditions(rule.conditions, context, now),
            ):
                total += score
                matched.extend(hit)
                unmatched.extend(miss)

            if rule.is_active:
                matched.append("status")
            else:
                unmatched.append("status")

            matches.append(RuleMatch(rule, total, matched, unmatched))

        return sorted(
            matches,
            key=lambda match: (-match.score,) + resolution_order(match.rule)
        )

    async def invalidate_cache(self, organization_id: Optional[str] = None,
                               family: Optional[str] = None) -> int:
        return await self.cache.invalidate(organization_id, family_key(family) if family else None)
