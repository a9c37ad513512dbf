"""
Rule service: the operations the surrounding application calls.

Wires the store adapter, cache, resolver and decision engine together and
issues the audit write after each decision.
"""

from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError

from shared.config import ServiceConfig, get_config
from shared.errors import (
    ConfigurationError, RuleParseError, RuleValidationError, RulesServiceException, StoreUnavailable,
)
from shared.logging import decision_context, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .audit import AuditDispatcher, AuditSink, LoggingAuditSink
from .audit.postgres import PostgreSQLAuditSink
from .cache import RuleCache
from .clock import Clock, SystemClock
from .persistence import RuleDocumentStore, RuleStoreAdapter
from .persistence.postgres import PostgreSQLRuleDocumentStore
from .rules.authoring import (
    FieldChange, SimulationReport, ValidationReport, diff_rules, simulate_rule, validate_rule,
)
from .rules.engine import DecisionEngine
from .rules.families import FamilyRegistry, build_default_registry
from .rules.models import Decision, EvaluationContext, Rule, RuleMatch, family_key
from .rules.resolver import RuleResolver


RuleInput = Union[Rule, Mapping[str, Any]]


class RuleService:
    """Facade over resolution, decisions and rule authoring."""

    def __init__(self, store: RuleDocumentStore, config: Optional[ServiceConfig] = None,
                 clock: Optional[Clock] = None, registry: Optional[FamilyRegistry] = None,
                 audit_sink: Optional[AuditSink] = None, metrics: Optional[MetricsCollector] = None):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.registry = registry or build_default_registry()
        self.metrics = metrics if metrics is not None else (
            get_metrics_collector(self.config.service_name) if self.config.metrics_enabled else None
        )
        self.logger = get_logger("rules.service")

        self.store = store
        self.adapter = RuleStoreAdapter(store, metrics=self.metrics)
        self.cache = RuleCache(
            ttl_seconds=self.config.rule_cache_ttl_seconds,
            clock=self.clock,
            metrics=self.metrics
        )
        self.resolver = RuleResolver(
            self.adapter,
            cache=self.cache,
            registry=self.registry,
            clock=self.clock,
            store_timeout_seconds=self.config.store_timeout_seconds,
            metrics=self.metrics
        )
        self.engine = DecisionEngine(self.resolver, self.registry)

        self.audit: Optional[AuditDispatcher] = None
        if self.config.audit_enabled:
            self.audit = AuditDispatcher(audit_sink or LoggingAuditSink(), metrics=self.metrics)

    async def start(self):
        await self.store.start()
        if self.audit:
            await self.audit.sink.start()
        self.logger.info("Rule service started", env=self.config.env)

    async def stop(self):
        if self.audit:
            await self.audit.drain()
            await self.audit.sink.stop()
        await self.store.stop()
        self.logger.info("Rule service stopped")

    # Resolution and decisions

    async def resolve(self, organization_id: str, family: str,
                      context: Optional[EvaluationContext] = None) -> List[Rule]:
        return await self.resolver.resolve(organization_id, family, context)

    def score(self, rules: List[Rule], context: EvaluationContext) -> List[RuleMatch]:
        if context.now is None:
            context = context.with_now(self.clock.now())
        return self.resolver.score(rules, context)

    async def diagnose(self, organization_id: str, family: str,
                       context: Optional[EvaluationContext] = None) -> List[RuleMatch]:
        """Score every stored rule of a family, drafts included."""
        context = self.resolver.prepare_context(organization_id, context)
        rules = await self.list_rules(organization_id, family, include_inactive=True)
        return self.resolver.score(rules, context)

    async def decide(self, family: str, context: EvaluationContext,
                     inputs: Optional[Mapping[str, Any]] = None) -> Decision:
        """Render a decision and hand it to the audit sink without waiting."""
        if context is None:
            raise ConfigurationError("context is required")
        inputs = dict(inputs or {})
        context = self.resolver.prepare_context(context.organization_id, context)
        key = family_key(family)

        with decision_context(context.organization_id, key):
            if self.metrics:
                with self.metrics.time_operation("rule_decision_duration_seconds", family=key):
                    decision = await self.engine.decide(key, context, inputs)
                self.metrics.increment_counter("rule_decisions_total", family=key, decision=decision.decision)
            else:
                decision = await self.engine.decide(key, context, inputs)

            # The audit task copies the bound context, decision_id included
            if self.audit:
                self.audit.submit(decision, key, context, inputs)
        return decision

    # Writes

    def _coerce(self, rule: RuleInput) -> Rule:
        if isinstance(rule, Rule):
            return rule
        try:
            return Rule.model_validate(rule)
        except ValidationError as e:
            raise RuleValidationError(
                "Rule document is invalid",
                details={"errors": e.errors(include_url=False, include_context=False)}
            ) from e

    async def _save(self, rule: Rule) -> Rule:
        stored, previous = await self.adapter.save_rule(rule)
        await self.cache.invalidate_for_rule(stored.organization_id, stored.family_code)
        # A rule moved to another family must also leave the old one
        if previous is not None and previous.family_code and previous.family_code != stored.family_code:
            await self.cache.invalidate_for_rule(stored.organization_id, previous.family_code)
        return stored

    async def upsert_rule(self, rule: RuleInput) -> str:
        """Save a rule as a new version and drop the cache entries it affects."""
        rule = self._coerce(rule)
        try:
            self.registry.lookup(rule.family_key).parse_payload(rule)
        except RuleParseError as e:
            raise RuleValidationError(e.message, details=e.details) from e

        stored = await self._save(rule)
        return stored.rule_id

    async def invalidate_cache(self, organization_id: Optional[str] = None,
                               family: Optional[str] = None) -> int:
        return await self.resolver.invalidate_cache(organization_id, family)

    async def rollback_rule(self, rule_id: str, to_version: int) -> Rule:
        """Re-save an earlier version's content as the newest version."""
        history = await self._read("history", self.adapter.fetch_history(rule_id))
        target = next((rule for rule in history if rule.version == to_version), None)
        if target is None:
            raise RuleValidationError(
                f"Rule {rule_id} has no version {to_version}",
                details={"rule_id": rule_id, "versions": [rule.version for rule in history]}
            )

        stored = await self._save(target)
        self.logger.info(
            "Rule rolled back",
            rule_id=rule_id,
            restored_version=to_version,
            version=stored.version
        )
        return stored

    # Authoring reads

    async def _read(self, operation: str, awaitable):
        try:
            return await awaitable
        except RulesServiceException:
            raise
        except Exception as e:
            if self.metrics:
                self.metrics.increment_counter("rule_store_failures_total", operation=operation)
            raise StoreUnavailable(f"Rule store {operation} failed", details={"error": str(e)}) from e

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        return await self._read("get", self.adapter.get_rule(rule_id))

    async def get_history(self, rule_id: str) -> List[Rule]:
        return await self._read("history", self.adapter.fetch_history(rule_id))

    async def get_decision_records(self, organization_id: str, rule_id: Optional[str] = None,
                                   limit: int = 100) -> List[dict]:
        """Recent audit records of an organization, newest first."""
        if self.audit is None:
            raise ConfigurationError("Decision audit is disabled")
        if not organization_id:
            raise ConfigurationError("organization_id is required")
        if limit < 1:
            raise ConfigurationError("limit must be positive", details={"limit": limit})
        await self.audit.drain()
        return await self._read("audit", self.audit.sink.fetch_decision_records(organization_id, rule_id, limit))

    async def list_rules(self, organization_id: str, family: str,
                         include_inactive: bool = False) -> List[Rule]:
        """Stored rules of a family, bypassing the cache."""
        self.resolver.prepare_context(organization_id)
        rules = await self._read("list", self.adapter.fetch_rules(organization_id, family))
        if not include_inactive:
            rules = [rule for rule in rules if rule.is_active]
        return sorted(rules, key=lambda rule: (rule.family_code, -rule.priority, rule.rule_id))

    async def validate_rule(self, rule: RuleInput) -> ValidationReport:
        rule_id = rule.rule_id if isinstance(rule, Rule) else rule.get("rule_id")
        stored = None
        if rule_id:
            try:
                stored = await self.get_rule(str(rule_id))
            except RuleParseError:
                stored = None
        return validate_rule(rule, self.registry, stored=stored)

    def simulate_rule(self, rule: RuleInput, scenarios: List[Any]) -> SimulationReport:
        return simulate_rule(self._coerce(rule), scenarios, self.registry, now=self.clock.now())

    def diff_rules(self, base: RuleInput, new: RuleInput) -> List[FieldChange]:
        return diff_rules(self._coerce(base), self._coerce(new))


def create_service(config: Optional[ServiceConfig] = None, store: Optional[RuleDocumentStore] = None,
                   audit_sink: Optional[AuditSink] = None, **kwargs) -> RuleService:
    """Build a service backed by PostgreSQL unless a store is supplied."""
    config = config or get_config()
    if store is None:
        store = PostgreSQLRuleDocumentStore(
            config.postgres_dsn,
            retry_attempts=config.store_retry_attempts,
            failure_threshold=config.store_failure_threshold,
            recovery_timeout=config.store_recovery_timeout_seconds
        )
    if audit_sink is None and config.audit_enabled and config.env != "local":
        audit_sink = PostgreSQLAuditSink(config.postgres_dsn)
    return RuleService(store, config=config, audit_sink=audit_sink, **kwargs)
