"""
Unit tests for the decision engine.
"""

import pytest
from unittest.mock import patch

from service_rules.app.clock import FixedClock
from service_rules.app.persistence import InMemoryRuleDocumentStore, RuleStoreAdapter
from service_rules.app.rules.engine import DecisionEngine, render_decision
from service_rules.app.rules.families import FamilyStrategy, Verdict, build_default_registry
from service_rules.app.rules.models import NO_MATCHING_RULE
from service_rules.app.rules.resolver import RuleResolver
from shared.errors import ConfigurationError
from shared.test_helpers import ContextFactory, FailingStoreError, REFERENCE_NOW, RuleFactory


NO_SHOW = "ORG.CONFIG.BOOKING.NO_SHOW"
DISCOUNT = "ORG.CONFIG.PRICING.DISCOUNT"


class TestDecisionEngine:
    """Test cases for DecisionEngine."""

    @pytest.fixture
    def store(self):
        return InMemoryRuleDocumentStore()

    @pytest.fixture
    def engine(self, store):
        resolver = RuleResolver(RuleStoreAdapter(store), clock=FixedClock(REFERENCE_NOW))
        return DecisionEngine(resolver)

    async def save(self, store, rule):
        await store.save_document(rule.to_document())

    @pytest.mark.asyncio
    async def test_no_rules_is_a_normal_outcome(self, engine):
        decision = await engine.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 100})

        assert decision.decision == NO_MATCHING_RULE
        assert decision.confidence == 0.0
        assert decision.evidence.applied_rule_id is None
        assert decision.evidence.matching_rule_ids == []

    @pytest.mark.asyncio
    async def test_no_show_grace_customer(self, engine, store):
        await self.save(store, RuleFactory.no_show(grace_customers=["C1"], fee_percentage=50))

        decision = await engine.decide(NO_SHOW, ContextFactory.context(customer_id="C1"), {"appointment_value": 100})

        assert decision.decision == "waive"
        assert decision.payload["fee"] == 0.0
        assert decision.evidence.applied_rule_id == "no-show-1"
        assert decision.evidence.context["customer_id"] == "C1"

    @pytest.mark.asyncio
    async def test_single_winner_evidence_lists_all_matches(self, engine, store):
        """Test evidence keeps every resolved rule while one is applied."""
        await self.save(store, RuleFactory.no_show("low", fee_percentage=10).model_copy(update={"priority": 1}))
        await self.save(store, RuleFactory.no_show("high", fee_percentage=30).model_copy(update={"priority": 9}))

        decision = await engine.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 100})

        assert decision.decision == "charge"
        assert decision.payload["fee"] == pytest.approx(30.0)
        assert decision.evidence.matching_rule_ids == ["high", "low"]
        assert decision.evidence.applied_rule_id == "high"

    @pytest.mark.asyncio
    async def test_discounts_stack(self, engine, store):
        await self.save(store, RuleFactory.discount("pct", priority=2, percentage=10))
        await self.save(store, RuleFactory.discount("flat", priority=1, discount_type="fixed", amount=5, max_discount_amount=5))

        decision = await engine.decide(DISCOUNT, ContextFactory.context(), {"original_price": 100})

        assert decision.decision == "discount"
        assert decision.payload["total_discount"] == pytest.approx(15.0)
        assert decision.payload["final_price"] == pytest.approx(85.0)
        assert decision.evidence.applied_rule_ids == ["pct", "flat"]

    @pytest.mark.asyncio
    async def test_store_outage_yields_no_matching_rule(self, engine, store):
        """Test a failing store produces a normal no-match decision."""
        await self.save(store, RuleFactory.no_show())

        with patch.object(store, "fetch_documents", side_effect=FailingStoreError("down")):
            decision = await engine.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 100})

        assert decision.decision == NO_MATCHING_RULE
        assert decision.confidence == 0.0

    @pytest.mark.asyncio
    async def test_context_without_organization_is_rejected(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.decide(NO_SHOW, ContextFactory.context(organization_id=""), {})

    @pytest.mark.asyncio
    async def test_decision_serializes(self, engine, store):
        await self.save(store, RuleFactory.rule(payload={"available": True}))

        decision = await engine.decide("ORG.CONFIG.BOOKING.AVAILABILITY", ContextFactory.context(), {})
        data = decision.to_dict()

        assert data["decision"] == "available"
        assert data["family"] == "ORG.CONFIG.BOOKING.AVAILABILITY"
        assert data["evidence"]["applied_rule_id"] == "rule-1"
        assert data["evidence"]["context"]["now"] == REFERENCE_NOW.isoformat()


class TestRenderDecision:
    """Test cases for render_decision with custom families."""

    def test_registered_strategy_handles_family(self):
        class SurchargeFamily(FamilyStrategy):
            prefix = "ORG.CONFIG.PRICING.SURCHARGE"

            def decide(self, rules, context, inputs):
                return Verdict("surcharge", "Weekend surcharge", 0.8, {"amount": rules[0].payload["amount"]})

        registry = build_default_registry()
        registry.register(SurchargeFamily())
        rule = RuleFactory.rule(rule_id="s1", family_code="ORG.CONFIG.PRICING.SURCHARGE.V1", payload={"amount": 7})

        decision = render_decision(registry, "ORG.CONFIG.PRICING.SURCHARGE", ContextFactory.context(), [rule])

        assert decision.decision == "surcharge"
        assert decision.payload == {"amount": 7}
        assert decision.evidence.applied_rule_id == "s1"

    def test_unknown_family_applies_winner_payload(self):
        rule = RuleFactory.rule(rule_id="c1", family_code="ORG.CONFIG.CUSTOM.THING.V1", payload={"limit": 3})

        decision = render_decision(build_default_registry(), "ORG.CONFIG.CUSTOM.THING", ContextFactory.context(), [rule])

        assert decision.decision == "apply"
        assert decision.payload == {"limit": 3}

    def test_merged_notifications_report_source_rules(self):
        rules = [
            RuleFactory.rule(rule_id=f"n{index}", family_code="ORG.CONFIG.NOTIFICATION.TEMPLATE.V1",
                             payload={"templates": [{"name": f"t{index}"}]})
            for index in range(2)
        ]

        decision = render_decision(build_default_registry(), "ORG.CONFIG.NOTIFICATION.TEMPLATE", ContextFactory.context(), rules)

        assert decision.decision == "notify"
        assert [template["name"] for template in decision.payload["templates"]] == ["t0", "t1"]
        assert decision.evidence.applied_rule_ids == ["n0", "n1"]
        assert decision.evidence.applied_rule_id == "n0"

    def test_family_conditions_filter_rules(self):
        rules = [
            RuleFactory.rule(rule_id="deposit", priority=5, conditions={"requires_deposit": True},
                             payload={"available": False, "reason": "Deposit needed"}),
            RuleFactory.rule(rule_id="open"),
        ]
        registry = build_default_registry()

        without = render_decision(registry, "ORG.CONFIG.BOOKING.AVAILABILITY", ContextFactory.context(), rules)
        with_attribute = render_decision(
            registry, "ORG.CONFIG.BOOKING.AVAILABILITY",
            ContextFactory.context(attributes={"requires_deposit": True}), rules,
        )
        from_inputs = render_decision(
            registry, "ORG.CONFIG.BOOKING.AVAILABILITY", ContextFactory.context(), rules, {"requires_deposit": True}
        )

        assert without.evidence.applied_rule_id == "open"
        assert without.evidence.matching_rule_ids == ["open"]
        assert with_attribute.evidence.applied_rule_id == "deposit"
        assert with_attribute.decision == "unavailable"
        assert from_inputs.evidence.applied_rule_id == "deposit"

    def test_family_condition_list_accepts_any_member(self):
        rule = RuleFactory.rule(rule_id="gold", conditions={"loyalty_tier": ["gold", "platinum"]})
        family = build_default_registry().lookup("ORG.CONFIG.BOOKING.AVAILABILITY")

        assert family.accepts(rule, ContextFactory.context(attributes={"loyalty_tier": "platinum"}), {}) is True
        assert family.accepts(rule, ContextFactory.context(attributes={"loyalty_tier": "silver"}), {}) is False
