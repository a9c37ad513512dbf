"""
Unit tests for the RuleService facade.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from service_rules.app.audit import InMemoryAuditSink, LoggingAuditSink
from service_rules.app.clock import FixedClock
from service_rules.app.persistence import InMemoryRuleDocumentStore
from service_rules.app.rules.models import NO_MATCHING_RULE
from service_rules.app.service import RuleService, create_service
from shared.config import get_config
from shared.errors import AuditWriteFailure, ConfigurationError, RuleValidationError, StoreUnavailable
from shared.metrics import MetricsCollector
from shared.test_helpers import ContextFactory, FailingStoreError, ORG_ID, OTHER_ORG_ID, REFERENCE_NOW, RuleFactory


FAMILY = "ORG.CONFIG.BOOKING.AVAILABILITY"
NO_SHOW = "ORG.CONFIG.BOOKING.NO_SHOW"


class TestRuleService:
    """Test cases for RuleService."""

    @pytest.fixture
    def store(self):
        return InMemoryRuleDocumentStore()

    @pytest.fixture
    def sink(self):
        return InMemoryAuditSink()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("rules-test")

    @pytest.fixture
    def service(self, store, sink, metrics):
        return RuleService(
            store,
            config=get_config(audit_enabled=True, metrics_enabled=True),
            clock=FixedClock(REFERENCE_NOW),
            audit_sink=sink,
            metrics=metrics,
        )

    @pytest.mark.asyncio
    async def test_upsert_invalidates_cached_family(self, service):
        """Test a write is visible to the next resolve."""
        await service.upsert_rule(RuleFactory.rule(rule_id="old", priority=1))
        assert [rule.rule_id for rule in await service.resolve(ORG_ID, FAMILY, ContextFactory.context())] == ["old"]

        await service.upsert_rule(RuleFactory.rule(rule_id="new", priority=5))
        rules = await service.resolve(ORG_ID, FAMILY, ContextFactory.context())

        assert [rule.rule_id for rule in rules] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_deactivation_takes_effect_immediately(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))
        await service.resolve(ORG_ID, FAMILY, ContextFactory.context())

        await service.upsert_rule(RuleFactory.document(rule_id="r1", status="inactive"))

        assert await service.resolve(ORG_ID, FAMILY, ContextFactory.context()) == []

    @pytest.mark.asyncio
    async def test_moving_rule_to_another_family_leaves_old_family(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))
        assert len(await service.resolve(ORG_ID, FAMILY, ContextFactory.context())) == 1

        await service.upsert_rule(RuleFactory.rule(
            rule_id="r1", family_code="ORG.CONFIG.UI.FEATURE_FLAG.V1", payload={"enabled": True}
        ))

        assert await service.resolve(ORG_ID, FAMILY, ContextFactory.context()) == []
        flags = await service.resolve(ORG_ID, "ORG.CONFIG.UI.FEATURE_FLAG", ContextFactory.context())
        assert [rule.version for rule in flags] == [2]

    @pytest.mark.asyncio
    async def test_write_during_slow_load_is_not_hidden_by_cache(self, service, store):
        """Test a load that read the old rule is not cached over a newer write."""
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))
        started = asyncio.Event()
        release = asyncio.Event()
        fetch_documents = store.fetch_documents

        async def gated_fetch(*args, **kwargs):
            documents = await fetch_documents(*args, **kwargs)
            started.set()
            await release.wait()
            return documents

        with patch.object(store, "fetch_documents", side_effect=gated_fetch):
            load = asyncio.create_task(service.resolve(ORG_ID, FAMILY, ContextFactory.context()))
            await started.wait()
            await service.upsert_rule(RuleFactory.document(rule_id="r1", status="inactive"))
            release.set()
            stale = await load

        assert [rule.rule_id for rule in stale] == ["r1"]
        assert await service.resolve(ORG_ID, FAMILY, ContextFactory.context()) == []

    @pytest.mark.asyncio
    async def test_upsert_returns_rule_id_and_accepts_documents(self, service, store):
        rule_id = await service.upsert_rule(RuleFactory.document(rule_id="doc-1"))

        assert rule_id == "doc-1"
        assert (await store.get_document("doc-1"))["metadata"]["version"] == 1

    @pytest.mark.asyncio
    async def test_upsert_rejects_invalid_documents(self, service):
        with pytest.raises(RuleValidationError):
            await service.upsert_rule({"rule_id": "x", "family_code": FAMILY})

    @pytest.mark.asyncio
    async def test_upsert_rejects_invalid_payload(self, service):
        with pytest.raises(RuleValidationError):
            await service.upsert_rule(RuleFactory.rule(payload={"reason": "no availability flag"}))

    @pytest.mark.asyncio
    async def test_upsert_rejects_discount_without_its_amount(self, service):
        for payload in ({"discount_type": "tiered"}, {"discount_type": "fixed"}, {"discount_type": "percentage"}):
            with pytest.raises(RuleValidationError):
                await service.upsert_rule(RuleFactory.discount("d1", **payload))

    @pytest.mark.asyncio
    async def test_stored_discount_without_formula_does_not_break_decisions(self, service, store, metrics):
        await store.save_document(RuleFactory.document(
            rule_id="d1", family_code="ORG.CONFIG.PRICING.DISCOUNT.V1", payload={"discount_type": "tiered"}
        ))

        decision = await service.decide("ORG.CONFIG.PRICING.DISCOUNT", ContextFactory.context(),
                                        {"original_price": 100})

        assert decision.decision == NO_MATCHING_RULE
        assert metrics.get_value("rule_parse_failures_total") == 1

    @pytest.mark.asyncio
    async def test_upsert_rejects_organization_change(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))

        with pytest.raises(RuleValidationError):
            await service.upsert_rule(RuleFactory.rule(rule_id="r1", organization_id=OTHER_ORG_ID))

    @pytest.mark.asyncio
    async def test_decide_records_audit_and_metrics(self, service, sink, metrics):
        await service.upsert_rule(RuleFactory.no_show(fee_percentage=10))

        decision = await service.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 200})
        await service.audit.drain()

        assert decision.decision == "charge"
        assert len(sink.records) == 1
        assert sink.records[0]["family"] == NO_SHOW
        assert sink.records[0]["decision"]["payload"]["fee"] == pytest.approx(20.0)
        assert sink.records[0]["inputs"] == {"appointment_value": 200}
        assert metrics.get_value("rule_decisions_total", family=NO_SHOW, decision="charge") == 1

    @pytest.mark.asyncio
    async def test_decision_records_can_be_read_back(self, service):
        await service.upsert_rule(RuleFactory.no_show(fee_percentage=10))
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))

        await service.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 100})
        await service.decide(FAMILY, ContextFactory.context(), {})
        await service.decide(NO_SHOW, ContextFactory.context(organization_id=OTHER_ORG_ID), {"appointment_value": 100})

        newest_first = await service.get_decision_records(ORG_ID)
        for_no_show = await service.get_decision_records(ORG_ID, rule_id="no-show-1")

        assert [record["family"] for record in newest_first] == [FAMILY, NO_SHOW]
        assert [record["decision"]["decision"] for record in for_no_show] == ["charge"]
        assert len(await service.get_decision_records(ORG_ID, limit=1)) == 1
        with pytest.raises(ConfigurationError):
            await service.get_decision_records(ORG_ID, limit=0)

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_reach_caller(self, service, sink, metrics):
        """Test a failing audit sink leaves the decision untouched."""
        await service.upsert_rule(RuleFactory.no_show(fee_percentage=10))

        with patch.object(sink, "append_decision_record", AsyncMock(side_effect=AuditWriteFailure("disk full"))):
            decision = await service.decide(NO_SHOW, ContextFactory.context(), {"appointment_value": 200})
            await service.audit.drain()

        assert decision.decision == "charge"
        assert metrics.get_value("audit_write_failures_total") == 1

    @pytest.mark.asyncio
    async def test_unexpected_audit_errors_are_swallowed(self, service, sink, metrics):
        with patch.object(sink, "append_decision_record", AsyncMock(side_effect=RuntimeError("boom"))):
            decision = await service.decide(NO_SHOW, ContextFactory.context(), {})
            await service.audit.drain()

        assert decision.decision == NO_MATCHING_RULE
        assert metrics.get_value("audit_write_failures_total") == 1

    @pytest.mark.asyncio
    async def test_rollback_creates_new_version(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1", priority=1))
        await service.upsert_rule(RuleFactory.rule(rule_id="r1", priority=2))

        restored = await service.rollback_rule("r1", 1)

        assert restored.version == 3
        assert restored.priority == 1
        assert [rule.version for rule in await service.get_history("r1")] == [1, 2, 3]
        assert (await service.resolve(ORG_ID, FAMILY, ContextFactory.context()))[0].priority == 1

    @pytest.mark.asyncio
    async def test_rollback_to_unknown_version(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))

        with pytest.raises(RuleValidationError):
            await service.rollback_rule("r1", 7)

    @pytest.mark.asyncio
    async def test_list_rules_hides_inactive_by_default(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="on"))
        await service.upsert_rule(RuleFactory.rule(rule_id="draft", status="draft"))

        assert [rule.rule_id for rule in await service.list_rules(ORG_ID, FAMILY)] == ["on"]
        listed = await service.list_rules(ORG_ID, FAMILY, include_inactive=True)
        assert sorted(rule.rule_id for rule in listed) == ["draft", "on"]

    @pytest.mark.asyncio
    async def test_authoring_reads_do_not_fail_open(self, service, store):
        with patch.object(store, "fetch_documents", side_effect=FailingStoreError("down")):
            with pytest.raises(StoreUnavailable):
                await service.list_rules(ORG_ID, FAMILY)

        with patch.object(store, "get_document", side_effect=FailingStoreError("down")):
            with pytest.raises(StoreUnavailable):
                await service.get_rule("r1")

    @pytest.mark.asyncio
    async def test_diagnose_includes_drafts(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="on"))
        await service.upsert_rule(RuleFactory.rule(rule_id="draft", status="draft", scope={"branches": ["b1"]}))

        ranking = await service.diagnose(ORG_ID, FAMILY, ContextFactory.context(branch_id="b1"))

        assert [match.rule.rule_id for match in ranking] == ["draft", "on"]

    @pytest.mark.asyncio
    async def test_validate_rule_uses_stored_organization(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1", scope={"branches": ["b1"]}))

        report = await service.validate_rule(
            RuleFactory.document(rule_id="r1", organization_id=OTHER_ORG_ID, scope={"branches": ["b1"]})
        )

        assert report.ok is False

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, service):
        await service.upsert_rule(RuleFactory.rule(rule_id="r1"))
        await service.resolve(ORG_ID, FAMILY, ContextFactory.context())

        assert await service.invalidate_cache(ORG_ID, FAMILY + ".V1") == 1
        assert await service.invalidate_cache() == 0

    def test_simulate_and_diff_accept_documents(self, service):
        document = RuleFactory.document(rule_id="sim", payload={"available": False, "reason": "Closed"})

        report = service.simulate_rule(document, [{"scenario_id": "s", "expected": {"decision": "unavailable"}}])
        changes = service.diff_rules(RuleFactory.document(rule_id="sim"), document)

        assert report.coverage == 100.0
        assert {change.path for change in changes} == {"payload.available", "payload.reason"}


class TestCreateService:
    """Test cases for create_service."""

    def test_local_service_logs_audit_records(self):
        service = create_service(
            get_config(env="local"),
            store=InMemoryRuleDocumentStore(),
            metrics=MetricsCollector("rules-test"),
        )

        assert isinstance(service.audit.sink, LoggingAuditSink)
        assert service.cache.ttl_seconds == 300

    def test_audit_can_be_disabled(self):
        service = create_service(get_config(audit_enabled=False), store=InMemoryRuleDocumentStore())

        assert service.audit is None

    @pytest.mark.asyncio
    async def test_decision_records_need_audit(self):
        service = create_service(get_config(audit_enabled=False), store=InMemoryRuleDocumentStore())

        with pytest.raises(ConfigurationError):
            await service.get_decision_records(ORG_ID)

    @pytest.mark.asyncio
    async def test_logging_sink_has_no_records_to_read(self):
        service = create_service(
            get_config(env="local"),
            store=InMemoryRuleDocumentStore(),
            metrics=MetricsCollector("rules-test"),
        )

        assert await service.get_decision_records(ORG_ID) == []
