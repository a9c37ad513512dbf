"""
Decision audit sinks and the fire-and-forget dispatcher.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from shared.errors import AuditWriteFailure
from shared.logging import current_decision_id, get_logger
from shared.metrics import MetricsCollector
from ..rules.models import Decision, EvaluationContext


def build_record(decision: Decision, family: str, context: EvaluationContext,
                 inputs: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-friendly audit record for one decision."""
    return {
        "decision_id": current_decision_id(),
        "recorded_at": datetime.now(timezone.utc).isoformat(),
        "organization_id": context.organization_id,
        "family": family,
        "decision": decision.to_dict(),
        "context": context.snapshot(),
        "inputs": dict(inputs),
    }


def record_rule_ids(record: Mapping[str, Any]) -> Set[str]:
    """Rule ids a record names as matching or applied."""
    evidence = record.get("decision", {}).get("evidence", {})
    return set(evidence.get("matching_rule_ids") or []) | set(evidence.get("applied_rule_ids") or [])


class AuditSink(ABC):
    """Destination for decision records."""

    async def start(self):
        """Open connections; no-op by default."""

    async def stop(self):
        """Release connections; no-op by default."""

    @abstractmethod
    async def append_decision_record(self, decision: Decision, family: str,
                                     context: EvaluationContext, inputs: Mapping[str, Any]) -> None:
        """Persist one decision record."""

    async def fetch_decision_records(self, organization_id: str, rule_id: Optional[str] = None,
                                     limit: int = 100) -> List[Dict[str, Any]]:
        """Newest records of an organization, optionally only those naming ``rule_id``.

        Sinks that cannot be read back return nothing.
        """
        return []


class LoggingAuditSink(AuditSink):
    """Writes decision records to the structured log."""

    def __init__(self):
        self.logger = get_logger("rules.audit")

    async def append_decision_record(self, decision, family, context, inputs) -> None:
        self.logger.info(
            "Decision rendered",
            organization_id=context.organization_id,
            family=family,
            decision=decision.decision,
            confidence=decision.confidence,
            applied_rule_id=decision.evidence.applied_rule_id,
            matching_rule_ids=decision.evidence.matching_rule_ids
        )


class InMemoryAuditSink(AuditSink):
    """Keeps records in a list; used by tests and the CLI."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    async def append_decision_record(self, decision, family, context, inputs) -> None:
        self.records.append(build_record(decision, family, context, inputs))

    async def fetch_decision_records(self, organization_id, rule_id=None, limit=100):
        matching = [
            record for record in reversed(self.records)
            if record["organization_id"] == organization_id
            and (rule_id is None or rule_id in record_rule_ids(record))
        ]
        return matching[:limit]


class AuditDispatcher:
    """Schedules audit writes without making the caller wait for them."""

    def __init__(self, sink: AuditSink, metrics: Optional[MetricsCollector] = None):
        self.sink = sink
        self.metrics = metrics
        self.logger = get_logger("rules.audit.dispatcher")
        self._pending: Set[asyncio.Task] = set()

    def submit(self, decision: Decision, family: str, context: EvaluationContext,
               inputs: Mapping[str, Any]) -> asyncio.Task:
        """Schedule a write on the running loop and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self._write(decision, family, context, dict(inputs))
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, decision, family, context, inputs) -> None:
        try:
            await self.sink.append_decision_record(decision, family, context, inputs)
        except Exception as e:
            failure = e if isinstance(e, AuditWriteFailure) else AuditWriteFailure(
                str(e) or type(e).__name__, details={"error_type": type(e).__name__}
            )
            self.logger.warning(
                "Audit write failed",
                organization_id=context.organization_id,
                family=family,
                decision=decision.decision,
                error=failure.message
            )
            if self.metrics:
                self.metrics.increment_counter("audit_write_failures_total")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
