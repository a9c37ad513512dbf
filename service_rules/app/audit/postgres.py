"""
PostgreSQL decision audit sink.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import AuditWriteFailure
from shared.logging import get_logger
from .sink import AuditSink, build_record


class PostgreSQLAuditSink(AuditSink):
    """Appends decision records to ``rule_decision_audit``."""

    def __init__(self, dsn: str, command_timeout: float = 5.0):
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.logger = get_logger("rules.audit.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=5,
                command_timeout=self.command_timeout
            )
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    CREATE TABLE IF NOT EXISTS rule_decision_audit (
                        id BIGSERIAL PRIMARY KEY,
                        decision_id VARCHAR(64),
                        organization_id VARCHAR(255) NOT NULL,
                        family VARCHAR(255) NOT NULL,
                        decision VARCHAR(100) NOT NULL,
                        confidence DOUBLE PRECISION NOT NULL,
                        applied_rule_id VARCHAR(255),
                        record JSONB NOT NULL,
                        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                    );
                """)
                await conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_rule_decision_audit_org_created
                    ON rule_decision_audit(organization_id, created_at);
                """)
            self.logger.info("PostgreSQL audit sink started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL audit sink", error=str(e))
            raise AuditWriteFailure("Could not connect to the audit store", details={"error": str(e)})

    async def stop(self):
        if self.pool:
            await self.pool.close()

    async def append_decision_record(self, decision, family, context, inputs) -> None:
        if self.pool is None:
            raise AuditWriteFailure("Audit sink has not been started")

        record = build_record(decision, family, context, inputs)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO rule_decision_audit (
                        decision_id, organization_id, family, decision, confidence, applied_rule_id, record
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                    record["decision_id"], context.organization_id, family, decision.decision, decision.confidence,
                    decision.evidence.applied_rule_id, json.dumps(record, default=str)
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise AuditWriteFailure("Decision record was not written", details={"error": str(e)}) from e

    async def fetch_decision_records(self, organization_id, rule_id=None, limit=100) -> List[Dict[str, Any]]:
        if self.pool is None:
            raise AuditWriteFailure("Audit sink has not been started")

        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT record FROM rule_decision_audit
                WHERE organization_id = $1
                  AND ($2::text IS NULL
                       OR applied_rule_id = $2::text
                       OR record->'decision'->'evidence'->'matching_rule_ids' ? $2::text
                       OR record->'decision'->'evidence'->'applied_rule_ids' ? $2::text)
                ORDER BY created_at DESC, id DESC
                LIMIT $3
            """, organization_id, rule_id, limit)

        # asyncpg hands JSONB back as text unless a codec is registered
        return [
            json.loads(row["record"]) if isinstance(row["record"], str) else dict(row["record"])
            for row in rows
        ]

