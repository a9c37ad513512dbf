"""
PostgreSQL rule document store.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailable
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from .store import Document, RuleDocumentStore


TRANSIENT_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgreSQLRuleDocumentStore(RuleDocumentStore):
    """Rule documents kept as JSONB, with an append-only version table."""

    def __init__(self, dsn: str, *, retry_attempts: int = 2, failure_threshold: int = 5,
                 recovery_timeout: float = 30.0, command_timeout: float = 5.0):
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.logger = get_logger("rules.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name="rule_store"
        )
        retry = retry_on_exception(TRANSIENT_ERRORS, RetryConfig(max_attempts=retry_attempts))
        self._fetch_rows = retry(self._fetch_rows_once)
        self._fetch_row = retry(self._fetch_row_once)

    async def start(self):
        """Open the pool and create tables."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=10,
                command_timeout=self.command_timeout,
                init=self._init_connection
            )
            await self._create_tables()
            self.logger.info("PostgreSQL rule store started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL rule store", error=str(e))
            raise StoreUnavailable("Could not connect to the rule store", details={"error": str(e)})

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL rule store stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS rule_documents (
                    rule_id VARCHAR(255) PRIMARY KEY,
                    organization_id VARCHAR(255) NOT NULL,
                    family_code VARCHAR(255) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    version INTEGER NOT NULL,
                    document JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS rule_document_versions (
                    rule_id VARCHAR(255) NOT NULL,
                    version INTEGER NOT NULL,
                    document JSONB NOT NULL,
                    recorded_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (rule_id, version)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_rule_documents_org_family
                ON rule_documents(organization_id, family_code);
            """)

    async def _guarded(self, operation: str, func, *args):
        """Run a store call behind the breaker; surface failures as StoreUnavailable."""
        if self.pool is None:
            raise StoreUnavailable("Rule store has not been started", details={"operation": operation})
        try:
            return await self.circuit_breaker.call(func, *args)
        except CircuitBreakerOpenException as e:
            raise StoreUnavailable(str(e), details={"operation": operation})
        except (RetryError, *TRANSIENT_ERRORS) as e:
            self.logger.warning("Rule store call failed", operation=operation, error=str(e))
            raise StoreUnavailable(f"Rule store {operation} failed", details={"error": str(e)})

    async def _fetch_rows_once(self, query: str, *args) -> List[Any]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _fetch_row_once(self, query: str, *args) -> Optional[Any]:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_documents(self, organization_id: str, family: str) -> List[Document]:
        rows = await self._guarded("fetch", self._fetch_rows, """
            SELECT document FROM rule_documents
            WHERE organization_id = $1
              AND (family_code = $2 OR family_code LIKE $2 || '.%')
            ORDER BY rule_id
        """, organization_id, family)
        return [row["document"] for row in rows]

    async def get_document(self, rule_id: str) -> Optional[Document]:
        row = await self._guarded("get", self._fetch_row, """
            SELECT document FROM rule_documents WHERE rule_id = $1
        """, rule_id)
        return row["document"] if row else None

    async def fetch_history(self, rule_id: str) -> List[Document]:
        rows = await self._guarded("history", self._fetch_rows, """
            SELECT document FROM rule_document_versions
            WHERE rule_id = $1 ORDER BY version ASC
        """, rule_id)
        return [row["document"] for row in rows]

    async def save_document(self, document: Document) -> None:
        await self._guarded("save", self._save_once, document)
        self.logger.info(
            "Rule document saved",
            rule_id=document["rule_id"],
            version=document["metadata"]["version"]
        )

    async def _save_once(self, document: Dict[str, Any]) -> None:
        version = document["metadata"]["version"]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO rule_documents (
                        rule_id, organization_id, family_code, status, version, document, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, NOW())
                    ON CONFLICT (rule_id) DO UPDATE SET
                        family_code = EXCLUDED.family_code,
                        status = EXCLUDED.status,
                        version = EXCLUDED.version,
                        document = EXCLUDED.document,
                        updated_at = EXCLUDED.updated_at
                """,
                    document["rule_id"], document["scope"]["organization_id"],
                    document["family_code"], document["status"], version, document
                )
                await conn.execute("""
                    INSERT INTO rule_document_versions (rule_id, version, document)
                    VALUES ($1, $2, $3)
                """, document["rule_id"], version, document)

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
