"""
Translation between rule documents and ``Rule`` models.

The adapter carries no matching logic. Reads skip documents that fail to
parse; writes enforce the version and organization invariants.
"""

from typing import List, NamedTuple, Optional, Tuple

from shared.errors import RuleParseError, RuleValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import Rule, family_matches
from .store import Document, RuleDocumentStore


class StoredState(NamedTuple):
    """What an upsert needs to know about the version already stored."""
    organization_id: Optional[str]
    version: int
    family_code: Optional[str]


class RuleStoreAdapter:
    """Reads and writes rules through a document store."""

    def __init__(self, store: RuleDocumentStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("rules.persistence.adapter")

    def _parse(self, document: Document) -> Optional[Rule]:
        try:
            return Rule.from_document(document)
        except RuleParseError as e:
            self.logger.warning(
                "Skipping unparseable rule document",
                rule_id=e.rule_id,
                error=e.message
            )
            if self.metrics:
                self.metrics.increment_counter("rule_parse_failures_total")
            return None

    def parse_documents(self, documents: List[Document]) -> List[Rule]:
        rules = []
        for document in documents:
            rule = self._parse(document)
            if rule is not None:
                rules.append(rule)
        return rules

    async def fetch_rules(self, organization_id: str, family: str) -> List[Rule]:
        """Rules of an organization whose family code falls under ``family``.

        Store errors propagate; unparseable documents are skipped.
        """
        documents = await self.store.fetch_documents(organization_id, family)
        rules = self.parse_documents(documents)
        # Guard against stores with looser prefix matching
        return [
            rule for rule in rules
            if rule.organization_id == organization_id and family_matches(rule.family_code, family)
        ]

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Current version of a rule; a stored document that fails to parse raises."""
        document = await self.store.get_document(rule_id)
        if document is None:
            return None
        return Rule.from_document(document)

    async def fetch_history(self, rule_id: str) -> List[Rule]:
        """Parseable historical versions, oldest first."""
        documents = await self.store.fetch_history(rule_id)
        return sorted(self.parse_documents(documents), key=lambda rule: rule.version)

    async def _stored_state(self, rule_id: str) -> Optional[StoredState]:
        """State of the stored rule, or None when new."""
        document = await self.store.get_document(rule_id)
        if document is None:
            return None
        try:
            stored = Rule.from_document(document)
            return StoredState(stored.organization_id, stored.version, stored.family_code)
        except RuleParseError:
            # Still honour what can be read from a damaged document
            scope = document.get("scope") if isinstance(document.get("scope"), dict) else {}
            metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
            version = metadata.get("version")
            if not isinstance(version, int):
                version = len(await self.store.fetch_history(rule_id))
            family_code = document.get("family_code")
            return StoredState(
                scope.get("organization_id"), version, family_code if isinstance(family_code, str) else None
            )

    async def upsert_rule(self, rule: Rule) -> Rule:
        """Persist a rule, bumping its version; returns the stored rule."""
        stored_rule, _ = await self.save_rule(rule)
        return stored_rule

    async def save_rule(self, rule: Rule) -> Tuple[Rule, Optional[StoredState]]:
        """Persist a rule and also return the state it replaced."""
        state = await self._stored_state(rule.rule_id)

        if state is None:
            version = max(1, rule.version)
        else:
            stored_organization, stored_version = state.organization_id, state.version
            if stored_organization and stored_organization != rule.organization_id:
                raise RuleValidationError(
                    "organization_id of an existing rule cannot change",
                    details={
                        "rule_id": rule.rule_id,
                        "stored_organization_id": stored_organization,
                        "organization_id": rule.organization_id,
                    }
                )
            version = max(stored_version + 1, rule.version)

        stored_rule = rule.with_version(version)
        await self.store.save_document(stored_rule.to_document())

        self.logger.info(
            "Rule upserted",
            rule_id=stored_rule.rule_id,
            organization_id=stored_rule.organization_id,
            family_code=stored_rule.family_code,
            version=version
        )
        return stored_rule, state
