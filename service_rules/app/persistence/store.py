"""
Rule document store contract and an in-memory implementation.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from ..rules.models import family_matches


Document = Dict[str, Any]


class RuleDocumentStore(ABC):
    """Generic document store holding rule documents and their history."""

    async def start(self):
        """Open connections; no-op by default."""

    async def stop(self):
        """Release connections; no-op by default."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def fetch_documents(self, organization_id: str, family: str) -> List[Document]:
        """Current documents of an organization whose family code starts with ``family``."""

    @abstractmethod
    async def get_document(self, rule_id: str) -> Optional[Document]:
        """Current document of one rule."""

    @abstractmethod
    async def save_document(self, document: Document) -> None:
        """Replace the current document and append it to the rule's history."""

    @abstractmethod
    async def fetch_history(self, rule_id: str) -> List[Document]:
        """Every stored version of a rule, oldest first."""


def _organization_of(document: Document) -> Optional[str]:
    scope = document.get("scope")
    if isinstance(scope, dict):
        return scope.get("organization_id")
    return None


class InMemoryRuleDocumentStore(RuleDocumentStore):
    """Process-local store used by tests, the CLI and local development."""

    def __init__(self, documents: Optional[List[Document]] = None):
        self.logger = get_logger("rules.persistence.memory")
        self._current: Dict[str, Document] = {}
        self._history: Dict[str, List[Document]] = {}
        for document in documents or []:
            self._put(document)

    def _put(self, document: Document) -> None:
        rule_id = str(document.get("rule_id"))
        stored = copy.deepcopy(document)
        self._current[rule_id] = stored
        self._history.setdefault(rule_id, []).append(copy.deepcopy(stored))

    async def fetch_documents(self, organization_id: str, family: str) -> List[Document]:
        return [
            copy.deepcopy(document)
            for document in self._current.values()
            if _organization_of(document) == organization_id
            and isinstance(document.get("family_code"), str)
            and family_matches(document["family_code"], family)
        ]

    async def get_document(self, rule_id: str) -> Optional[Document]:
        document = self._current.get(rule_id)
        return copy.deepcopy(document) if document is not None else None

    async def save_document(self, document: Document) -> None:
        self._put(document)
        self.logger.debug("Rule document saved", rule_id=document.get("rule_id"))

    async def fetch_history(self, rule_id: str) -> List[Document]:
        return copy.deepcopy(self._history.get(rule_id, []))

    def __len__(self) -> int:
        return len(self._current)
