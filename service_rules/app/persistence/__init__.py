"""
Persistence package for the rule service.

Document stores (in-memory and PostgreSQL) and the adapter that turns
their documents into ``Rule`` models.
"""

from .store import RuleDocumentStore, InMemoryRuleDocumentStore
from .adapter import RuleStoreAdapter

__all__ = ["RuleDocumentStore", "InMemoryRuleDocumentStore", "RuleStoreAdapter"]
