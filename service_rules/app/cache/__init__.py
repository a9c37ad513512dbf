"""
Cache package for the rule service.

Provides an in-process TTL cache of candidate rules keyed by
(organization, family) with per-key locking.
"""

from .rule_cache import RuleCache, DEFAULT_TTL_SECONDS

__all__ = ["RuleCache", "DEFAULT_TTL_SECONDS"]
