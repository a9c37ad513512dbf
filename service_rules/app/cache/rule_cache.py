"""
TTL cache of candidate rules per (organization, family).

Reads never take a lock. Loads and writes take the lock of the key they
touch, so unrelated lookups are never serialized. Invalidation bumps a
per-key generation; a load that started under an older generation is not
stored.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..clock import Clock, SystemClock
from ..rules.models import Rule, family_matches


CacheKey = Tuple[str, str]

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CacheEntry:
    rules: Tuple[Rule, ...]
    expires_at: float


class RuleCache:
    """Per-key locked TTL cache of candidate rule lists."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Optional[Clock] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.logger = get_logger("rules.cache")
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}
        self._generations: Dict[CacheKey, int] = {}

    def _record(self, event: str, count: int = 1):
        if self.metrics:
            for _ in range(count):
                self.metrics.increment_counter("rule_cache_events_total", event=event)

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def _timestamp(self) -> float:
        return self.clock.now().timestamp()

    def _fresh(self, key: CacheKey) -> Optional[List[Rule]]:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._timestamp():
            return None
        return list(entry.rules)

    def get(self, organization_id: str, family: str) -> Optional[List[Rule]]:
        """Cached rules, or None when absent or expired."""
        rules = self._fresh((organization_id, family))
        self._record("hit" if rules is not None else "miss")
        return rules

    async def set(self, organization_id: str, family: str, rules: List[Rule]) -> None:
        key = (organization_id, family)
        async with self._lock_for(key):
            self._store(key, rules)

    def _store(self, key: CacheKey, rules: List[Rule]) -> None:
        self._entries[key] = CacheEntry(tuple(rules), self._timestamp() + self.ttl_seconds)

    async def get_or_load(self, organization_id: str, family: str,
                          loader: Callable[[], Awaitable[List[Rule]]]) -> List[Rule]:
        """Return cached rules or load them once under the key's lock.

        Loader errors propagate and leave the key uncached. A load that was
        overtaken by an invalidation returns its rules but does not store them.
        """
        cached = self.get(organization_id, family)
        if cached is not None:
            return cached

        key = (organization_id, family)
        async with self._lock_for(key):
            # Another waiter may have loaded it while we queued for the lock
            cached = self._fresh(key)
            if cached is not None:
                return cached
            generation = self._generations.get(key, 0)
            rules = await loader()
            if self._generations.get(key, 0) == generation:
                self._store(key, rules)
            return list(rules)

    def _known_keys(self) -> List[CacheKey]:
        # In-flight loads hold a lock but have no entry yet
        return list(set(self._entries) | set(self._locks))

    def _drop(self, keys: List[CacheKey]) -> int:
        removed = 0
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1
            if self._entries.pop(key, None) is not None:
                removed += 1
        self._record("invalidate", removed)
        return removed

    async def invalidate(self, organization_id: Optional[str] = None, family: Optional[str] = None) -> int:
        """Drop entries: everything, one organization, or one family of an organization.

        A family drops every key that covers it or that it covers, so a full
        family code also clears the shorter key a resolve was cached under.
        """
        if family is not None and organization_id is None:
            raise ConfigurationError("Cache invalidation by family requires an organization_id")

        keys = [
            key for key in self._known_keys()
            if organization_id is None or (
                key[0] == organization_id
                and (family is None or family_matches(family, key[1]) or family_matches(key[1], family))
            )
        ]
        removed = self._drop(keys)
        self.logger.debug(
            "Rule cache invalidated",
            organization_id=organization_id,
            family=family,
            removed=removed
        )
        return removed

    async def invalidate_for_rule(self, organization_id: str, family_code: str) -> int:
        """Drop every entry of the organization whose family covers ``family_code``."""
        keys = [
            key for key in self._known_keys()
            if key[0] == organization_id and family_matches(family_code, key[1])
        ]
        return self._drop(keys)

    def __len__(self) -> int:
        return len(self._entries)
