"""In-process TTL cache for analytics results.

One ``AnalyticsCache`` instance per analysis family (risk, optimization,
sensitivity, stress), owned by the service instance that created it.

Keys are ``(entity_id, analysis_type, parameters)``; parameters are
canonicalised to sorted JSON so equal parameter dicts map to the same key.

Semantics:
- Entries expire ``ttl_seconds`` after their timestamp (default 300 s).
- ``set`` is last-write-wins by timestamp: an entry older than the one
  already stored is dropped.
- ``get_or_compute`` coalesces concurrent computations for the same key
  onto a single in-flight task.

Usage::

    cache = AnalyticsCache("optimization")
    result = await cache.get_or_compute(
        cache.key(vpp_id, "mean_variance", params), lambda: optimize(...)
    )
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Mapping

import structlog

logger = structlog.get_logger(__name__)

# Default TTL (seconds) for risk data
TTL_DEFAULT = 300.0

CacheKey = tuple[str, str, str]


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with the time it was computed."""

    value: Any
    timestamp: float


class AnalyticsCache:
    """TTL-aware, timestamp-ordered cache for one analysis family.

    Args:
        name: Cache family name used in log lines.
        ttl_seconds: Validity window of an entry.
        clock: Time source in seconds; injectable for tests.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float = TTL_DEFAULT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._inflight: dict[Hashable, asyncio.Task] = {}

    @staticmethod
    def key(
        entity_id: str,
        analysis_type: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> CacheKey:
        """Build a cache key from entity, analysis type and parameters."""
        canonical = json.dumps(parameters or {}, sort_keys=True, default=str)
        return (str(entity_id), str(analysis_type), canonical)

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------
    def get(self, key: Hashable) -> Any | None:
        """Return the cached value, or ``None`` on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("cache_miss", cache=self.name)
            return None
        if self._is_expired(entry):
            self._entries.pop(key, None)
            logger.debug("cache_expired", cache=self.name)
            return None
        logger.debug("cache_hit", cache=self.name)
        return entry.value

    def get_entry(self, key: Hashable) -> CacheEntry | None:
        """Return the raw entry (value + timestamp) if still valid."""
        entry = self._entries.get(key)
        if entry is None or self._is_expired(entry):
            return None
        return entry

    def set(self, key: Hashable, value: Any, timestamp: float | None = None) -> bool:
        """Store *value*; returns False if a newer entry is already present."""
        ts = self._clock() if timestamp is None else timestamp
        current = self._entries.get(key)
        if current is not None and current.timestamp > ts:
            logger.debug("cache_stale_write_dropped", cache=self.name)
            return False
        self._entries[key] = CacheEntry(value=value, timestamp=ts)
        return True

    async def get_or_compute(
        self,
        key: Hashable,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return a fresh cached value or compute it once for all waiters."""
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute(key, factory))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _compute(
        self, key: Hashable, factory: Callable[[], Awaitable[Any]]
    ) -> Any:
        started = self._clock()
        try:
            value = await factory()
            self.set(key, value, timestamp=started)
            return value
        finally:
            self._inflight.pop(key, None)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def invalidate(self, entity_id: str | None = None) -> int:
        """Drop entries for *entity_id* (or all entries); returns count."""
        if entity_id is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        doomed = [
            k
            for k in self._entries
            if isinstance(k, tuple) and k and k[0] == str(entity_id)
        ]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def discard(self, key: Hashable) -> bool:
        """Drop the entry stored under *key*; True if one was present."""
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        doomed = [k for k, e in self._entries.items() if self._is_expired(e)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp > self.ttl_seconds


@dataclass
class AnalyticsCaches:
    """The four cache families owned by one analytics service."""

    risk: AnalyticsCache
    optimization: AnalyticsCache
    sensitivity: AnalyticsCache
    stress: AnalyticsCache

    @classmethod
    def create(
        cls,
        ttl_seconds: float = TTL_DEFAULT,
        clock: Callable[[], float] = time.time,
    ) -> AnalyticsCaches:
        return cls(
            risk=AnalyticsCache("risk", ttl_seconds, clock),
            optimization=AnalyticsCache("optimization", ttl_seconds, clock),
            sensitivity=AnalyticsCache("sensitivity", ttl_seconds, clock),
            stress=AnalyticsCache("stress", ttl_seconds, clock),
        )

    def sizes(self) -> dict[str, int]:
        return {
            "risk": len(self.risk),
            "optimization": len(self.optimization),
            "sensitivity": len(self.sensitivity),
            "stress_test": len(self.stress),
        }

    def clear(self) -> None:
        for cache in (self.risk, self.optimization, self.sensitivity, self.stress):
            cache.clear()
