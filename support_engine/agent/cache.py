"""
Query Cache
============
Per-process TTL + LRU cache for retrieval results.

Entries are keyed by (account_id, normalized query) and remember the
knowledge-base version they were built from. A lookup with a different
version is a miss and drops the stale entry, so re-indexing an account's
documents invalidates its cached results without a flush.

The cache is injected into the pipeline; nothing here is a module global.
"""

from __future__ import annotations

import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..config import CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


@dataclass
class _CacheEntry:
    value: Any
    version: Optional[str]
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class QueryCache:
    """TTL cache with least-recently-used eviction.

    Args:
        ttl_seconds: Lifetime of an entry.
        max_entries: Capacity; the least recently used entry is evicted first.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], _CacheEntry] = OrderedDict()
        self._stats = CacheStats()

    @staticmethod
    def make_key(account_id: str, query: str) -> tuple[str, str]:
        return (account_id, normalize_query(query))

    def get(self, account_id: str, query: str, version: Optional[str] = None) -> Any:
        """Return the cached value, or None on a miss (absent, expired or stale)."""
        key = self.make_key(account_id, query)
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if entry.expires_at <= self._clock() or entry.version != version:
            del self._entries[key]
            self._stats.misses += 1
            return None

        self._entries.move_to_end(key)
        self._stats.hits += 1
        return entry.value

    def set(
        self, account_id: str, query: str, value: Any, version: Optional[str] = None
    ) -> None:
        key = self.make_key(account_id, query)
        self._entries[key] = _CacheEntry(
            value=value, version=version, expires_at=self._clock() + self._ttl
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats.evictions += 1

    def invalidate(self, account_id: str) -> int:
        """Drop every entry for one account. Returns the number removed."""
        stale = [k for k in self._entries if k[0] == account_id]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            evictions=self._stats.evictions,
            size=len(self._entries),
        )

    def __len__(self) -> int:
        return len(self._entries)
