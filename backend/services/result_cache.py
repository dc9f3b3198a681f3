"""
Result cache for X API reads with TTL-based freshness.

Provides:
- In-memory caching keyed by a normalized query signature
- Freshness window (default 15 minutes) separate from presence
- LRU eviction once the entry limit is reached
- Thread-safe operations
- Background cleanup task for long-dead entries
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def make_signature(query: str, filters: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a deterministic cache key from a query and its filters.

    The query is lower-cased and whitespace-collapsed; list-valued filters
    are sorted so that keyword order never changes the key.
    """
    normalized_query = " ".join(query.lower().split())

    normalized_filters: Dict[str, Any] = {}
    for key, value in sorted((filters or {}).items()):
        if isinstance(value, (list, tuple, set)):
            value = sorted(str(v).lower().strip() for v in value)
        normalized_filters[key] = value

    raw = json.dumps({"q": normalized_query, "f": normalized_filters}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


@dataclass
class CacheEntry:
    """A cached read result."""
    signature: str
    payload: Any
    cached_at: float  # epoch seconds

    @property
    def cached_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.cached_at, tz=timezone.utc)

    def age(self, now: float) -> float:
        return now - self.cached_at


class ResultCache:
    """
    In-memory cache for successful API results.

    get() returns entries whether or not they are fresh; the caller decides
    if a stale entry is acceptable (e.g. as a rate-limit fallback).
    """

    def __init__(
        self,
        ttl_seconds: int = 900,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize result cache.

        Args:
            ttl_seconds: Freshness window in seconds (default: 900 = 15 minutes)
            max_entries: Maximum number of cached signatures before LRU eviction
            clock: Time source returning epoch seconds
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

        # Metrics
        self._hits = 0
        self._stale_hits = 0
        self._misses = 0
        self._evictions = 0

        logger.info(f"ResultCache initialized with {ttl_seconds}s TTL, {max_entries} max entries")

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def get(self, signature: str) -> Optional[CacheEntry]:
        """
        Get the cached entry for a signature regardless of freshness.

        Args:
            signature: Cache key from make_signature()

        Returns:
            CacheEntry if present, None otherwise
        """
        with self._lock:
            entry = self._entries.get(signature)
            if entry is None:
                self._misses += 1
                logger.debug(f"Cache miss for {signature}")
                return None

            self._entries.move_to_end(signature)
            if self._is_fresh(entry):
                self._hits += 1
                logger.debug(f"Cache hit for {signature}")
            else:
                self._stale_hits += 1
                logger.debug(f"Stale cache hit for {signature}")
            return entry

    def put(self, signature: str, payload: Any) -> CacheEntry:
        """
        Store a payload, stamped with the current time.

        Evicts least-recently-used entries when over capacity.
        """
        entry = CacheEntry(signature=signature, payload=payload, cached_at=self._clock())

        with self._lock:
            self._entries[signature] = entry
            self._entries.move_to_end(signature)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted least recently used cache entry {evicted}")

        logger.info(f"Cached result for {signature}")
        return entry

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return entry.age(self._clock()) < self._ttl_seconds

    def is_fresh(self, entry: CacheEntry) -> bool:
        """True if the entry is younger than the freshness window."""
        return self._is_fresh(entry)

    def get_metadata(self, signature: str) -> Optional[Dict[str, Any]]:
        """Cache metadata for a signature without touching LRU order or metrics."""
        with self._lock:
            entry = self._entries.get(signature)
            if entry is None:
                return None
            return {
                "cached_at": entry.cached_at_dt,
                "age_seconds": round(entry.age(self._clock()), 1),
                "is_fresh": self._is_fresh(entry),
            }

    def invalidate(self, signature: str) -> bool:
        """
        Remove the entry for a signature.

        Returns:
            True if entry was removed, False if not found
        """
        with self._lock:
            if signature in self._entries:
                del self._entries[signature]
                logger.info(f"Invalidated cache for {signature}")
                return True
            return False

    def clear(self) -> int:
        """
        Clear all cached entries.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            logger.info(f"Cleared {count} cached entries")
            return count

    def cleanup_expired(self, max_age_seconds: Optional[float] = None) -> int:
        """
        Remove entries older than max_age_seconds.

        Stale entries stay useful as fallbacks, so the default retention is
        four freshness windows rather than one.

        Returns:
            Number of entries removed
        """
        max_age = max_age_seconds if max_age_seconds is not None else self._ttl_seconds * 4
        now = self._clock()

        with self._lock:
            expired = [sig for sig, entry in self._entries.items() if entry.age(now) >= max_age]
            for sig in expired:
                del self._entries[sig]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def signatures(self) -> Iterable[str]:
        with self._lock:
            return list(self._entries.keys())

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with cache metrics
        """
        with self._lock:
            total_entries = len(self._entries)
            fresh_entries = sum(1 for entry in self._entries.values() if self._is_fresh(entry))
            total_requests = self._hits + self._stale_hits + self._misses
            hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0

            return {
                "total_entries": total_entries,
                "fresh_entries": fresh_entries,
                "stale_entries": total_entries - fresh_entries,
                "max_entries": self._max_entries,
                "cache_hits": self._hits,
                "stale_hits": self._stale_hits,
                "cache_misses": self._misses,
                "evictions": self._evictions,
                "total_requests": total_requests,
                "hit_rate_percent": round(hit_rate, 2),
                "ttl_seconds": self._ttl_seconds,
            }

    async def start_cleanup_task(self, interval_seconds: int = 300):
        """
        Periodically drop long-dead entries.

        Start with asyncio.create_task() in the application lifespan.
        """
        logger.info(f"Starting background cache cleanup task (runs every {interval_seconds}s)")

        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = self.cleanup_expired()
                if removed > 0:
                    logger.info(f"Background cleanup removed {removed} expired entries")
            except Exception as e:
                logger.error(f"Error in background cleanup task: {e}")
