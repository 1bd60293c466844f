"""
In-process TTL + LRU cache.

Used for feature point reads (TTL is the staleness bound) and for prediction
results keyed by (feature hash, model snapshot). Entries expire after their
time-to-live; at capacity the least recently read entry is evicted.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from behaviorradar.log_config import logger


@dataclass
class CacheStats:
    """Counters since the cache was created."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
            "size": self.size,
            "max_size": self.max_size,
        }


class TTLCache:
    """
    Thread-safe mapping with per-entry expiry and LRU eviction.

    Args:
        name: label used in logs and stats
        ttl_seconds: default lifetime of an entry
        max_size: entries kept before the least recently used is dropped
        clock: returns naive UTC now; tests pass a controllable one
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: int = 300,
        max_size: int = 10000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_size = max_size
        self._clock = clock or datetime.utcnow
        # key -> (expires_at, value); order is recency of use
        self._entries: "OrderedDict[Hashable, Tuple[datetime, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats(max_size=max_size)

    def get(self, key: Hashable) -> Optional[Any]:
        """Value for ``key``, or None when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now >= entry[0]:
                del self._entries[key]
                self._stats.expirations += 1
                entry = None
            if entry is None:
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry[1]

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        expires_at = self._clock() + ttl
        with self._lock:
            self._entries.pop(key, None)
            while self._entries and len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug(f"Cache '{self.name}' evicted {evicted!r}")
            self._entries[key] = (expires_at, value)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches ``predicate``; returns the count."""
        with self._lock:
            matching = [key for key in self._entries if predicate(key)]
            for key in matching:
                del self._entries[key]
            return len(matching)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> CacheStats:
        with self._lock:
            return replace(self._stats, size=len(self._entries))
