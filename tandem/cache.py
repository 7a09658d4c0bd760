"""
Expiring key/value cache shared by the client and the score service.

Leaderboard pages live for ``config.LEADERBOARD_CACHE_TTL`` (30 s); fetched
puzzles live longer. Keys are colon-separated so a whole board can be dropped
by prefix when a new score lands.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from . import config


@dataclass
class CacheCounters:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "sets": self.sets, "evictions": self.evictions}


class MemoryCache:
    """TTL cache guarded by a re-entrant lock.

    ``clock`` returns seconds; tests pass a fake one.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        # key -> (expires_at, value)
        self._items: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.RLock()
        self.counters = CacheCounters()

    def _drop(self, keys) -> int:
        n = 0
        for k in list(keys):
            if self._items.pop(k, None) is not None:
                n += 1
        return n

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is not None and item[0] < self._clock():
                self._drop([key])
                self.counters.evictions += 1
                item = None
            if item is None:
                self.counters.misses += 1
                return None
            self.counters.hits += 1
            return item[1]

    def set(self, key: str, value: Any, ttl_seconds: float = 3600) -> None:
        with self._lock:
            self._items[key] = (self._clock() + ttl_seconds, value)
            self.counters.sets += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._drop([key]) == 1

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            return self._drop(k for k in self._items if k.startswith(prefix))

    def clear(self) -> None:
        with self._lock:
            self.counters.evictions += self._drop(self._items)

    def cleanup_expired(self) -> int:
        """Purge stale entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            removed = self._drop(k for k, (exp, _) in self._items.items() if exp < now)
            self.counters.evictions += removed
            return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = self.counters.as_dict()
            lookups = self.counters.hits + self.counters.misses
            stats["total_requests"] = lookups
            stats["hit_rate_percent"] = round(100.0 * self.counters.hits / lookups, 2) if lookups else 0
            stats["cache_size"] = len(self._items)
            return stats


def puzzle_key(variant: str, date: str) -> str:
    return f"puzzle:{variant}:{date}"


def daily_leaderboard_key(variant: str, date: str, limit: int, viewer: str = "") -> str:
    return f"leaderboard:daily:{variant}:{date}:{limit}:{viewer}"


def streak_leaderboard_key(variant: str, limit: int, viewer: str = "") -> str:
    return f"leaderboard:streak:{variant}:{limit}:{viewer}"


def cache_leaderboard(cache: MemoryCache, key: str, page: Any, ttl_seconds: float = config.LEADERBOARD_CACHE_TTL) -> None:
    cache.set(key, page, ttl_seconds)


def invalidate_daily_leaderboard(cache: MemoryCache, variant: str, date: str) -> int:
    return cache.delete_prefix(f"leaderboard:daily:{variant}:{date}:")


def invalidate_streak_leaderboard(cache: MemoryCache, variant: str) -> int:
    return cache.delete_prefix(f"leaderboard:streak:{variant}:")
