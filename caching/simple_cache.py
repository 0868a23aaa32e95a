"""
Simple In-Memory Caching System
TTL cache used for settings lookups that are read on every order and submission
"""

import threading
import time
import logging
from typing import Any, Optional, Dict, Callable

logger = logging.getLogger(__name__)

_MISSING = object()


class SimpleCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if entry["expires_at"] > self._clock():
                    self.stats["hits"] += 1
                    return entry["value"]
                # Expired
                del self._cache[key]
                self.stats["evictions"] += 1

            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            now = self._clock()
            self._cache[key] = {"value": value, "created_at": now, "expires_at": now + ttl}
            self.stats["sets"] += 1

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Return the cached value, calling ``loader`` and caching its result on a miss"""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        self.set(key, value, ttl)
        return value

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self.stats["deletes"] += 1
                return True
            return False

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock:
            cleared_count = len(self._cache)
            self._cache.clear()
            self.stats["deletes"] += cleared_count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }
