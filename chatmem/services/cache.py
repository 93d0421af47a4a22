"""
TTL cache with access-count based eviction.

Capacity is enforced by cachetools.LFUCache, so an insert into a full cache
evicts the least-accessed entry. Expiry is tracked per entry through the
CacheEntry creation time.
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional

from cachetools import LFUCache

from ..models.core import CacheEntry
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TTLCache:
    """Thread-safe cache whose entries expire after a fixed age.

    Expired entries are treated as misses even while still resident; ``sweep``
    removes them in bulk.
    """

    def __init__(self, expiry_seconds: float, max_size: int, name: str = 'cache', clock: Callable[[], float] = time.time):
        self.expiry_seconds = expiry_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: LFUCache = LFUCache(maxsize=max_size)
        self.hits = 0
        self.misses = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.expiry_seconds

    def get(self, key: Hashable) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            if key not in self._cache:
                self.misses += 1
                return None
            # Indexing bumps the LFU use count
            entry = self._cache[key]
            if self._expired(entry, now):
                del self._cache[key]
                self.misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self.hits += 1
            return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        with self._lock:
            self._cache[key] = CacheEntry(key=str(key), value=value, created_at=now, access_count=0, last_accessed=now)

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """Remove every entry whose key satisfies predicate."""
        with self._lock:
            keys = [key for key in list(self._cache.keys()) if predicate(key)]
            for key in keys:
                del self._cache[key]
        return len(keys)

    def sweep(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in list(self._cache.items()) if self._expired(entry, now)]
            for key in expired:
                del self._cache[key]

        if expired:
            logger.debug(f'{self.name}: swept {len(expired)} expired entries')
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            'size': len(self),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': round(self.hits / total, 4) if total else 0.0,
        }
