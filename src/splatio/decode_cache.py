# ABOUTME: Bounded thread-safe LRU cache for decoded resources (e.g. SOGS texture sets)
# ABOUTME: Loaders run outside the lock; when two callers race, the first stored value wins

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

from .config import DEFAULT_CACHE_CAPACITY
from .utils.logging_utils import get_logger

logger = get_logger('cache')


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    discarded: int = 0  # Loads thrown away because another caller stored first


class DecodeCache:
    """
    LRU cache keyed by resource identity.

    Construct one explicitly and pass it to the readers that should share
    it. A miss runs the loader without holding the lock, so slow I/O never
    blocks lookups of other keys. Concurrent misses on the same key may
    both load; only the first result is stored and returned to everyone.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1")
        self.capacity = capacity
        self._entries: 'OrderedDict[Hashable, Any]' = OrderedDict()
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key not in self._entries:
                return None
            self._entries.move_to_end(key)
            return self._entries[key]

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """
        Return the cached value for ``key``, loading it on a miss.

        Exceptions from the loader propagate and nothing is stored.
        """
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                self.stats.hits += 1
                logger.debug(f"Cache hit for {key}")
                return self._entries[key]
            self.stats.misses += 1

        value = loader()

        with self._lock:
            if key in self._entries:
                # Another caller stored this key while we were loading
                self._entries.move_to_end(key)
                self.stats.discarded += 1
                logger.debug(f"Discarding duplicate load for {key}")
                return self._entries[key]

            self._entries[key] = value
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug(f"Evicted {evicted} from cache")
            return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self):
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
