"""
TTLCache — bounded, time-boxed memoization with an injected clock.

Replaces module-level cache dicts: the owner (usually the Flask app, via
``app.extensions["permission_cache"]``) constructs one instance with an
explicit TTL, capacity and clock, and every caller goes through it.

    cache = TTLCache(ttl_seconds=300, max_entries=2048)
    levels = cache.get_or_set(("role_level", user_id), lambda: _load(user_id))

Eviction:
  - entries older than ``ttl_seconds`` are dropped on read
  - when ``max_entries`` is reached the least recently used entry goes

Tests pass a fake clock (any zero-arg callable returning seconds) to move
time forward without sleeping.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Thread-safe LRU cache whose entries expire after a fixed TTL."""

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return default
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (self._clock(), value)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("TTLCache evicted %r (capacity %d)", evicted, self.max_entries)

    def get_or_set(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value for ``key``, computing it with ``loader`` on a miss.

        The loader runs outside the lock; two concurrent misses may both
        load, and the last write wins.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches ``predicate``; returns the count."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
