"""
webp_backend/services/cache_utils.py

Explicit, injectable LRU+TTL map. Services receive an instance through their
constructor instead of sharing module-level caches.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Tuple, TypeVar

logger = logging.getLogger("webp_backend.services.cache_utils")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """
    Thread-safe bounded map whose entries expire `ttl_seconds` after insertion.

    - maxsize: least-recently-used entries are evicted past this size.
    - clock: monotonic seconds source, injectable for tests.
    """

    def __init__(self, ttl_seconds: float = 300.0, maxsize: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.ttl_seconds = float(ttl_seconds)
        self.maxsize = int(maxsize)
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            item = self._data.pop(key, _MISSING)
            if item is _MISSING:
                return default
            ts, val = item  # type: ignore[misc]
            if now - ts >= self.ttl_seconds:
                logger.debug("Cache EXPIRED key=%s", key)
                return default
            self._data[key] = (ts, val)  # refresh MRU
            return val

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (self._clock(), value)
            while len(self._data) > self.maxsize:
                evicted_key, _ = self._data.popitem(last=False)
                logger.debug("Cache EVICT key=%s", evicted_key)

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._data.pop(key, _MISSING)
        if item is _MISSING:
            return default
        return item[1]  # type: ignore[index]

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key for which `predicate(key)` is true; returns the count."""
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for ts, _ in self._data.values() if now - ts < self.ttl_seconds)
