"""
Injected TTL cache for SPF core lookups.

``TTLCache`` is an in-process LRU with a per-entry time-to-live.  Anything
exposing ``get`` / ``set`` / ``invalidate`` with the same signatures can be
passed in its place (e.g. a wrapper around a shared cache service).

Entries are stored with the monotonic time they expire at.  Expired entries
are dropped lazily on read and when the cache is full.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Thread-safe LRU cache whose entries expire after *ttl* seconds."""

    def __init__(
        self,
        ttl: float = 3600.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = float(ttl)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return the cached value for *key*, or *default* if missing or expired."""
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        """Store *value* under *key* for *ttl* seconds (cache default if None)."""
        lifetime = self.ttl if ttl is None else float(ttl)
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, value)
            self._entries.move_to_end(key)
            if len(self._entries) > self.max_entries:
                self._evict()

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop *key*, or every entry when *key* is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted %r from cache", evicted)
