"""Bounded TTL cache for Ledger GET responses."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
import threading
import time
from typing import Any, Callable


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class ResponseCache:
    """TTL cache that evicts its oldest entry before exceeding capacity.

    Expired entries are only removed when they are read. Keys are of the form
    ``GET:/path`` so ``invalidate("trips")`` clears every trip-scoped read.
    """

    def __init__(self, max_entries: int = 256, clock: Callable[[], float] = time.time) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be greater than zero.")
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return cached data for key, or None on a miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.data

    def set(self, key: str, data: Any, ttl_seconds: float) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(key, data, self._clock(), ttl_seconds)

    def invalidate(self, pattern: str | None = None) -> None:
        """Drop every key containing pattern, or everything when pattern is None."""
        with self._lock:
            if pattern is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if pattern in k]:
                del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["CacheEntry", "ResponseCache"]
