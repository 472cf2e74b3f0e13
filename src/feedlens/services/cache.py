"""Thread-safe in-memory TTL cache for query embeddings."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    created_at: float
    expires_at: float


@dataclass
class CacheStats:
    total_entries: int
    oldest_entry_age_seconds: float | None = None
    newest_entry_age_seconds: float | None = None


class TTLCache(Generic[V]):
    """Small key-value store whose entries expire ``ttl_seconds`` after being set.

    A ``ttl_seconds`` of 0 disables caching entirely.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            self._entries[key] = _Entry(value=value, created_at=now, expires_at=now + self.ttl_seconds)

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            created = [entry.created_at for entry in self._entries.values()]
        if not created:
            return CacheStats(total_entries=0)
        return CacheStats(
            total_entries=len(created),
            oldest_entry_age_seconds=now - min(created),
            newest_entry_age_seconds=now - max(created),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
