"""Advisory key/value cache with TTL.

Read-through / invalidate-on-write side channel for per-owner aggregates.
Never authoritative: a miss always falls back to the ledger.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol


class Cache(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    def invalidate(self, keys: list[str]) -> None:
        ...


def user_credits_key(owner_id: str) -> str:
    return f"user:{owner_id}:credits"


def user_history_key(owner_id: str) -> str:
    return f"user:{owner_id}:history"


def owner_keys(owner_id: str) -> list[str]:
    """Every cached aggregate touched by a mint for ``owner_id``."""
    return [user_credits_key(owner_id), user_history_key(owner_id)]


class InMemoryCache:
    """Process-local TTL cache."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, keys: list[str]) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
