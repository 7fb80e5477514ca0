"""
Small concurrency helpers: per-key locks and a TTL cache for read-mostly lookups.
"""

import asyncio
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

KeyT = TypeVar("KeyT", bound=Hashable)
ValueT = TypeVar("ValueT")


class KeyedLocks(Generic[KeyT]):
    """
    One asyncio.Lock per key, created lazily.

    Independent keys never contend with each other, so two users (or two
    user+severity pairs) can be read-modify-written concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[KeyT, asyncio.Lock] = {}

    def __call__(self, key: KeyT) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def discard(self, key: KeyT) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class TTLCache(Generic[KeyT, ValueT]):
    """Cache entries for a fixed number of seconds. ``None`` values are cached too."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[KeyT, tuple[float, ValueT | None]] = {}

    def get(self, key: KeyT) -> tuple[bool, ValueT | None]:
        """Return ``(hit, value)``."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return False, None
        return True, value

    def put(self, key: KeyT, value: ValueT | None) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, key: KeyT | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
