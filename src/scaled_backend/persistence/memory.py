"""In-process TTL cache for single-process deployments and tests."""

import copy
import time
from collections.abc import Callable
from typing import Any

from scaled_backend.persistence.base import CacheBackend

PRUNE_EVERY = 1024


class MemoryCache(CacheBackend):
    """Dictionary-backed cache with per-key expiry.

    Values are deep-copied on the way in and out so callers never share state
    with the cache, matching the copy semantics of a remote cache. Expired
    entries are dropped when read, and swept every `prune_every` writes.

    Args:
        clock: Monotonic time source in seconds.
        prune_every: Number of `set` calls between sweeps of expired entries.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = PRUNE_EVERY,
    ) -> None:
        if prune_every < 1:
            raise ValueError("prune_every must be at least 1")
        self._clock = clock
        self._prune_every = prune_every
        self._writes_since_prune = 0
        self._entries: dict[str, tuple[float, Any]] = {}

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)

    def prune(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._writes_since_prune = 0
        return len(expired)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._writes_since_prune += 1
        if self._writes_since_prune >= self._prune_every:
            self.prune()

        if ttl_seconds <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = (self._clock() + ttl_seconds, copy.deepcopy(value))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def close(self) -> None:
        self._entries.clear()
