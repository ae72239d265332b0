"""Explicit TTL cache for the delegate list."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    """A cached value and the monotonic time it was loaded."""

    value: T
    fetched_at: float


class DelegateListCache(Generic[T]):
    """Single-value cache with a TTL and explicit invalidation.

    One instance is owned by whoever wires the registry together and is
    passed in; there is no module-level cache state.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entry: CachedValue[T] | None = None
        self._lock = asyncio.Lock()

    def peek(self) -> CachedValue[T] | None:
        """Current entry if it is still fresh."""
        entry = self._entry
        if entry is None or self._clock() - entry.fetched_at >= self._ttl:
            return None
        return entry

    async def get(self, loader: Callable[[], Awaitable[T]], *, force_refresh: bool = False) -> T:
        """Return the cached value, loading it when stale, absent or forced."""
        async with self._lock:
            entry = None if force_refresh else self.peek()
            if entry is None:
                entry = CachedValue(value=await loader(), fetched_at=self._clock())
                self._entry = entry
            return entry.value

    def invalidate(self) -> None:
        self._entry = None
