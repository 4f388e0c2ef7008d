"""Process-wide caches for the vehicle feed.

Both caches store a single immutable value together with the time it was
captured, and replace that pair as a whole under a lock. Readers therefore see
either the previous complete value or the new one, never a mix.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True)
class Stamped(Generic[T]):
    value: T
    ts: float

    def age(self, now: float) -> float:
        return now - self.ts


class _SwapCache(Generic[T]):
    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock
        self.lock = asyncio.Lock()
        self._entry: Optional[Stamped[T]] = None

    async def replace(self, value: T) -> Stamped[T]:
        entry = Stamped(value, self.clock())
        async with self.lock:
            self._entry = entry
        return entry

    async def entry(self) -> Optional[Stamped[T]]:
        async with self.lock:
            return self._entry

    async def age(self) -> Optional[float]:
        entry = await self.entry()
        if entry is None:
            return None
        return entry.age(self.clock())


class TTLCache(_SwapCache[T]):
    """Holds a value that is considered fresh for ``ttl`` seconds.

    Expired values are kept so callers can fall back to them when a refresh
    fails. Concurrent misses are not de-duplicated; the last writer wins.
    """

    def __init__(self, ttl: float, clock: Clock = time.time) -> None:
        super().__init__(clock)
        self.ttl = ttl

    async def fresh(self) -> Optional[T]:
        entry = await self.entry()
        if entry is not None and entry.age(self.clock()) < self.ttl:
            return entry.value
        return None

    async def last_known(self) -> Optional[T]:
        entry = await self.entry()
        return entry.value if entry is not None else None


class StaleResultCache(_SwapCache[Tuple[T, ...]]):
    """Last successfully assembled vehicle list.

    Written only after a fetch succeeds; read on failure paths, where it is
    served while younger than ``threshold`` seconds.
    """

    def __init__(self, threshold: float, clock: Clock = time.time) -> None:
        super().__init__(clock)
        self.threshold = threshold

    async def store(self, items: Sequence[T]) -> Stamped[Tuple[T, ...]]:
        return await self.replace(tuple(items))

    async def usable(self) -> Optional[Stamped[Tuple[T, ...]]]:
        entry = await self.entry()
        if entry is None or entry.age(self.clock()) >= self.threshold:
            return None
        return entry
