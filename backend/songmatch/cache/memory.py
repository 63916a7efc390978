from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

import cachetools

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(slots=True)
class CacheStats:
    size: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    expirations: int


class _CountingTTLCache(cachetools.TTLCache):
    """``cachetools.TTLCache`` that counts capacity evictions and expirations."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]) -> None:
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.evictions = 0
        self.expirations = 0

    def popitem(self):
        item = super().popitem()
        self.evictions += 1
        return item

    def expire(self, time=None):
        expired = super().expire(time)
        self.expirations += len(expired)
        return expired


class TTLCache(Generic[K, V]):
    """In-process LRU map whose entries also expire after ``ttl_ms``.

    Reads refresh recency but not expiry. All mutation is synchronous, so a
    single event loop never sees a half-updated cache.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100,
        ttl_ms: float = 3_600_000,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_ms = ttl_ms
        self._entries = _CountingTTLCache(max_entries, ttl_ms, clock)
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: K) -> Optional[V]:
        self._entries.expire()
        if key not in self._entries:
            self._misses += 1
            return None
        self._hits += 1
        return self._entries[key]

    def set(self, key: K, value: V) -> None:
        self._entries[key] = value

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def items(self) -> Iterator[Tuple[K, V]]:
        self._entries.expire()
        live: List[Tuple[K, V]] = list(self._entries.items())
        return iter(live)

    def stats(self) -> CacheStats:
        self._entries.expire()
        return CacheStats(
            size=len(self._entries),
            max_entries=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            evictions=self._entries.evictions,
            expirations=self._entries.expirations,
        )


class SingleFlight(Generic[K, V]):
    """Coalesce concurrent calls for the same key into one running task."""

    def __init__(self) -> None:
        self._inflight: Dict[K, "asyncio.Future[V]"] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            self._inflight[key] = future
            future.add_done_callback(lambda _: self._inflight.pop(key, None))
        # shielded so one cancelled waiter does not cancel the shared task
        return await asyncio.shield(future)
