import asyncio

import pytest

from songmatch.cache.memory import SingleFlight, TTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = TTLCache(max_entries=10, ttl_ms=1000, clock=clock)
    cache.set("a", 1)
    clock.now = 999
    assert cache.get("a") == 1
    clock.now = 1000
    assert cache.get("a") is None
    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.expirations == 1
    assert stats.size == 0


def test_least_recently_used_entry_is_evicted():
    cache = TTLCache(max_entries=2, ttl_ms=10_000, clock=_Clock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats().evictions == 1


def test_delete_clear_and_items():
    clock = _Clock()
    cache = TTLCache(max_entries=5, ttl_ms=100, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    assert list(cache.items()) == [("b", 2)]
    clock.now = 500
    assert list(cache.items()) == []
    cache.clear()
    assert len(cache) == 0


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        TTLCache(max_entries=0)


async def _coalesce():
    flight = SingleFlight()
    calls = 0
    release = asyncio.Event()

    async def compute():
        nonlocal calls
        calls += 1
        await release.wait()
        return "value"

    first = asyncio.ensure_future(flight.run("key", compute))
    second = asyncio.ensure_future(flight.run("key", compute))
    await asyncio.sleep(0)
    assert len(flight) == 1
    release.set()
    assert await asyncio.gather(first, second) == ["value", "value"]
    assert calls == 1
    await asyncio.sleep(0)
    assert len(flight) == 0


def test_single_flight_runs_once_for_concurrent_callers():
    asyncio.run(_coalesce())


async def _propagates():
    flight = SingleFlight()

    async def boom():
        raise RuntimeError("compute failed")

    with pytest.raises(RuntimeError):
        await flight.run("key", boom)
    assert await flight.run("key", _value) == 42


async def _value():
    return 42


def test_single_flight_propagates_errors_and_retries():
    asyncio.run(_propagates())
