"""
Tests for the swap caches.

Validates:
1. TTLCache serves fresh values and keeps expired ones as a fallback
2. StaleResultCache only hands out entries younger than the threshold
3. Concurrent writers never leave a half-written entry behind
"""
import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from caches import StaleResultCache, Stamped, TTLCache  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_ttl_cache_empty():
    async def _run():
        cache = TTLCache(60, clock=FakeClock())
        return await cache.fresh(), await cache.last_known(), await cache.age()

    assert asyncio.run(_run()) == (None, None, None)


def test_ttl_cache_expires_but_remembers():
    clock = FakeClock()

    async def _run():
        cache = TTLCache(60, clock=clock)
        await cache.replace({"205": "Campanhã"})
        fresh_now = await cache.fresh()
        clock.now += 59
        fresh_later = await cache.fresh()
        clock.now += 1
        expired = await cache.fresh()
        remembered = await cache.last_known()
        age = await cache.age()
        return fresh_now, fresh_later, expired, remembered, age

    fresh_now, fresh_later, expired, remembered, age = asyncio.run(_run())

    assert fresh_now == {"205": "Campanhã"}
    assert fresh_later is fresh_now
    assert expired is None
    assert remembered is fresh_now
    assert age == 60.0


def test_stale_cache_threshold():
    clock = FakeClock()

    async def _run():
        cache = StaleResultCache(300, clock=clock)
        assert await cache.usable() is None
        stored = await cache.store(["bus-1", "bus-2"])
        clock.now += 4 * 60
        at_four = await cache.usable()
        clock.now += 2 * 60
        at_six = await cache.usable()
        return stored, at_four, at_six, await cache.entry()

    stored, at_four, at_six, entry = asyncio.run(_run())

    assert stored.value == ("bus-1", "bus-2")
    assert at_four is stored
    assert at_six is None
    # the entry itself is kept for status reporting
    assert entry is stored


def test_stale_cache_stores_an_immutable_copy():
    async def _run():
        cache = StaleResultCache(300, clock=FakeClock())
        items = ["bus-1"]
        await cache.store(items)
        items.append("bus-2")
        return await cache.entry()

    entry = asyncio.run(_run())
    assert entry.value == ("bus-1",)


def test_concurrent_replacements_keep_whole_entries():
    clock = FakeClock()

    async def _run():
        cache = TTLCache(60, clock=clock)

        async def writer(n: int):
            await asyncio.sleep(0)
            await cache.replace(tuple(range(n)))

        await asyncio.gather(*(writer(n) for n in range(1, 50)))
        return await cache.entry()

    entry = asyncio.run(_run())

    assert isinstance(entry, Stamped)
    assert entry.value == tuple(range(len(entry.value)))
    assert entry.ts == clock.now


def test_stamped_age():
    assert Stamped("x", 10.0).age(25.5) == 15.5
