from __future__ import annotations

import pytest

from plot_allocation.cache.memory import InMemoryAsyncCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire():
    clock = FakeClock()
    cache = InMemoryAsyncCache(clock=clock)
    await cache.set("a", 1, ttl_seconds=10)
    await cache.set("b", 2)

    clock.now = 9.9
    assert await cache.get("a") == 1
    clock.now = 10.0
    assert await cache.get("a") is None
    assert await cache.get("b") == 2


@pytest.mark.asyncio
async def test_oldest_entry_is_evicted():
    cache = InMemoryAsyncCache(max_entries=2)
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.set("a", 3)
    await cache.set("c", 4)

    assert await cache.get("b") is None
    assert await cache.get("a") == 3
    assert len(cache) == 2

    await cache.delete("a")
    await cache.clear()
    assert len(cache) == 0
