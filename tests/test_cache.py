from __future__ import annotations

import asyncio

from habitbuild.cache import Cache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = Cache(ttl_seconds=10, clock=clock)
    cache.set("challenges", ["c1"], "past")
    assert cache.get("challenges", "past") == ["c1"]

    clock.now = 10
    assert cache.get("challenges", "past") is None
    assert cache.stats() == {"total_entries": 0, "hits": 1, "misses": 1}


def test_invalidate_drops_whole_namespace() -> None:
    cache = Cache()
    cache.set("entries", [], "c1")
    cache.set("entries", [], "c2")
    cache.set("currentChallenge", "c1")
    assert cache.invalidate("entries") == 2
    assert cache.get("currentChallenge") == "c1"
    assert cache.invalidate("currentChallenge") == 1


def test_get_or_load_calls_loader_once_until_invalidated() -> None:
    cache = Cache()
    calls: list[int] = []

    async def loader() -> list[str]:
        calls.append(1)
        return ["c1"]

    async def scenario() -> None:
        assert await cache.get_or_load("challenges", "past", loader) == ["c1"]
        assert await cache.get_or_load("challenges", "past", loader) == ["c1"]
        cache.invalidate("challenges")
        await cache.get_or_load("challenges", "past", loader)

    asyncio.run(scenario())
    assert len(calls) == 2


def test_missing_values_are_not_cached() -> None:
    cache = Cache()
    calls: list[int] = []

    async def loader() -> None:
        calls.append(1)
        return None

    async def scenario() -> None:
        await cache.get_or_load("currentChallenge", None, loader)
        await cache.get_or_load("currentChallenge", None, loader)

    asyncio.run(scenario())
    assert len(calls) == 2
