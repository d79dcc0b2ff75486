from __future__ import annotations

import asyncio

import pytest

from discovery.services.cache import SnapshotCache


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_values_are_served_until_ttl_expires() -> None:
    clock = ManualClock()
    cache: SnapshotCache[int] = SnapshotCache(ttl_seconds=60.0, clock=clock)
    loads = 0

    async def loader() -> int:
        nonlocal loads
        loads += 1
        return loads

    async def run() -> list[tuple[int, bool]]:
        results = [await cache.get_or_load("k", loader), await cache.get_or_load("k", loader)]
        clock.now = 61.0
        results.append(await cache.get_or_load("k", loader))
        return results

    assert asyncio.run(run()) == [(1, False), (1, True), (2, False)]


def test_concurrent_misses_share_one_load() -> None:
    cache: SnapshotCache[str] = SnapshotCache(ttl_seconds=60.0)
    loads = 0

    async def loader() -> str:
        nonlocal loads
        loads += 1
        await asyncio.sleep(0.01)
        return "snapshot"

    async def run() -> list[tuple[str, bool]]:
        return list(await asyncio.gather(*(cache.get_or_load("k", loader) for _ in range(5))))

    results = asyncio.run(run())

    assert loads == 1
    assert [value for value, _ in results] == ["snapshot"] * 5
    assert all(hit is False for _, hit in results)


def test_failures_are_shared_and_not_cached() -> None:
    cache: SnapshotCache[str] = SnapshotCache(ttl_seconds=60.0)
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0.01)
        if attempts == 1:
            raise RuntimeError("store down")
        return "recovered"

    async def run() -> tuple[list[object], tuple[str, bool]]:
        first = await asyncio.gather(*(cache.get_or_load("k", flaky) for _ in range(3)), return_exceptions=True)
        second = await cache.get_or_load("k", flaky)
        return list(first), second

    first, second = asyncio.run(run())

    assert all(isinstance(outcome, RuntimeError) for outcome in first)
    assert second == ("recovered", False)
    assert attempts == 2


def test_uncacheable_values_are_returned_but_not_stored() -> None:
    cache: SnapshotCache[dict[str, str]] = SnapshotCache(ttl_seconds=60.0)

    async def loader() -> dict[str, str]:
        return {"job": "timeout"}

    value, hit = asyncio.run(cache.get_or_load("k", loader, cacheable=lambda payload: not payload))

    assert value == {"job": "timeout"}
    assert hit is False
    assert len(cache) == 0


def test_invalidate_clears_one_or_all_keys() -> None:
    cache: SnapshotCache[int] = SnapshotCache(ttl_seconds=60.0)

    async def loader() -> int:
        return 1

    async def run() -> None:
        await cache.get_or_load("a", loader)
        await cache.get_or_load("b", loader)

    asyncio.run(run())
    assert len(cache) == 2
    cache.invalidate("a")
    assert cache.peek("a") is None
    assert cache.peek("b") == 1
    cache.invalidate()
    assert len(cache) == 0


def test_loader_error_propagates_to_caller() -> None:
    cache: SnapshotCache[int] = SnapshotCache()

    async def loader() -> int:
        raise ValueError("bad")

    with pytest.raises(ValueError):
        asyncio.run(cache.get_or_load("k", loader))


def test_cancelled_caller_leaves_shared_load_running_for_others() -> None:
    cache: SnapshotCache[int] = SnapshotCache(ttl_seconds=60.0)
    loads = 0

    async def loader() -> int:
        nonlocal loads
        loads += 1
        await asyncio.sleep(0.05)
        return loads

    async def run() -> tuple[tuple[int, bool], bool, int | None]:
        first = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(cache.get_or_load("k", loader))
        await asyncio.sleep(0.01)
        first.cancel()
        result = await second
        return result, first.cancelled(), cache.peek("k")

    result, first_cancelled, cached = asyncio.run(run())

    assert result == (1, False)
    assert first_cancelled
    assert cached == 1
    assert loads == 1
