from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class _Entry(Generic[T]):
    value: T
    expires_at: float


class SnapshotCache(Generic[T]):
    """Read-through TTL cache where concurrent misses share one load."""

    def __init__(self, ttl_seconds: float = 60.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[Hashable, _Entry[T]] = {}
        self._inflight: dict[Hashable, asyncio.Task[T]] = {}

    def peek(self, key: Hashable) -> T | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self.clock():
            return None
        return entry.value

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        *,
        cacheable: Callable[[T], bool] | None = None,
    ) -> tuple[T, bool]:
        """Return ``(value, cache_hit)``."""
        cached = self.peek(key)
        if cached is not None:
            return cached, True

        inflight = self._inflight.get(key)
        if inflight is None:
            # The load runs in its own task so a cancelled caller does not cancel it for the others.
            inflight = asyncio.get_running_loop().create_task(self._load(key, loader, cacheable))
            inflight.add_done_callback(_retrieve_exception)
            self._inflight[key] = inflight
        return await asyncio.shield(inflight), False

    async def _load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        cacheable: Callable[[T], bool] | None,
    ) -> T:
        try:
            value = await loader()
            if cacheable is None or cacheable(value):
                self._entries[key] = _Entry(value=value, expires_at=self.clock() + self.ttl_seconds)
            return value
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def _retrieve_exception(task: asyncio.Task[T]) -> None:
    # Marks a failure as retrieved when every caller was cancelled before it finished.
    if not task.cancelled():
        task.exception()
