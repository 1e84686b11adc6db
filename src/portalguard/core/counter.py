"""
Fixed window counting.

Time is cut into windows of ``window_ms``; each (key, window) pair gets its
own counter in the store, created on the first hit and expired by the
store when the window ends. Nothing ever has to clean up old windows.

Bursts straddling a boundary can reach about twice the nominal rate (tail
of one window plus head of the next). That is accepted for abuse
prevention.
"""

from dataclasses import dataclass

from portalguard.core.clock import Clock, now_ms
from portalguard.core.storage.base import StorageBackend


@dataclass(frozen=True)
class WindowCount:
    count: int
    window_end: int


def window_bounds(now: int, window_ms: int) -> tuple[int, int]:
    """Return ``(window_index, window_end)`` for a timestamp in epoch ms."""
    index = now // window_ms
    return index, (index + 1) * window_ms


class WindowCounter:
    """
    Atomic, self-expiring counter scoped to one fixed window.

    Store failures propagate as StoreUnavailable; the Limiter decides what
    a failure means.
    """

    def __init__(
        self,
        backend: StorageBackend,
        prefix: str = "rate_limit",
        clock: Clock = now_ms,
    ):
        self.backend = backend
        self.prefix = prefix
        self._clock = clock

    def window_key(self, key: str, window_index: int) -> str:
        return f"{self.prefix}:{key}:{window_index}"

    async def increment(self, key: str, window_ms: int) -> WindowCount:
        index, window_end = window_bounds(self._clock(), window_ms)
        count = await self.backend.increment(self.window_key(key, index), window_ms)
        return WindowCount(count=count, window_end=window_end)

    async def peek(self, key: str, window_ms: int) -> WindowCount:
        """Current window's count, without incrementing."""
        index, window_end = window_bounds(self._clock(), window_ms)
        raw = await self.backend.get(self.window_key(key, index))
        return WindowCount(count=int(raw) if raw else 0, window_end=window_end)

    async def clear(self, key: str, window_ms: int) -> None:
        index, _ = window_bounds(self._clock(), window_ms)
        await self.backend.delete(self.window_key(key, index))
