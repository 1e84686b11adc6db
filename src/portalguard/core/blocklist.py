from dataclasses import dataclass

from portalguard.core.clock import Clock, now_ms
from portalguard.core.storage.base import StorageBackend


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    block_until: int | None = None


NOT_BLOCKED = BlockStatus(blocked=False)


class BlockList:
    """
    Shared cooldown flags, one per key.

    A block is a single ``key -> block_until`` entry whose TTL equals the
    block duration, so the store does the expiry work and absence means
    unblocked. Writing a new block overwrites the previous one.
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

    def block_key(self, key: str) -> str:
        return f"{self.prefix}:blocked:{key}"

    async def is_blocked(self, key: str) -> BlockStatus:
        raw = await self.backend.get(self.block_key(key))
        if not raw:
            return NOT_BLOCKED

        try:
            block_until = int(raw)
        except ValueError:
            return NOT_BLOCKED

        if block_until > self._clock():
            return BlockStatus(blocked=True, block_until=block_until)
        return NOT_BLOCKED

    async def block(self, key: str, duration_ms: int) -> int:
        block_until = self._clock() + duration_ms
        await self.backend.set(self.block_key(key), str(block_until), duration_ms)
        return block_until

    async def clear(self, key: str) -> None:
        await self.backend.delete(self.block_key(key))
