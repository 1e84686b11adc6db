import asyncio
from typing import Any, Awaitable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from portalguard.core.errors import StoreUnavailable
from portalguard.core.storage.base import StorageBackend


class RedisBackend(StorageBackend):
    """
    Shared store backed by Redis.

    Every command runs under an explicit timeout. Timeouts, socket errors
    and redis errors all surface as StoreUnavailable.
    """

    # INCR and the first-hit PEXPIRE run as one script so a counter can
    # never be left without a TTL between two round trips.
    _INCREMENT_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    return count
    """

    def __init__(self, redis: Redis, timeout_ms: int = 250):
        self._redis = redis
        self._timeout = timeout_ms / 1000

    async def _call(self, command: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailable(f"redis {command} failed: {exc!r}") from exc

    async def increment(self, key: str, ttl_ms: int) -> int:
        result = await self._call(
            "eval", self._redis.eval(self._INCREMENT_SCRIPT, 1, key, ttl_ms)
        )
        return int(result)

    async def get(self, key: str) -> str | None:
        val = await self._call("get", self._redis.get(key))
        if isinstance(val, bytes):
            return val.decode()
        return val

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._call("set", self._redis.set(key, value, px=ttl_ms))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._call("delete", self._redis.delete(*keys))

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self._redis.ping()))
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
