"""
In-memory storage backend for testing and development.

This backend stores all data in Python dictionaries, making it:
- Fast: No network calls, no serialization
- Deterministic: time comes from an injectable clock
- Isolated: Each instance is independent

WARNING: Not suitable for production!
- No distribution (single process only), so limits are per instance
- No persistence (data lost on restart)

Use RedisBackend for production deployments.
"""

from portalguard.core.clock import Clock, now_ms
from portalguard.core.storage.base import StorageBackend


class InMemoryBackend(StorageBackend):
    """
    In-memory implementation of StorageBackend.

    Stores strings in a dict with per-key expiry checked on access,
    mirroring Redis millisecond TTL semantics.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.increment("k", ttl_ms=60_000)
        1
        >>> await backend.get("k")
        '1'

    Atomicity:
        None of the operations await, so each one runs to completion
        inside a single event loop step.
    """

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock

        # key -> stored value
        self._data: dict[str, str] = {}

        # key -> epoch ms when the key expires
        self._expiry: dict[str, int] = {}

    def _cleanup_if_expired(self, key: str) -> bool:
        """
        Remove key if its TTL has elapsed.

        Returns:
            True if key was expired and removed, False otherwise.
        """
        expires_at = self._expiry.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    async def increment(self, key: str, ttl_ms: int) -> int:
        self._cleanup_if_expired(key)

        count = int(self._data.get(key, "0")) + 1
        self._data[key] = str(count)
        if count == 1:
            self._expiry[key] = self._clock() + ttl_ms
        return count

    async def get(self, key: str) -> str | None:
        if self._cleanup_if_expired(key):
            return None
        return self._data.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        self._data[key] = value
        self._expiry[key] = self._clock() + ttl_ms

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    async def ping(self) -> bool:
        return True

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def clear(self) -> None:
        """Clear all stored data."""
        self._data.clear()
        self._expiry.clear()

    def keys(self) -> list[str]:
        """Get all non-expired keys."""
        return [k for k in list(self._data) if not self._cleanup_if_expired(k)]

    def ttl_ms(self, key: str) -> int | None:
        """Remaining lifetime of a key, or None when it has no expiry."""
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return None
        return max(0, expires_at - self._clock())
