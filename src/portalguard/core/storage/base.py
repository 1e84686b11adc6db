"""
Abstract base class for storage backends.

The limiter keeps two kinds of shared state, both keyed strings with a TTL:
- Window counters (atomic increment, expiry armed on the first hit)
- Block records (a timestamp written with an expiry)

Every application instance talks to the same store, so the operations
below must each be a single atomic round trip. Implementations raise
StoreUnavailable for any connection error or timeout and never return a
partial result.

Available implementations:
- RedisBackend: production, shared by all instances
- InMemoryBackend: unit tests and single-process local development
"""

from abc import ABC, abstractmethod


class StorageBackend(ABC):
    """
    Contract for the shared rate limit store.

    Example:
        >>> backend = InMemoryBackend()  # for testing
        >>> counter = WindowCounter(backend)

        >>> backend = RedisBackend(redis_client)  # for production
        >>> counter = WindowCounter(backend)
    """

    @abstractmethod
    async def increment(self, key: str, ttl_ms: int) -> int:
        """
        Atomically increment a counter, arming its expiry on creation.

        The TTL is only set when the post-increment value is 1, so later
        hits in the same window never extend the counter's lifetime.

        Args:
            key: The counter key.
            ttl_ms: Time-to-live in milliseconds, applied on the first hit.

        Returns:
            The counter value after this increment.

        Example:
            >>> await backend.increment("rate_limit:auth:1.2.3.4:28333334", 900_000)
            1
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Retrieve a value by key.

        Returns:
            The stored string, or None if the key doesn't exist or expired.
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        """
        Store a value with an expiration, overwriting any previous value.

        Args:
            key: The key to store under.
            value: The string to store.
            ttl_ms: Time-to-live in milliseconds.
        """
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Delete keys. Missing keys are ignored."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the store answers."""
        pass

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None
