"""
Abstract base class for the rate limit cache tier.

A cache shadows recently touched store records so that a check can
skip the store round trip. It is strictly an optimization: every
method must degrade to "not cached" instead of raising, and no
admission decision may depend on the cache being present or warm.
"""

from abc import ABC, abstractmethod

from turnstile.core.models import CachedRecord


class RateLimitCache(ABC):
    """
    Contract shared by every cache implementation.

    Available implementations:
    - RedisCache: shared across instances
    - MemoryCache: in-process LRU fallback
    - NoOpCache: caching disabled
    """

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> CachedRecord | None:
        """Return the cached record, or None on miss, expiry or error."""
        pass

    @abstractmethod
    async def set(self, key: str, value: CachedRecord, ttl_ms: int) -> None:
        """Store a record for `ttl_ms` milliseconds. Errors are swallowed."""
        pass

    @abstractmethod
    async def increment(self, key: str, amount: int = 1) -> int | None:
        """
        Add `amount` to the cached count.

        Returns:
            The new count, or None when the key is not cached.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Drop a cached entry. Returns True if one was present."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    async def shutdown(self) -> None:
        """Release resources. Safe to call more than once."""


class NoOpCache(RateLimitCache):
    """Cache that never holds anything. Every check goes to the store."""

    name = "noop"

    async def get(self, key: str) -> CachedRecord | None:
        return None

    async def set(self, key: str, value: CachedRecord, ttl_ms: int) -> None:
        return None

    async def increment(self, key: str, amount: int = 1) -> int | None:
        return None

    async def delete(self, key: str) -> bool:
        return False

    def is_available(self) -> bool:
        return False
