"""
In-process cache with LRU eviction.

Used when no shared cache is configured, or when Redis cannot be
reached at startup. Limits cached here are not visible to other
server instances; the store still keeps every instance honest.
"""

import time
from collections import OrderedDict
from dataclasses import replace

from turnstile.core.cache.base import RateLimitCache
from turnstile.core.models import CachedRecord


class LRUCache:
    """
    Bounded mapping that evicts the least recently used entry.

    Entries carry their own expiry and are dropped lazily when read.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._entries: OrderedDict[str, tuple[CachedRecord, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> CachedRecord | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: CachedRecord, ttl_ms: int) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        else:
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
        self._entries[key] = (value, time.monotonic() + ttl_ms / 1000)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None


class MemoryCache(RateLimitCache):
    """
    RateLimitCache backed by an LRUCache.

    Example:
        >>> cache = MemoryCache(max_entries=5000)
        >>> await cache.set("fixed-window:user:1", record, ttl_ms=60_000)
        >>> await cache.get("fixed-window:user:1")
        CachedRecord(count=3, ...)
    """

    name = "memory"

    def __init__(
        self,
        max_entries: int = 10_000,
        key_prefix: str = "ratelimit:",
        default_ttl_ms: int = 60_000,
    ) -> None:
        self._lru = LRUCache(max_entries)
        self._prefix = key_prefix
        self._default_ttl_ms = default_ttl_ms

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> CachedRecord | None:
        value = self._lru.get(self._key(key))
        return replace(value) if value else None

    async def set(self, key: str, value: CachedRecord, ttl_ms: int) -> None:
        self._lru.set(self._key(key), replace(value), ttl_ms or self._default_ttl_ms)

    async def increment(self, key: str, amount: int = 1) -> int | None:
        cache_key = self._key(key)
        current = self._lru.get(cache_key)
        if current is None:
            return None
        current.count += amount
        return current.count

    async def delete(self, key: str) -> bool:
        return self._lru.delete(self._key(key))

    def is_available(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._lru)
