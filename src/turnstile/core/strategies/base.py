"""
Abstract base classes for rate limiting strategies.

This module defines the contract that all rate limiting algorithms must follow.
Using the Strategy Pattern allows swapping algorithms at runtime without
changing the client code.

A strategy holds no state of its own. Everything it knows about a key
comes from the cache or the store passed in the context, and the only
thing it ever writes is one `store.increment` call per admitted request.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from turnstile.core.cache.base import RateLimitCache
from turnstile.core.models import (
    CachedRecord,
    IncrementOptions,
    LimitStatus,
    StoredRecord,
    StrategyType,
)
from turnstile.core.storage.base import RateLimitStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StrategyOptions:
    """
    Limits applied to a single check.

    Attributes:
        max_requests: Ceiling per window (or bucket capacity).
        window_ms: Window length (or full refill time) in milliseconds.
        increment: False for a check-only call that never writes.
        amount: Units this call wants to consume.
    """

    max_requests: int
    window_ms: int
    increment: bool = True
    amount: int = 1


@dataclass(frozen=True)
class StrategyContext:
    """Collaborators and request scope for a single check."""

    store: RateLimitStore
    cache: RateLimitCache
    now_ms: int
    user_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None


def admits(usage: float, amount: int, limit: int) -> bool:
    """True if consuming `amount` more units on top of `usage` stays within `limit`."""
    return usage + amount - 1 < limit


class RateLimitStrategy(ABC):
    """
    Abstract base class for rate limiting algorithms.

    All strategies implement `check`. This allows different algorithms
    (fixed window, sliding window, token bucket) to be used
    interchangeably by the admission service.
    """

    strategy_type: StrategyType

    @abstractmethod
    async def check(
        self,
        key: str,
        options: StrategyOptions,
        context: StrategyContext,
    ) -> LimitStatus:
        """
        Decide whether a request for `key` may proceed.

        This method is called for every incoming request that needs
        rate limiting. It must be fast and handle concurrent calls.

        Args:
            key: Unique identifier for the rate limit bucket.
                 Examples: "user:123", "ip:192.168.1.1", "api:abc123"
            options: Limits for this call and whether to consume.
            context: Store, cache, the current time and request scope.

        Returns:
            LimitStatus with the decision and header metadata.

        Raises:
            StoreError: The store failed; the caller decides the policy.
        """
        pass

    async def _consume(
        self,
        key: str,
        options: StrategyOptions,
        context: StrategyContext,
    ) -> StoredRecord:
        """
        Write through the store, then refresh the cache from its answer.

        The returned record says whether the store consumed the units
        (`applied`); when it did not, it is the current state of the key.
        """
        record = await context.store.increment(
            key,
            IncrementOptions(
                max_requests=options.max_requests,
                window_ms=options.window_ms,
                strategy=self.strategy_type,
                now_ms=context.now_ms,
                amount=options.amount,
                user_id=context.user_id,
                tenant_id=context.tenant_id,
                ip_address=context.ip_address,
            ),
        )
        ttl_ms = record.expires_at - context.now_ms
        if ttl_ms > 0:
            await context.cache.set(key, CachedRecord.from_record(record), ttl_ms)
        return record

    async def _load(
        self,
        key: str,
        context: StrategyContext,
        usable: Callable[[CachedRecord], bool],
    ) -> StoredRecord | CachedRecord | None:
        """
        Read-through lookup: the cache if it holds a usable entry,
        otherwise the store.
        """
        cached = await context.cache.get(key)
        if cached is not None and cached.strategy == self.strategy_type and usable(cached):
            return cached
        record = await context.store.get(key, context.user_id)
        if record is not None and record.strategy != self.strategy_type:
            logger.warning(
                "rate_limit_strategy_mismatch",
                key=key,
                stored=record.strategy.value,
                requested=self.strategy_type.value,
            )
            return None
        return record
