"""
Abstract base class for durable rate limit stores.

This module defines the contract that all stores must follow.
Separating storage from algorithms allows:
- Testing with the in-memory store (no database needed)
- Swapping SQLite for PostgreSQL or anything else with an atomic upsert
- Running locally without external dependencies

The store is the system of record. Caches sit in front of it but
admission decisions are always reconciled against what the store
returns from `increment`.
"""

from abc import ABC, abstractmethod

from turnstile.core.models import IncrementOptions, StoredRecord, StrategyType
from turnstile.core.timing import record_expiry, window_bounds


class RateLimitStore(ABC):
    """
    Abstract base class for authoritative rate limit state.

    Implementations must handle:
    - One record per key, one active window at a time
    - Atomic per-key increments (no lost updates under concurrency)
    - Cleanup that runs alongside live traffic

    Available implementations:
    - InMemoryStore: For testing and single-process deployments
    - SQLStore: SQLAlchemy async engine (SQLite or PostgreSQL)

    Example:
        >>> store = InMemoryStore()  # for testing
        >>> service = AdmissionService(store=store, cache=NoOpCache())

        >>> store = SQLStore(create_async_engine(url))  # for production
        >>> service = AdmissionService(store=store, cache=cache)
    """

    name: str = "abstract"

    async def initialize(self) -> None:
        """
        Prepare the store for use (create tables, indexes).

        Must be idempotent. The default implementation does nothing.
        """

    @abstractmethod
    async def get(self, key: str, user_id: str | None = None) -> StoredRecord | None:
        """
        Retrieve the record for a key.

        Must reflect the latest committed `increment` for that key.

        Args:
            key: The (strategy-namespaced) rate limit key.
            user_id: Optional caller scope, used by stores that enforce
                row-level ownership.

        Returns:
            The stored record, or None if the key has never been written
            or was cleared.

        Example:
            >>> await store.get("fixed-window:user:123")
            StoredRecord(key="fixed-window:user:123", count=4, ...)
        """
        pass

    @abstractmethod
    async def increment(self, key: str, options: IncrementOptions) -> StoredRecord:
        """
        Consume `options.amount` units for a key if they fit, and return
        the resulting state.

        This is the only write path and it must be atomic per key:
        concurrent calls for the same key serialize, and every call's
        effect is reflected in the record the next call sees. The fit
        check and the write happen in the same atomic step, so callers
        that lose a race for the last unit never consume anything.

        Window semantics (fixed and sliding window):
        - same aligned window: count += amount
        - the window right after the stored one: previous_count = count,
          count = amount
        - anything later: previous_count = 0, count = amount

        Token bucket semantics:
        - refill since last_refill (new records start full), capped at
          max_requests
        - tokens_remaining -= amount, count += amount, last_refill = now

        Fit rule: windows consume only while
        `count + previous_count * weight - 1 < max_requests` after the
        update (weight is 0 for the fixed window, the overlap of the
        previous window for the sliding one); the bucket consumes only
        when the refilled tokens cover `amount`.

        Args:
            key: The (strategy-namespaced) rate limit key.
            options: Limits, strategy, amount, the current time and
                optional provenance fields.

        Returns:
            The record as committed with `applied=True`, or the unchanged
            state with `applied=False` when the units did not fit.

        Raises:
            StoreUnavailableError: The store could not complete the write.
        """
        pass

    @abstractmethod
    async def clear(self, key: str, user_id: str | None = None) -> bool:
        """
        Delete the record for a key.

        Returns:
            True if a record existed. Clearing a missing key is not an error.
        """
        pass

    @abstractmethod
    async def cleanup(self, now_ms: int | None = None) -> int:
        """
        Remove records whose `expires_at` has passed.

        Records of a live window always have `expires_at` in the future,
        so cleanup never races an in-flight increment for the current
        window.

        Args:
            now_ms: Reference time, defaults to the wall clock.

        Returns:
            Number of records removed.
        """
        pass

    async def shutdown(self) -> None:
        """Release resources. Safe to call more than once."""


def unconsumed_record(key: str, options: IncrementOptions) -> StoredRecord:
    """State of a key that has never consumed anything, marked as not applied."""
    now = options.now_ms
    if options.strategy == StrategyType.TOKEN_BUCKET:
        window_start, window_end = now, now + options.window_ms
        tokens, last_refill = float(options.max_requests), now
    else:
        window_start, window_end = window_bounds(now, options.window_ms)
        tokens, last_refill = None, None
    return StoredRecord(
        key=key,
        count=0,
        max_requests=options.max_requests,
        window_ms=options.window_ms,
        window_start=window_start,
        window_end=window_end,
        strategy=options.strategy,
        tokens_remaining=tokens,
        last_refill=last_refill,
        expires_at=record_expiry(options.strategy, window_end, options.window_ms),
        created_at=now,
        updated_at=now,
        applied=False,
    )
