"""
In-memory rate limit store for testing and development.

This store keeps all records in a Python dictionary, making it:
- Fast: No network calls, no serialization
- Simple: No external dependencies
- Isolated: Each instance is independent

WARNING: Not suitable for multi-instance deployments!
- No persistence (data lost on restart)
- No distribution (single process only)

Use SQLStore when limits must survive restarts or be shared.
"""

import threading
import time
from dataclasses import replace

from turnstile.core.models import IncrementOptions, StoredRecord, StrategyType
from turnstile.core.storage.base import RateLimitStore, unconsumed_record
from turnstile.core.timing import (
    fit_weight,
    record_expiry,
    refill_tokens,
    window_bounds,
    window_fits,
)


class InMemoryStore(RateLimitStore):
    """
    In-memory implementation of RateLimitStore.

    Every read-modify-write happens under a single lock and contains
    no await point, so increments are atomic both across asyncio tasks
    and across threads.

    Example:
        >>> store = InMemoryStore()
        >>> record = await store.increment("fixed-window:user:1", options)
        >>> record.count
        1
    """

    name = "memory"

    def __init__(self) -> None:
        self._records: dict[str, StoredRecord] = {}
        self._lock = threading.Lock()

    async def get(self, key: str, user_id: str | None = None) -> StoredRecord | None:
        with self._lock:
            record = self._records.get(key)
            # Hand out copies so callers can never mutate stored state
            return replace(record) if record else None

    async def increment(self, key: str, options: IncrementOptions) -> StoredRecord:
        with self._lock:
            existing = self._records.get(key)
            if options.strategy == StrategyType.TOKEN_BUCKET:
                record = self._advance_bucket(key, existing, options)
            else:
                record = self._advance_window(key, existing, options)
            if record is None:
                if existing is None:
                    return unconsumed_record(key, options)
                return replace(existing, applied=False)
            self._records[key] = record
            return replace(record)

    async def clear(self, key: str, user_id: str | None = None) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    async def cleanup(self, now_ms: int | None = None) -> int:
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        with self._lock:
            expired = [k for k, r in self._records.items() if r.expires_at < now]
            for key in expired:
                del self._records[key]
        return len(expired)

    async def shutdown(self) -> None:
        with self._lock:
            self._records.clear()

    # =========================================================================
    # State transitions
    # =========================================================================

    @staticmethod
    def _advance_window(
        key: str,
        existing: StoredRecord | None,
        options: IncrementOptions,
    ) -> StoredRecord | None:
        """The next window record, or None if the units do not fit."""
        now = options.now_ms
        window_start, window_end = window_bounds(now, options.window_ms)

        if existing is not None and existing.window_start == window_start:
            count = existing.count + options.amount
            previous = existing.previous_count
        elif existing is not None and existing.window_start == window_start - options.window_ms:
            count = options.amount
            previous = existing.count
        else:
            count = options.amount
            previous = 0

        weight = fit_weight(options.strategy, now, window_start, options.window_ms)
        if not window_fits(count, previous, weight, options.max_requests):
            return None

        return StoredRecord(
            key=key,
            count=count,
            previous_count=previous,
            max_requests=options.max_requests,
            window_ms=options.window_ms,
            window_start=window_start,
            window_end=window_end,
            strategy=options.strategy,
            expires_at=record_expiry(options.strategy, window_end, options.window_ms),
            user_id=options.user_id or (existing.user_id if existing else None),
            tenant_id=options.tenant_id or (existing.tenant_id if existing else None),
            ip_address=options.ip_address or (existing.ip_address if existing else None),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

    @staticmethod
    def _advance_bucket(
        key: str,
        existing: StoredRecord | None,
        options: IncrementOptions,
    ) -> StoredRecord | None:
        """The refilled and drawn bucket, or None if it cannot cover the units."""
        now = options.now_ms
        tokens = refill_tokens(
            existing.tokens_remaining if existing else None,
            existing.last_refill if existing else None,
            now,
            options.max_requests,
            options.window_ms,
        )
        if tokens < options.amount:
            return None
        window_end = now + options.window_ms

        return StoredRecord(
            key=key,
            count=(existing.count if existing else 0) + options.amount,
            max_requests=options.max_requests,
            window_ms=options.window_ms,
            window_start=now,
            window_end=window_end,
            strategy=options.strategy,
            tokens_remaining=tokens - options.amount,
            last_refill=now,
            expires_at=record_expiry(options.strategy, window_end, options.window_ms),
            user_id=options.user_id or (existing.user_id if existing else None),
            tenant_id=options.tenant_id or (existing.tenant_id if existing else None),
            ip_address=options.ip_address or (existing.ip_address if existing else None),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._records)
