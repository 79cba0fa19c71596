"""
Window and refill arithmetic shared by strategies and stores.

Both sides must agree on these numbers exactly: a strategy reads a
record and decides, a store rewrites the same record atomically.
"""

import math

from turnstile.core.models import CachedRecord, StoredRecord, StrategyType


def now_ms(seconds: float) -> int:
    return round(seconds * 1000)


def window_bounds(now: int, window_ms: int) -> tuple[int, int]:
    """Return (window_start, window_end) of the aligned window holding `now`."""
    start = now - (now % window_ms)
    return start, start + window_ms


def window_counts(
    record: StoredRecord | CachedRecord | None,
    window_start: int,
    window_ms: int,
) -> tuple[int, int]:
    """
    Project a record onto the window starting at `window_start`.

    Returns:
        (current_count, previous_count). A record of the current window
        contributes both of its counts; a record of the window right
        before contributes its count as the previous one; anything older
        is forgotten.
    """
    if record is None:
        return 0, 0
    if record.window_start == window_start:
        return record.count, record.previous_count
    if record.window_start == window_start - window_ms:
        return 0, record.count
    return 0, 0


def sliding_weight(now: int, window_start: int, window_ms: int) -> float:
    """Fraction of the previous window still inside the trailing interval."""
    elapsed = now - window_start
    return max(0.0, (window_ms - elapsed) / window_ms)


def effective_count(current: int, previous: int, weight: float) -> float:
    return current + previous * weight


def refill_tokens(
    tokens: float | None,
    last_refill: int | None,
    now: int,
    max_requests: int,
    window_ms: int,
) -> float:
    """
    Tokens available at `now`.

    The bucket refills at `max_requests` per `window_ms` and never holds
    more than `max_requests`. A bucket with no history starts full.
    """
    if tokens is None or last_refill is None:
        return float(max_requests)
    elapsed = max(0, now - last_refill)
    return min(float(max_requests), tokens + elapsed * max_requests / window_ms)


def record_expiry(strategy: StrategyType, window_end: int, window_ms: int) -> int:
    """
    When cleanup may drop a record.

    A sliding window record is still needed for one more window,
    because its count becomes the weighted previous count.
    """
    if strategy == StrategyType.SLIDING_WINDOW:
        return window_end + window_ms
    return window_end


def ceil_seconds(milliseconds: float) -> int:
    return max(0, math.ceil(milliseconds / 1000))


def window_fits(count: int, previous: int, weight: float, max_requests: int) -> bool:
    """
    True if a window holding `count` units, the ones being consumed
    included, stays within `max_requests`. Fixed windows pass weight 0.
    """
    return count + previous * weight - 1 < max_requests


def fit_weight(strategy: StrategyType, now: int, window_start: int, window_ms: int) -> float:
    """Weight of the previous count in the window fit rule of `strategy`."""
    if strategy == StrategyType.SLIDING_WINDOW:
        return sliding_weight(now, window_start, window_ms)
    return 0.0
