import math

from turnstile.core.models import LimitStatus, StrategyType
from turnstile.core.strategies.base import (
    RateLimitStrategy,
    StrategyContext,
    StrategyOptions,
)
from turnstile.core.timing import (
    ceil_seconds,
    effective_count,
    sliding_weight,
    window_bounds,
    window_counts,
    window_fits,
)


class SlidingWindowStrategy(RateLimitStrategy):
    """
    Sliding Window counter (weighted two-window approximation).

    Instead of one timestamp per request, each key keeps the count of the
    current aligned window and of the window before it. The previous
    count is weighted by how much of it still overlaps the trailing
    `window_ms` interval:

        effective = current + previous * (1 - elapsed / window_ms)

    A request is admitted while `effective < max_requests`. This bounds a
    burst to roughly `max_requests` over any `window_ms` interval, even one
    straddling a window boundary, at the cost of a small approximation
    error.
    """

    strategy_type = StrategyType.SLIDING_WINDOW

    async def check(
        self,
        key: str,
        options: StrategyOptions,
        context: StrategyContext,
    ) -> LimitStatus:
        now = context.now_ms
        window_start, window_end = window_bounds(now, options.window_ms)
        weight = sliding_weight(now, window_start, options.window_ms)

        record = await self._load(
            key, context, lambda cached: cached.window_start == window_start
        )
        current, previous = window_counts(record, window_start, options.window_ms)
        effective = effective_count(current, previous, weight)

        # Same arithmetic as the store's conditional write
        allowed = window_fits(current + options.amount, previous, weight, options.max_requests)

        if allowed and options.increment:
            updated = await self._consume(key, options, context)
            current, previous = window_counts(updated, window_start, options.window_ms)
            effective = effective_count(current, previous, weight)
            allowed = updated.applied

        used = math.floor(effective)
        retry_after = 0
        if not allowed:
            retry_after = max(
                1,
                ceil_seconds(
                    self._wait_ms(current, previous, options, now, window_start, window_end)
                ),
            )

        return LimitStatus(
            limited=not allowed,
            current=used,
            limit=options.max_requests,
            remaining=max(0, options.max_requests - used),
            reset_at=math.ceil(window_end / 1000),
            retry_after=retry_after,
        )

    @staticmethod
    def _wait_ms(
        current: int,
        previous: int,
        options: StrategyOptions,
        now: int,
        window_start: int,
        window_end: int,
    ) -> float:
        """
        Time until the decaying previous-window weight leaves room for
        `amount` more units. If the current window alone is full, the
        earliest chance is the next window.
        """
        headroom = options.max_requests - options.amount + 1 - current
        if headroom <= 0 or previous == 0:
            return window_end - now
        # previous * (1 - elapsed / window_ms) < headroom
        elapsed_needed = options.window_ms * (1 - headroom / previous)
        return min(window_end, window_start + elapsed_needed) - now
