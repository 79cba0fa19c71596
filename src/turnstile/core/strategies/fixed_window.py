import math

from turnstile.core.models import LimitStatus, StrategyType
from turnstile.core.strategies.base import (
    RateLimitStrategy,
    StrategyContext,
    StrategyOptions,
    admits,
)
from turnstile.core.timing import ceil_seconds, window_bounds, window_counts


class FixedWindowStrategy(RateLimitStrategy):
    """
    Fixed Window counter.

    Requests are counted in windows aligned to multiples of `window_ms`
    since the epoch, and the count drops to zero at every boundary.
    A burst straddling a boundary can therefore admit up to twice the
    limit in a short span. That is the expected behavior of this
    algorithm; use the sliding window when it matters.
    """

    strategy_type = StrategyType.FIXED_WINDOW

    async def check(
        self,
        key: str,
        options: StrategyOptions,
        context: StrategyContext,
    ) -> LimitStatus:
        now = context.now_ms
        window_start, window_end = window_bounds(now, options.window_ms)

        record = await self._load(
            key, context, lambda cached: cached.window_start == window_start
        )
        count, _ = window_counts(record, window_start, options.window_ms)

        allowed = admits(count, options.amount, options.max_requests)

        if allowed and options.increment:
            updated = await self._consume(key, options, context)
            count, _ = window_counts(updated, window_start, options.window_ms)
            # Not applied: another caller won the race for the last slot
            allowed = updated.applied

        return LimitStatus(
            limited=not allowed,
            current=count,
            limit=options.max_requests,
            remaining=max(0, options.max_requests - count),
            reset_at=math.ceil(window_end / 1000),
            retry_after=0 if allowed else max(1, ceil_seconds(window_end - now)),
        )
