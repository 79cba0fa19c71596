import math

from turnstile.core.models import LimitStatus, StrategyType
from turnstile.core.strategies.base import RateLimitStrategy, StrategyContext, StrategyOptions
from turnstile.core.timing import ceil_seconds, refill_tokens


class TokenBucketStrategy(RateLimitStrategy):
    """
    Lazy Token Bucket.

    The bucket holds up to `max_requests` tokens and refills at
    `max_requests` tokens per `window_ms`. Tokens are refilled only when
    the key is accessed. Each admitted unit takes one token, so a client
    can burst up to the full capacity and then drains at the refill rate,
    independent of any window alignment.
    """

    strategy_type = StrategyType.TOKEN_BUCKET

    async def check(
        self,
        key: str,
        options: StrategyOptions,
        context: StrategyContext,
    ) -> LimitStatus:
        now = context.now_ms

        record = await self._load(
            key, context, lambda cached: cached.tokens_remaining is not None
        )
        tokens = refill_tokens(
            record.tokens_remaining if record else None,
            record.last_refill if record else None,
            now,
            options.max_requests,
            options.window_ms,
        )

        allowed = tokens >= options.amount

        if allowed and options.increment:
            updated = await self._consume(key, options, context)
            tokens = refill_tokens(
                updated.tokens_remaining,
                updated.last_refill,
                now,
                options.max_requests,
                options.window_ms,
            )
            # Not applied: a concurrent caller took the token first
            allowed = updated.applied

        return self._status(tokens, allowed, options, now)

    @staticmethod
    def _status(
        tokens: float,
        allowed: bool,
        options: StrategyOptions,
        now: int,
    ) -> LimitStatus:
        capacity = options.max_requests
        remaining = max(0, math.floor(tokens))
        ms_per_token = options.window_ms / capacity

        retry_after = 0
        if not allowed:
            retry_after = max(1, ceil_seconds((options.amount - tokens) * ms_per_token))

        return LimitStatus(
            limited=not allowed,
            current=capacity - remaining,
            limit=capacity,
            remaining=remaining,
            reset_at=math.ceil((now + (capacity - tokens) * ms_per_token) / 1000),
            retry_after=retry_after,
        )
