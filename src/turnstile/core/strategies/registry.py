from turnstile.core.models import StrategyType
from turnstile.core.strategies.base import RateLimitStrategy
from turnstile.core.strategies.fixed_window import FixedWindowStrategy
from turnstile.core.strategies.sliding_window import SlidingWindowStrategy
from turnstile.core.strategies.token_bucket import TokenBucketStrategy

# Strategies are stateless, one instance each is enough
_FIXED_WINDOW = FixedWindowStrategy()
_SLIDING_WINDOW = SlidingWindowStrategy()
_TOKEN_BUCKET = TokenBucketStrategy()


def get_strategy(strategy: StrategyType) -> RateLimitStrategy:
    match strategy:
        case StrategyType.FIXED_WINDOW:
            return _FIXED_WINDOW
        case StrategyType.SLIDING_WINDOW:
            return _SLIDING_WINDOW
        case StrategyType.TOKEN_BUCKET:
            return _TOKEN_BUCKET
    raise ValueError(f"Unknown rate limit strategy: {strategy!r}")
