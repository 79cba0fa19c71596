from enum import StrEnum

import structlog
from redis.asyncio import Redis

from turnstile.core.cache.base import RateLimitCache
from turnstile.core.cache.memory import MemoryCache
from turnstile.core.cache.redis import RedisCache
from turnstile.core.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class CacheType(StrEnum):
    SHARED = "shared"
    LOCAL = "local"
    AUTO = "auto"


async def create_cache(
    cache_type: CacheType,
    redis: Redis | None = None,
    max_entries: int = 10_000,
    key_prefix: str = "ratelimit:",
    default_ttl_ms: int = 60_000,
) -> RateLimitCache:
    """
    Build the cache tier.

    - shared: always Redis; requires a client.
    - local: always the in-process LRU.
    - auto: Redis if it answers a ping, otherwise the LRU.
    """

    def local() -> MemoryCache:
        return MemoryCache(
            max_entries=max_entries,
            key_prefix=key_prefix,
            default_ttl_ms=default_ttl_ms,
        )

    if cache_type == CacheType.LOCAL:
        return local()

    if redis is None:
        if cache_type == CacheType.SHARED:
            raise ConfigurationError(
                code="missing_redis",
                message="Cache type 'shared' requires redis_url to be set",
            )
        logger.warning(
            "rate_limit_cache_fallback",
            reason="redis_not_configured",
            detail="Using in-memory cache; limits will not sync across instances",
        )
        return local()

    shared = RedisCache(redis, key_prefix=key_prefix, default_ttl_ms=default_ttl_ms)
    if cache_type == CacheType.SHARED:
        return shared

    if await shared.ping():
        return shared

    logger.warning(
        "rate_limit_cache_fallback",
        reason="redis_unreachable",
        detail="Using in-memory cache; limits will not sync across instances",
    )
    await shared.shutdown()
    return local()
