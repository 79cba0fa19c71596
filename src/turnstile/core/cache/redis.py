import json

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from turnstile.core.cache.base import RateLimitCache
from turnstile.core.models import CachedRecord

logger = structlog.get_logger(__name__)


class RedisCache(RateLimitCache):
    """
    Shared cache tier on Redis.

    Records are stored as JSON strings with a millisecond TTL. Any Redis
    failure is logged and reported as a miss; `is_available()` reflects
    the outcome of the most recent round trip.
    """

    name = "redis"

    # Bump the count of an existing entry without touching its TTL.
    # Returns nil when the key is not cached.
    _INCREMENT_SCRIPT = """
    local raw = redis.call("GET", KEYS[1])
    if not raw then
        return nil
    end
    local data = cjson.decode(raw)
    data["count"] = data["count"] + tonumber(ARGV[1])
    redis.call("SET", KEYS[1], cjson.encode(data), "KEEPTTL")
    return data["count"]
    """

    def __init__(
        self,
        redis: Redis,
        key_prefix: str = "ratelimit:",
        default_ttl_ms: int = 60_000,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._default_ttl_ms = default_ttl_ms
        self._available = True

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _failed(self, operation: str, key: str | None, exc: Exception) -> None:
        self._available = False
        logger.warning(
            "rate_limit_cache_error",
            cache=self.name,
            operation=operation,
            key=key,
            error=str(exc),
        )

    async def ping(self) -> bool:
        try:
            await self._redis.ping()
        except (RedisError, OSError) as exc:
            self._failed("ping", None, exc)
            return False
        self._available = True
        return True

    async def get(self, key: str) -> CachedRecord | None:
        try:
            raw = await self._redis.get(self._key(key))
        except (RedisError, OSError) as exc:
            self._failed("get", key, exc)
            return None
        self._available = True
        if not raw:
            return None
        try:
            return CachedRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("rate_limit_cache_corrupt_entry", key=key, error=str(exc))
            return None

    async def set(self, key: str, value: CachedRecord, ttl_ms: int) -> None:
        try:
            await self._redis.set(
                self._key(key),
                json.dumps(value.to_dict()),
                px=max(1, int(ttl_ms or self._default_ttl_ms)),
            )
        except (RedisError, OSError) as exc:
            self._failed("set", key, exc)
            return
        self._available = True

    async def increment(self, key: str, amount: int = 1) -> int | None:
        try:
            result = await self._redis.eval(self._INCREMENT_SCRIPT, 1, self._key(key), amount)
        except (RedisError, OSError) as exc:
            self._failed("increment", key, exc)
            return None
        self._available = True
        return int(result) if result is not None else None

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._redis.delete(self._key(key))
        except (RedisError, OSError) as exc:
            self._failed("delete", key, exc)
            return False
        self._available = True
        return bool(removed)

    def is_available(self) -> bool:
        return self._available

    async def shutdown(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("rate_limit_cache_close_failed", error=str(exc))
