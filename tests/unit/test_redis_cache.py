import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from turnstile.core.cache.redis import RedisCache
from turnstile.core.models import CachedRecord, StrategyType


@pytest.fixture
def mock_redis():
    return AsyncMock()


@pytest.fixture
def cache(mock_redis):
    return RedisCache(mock_redis, key_prefix="rl:")


def record(count: int = 2) -> CachedRecord:
    return CachedRecord(
        count=count,
        max_requests=10,
        window_start=0,
        window_end=60_000,
        strategy=StrategyType.SLIDING_WINDOW,
        previous_count=4,
    )


@pytest.mark.asyncio
async def test_set_serializes_with_ttl(cache, mock_redis):
    await cache.set("sliding-window:user:1", record(), ttl_ms=1500)

    args, kwargs = mock_redis.set.call_args
    assert args[0] == "rl:sliding-window:user:1"
    assert json.loads(args[1])["strategy"] == "sliding-window"
    assert kwargs["px"] == 1500


@pytest.mark.asyncio
async def test_get_decodes_entry(cache, mock_redis):
    mock_redis.get.return_value = json.dumps(record(7).to_dict())

    cached = await cache.get("sliding-window:user:1")

    assert cached == record(7)
    mock_redis.get.assert_awaited_once_with("rl:sliding-window:user:1")


@pytest.mark.asyncio
async def test_get_miss(cache, mock_redis):
    mock_redis.get.return_value = None

    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_corrupt_entry_reads_as_miss(cache, mock_redis):
    mock_redis.get.return_value = "{not json"

    assert await cache.get("k") is None
    assert cache.is_available()


@pytest.mark.asyncio
async def test_redis_error_is_a_miss_and_marks_unavailable(cache, mock_redis):
    mock_redis.get.side_effect = RedisConnectionError("down")

    assert await cache.get("k") is None
    assert cache.is_available() is False


@pytest.mark.asyncio
async def test_recovers_availability_after_success(cache, mock_redis):
    mock_redis.set.side_effect = RedisConnectionError("down")
    await cache.set("k", record(), ttl_ms=1000)
    assert cache.is_available() is False

    mock_redis.set.side_effect = None
    await cache.set("k", record(), ttl_ms=1000)
    assert cache.is_available() is True


@pytest.mark.asyncio
async def test_increment_runs_script(cache, mock_redis):
    mock_redis.eval.return_value = 5

    assert await cache.increment("k", 2) == 5

    args = mock_redis.eval.call_args.args
    assert args[1:] == (1, "rl:k", 2)


@pytest.mark.asyncio
async def test_increment_missing_entry(cache, mock_redis):
    mock_redis.eval.return_value = None

    assert await cache.increment("k") is None


@pytest.mark.asyncio
async def test_delete(cache, mock_redis):
    mock_redis.delete.return_value = 1

    assert await cache.delete("k") is True
    mock_redis.delete.assert_awaited_once_with("rl:k")


@pytest.mark.asyncio
async def test_delete_failure_returns_false(cache, mock_redis):
    mock_redis.delete.side_effect = RedisConnectionError("down")

    assert await cache.delete("k") is False


@pytest.mark.asyncio
async def test_ping(cache, mock_redis):
    assert await cache.ping() is True

    mock_redis.ping.side_effect = RedisConnectionError("down")
    assert await cache.ping() is False


@pytest.mark.asyncio
async def test_shutdown_closes_client(cache, mock_redis):
    await cache.shutdown()

    mock_redis.aclose.assert_awaited_once()
