"""Tests for the Redis rate limit store."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import T0
from ratelimiting.app.exceptions import RateLimitStoreError
from ratelimiting.app.middleware.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    RateLimitRecord,
    RateLimitStore,
)
from ratelimiting.app.middleware.rate_limit.redis_store import (
    INCREMENT_SCRIPT,
    RedisRateLimitStore,
)


@pytest.fixture
def redis_client():
    return AsyncMock()


@pytest.fixture
def redis_store(redis_client, clock):
    return RedisRateLimitStore(redis_client=redis_client, clock=clock)


class TestRedisRateLimitStore:
    """Tests for RedisRateLimitStore against a mocked client."""

    def test_requires_client_or_url(self):
        with pytest.raises(ValueError):
            RedisRateLimitStore()

    def test_satisfies_store_protocol(self, redis_store):
        assert isinstance(redis_store, RateLimitStore)

    def test_lazy_client_from_url(self):
        store = RedisRateLimitStore(redis_url="redis://localhost:6379/0")
        with patch("ratelimiting.app.middleware.rate_limit.redis_store.aioredis") as mock_aioredis:
            store._get_client()
            store._get_client()
        mock_aioredis.from_url.assert_called_once_with("redis://localhost:6379/0")

    @pytest.mark.asyncio
    async def test_get_decodes_record(self, redis_store, redis_client):
        redis_client.get.return_value = b'{"count": 2, "window_start": 1000}'

        record = await redis_store.get("auth_login:10.0.0.1")

        redis_client.get.assert_awaited_once_with("rate_limit:auth_login:10.0.0.1")
        assert record.count == 2
        assert record.window_start == 1000
        assert record.tokens is None

    @pytest.mark.asyncio
    async def test_get_absent(self, redis_store, redis_client):
        redis_client.get.return_value = None
        assert await redis_store.get("k") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"count": "x"}'])
    async def test_get_corrupt_record(self, redis_store, redis_client, raw):
        redis_client.get.return_value = raw
        with pytest.raises(RateLimitStoreError, match="corrupt"):
            await redis_store.get("k")

    @pytest.mark.asyncio
    async def test_set_writes_json_with_px(self, redis_store, redis_client):
        record = RateLimitRecord(count=1, window_start=T0, event_log=[T0])

        await redis_store.set("k", record, 1500)

        redis_client.set.assert_awaited_once_with(
            "rate_limit:k", json.dumps(record.to_dict()), px=1500
        )

    @pytest.mark.asyncio
    async def test_set_rejects_non_positive_ttl(self, redis_store):
        with pytest.raises(ValueError):
            await redis_store.set("k", RateLimitRecord(), 0)

    @pytest.mark.asyncio
    async def test_increment_runs_script(self, redis_store, redis_client):
        redis_client.eval.return_value = 3

        assert await redis_store.increment("k", 1000) == 3
        redis_client.eval.assert_awaited_once_with(INCREMENT_SCRIPT, 1, "rate_limit:k", 1000, T0)

    @pytest.mark.asyncio
    async def test_delete(self, redis_store, redis_client):
        await redis_store.delete("k")
        redis_client.delete.assert_awaited_once_with("rate_limit:k")

    @pytest.mark.asyncio
    async def test_redis_error_is_wrapped(self, redis_store, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(RateLimitStoreError) as exc_info:
            await redis_store.get("k")
        assert exc_info.value.operation == "get"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_close(self, redis_store, redis_client):
        await redis_store.close()
        redis_client.aclose.assert_awaited_once()
        assert redis_store._redis is None


class TestRedisStoreWithLimiter:
    """Limiter behavior over the Redis store."""

    @pytest.mark.asyncio
    async def test_limiter_fails_open_when_redis_is_down(self, redis_store, redis_client, clock):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        config = RateLimitConfig(
            strategy="sliding_window", quota=5, window_ms=60000, namespace="api"
        )
        limiter = RateLimiter(config, redis_store, clock=clock)

        result = await limiter.check_limit("10.0.0.1")

        assert result.allowed is True
        assert result.remaining == 5

    @pytest.mark.asyncio
    async def test_fixed_window_uses_atomic_increment(self, redis_store, redis_client, clock):
        redis_client.get.return_value = json.dumps({"count": 1, "window_start": T0}).encode()
        redis_client.eval.return_value = 2
        config = RateLimitConfig(strategy="fixed_window", quota=5, window_ms=60000, namespace="api")
        limiter = RateLimiter(config, redis_store, clock=clock)

        result = await limiter.check_limit("10.0.0.1")

        assert result.allowed is True
        assert result.remaining == 3
        redis_client.eval.assert_awaited_once()
