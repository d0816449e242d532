"""Tests for the in-memory rate limit store."""

import asyncio

import pytest

from conftest import T0
from ratelimiting.app.middleware.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitRecord,
    RateLimitStore,
    create_store,
)
from ratelimiting.app.middleware.rate_limit.redis_store import RedisRateLimitStore


class TestInMemoryRateLimitStore:
    """Tests for InMemoryRateLimitStore."""

    def test_satisfies_store_protocol(self, store):
        assert isinstance(store, RateLimitStore)

    @pytest.mark.asyncio
    async def test_get_absent_returns_none(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        await store.set("k", RateLimitRecord(count=3, window_start=T0), 1000)

        record = await store.get("k")
        assert record.count == 3
        assert record.window_start == T0

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, store):
        await store.set("k", RateLimitRecord(count=1, event_log=[T0]), 1000)

        record = await store.get("k")
        record.count = 99
        record.event_log.append(T0 + 1)

        stored = await store.get("k")
        assert stored.count == 1
        assert stored.event_log == [T0]

    @pytest.mark.asyncio
    async def test_expired_entry_is_absent_without_sweep(self, store, clock):
        await store.set("k", RateLimitRecord(count=1), 1000)

        clock.advance(999)
        assert await store.get("k") is not None

        clock.advance(1)
        assert await store.get("k") is None
        assert store.size == 0

    @pytest.mark.asyncio
    async def test_set_rearms_ttl(self, store, clock):
        await store.set("k", RateLimitRecord(count=1), 1000)
        clock.advance(800)
        await store.set("k", RateLimitRecord(count=2), 1000)
        clock.advance(800)

        record = await store.get("k")
        assert record.count == 2

    @pytest.mark.asyncio
    async def test_set_rejects_non_positive_ttl(self, store):
        with pytest.raises(ValueError):
            await store.set("k", RateLimitRecord(), 0)

    @pytest.mark.asyncio
    async def test_increment_creates_record(self, store, clock):
        assert await store.increment("k", 1000) == 1

        record = await store.get("k")
        assert record.count == 1
        assert record.window_start == T0

    @pytest.mark.asyncio
    async def test_increment_existing_keeps_window_start(self, store, clock):
        await store.set("k", RateLimitRecord(count=4, window_start=T0 - 500), 1000)

        assert await store.increment("k", 1000) == 5
        assert (await store.get("k")).window_start == T0 - 500

    @pytest.mark.asyncio
    async def test_increment_after_expiry_starts_over(self, store, clock):
        await store.set("k", RateLimitRecord(count=4), 1000)
        clock.advance(1000)

        assert await store.increment("k", 1000) == 1

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set("k", RateLimitRecord(count=1), 1000)
        await store.delete("k")
        await store.delete("never-set")

        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired(self, store, clock):
        await store.set("short", RateLimitRecord(count=1), 100)
        await store.set("long", RateLimitRecord(count=1), 10000)
        clock.advance(500)

        removed = await store.cleanup()

        assert removed == 1
        assert store.size == 1
        assert await store.get("long") is not None

    @pytest.mark.asyncio
    async def test_cleanup_handles_many_keys(self, store, clock):
        for i in range(InMemoryRateLimitStore.SWEEP_BATCH_SIZE * 2 + 10):
            await store.set(f"k{i}", RateLimitRecord(count=1), 100)
        clock.advance(100)

        assert await store.cleanup() == InMemoryRateLimitStore.SWEEP_BATCH_SIZE * 2 + 10
        assert store.size == 0

    @pytest.mark.asyncio
    async def test_background_sweeper(self, store, clock):
        await store.set("k", RateLimitRecord(count=1), 100)
        clock.advance(200)

        store.start_sweeper(0.01)
        await asyncio.sleep(0.05)
        assert store.size == 0

        await store.stop_sweeper()
        assert store._sweeper is None

    @pytest.mark.asyncio
    async def test_close_stops_sweeper(self, store):
        store.start_sweeper(60)
        await store.close()
        assert store._sweeper is None


class TestCreateStore:
    """Tests for store construction from settings."""

    def test_memory_backend(self):
        assert isinstance(create_store("memory"), InMemoryRateLimitStore)

    def test_each_call_builds_a_new_store(self):
        assert create_store("memory") is not create_store("memory")

    def test_redis_backend(self):
        store = create_store("redis", redis_url="redis://localhost:6379/1")
        assert isinstance(store, RedisRateLimitStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown"):
            create_store("memcached")
