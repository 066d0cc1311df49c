"""
Tests for the in-memory and Redis cache stores.
"""
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from caching.cache_store import MemoryCacheStore, RedisCacheStore, create_cache_store
from utils.exceptions import TransientStoreError


@pytest.mark.unit
class TestMemoryCacheStore:

    async def test_set_get_delete(self, memory_store):
        await memory_store.set("a", {"x": 1})
        assert await memory_store.get("a") == {"x": 1}

        await memory_store.delete("a", "missing")
        assert await memory_store.get("a") is None

    async def test_entries_expire(self, memory_store, fake_clock):
        await memory_store.set("a", 1, ttl=10)
        fake_clock.advance(9)
        assert await memory_store.get("a") == 1
        fake_clock.advance(1)
        assert await memory_store.get("a") is None

    async def test_remember_loads_once(self, memory_store):
        loader = AsyncMock(return_value=["rule"])

        assert await memory_store.remember("k", 60, loader) == ["rule"]
        assert await memory_store.remember("k", 60, loader) == ["rule"]
        loader.assert_awaited_once()

    async def test_remember_does_not_cache_none(self, memory_store):
        loader = AsyncMock(return_value=None)
        await memory_store.remember("k", 60, loader)
        await memory_store.remember("k", 60, loader)
        assert loader.await_count == 2

    async def test_consume_fixed_window(self, memory_store):
        allowed, window = await memory_store.consume_fixed_window("w", 2, 60, now=1000)
        assert allowed and window.count == 1
        assert window.window_reset_at == 1060
        assert window.first_request_at == 1000

        allowed, window = await memory_store.consume_fixed_window("w", 2, 60, now=1010)
        assert allowed and window.count == 2
        assert window.first_request_at == 1000

        allowed, window = await memory_store.consume_fixed_window("w", 2, 60, now=1020)
        assert not allowed and window.count == 2

    async def test_ping(self):
        assert await MemoryCacheStore().ping()

    async def test_expired_counters_are_purged_on_write(self, memory_store, fake_clock):
        now = int(fake_clock.now)
        for i in range(1000):
            key = f"rate_limit:ip:10.0.{i // 256}.{i % 256}:login"
            await memory_store.consume_fixed_window(key, 5, 300, now=now)
        assert memory_store.size() == 1000

        fake_clock.advance(3600)
        await memory_store.consume_fixed_window("rate_limit:ip:8.8.8.8:login", 5, 300, now=int(fake_clock.now))

        assert memory_store.size() == 1

    async def test_sweep_runs_at_most_once_per_interval(self, fake_clock):
        store = MemoryCacheStore(clock=fake_clock, sweep_interval=60)
        await store.set("short", 1, ttl=1)
        fake_clock.advance(30)

        await store.set("other", 2)
        assert store.size() == 2

        fake_clock.advance(30)
        await store.set("other", 3)
        assert store.size() == 1
        assert await store.get("other") == 3


@pytest.mark.unit
class TestRedisCacheStore:

    async def test_get_decodes_json_and_prefixes_key(self, mock_redis_client):
        mock_redis_client.get.return_value = json.dumps({"count": 3})
        store = RedisCacheStore(mock_redis_client, key_prefix="gk:")

        assert await store.get("rate_limit:ip:1.2.3.4:login") == {"count": 3}
        mock_redis_client.get.assert_awaited_once_with("gk:rate_limit:ip:1.2.3.4:login")

    async def test_set_uses_ttl(self, mock_redis_client):
        store = RedisCacheStore(mock_redis_client, key_prefix="gk:")
        await store.set("k", [1, 2], ttl=3600)
        mock_redis_client.set.assert_awaited_once_with("gk:k", "[1, 2]", ex=3600)

    async def test_consume_runs_script(self, mock_redis_client):
        store = RedisCacheStore(mock_redis_client, key_prefix="gk:")

        allowed, window = await store.consume_fixed_window("w", 5, 60, now=1_700_000_000)

        assert allowed
        assert window.count == 1
        assert window.window_reset_at == 1_700_000_060
        script = mock_redis_client.register_script.return_value
        script.assert_awaited_once_with(keys=["gk:w"], args=[1_700_000_000, 5, 60])

    async def test_connection_error_becomes_transient(self, mock_redis_client):
        mock_redis_client.get.side_effect = RedisConnectionError("refused")
        store = RedisCacheStore(mock_redis_client)

        with pytest.raises(TransientStoreError) as exc_info:
            await store.get("k")
        assert exc_info.value.operation == "get"

    async def test_timeout_becomes_transient(self, mock_redis_client):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        mock_redis_client.register_script.return_value = slow
        store = RedisCacheStore(mock_redis_client, timeout=0.01)

        with pytest.raises(TransientStoreError):
            await store.consume_fixed_window("w", 5, 60, now=1)

    async def test_ping_reports_outage(self, mock_redis_client):
        mock_redis_client.ping.side_effect = RedisConnectionError("refused")
        assert not await RedisCacheStore(mock_redis_client).ping()


@pytest.fixture
async def lua_redis_store():
    """RedisCacheStore over an in-process Redis that executes Lua scripts."""
    client = fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    store = RedisCacheStore(client, key_prefix="gk:", timeout=1.0)
    yield store
    await store.close()


@pytest.mark.integration
class TestFixedWindowScript:

    async def test_counts_within_window_and_sets_ttl_to_remaining_time(self, lua_redis_store):
        allowed, window = await lua_redis_store.consume_fixed_window("w", 2, 60, now=1000)
        assert allowed
        assert (window.count, window.window_reset_at, window.first_request_at) == (1, 1060, 1000)
        assert 59 <= await lua_redis_store.client.ttl("gk:w") <= 60

        allowed, window = await lua_redis_store.consume_fixed_window("w", 2, 60, now=1030)
        assert allowed
        assert (window.count, window.window_reset_at, window.first_request_at) == (2, 1060, 1000)
        assert 29 <= await lua_redis_store.client.ttl("gk:w") <= 30

    async def test_full_window_denies_without_mutation(self, lua_redis_store):
        await lua_redis_store.consume_fixed_window("w", 1, 60, now=1000)
        await lua_redis_store.consume_fixed_window("w", 1, 60, now=1050)
        before = await lua_redis_store.get("w")

        allowed, window = await lua_redis_store.consume_fixed_window("w", 1, 60, now=1050)

        assert not allowed
        assert window.count == 1
        assert await lua_redis_store.get("w") == before
        assert before["count"] == 1
        assert before["window_reset_at"] == 1060
        assert await lua_redis_store.client.ttl("gk:w") <= 60

    async def test_window_resets_only_after_reset_time(self, lua_redis_store):
        await lua_redis_store.consume_fixed_window("w", 1, 60, now=1000)

        allowed, _ = await lua_redis_store.consume_fixed_window("w", 1, 60, now=1060)
        assert not allowed

        allowed, window = await lua_redis_store.consume_fixed_window("w", 1, 60, now=1061)
        assert allowed
        assert (window.count, window.window_reset_at, window.first_request_at) == (1, 1121, 1061)

    async def test_zero_limit_never_writes(self, lua_redis_store):
        allowed, window = await lua_redis_store.consume_fixed_window("w", 0, 60, now=1000)

        assert not allowed
        assert window.count == 0
        assert await lua_redis_store.client.exists("gk:w") == 0


@pytest.mark.unit
def test_create_cache_store_without_redis_url():
    settings = SimpleNamespace(redis_url=None)
    assert isinstance(create_cache_store(settings), MemoryCacheStore)
