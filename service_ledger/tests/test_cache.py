"""
Unit tests for the cache backends.
"""

import pytest
from unittest.mock import AsyncMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError

from service_ledger.app.cache import Cache, InMemoryCache, RedisCache, create_cache
from shared.config import GatewayConfig
from shared.errors import CacheError
from shared.test_helpers import FakeClock


class TestRedisCache:
    """Test cases for RedisCache."""

    @pytest.fixture
    def cache(self):
        return RedisCache("redis://localhost:6379/0")

    @pytest.mark.asyncio
    async def test_get_returns_stored_string(self, cache):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.return_value = '{"verified": true}'

            assert await cache.get("abc") == '{"verified": true}'
            mock_redis.get.assert_awaited_once_with("abc")

    @pytest.mark.asyncio
    async def test_get_miss(self, cache):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.return_value = None

            assert await cache.get("abc") is None

    @pytest.mark.asyncio
    async def test_set_uses_setex_with_ttl(self, cache):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis

            await cache.set("abc", "value", 3600)
            await cache.set("def", "value", 0)

            mock_redis.setex.assert_any_await("abc", 3600, "value")
            mock_redis.setex.assert_any_await("def", 1, "value")

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis

            await cache.delete("abc")

            mock_redis.delete.assert_awaited_once_with("abc")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,args", [
        ("get", ("abc",)),
        ("set", ("abc", "v", 10)),
        ("delete", ("abc",)),
    ])
    async def test_backend_errors_become_cache_errors(self, cache, operation, args):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            command = "setex" if operation == "set" else operation
            getattr(mock_redis, command).side_effect = RedisConnectionError("down")

            with pytest.raises(CacheError) as exc_info:
                await getattr(cache, operation)(*args)

            assert exc_info.value.details["operation"] == operation

    @pytest.mark.asyncio
    async def test_check_connection(self, cache):
        with patch.object(cache, '_get_redis') as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.ping.return_value = True
            assert await cache.check_connection() is True

            mock_redis.ping.side_effect = RedisConnectionError("down")
            assert await cache.check_connection() is False

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = AsyncMock()
        cache = RedisCache("redis://localhost:6379/0", client=client)

        await cache.close()

        client.aclose.assert_awaited_once()


class TestInMemoryCache:
    """Test cases for InMemoryCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return InMemoryCache(clock=clock)

    @pytest.mark.asyncio
    async def test_set_get_delete(self, cache):
        await cache.set("k", "v", 60)
        assert await cache.get("k") == "v"

        await cache.delete("k")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_noop(self, cache):
        await cache.delete("missing")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache, clock):
        await cache.set("k", "v", 10)

        clock.advance(9.9)
        assert await cache.get("k") == "v"

        clock.advance(0.1)
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, cache):
        await cache.set("k", "first", 60)
        await cache.set("k", "second", 60)

        assert await cache.get("k") == "second"

    @pytest.mark.asyncio
    async def test_check_connection(self, cache):
        assert await cache.check_connection() is True


def test_create_cache_selects_backend():
    memory = create_cache(GatewayConfig(_env_file=None, redis_url="memory://"))
    durable = create_cache(GatewayConfig(_env_file=None, redis_url="redis://localhost:6379/0"))

    assert isinstance(memory, InMemoryCache)
    assert isinstance(durable, RedisCache)
    assert isinstance(memory, Cache)
    assert isinstance(durable, Cache)
