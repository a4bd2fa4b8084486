import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from bestpool.cache import InMemoryCacheBackend, RedisCacheBackend, create_cache_backend
from bestpool.config import settings
from bestpool.upstream import HttpUpstreamSource, SimulatedUpstreamSource, create_upstream_source


class TestInMemoryCacheBackend:

    @pytest.fixture
    def clock(self):
        now = {"t": 0.0}

        def _clock():
            return now["t"]

        _clock.state = now
        return _clock

    @pytest.mark.asyncio
    async def test_set_and_get(self, clock):
        cache = InMemoryCacheBackend(clock=clock)

        await cache.set("pool_a", {"price": 1.5}, ttl=30)

        assert await cache.get("pool_a") == {"price": 1.5}
        assert await cache.get("pool_b") is None

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        cache = InMemoryCacheBackend(clock=clock)
        await cache.set("pool_a", {"price": 1.5}, ttl=30)

        clock.state["t"] = 30.0

        assert await cache.get("pool_a") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_readers_get_copies(self, clock):
        cache = InMemoryCacheBackend(clock=clock)
        await cache.set("pool_a", {"price": 1.5}, ttl=30)

        (await cache.get("pool_a"))["price"] = 99

        assert await cache.get("pool_a") == {"price": 1.5}

    @pytest.mark.asyncio
    async def test_delete_prefix(self, clock):
        cache = InMemoryCacheBackend(clock=clock)
        await cache.set("bestpool_cache:pool_a", 1, ttl=30)
        await cache.set("bestpool_cache:price_a", 2, ttl=30)
        await cache.set("other", 3, ttl=30)

        assert await cache.delete_prefix("bestpool_cache:") == 2
        assert await cache.get("other") == 3

    @pytest.mark.asyncio
    async def test_health_check(self):
        health = await InMemoryCacheBackend().health_check()
        assert health["status"] == "connected"


class TestRedisCacheBackend:

    @pytest.fixture
    def mock_redis(self):
        """Mock Redis client"""
        mock_redis = AsyncMock()
        mock_redis.ping.return_value = True
        mock_redis.get.return_value = None
        mock_redis.set.return_value = True
        mock_redis.delete.return_value = 2
        return mock_redis

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_expiry(self, mock_redis):
        cache = RedisCacheBackend(client=mock_redis)

        await cache.set("pool_a", {"price": 1.5}, ttl=5)

        mock_redis.set.assert_awaited_once_with("pool_a", '{"price": 1.5}', px=5000)

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, mock_redis):
        mock_redis.get.return_value = '{"price": 1.5}'
        cache = RedisCacheBackend(client=mock_redis)

        assert await cache.get("pool_a") == {"price": 1.5}

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_redis):
        cache = RedisCacheBackend(client=mock_redis)
        assert await cache.get("pool_a") is None

    @pytest.mark.asyncio
    async def test_delete_prefix_scans_keys(self, mock_redis):
        async def scan_iter(match):
            for key in ("bestpool_cache:pool_a", "bestpool_cache:price_a"):
                yield key

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)
        cache = RedisCacheBackend(client=mock_redis)

        removed = await cache.delete_prefix("bestpool_cache:")

        assert removed == 2
        mock_redis.scan_iter.assert_called_once_with(match="bestpool_cache:*")
        mock_redis.delete.assert_awaited_once_with("bestpool_cache:pool_a", "bestpool_cache:price_a")

    @pytest.mark.asyncio
    async def test_delete_prefix_with_no_keys(self, mock_redis):
        async def scan_iter(match):
            return
            yield

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)
        cache = RedisCacheBackend(client=mock_redis)

        assert await cache.delete_prefix("bestpool_cache:") == 0
        mock_redis.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self, mock_redis):
        mock_redis.ping.side_effect = ConnectionError("refused")
        cache = RedisCacheBackend(client=mock_redis)

        health = await cache.health_check()

        assert health["status"] == "disconnected"
        assert "refused" in health["error"]

    @pytest.mark.asyncio
    async def test_close(self, mock_redis):
        cache = RedisCacheBackend(client=mock_redis)
        await cache.close()
        mock_redis.aclose.assert_awaited_once()


class TestBackendFactories:

    @pytest.mark.asyncio
    async def test_memory_backend_when_redis_disabled(self):
        with patch.object(settings, "ENABLE_REDIS", False):
            backend = await create_cache_backend()

        assert isinstance(backend, InMemoryCacheBackend)

    @pytest.mark.asyncio
    async def test_redis_backend_when_enabled(self, mock_redis):
        with patch.object(settings, "ENABLE_REDIS", True), \
             patch("bestpool.cache.aioredis.from_url", return_value=mock_redis):
            backend = await create_cache_backend()

        assert isinstance(backend, RedisCacheBackend)
        mock_redis.ping.assert_awaited_once()

    @pytest.fixture
    def mock_redis(self):
        mock_redis = AsyncMock()
        mock_redis.ping.return_value = True
        return mock_redis

    @pytest.mark.asyncio
    async def test_upstream_source_selection(self):
        with patch.object(settings, "UPSTREAM_MODE", "http"):
            source = create_upstream_source()
        assert isinstance(source, HttpUpstreamSource)
        await source.close()

        with patch.object(settings, "UPSTREAM_MODE", "simulated"):
            assert isinstance(create_upstream_source(), SimulatedUpstreamSource)
