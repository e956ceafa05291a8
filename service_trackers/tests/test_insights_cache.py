"""
Unit tests for the insights cache backends.
"""

import json
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from shared.config import get_config

from service_trackers.app.cache.insights_cache import (
    MemoryInsightsCache,
    RedisInsightsCache,
    create_insights_cache,
    make_cache_key,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_make_cache_key():
    """Test keys ignore tracker order and duplicates."""
    assert make_cache_key(["b", "a", "b"]) == "a,b|-|-"
    assert make_cache_key(["a"], date(2024, 3, 1), date(2024, 3, 31)) == "a|2024-03-01|2024-03-31"


class TestMemoryInsightsCache:
    """Test cases for the process-local cache."""

    @pytest.mark.asyncio
    async def test_hit_and_expiry(self, metrics):
        """Test values expire after the TTL."""
        clock = FakeClock()
        cache = MemoryInsightsCache(ttl_seconds=300, metrics=metrics, clock=clock)
        await cache.set(["t1"], {"trackers": []})

        assert await cache.get(["t1"]) == {"trackers": []}

        clock.now += 301
        assert await cache.get(["t1"]) is None
        assert metrics.registry.get_sample_value("insights_cache_events_total", {"event": "hit"}) == 1.0
        assert metrics.registry.get_sample_value("insights_cache_events_total", {"event": "expired"}) == 1.0

    @pytest.mark.asyncio
    async def test_set_sweeps_expired_keys(self):
        """Test expired keys are dropped on write even if never read again."""
        clock = FakeClock()
        cache = MemoryInsightsCache(ttl_seconds=300, clock=clock)
        for tracker_id in ("t1", "t2", "t3"):
            await cache.set([tracker_id], {"n": 1})

        clock.now += 301
        await cache.set(["t4"], {"n": 4})

        assert len(cache) == 1
        assert await cache.get(["t4"]) == {"n": 4}

    @pytest.mark.asyncio
    async def test_size_is_capped(self):
        """Test the oldest entry is evicted once the cache is full."""
        cache = MemoryInsightsCache(max_entries=2)
        await cache.set(["t1"], {"n": 1})
        await cache.set(["t2"], {"n": 2})
        await cache.set(["t3"], {"n": 3})

        assert len(cache) == 2
        assert await cache.get(["t1"]) is None
        assert await cache.get(["t3"]) == {"n": 3}

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        """Test callers cannot mutate cached values."""
        cache = MemoryInsightsCache()
        await cache.set(["t1"], {"trackers": []})

        (await cache.get(["t1"]))["trackers"].append("changed")

        assert await cache.get(["t1"]) == {"trackers": []}

    @pytest.mark.asyncio
    async def test_invalidate_tracker(self):
        """Test every key containing the tracker is dropped."""
        cache = MemoryInsightsCache()
        await cache.set(["t1"], {"n": 1})
        await cache.set(["t1", "t2"], {"n": 2}, date(2024, 3, 1))
        await cache.set(["t2"], {"n": 3})

        assert await cache.invalidate_tracker("t1") == 2
        assert len(cache) == 1
        assert await cache.get(["t2"]) == {"n": 3}
        assert await cache.invalidate_tracker("t9") == 0

    @pytest.mark.asyncio
    async def test_date_range_is_part_of_key(self):
        """Test different ranges are cached separately."""
        cache = MemoryInsightsCache()
        await cache.set(["t1"], {"range": "march"}, date(2024, 3, 1), date(2024, 3, 31))

        assert await cache.get(["t1"]) is None
        assert await cache.get(["t1"], date(2024, 3, 1), date(2024, 3, 31)) == {"range": "march"}


class TestRedisInsightsCache:
    """Test cases for the Redis cache against a mocked client."""

    @pytest.fixture
    def client(self):
        """Mock Redis client."""
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.smembers = AsyncMock(return_value=set())
        client.delete = AsyncMock(return_value=1)
        client.ping = AsyncMock(return_value=True)
        return client

    @pytest.mark.asyncio
    async def test_get(self, client):
        """Test cached JSON is decoded."""
        client.get.return_value = json.dumps({"trackers": []})
        cache = RedisInsightsCache("redis://localhost:6379/0", client=client)

        assert await cache.get(["t2", "t1"]) == {"trackers": []}
        client.get.assert_awaited_once_with("insights:t1,t2|-|-")

    @pytest.mark.asyncio
    async def test_get_degrades_on_error(self, client, metrics):
        """Test Redis errors read as a cache miss."""
        client.get.side_effect = RedisError("connection refused")
        cache = RedisInsightsCache("redis://localhost:6379/0", metrics=metrics, client=client)

        assert await cache.get(["t1"]) is None
        assert metrics.registry.get_sample_value("insights_cache_events_total", {"event": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_set_indexes_each_tracker(self, client):
        """Test set writes the value and one index entry per tracker."""
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        client.pipeline.return_value = pipe
        cache = RedisInsightsCache("redis://localhost:6379/0", ttl_seconds=60, client=client)

        await cache.set(["t2", "t1"], {"n": 1})

        pipe.setex.assert_called_once_with("insights:t1,t2|-|-", 60, json.dumps({"n": 1}))
        pipe.sadd.assert_any_call("insights-index:t1", "insights:t1,t2|-|-")
        pipe.sadd.assert_any_call("insights-index:t2", "insights:t1,t2|-|-")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_tracker(self, client):
        """Test invalidation deletes indexed keys and the index."""
        client.smembers.return_value = {"insights:t1|-|-", "insights:t1,t2|-|-"}
        cache = RedisInsightsCache("redis://localhost:6379/0", client=client)

        assert await cache.invalidate_tracker("t1") == 2
        client.delete.assert_any_await("insights-index:t1")

    @pytest.mark.asyncio
    async def test_invalidate_degrades_on_error(self, client):
        """Test invalidation errors are logged, not raised."""
        client.smembers.side_effect = RedisError("timeout")
        cache = RedisInsightsCache("redis://localhost:6379/0", client=client)

        assert await cache.invalidate_tracker("t1") == 0

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test health reflects ping."""
        cache = RedisInsightsCache("redis://localhost:6379/0", client=client)
        assert await cache.health_check() is True

        client.ping.side_effect = RedisError("down")
        assert await cache.health_check() is False


def test_create_insights_cache():
    """Test the backend follows configuration."""
    memory = create_insights_cache(get_config("trackers", 8020, insights_cache_ttl_seconds=60))
    remote = create_insights_cache(get_config("trackers", 8020, insights_cache_backend="redis"))

    assert isinstance(memory, MemoryInsightsCache)
    assert memory.ttl_seconds == 60
    assert isinstance(remote, RedisInsightsCache)
    assert remote.redis is None
