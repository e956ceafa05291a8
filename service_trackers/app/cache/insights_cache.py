"""
Insights cache.

Derived insights are cached per tracker-id set and date range with a fixed
TTL. Any write to a tracker's entries must call ``invalidate_tracker`` so that
every cached key containing that tracker is dropped.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

import redis.asyncio as redis

from shared.errors import StoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


def make_cache_key(tracker_ids: Iterable[str], start_date: Optional[date] = None,
                   end_date: Optional[date] = None) -> str:
    ids = ",".join(sorted(set(tracker_ids)))
    start = start_date.isoformat() if start_date else "-"
    end = end_date.isoformat() if end_date else "-"
    return f"{ids}|{start}|{end}"


class InsightsCache(ABC):
    """Injectable cache for derived tracker insights."""

    def __init__(self, ttl_seconds: int = 300, metrics: Optional[MetricsCollector] = None):
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics

    @abstractmethod
    async def get(self, tracker_ids: Iterable[str], start_date: Optional[date] = None,
                  end_date: Optional[date] = None) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, tracker_ids: Iterable[str], value: Dict[str, Any],
                  start_date: Optional[date] = None, end_date: Optional[date] = None):
        ...

    @abstractmethod
    async def invalidate_tracker(self, tracker_id: str) -> int:
        """Drop every cached entry whose tracker set contains ``tracker_id``."""

    @abstractmethod
    async def clear(self):
        ...

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self) -> bool:
        return True

    def _record(self, event: str):
        if self.metrics is not None:
            self.metrics.record_cache_event(event)


class MemoryInsightsCache(InsightsCache):
    """Process-local cache. ``clock`` is injectable for tests."""

    def __init__(self, ttl_seconds: int = 300, metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic, max_entries: int = 1024):
        super().__init__(ttl_seconds, metrics)
        self.clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[float, Set[str], str]] = {}

    async def get(self, tracker_ids, start_date=None, end_date=None):
        key = make_cache_key(tracker_ids, start_date, end_date)
        cached = self._entries.get(key)
        if cached is None:
            self._record("miss")
            return None
        expires_at, _, payload = cached
        if expires_at <= self.clock():
            del self._entries[key]
            self._record("expired")
            return None
        self._record("hit")
        return json.loads(payload)

    async def set(self, tracker_ids, value, start_date=None, end_date=None):
        ids = set(tracker_ids)
        key = make_cache_key(ids, start_date, end_date)
        now = self.clock()
        self._sweep(now)
        # Entries share one TTL, so insertion order is expiry order
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (now + self.ttl_seconds, ids, json.dumps(value))

    def _sweep(self, now: float):
        expired = [key for key, (expires_at, _, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            self._record("expired")

    async def invalidate_tracker(self, tracker_id: str) -> int:
        stale = [key for key, (_, ids, _) in self._entries.items() if tracker_id in ids]
        for key in stale:
            del self._entries[key]
        if stale:
            self._record("invalidate")
        return len(stale)

    async def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisInsightsCache(InsightsCache):
    """Redis-backed cache. Each tracker keeps an index set of the keys that include it."""

    KEY_PREFIX = "insights:"
    INDEX_PREFIX = "insights-index:"

    def __init__(self, redis_url: str, ttl_seconds: int = 300,
                 metrics: Optional[MetricsCollector] = None, client: Optional[redis.Redis] = None):
        super().__init__(ttl_seconds, metrics)
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = client
        self.logger = get_logger("trackers.cache.redis")

    async def start(self):
        """Connect to Redis."""
        if self.redis is not None:
            return
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis insights cache started")
        except redis.RedisError as e:
            self.logger.error("Failed to start Redis insights cache", error=str(e))
            raise StoreError("start_insights_cache", str(e))

    async def stop(self):
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis insights cache stopped")

    async def get(self, tracker_ids, start_date=None, end_date=None):
        cache_key = self.KEY_PREFIX + make_cache_key(tracker_ids, start_date, end_date)
        try:
            cached = await self.redis.get(cache_key)
        except redis.RedisError as e:
            self.logger.error("Error reading cached insights", cache_key=cache_key, error=str(e))
            self._record("error")
            return None
        if not cached:
            self._record("miss")
            return None
        self._record("hit")
        return json.loads(cached)

    async def set(self, tracker_ids, value, start_date=None, end_date=None):
        ids = sorted(set(tracker_ids))
        cache_key = self.KEY_PREFIX + make_cache_key(ids, start_date, end_date)
        try:
            pipe = self.redis.pipeline()
            pipe.setex(cache_key, self.ttl_seconds, json.dumps(value))
            for tracker_id in ids:
                index_key = self.INDEX_PREFIX + tracker_id
                pipe.sadd(index_key, cache_key)
                pipe.expire(index_key, self.ttl_seconds)
            await pipe.execute()
            self.logger.debug("Cached insights", cache_key=cache_key, ttl=self.ttl_seconds)
        except redis.RedisError as e:
            self.logger.error("Error caching insights", cache_key=cache_key, error=str(e))
            self._record("error")

    async def invalidate_tracker(self, tracker_id: str) -> int:
        index_key = self.INDEX_PREFIX + tracker_id
        try:
            keys = await self.redis.smembers(index_key)
            if keys:
                await self.redis.delete(*keys)
            await self.redis.delete(index_key)
        except redis.RedisError as e:
            self.logger.error("Error invalidating insights", tracker_id=tracker_id, error=str(e))
            self._record("error")
            return 0
        if keys:
            self._record("invalidate")
            self.logger.info("Invalidated tracker insights", tracker_id=tracker_id, count=len(keys))
        return len(keys)

    async def clear(self):
        async for key in self.redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
            await self.redis.delete(key)
        async for key in self.redis.scan_iter(match=f"{self.INDEX_PREFIX}*"):
            await self.redis.delete(key)
        self.logger.info("Insights cache cleared")

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except redis.RedisError:
            return False


def create_insights_cache(config, metrics: Optional[MetricsCollector] = None) -> InsightsCache:
    """Build the configured cache backend."""
    if config.insights_cache_backend == "redis":
        return RedisInsightsCache(config.redis_url, config.insights_cache_ttl_seconds, metrics)
    return MemoryInsightsCache(config.insights_cache_ttl_seconds, metrics)
