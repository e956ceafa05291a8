"""Insights cache backends."""

from .insights_cache import InsightsCache, MemoryInsightsCache, RedisInsightsCache, create_insights_cache

__all__ = ["InsightsCache", "MemoryInsightsCache", "RedisInsightsCache", "create_insights_cache"]
