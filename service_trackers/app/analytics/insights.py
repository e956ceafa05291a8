"""
Insights service: cached, permission-checked analytics over several trackers.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.tracing import trace_operation

from ..cache.insights_cache import InsightsCache
from ..domain.models import ObservationContext
from ..permissions.enforcement import Enforcer
from ..services.entries import validate_date_range
from ..store.base import TrackerRepository
from .shaping import (
    calculate_aggregated_stats,
    get_context_comparison_data,
    get_numeric_fields,
    process_distribution_data,
    process_entry_frequency_data,
    process_time_series_data,
)


class InsightsService:

    def __init__(self, repository: TrackerRepository, enforcer: Enforcer, cache: InsightsCache):
        self.repository = repository
        self.enforcer = enforcer
        self.cache = cache
        self.logger = get_logger("trackers.analytics.insights")

    async def get_tracker_insights(
        self,
        tracker_ids: List[str],
        principal_id: str,
        start_date: Optional[Any] = None,
        end_date: Optional[Any] = None,
        context: Optional[ObservationContext] = None,
    ) -> Dict[str, Any]:
        """Per-tracker stats, time series, distributions and weekly frequency.

        View access is checked on every tracker before the cache is consulted.
        """
        if isinstance(tracker_ids, str) or not tracker_ids:
            raise ValidationError("At least one tracker is required", {"kind": "input"})
        tracker_ids = list(dict.fromkeys(tracker_ids))
        start, end = validate_date_range(start_date, end_date)

        for tracker_id in tracker_ids:
            await self.enforcer.require_view(tracker_id, principal_id, context)

        cached = await self.cache.get(tracker_ids, start, end)
        if cached is not None:
            return cached

        with trace_operation("insights.compute", tracker_count=len(tracker_ids)):
            insights = {
                "start_date": start.isoformat() if start else None,
                "end_date": end.isoformat() if end else None,
                "trackers": [await self._tracker_insights(tracker_id, start, end) for tracker_id in tracker_ids],
            }
        await self.cache.set(tracker_ids, insights, start, end)

        self.logger.info("Insights computed", principal_id=principal_id, tracker_count=len(tracker_ids))
        return insights

    async def _tracker_insights(self, tracker_id: str, start: Optional[date],
                                end: Optional[date]) -> Dict[str, Any]:
        tracker = await self.repository.get_tracker(tracker_id)
        entries = await self.repository.list_entries(tracker_id, start, end)

        fields = {}
        for field in get_numeric_fields(tracker.field_schema_snapshot):
            fields[field.id] = {
                "label": field.label,
                "type": field.type,
                "stats": calculate_aggregated_stats(entries, field.id, start, end, field),
                "time_series": process_time_series_data(entries, field.id, start, end, field),
                "distribution": process_distribution_data(entries, field.id, start, end, field),
            }

        return {
            "tracker_id": tracker.id,
            "name": tracker.name,
            "entry_count": len(entries),
            "fields": fields,
            "entry_frequency": process_entry_frequency_data(entries, start, end),
        }

    async def get_context_comparison(self, tracker_id: str, field_id: str, event_id: str,
                                     principal_id: str) -> Dict[str, Any]:
        """Before/during/after stats around one of the caller's context events."""
        await self.enforcer.require_view(tracker_id, principal_id)
        event = await self.repository.get_context_event(event_id)
        if event is None or event.owner_id != principal_id:
            raise NotFoundError("Context event not found", {"event_id": event_id})

        tracker = await self.repository.get_tracker(tracker_id)
        field = next((f for f in tracker.field_schema_snapshot if f.id == field_id), None)
        if field is None:
            raise ValidationError(f"Unknown field: {field_id}", {"kind": "input", "field_id": field_id})

        entries = await self.repository.list_entries(tracker_id)
        return get_context_comparison_data(entries, field_id, event, field)
