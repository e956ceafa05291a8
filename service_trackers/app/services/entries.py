"""
Entry service.

Every write runs resolve, then validate, then persist. Updates merge the new
field values into the stored ones and validate the merged map as a whole.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Union

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError
from shared.logging import get_logger

from ..cache.insights_cache import InsightsCache
from ..domain.models import ObservationContext, TrackerEntry, new_id, utc_now
from ..permissions.enforcement import Enforcer
from ..store.base import TrackerRepository
from ..tracker.validation import validate_entry_date, validate_entry_granularity
from ..tracker.values import parse_entry_values, serialize_entry_values

DateLike = Union[str, date]


def validate_date_range(start_date: Optional[DateLike], end_date: Optional[DateLike]):
    start = validate_entry_date(start_date) if start_date is not None else None
    end = validate_entry_date(end_date) if end_date is not None else None
    if start and end and start > end:
        raise ValidationError("start_date must be on or before end_date", {"kind": "date_range"})
    return start, end


class EntryService:
    """Entry create, update and reads."""

    def __init__(self, repository: TrackerRepository, enforcer: Enforcer,
                 insights_cache: Optional[InsightsCache] = None):
        self.repository = repository
        self.enforcer = enforcer
        self.insights_cache = insights_cache
        self.logger = get_logger("trackers.services.entries")

    async def _invalidate(self, tracker_id: str):
        if self.insights_cache is not None:
            await self.insights_cache.invalidate_tracker(tracker_id)

    async def create_entry(
        self,
        tracker_id: str,
        principal_id: str,
        entry_date: DateLike,
        field_values: Dict[str, Any],
        notes: Optional[str] = None,
        entry_granularity: Optional[str] = None,
        context: Optional[ObservationContext] = None,
    ) -> TrackerEntry:
        await self.enforcer.require_edit(tracker_id, principal_id, context)
        tracker = await self.repository.get_tracker(tracker_id)

        parsed_date = validate_entry_date(entry_date)
        granularity = tracker.entry_granularity
        if entry_granularity and validate_entry_granularity(entry_granularity) != granularity:
            raise ValidationError(
                f"Entry granularity must match the tracker's ({granularity.value})",
                {"kind": "entry", "entry_granularity": entry_granularity}
            )
        values = parse_entry_values(tracker.field_schema_snapshot, field_values)

        entry = TrackerEntry(
            id=new_id(),
            tracker_id=tracker_id,
            user_id=principal_id,
            entry_date=parsed_date,
            field_values=serialize_entry_values(values),
            notes=notes,
            entry_granularity=granularity,
        )
        entry = await self.repository.insert_entry(entry)
        await self._invalidate(tracker_id)

        self.logger.info(
            "Entry created",
            entry_id=entry.id,
            tracker_id=tracker_id,
            principal_id=principal_id,
            entry_date=parsed_date.isoformat()
        )
        return entry

    async def update_entry(self, tracker_id: str, entry_id: str, principal_id: str,
                           changes: Dict[str, Any],
                           context: Optional[ObservationContext] = None) -> TrackerEntry:
        """Shallow-merge ``changes['field_values']`` and replace notes when given."""
        permissions = await self.enforcer.require_edit(tracker_id, principal_id, context)

        entry = await self.repository.get_entry(entry_id)
        if entry is None or entry.tracker_id != tracker_id:
            raise NotFoundError("Entry not found", {"entry_id": entry_id})
        if entry.user_id != principal_id and not permissions.is_owner:
            raise PermissionDeniedError(
                "Only the entry author or the tracker owner can update this entry",
                {"entry_id": entry_id}
            )

        unknown = set(changes) - {"field_values", "notes"}
        if unknown:
            raise ValidationError(
                f"Unsupported entry fields: {', '.join(sorted(unknown))}",
                {"kind": "input", "fields": sorted(unknown)}
            )
        incoming = changes.get("field_values") or {}
        if not isinstance(incoming, dict):
            raise ValidationError("Field values must be an object", {"kind": "entry"})

        tracker = await self.repository.get_tracker(tracker_id)
        merged = {**entry.field_values, **incoming}
        values = parse_entry_values(tracker.field_schema_snapshot, merged)

        entry.field_values = serialize_entry_values(values)
        if "notes" in changes:
            entry.notes = changes["notes"]
        entry.updated_at = utc_now()

        entry = await self.repository.update_entry(entry)
        await self._invalidate(tracker_id)

        self.logger.info(
            "Entry updated",
            entry_id=entry_id,
            tracker_id=tracker_id,
            principal_id=principal_id,
            fields=sorted(incoming)
        )
        return entry

    async def get_entry(self, tracker_id: str, entry_id: str, principal_id: str,
                        context: Optional[ObservationContext] = None) -> Optional[TrackerEntry]:
        permissions = await self.enforcer.can_view(tracker_id, principal_id, context)
        if not permissions.can_view:
            return None
        entry = await self.repository.get_entry(entry_id)
        if entry is None or entry.tracker_id != tracker_id:
            return None
        return entry

    async def get_entry_for_date(self, tracker_id: str, principal_id: str, entry_date: DateLike,
                                 user_id: Optional[str] = None,
                                 context: Optional[ObservationContext] = None) -> Optional[TrackerEntry]:
        """The entry ``user_id`` (default: the caller) wrote on ``entry_date``."""
        permissions = await self.enforcer.can_view(tracker_id, principal_id, context)
        if not permissions.can_view:
            return None
        parsed_date = validate_entry_date(entry_date)
        entries = await self.repository.find_entries_for_date(tracker_id, user_id or principal_id, parsed_date)
        if not entries:
            return None
        return max(entries, key=lambda e: e.updated_at)

    async def list_entries(self, tracker_id: str, principal_id: str,
                           start_date: Optional[DateLike] = None,
                           end_date: Optional[DateLike] = None,
                           context: Optional[ObservationContext] = None) -> List[TrackerEntry]:
        """Entries newest date first. Raises ``NotFoundError`` without view access."""
        await self.enforcer.require_view(tracker_id, principal_id, context)
        start, end = validate_date_range(start_date, end_date)
        return await self.repository.list_entries(tracker_id, start, end)
