"""
Context overlays: life-state context events and user-authored interpretations.

Both are owned by a single principal, never gate permissions and never touch
tracker data.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError
from shared.logging import get_logger

from ..domain.models import ContextEvent, TrackerInterpretation, new_id, utc_now
from ..permissions.enforcement import Enforcer
from ..store.base import TrackerRepository
from ..tracker.validation import validate_entry_date

CONTEXT_EVENT_FIELDS = {"context_type", "label", "start_date", "end_date", "severity", "notes"}
INTERPRETATION_FIELDS = {"tracker_ids", "start_date", "end_date", "title", "body", "context_event_id"}


def _require_text(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} is required and must be non-empty", {"kind": "input"})
    return value.strip()


def _date_range(start: Any, end: Any):
    start_date = validate_entry_date(start)
    end_date = validate_entry_date(end) if end is not None else None
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date must be on or after start_date", {"kind": "date_range"})
    return start_date, end_date


def _reject_unknown(changes: Dict[str, Any], allowed: set, what: str):
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(
            f"Unsupported {what} fields: {', '.join(sorted(unknown))}",
            {"kind": "input", "fields": sorted(unknown)}
        )


class ContextEventService:

    def __init__(self, repository: TrackerRepository):
        self.repository = repository
        self.logger = get_logger("trackers.services.context_events")

    async def create_context_event(
        self,
        principal_id: str,
        context_type: str,
        label: str,
        start_date: Any,
        end_date: Any = None,
        severity: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ContextEvent:
        context_type = _require_text(context_type, "Context type")
        label = _require_text(label, "Label")
        start, end = _date_range(start_date, end_date)

        event = ContextEvent(
            id=new_id(),
            owner_id=principal_id,
            context_type=context_type,
            label=label,
            start_date=start,
            end_date=end,
            severity=severity,
            notes=notes,
        )
        event = await self.repository.insert_context_event(event)
        self.logger.info("Context event created", event_id=event.id, principal_id=principal_id,
                         context_type=context_type)
        return event

    async def get_context_event(self, event_id: str, principal_id: str) -> Optional[ContextEvent]:
        event = await self.repository.get_context_event(event_id)
        if event is None or event.owner_id != principal_id:
            return None
        return event

    async def _get_owned(self, event_id: str, principal_id: str) -> ContextEvent:
        event = await self.get_context_event(event_id, principal_id)
        if event is None:
            raise NotFoundError("Context event not found", {"event_id": event_id})
        return event

    async def update_context_event(self, event_id: str, principal_id: str,
                                   changes: Dict[str, Any]) -> ContextEvent:
        event = await self._get_owned(event_id, principal_id)
        if event.archived_at is not None:
            raise PermissionDeniedError("Archived context events are read-only", {"event_id": event_id})

        _reject_unknown(changes, CONTEXT_EVENT_FIELDS, "context event")
        if "context_type" in changes:
            event.context_type = _require_text(changes["context_type"], "Context type")
        if "label" in changes:
            event.label = _require_text(changes["label"], "Label")
        event.start_date, event.end_date = _date_range(
            changes.get("start_date", event.start_date),
            changes["end_date"] if "end_date" in changes else event.end_date,
        )
        if "severity" in changes:
            event.severity = changes["severity"]
        if "notes" in changes:
            event.notes = changes["notes"]
        event.updated_at = utc_now()

        event = await self.repository.update_context_event(event)
        self.logger.info("Context event updated", event_id=event_id, principal_id=principal_id)
        return event

    async def archive_context_event(self, event_id: str, principal_id: str) -> ContextEvent:
        event = await self._get_owned(event_id, principal_id)
        if event.archived_at is None:
            event.archived_at = utc_now()
            event = await self.repository.update_context_event(event)
            self.logger.info("Context event archived", event_id=event_id, principal_id=principal_id)
        return event

    async def list_context_events(self, principal_id: str, start_date: Optional[date] = None,
                                  end_date: Optional[date] = None) -> List[ContextEvent]:
        start = validate_entry_date(start_date) if start_date is not None else None
        end = validate_entry_date(end_date) if end_date is not None else None
        return await self.repository.list_context_events(principal_id, start, end)


class InterpretationService:
    """Reflections anchored to one or more trackers the author can view."""

    def __init__(self, repository: TrackerRepository, enforcer: Enforcer):
        self.repository = repository
        self.enforcer = enforcer
        self.logger = get_logger("trackers.services.interpretations")

    async def _check_trackers(self, tracker_ids: Any, principal_id: str) -> List[str]:
        if isinstance(tracker_ids, str) or not tracker_ids:
            raise ValidationError("At least one tracker is required", {"kind": "input"})
        tracker_ids = list(dict.fromkeys(tracker_ids))
        for tracker_id in tracker_ids:
            await self.enforcer.require_view(tracker_id, principal_id)
        return tracker_ids

    async def _check_context_event(self, event_id: Optional[str], principal_id: str):
        if event_id is None:
            return
        event = await self.repository.get_context_event(event_id)
        if event is None or event.owner_id != principal_id:
            raise NotFoundError("Context event not found", {"event_id": event_id})

    async def create_interpretation(
        self,
        principal_id: str,
        tracker_ids: List[str],
        start_date: Any,
        title: str,
        body: str,
        end_date: Any = None,
        context_event_id: Optional[str] = None,
    ) -> TrackerInterpretation:
        tracker_ids = await self._check_trackers(tracker_ids, principal_id)
        await self._check_context_event(context_event_id, principal_id)

        title = _require_text(title, "Title")
        body = _require_text(body, "Body")
        start, end = _date_range(start_date, end_date)

        interpretation = TrackerInterpretation(
            id=new_id(),
            owner_id=principal_id,
            tracker_ids=tracker_ids,
            start_date=start,
            end_date=end,
            title=title,
            body=body,
            context_event_id=context_event_id,
        )
        interpretation = await self.repository.insert_interpretation(interpretation)
        self.logger.info("Interpretation created", interpretation_id=interpretation.id,
                         principal_id=principal_id, tracker_count=len(tracker_ids))
        return interpretation

    async def get_interpretation(self, interpretation_id: str,
                                 principal_id: str) -> Optional[TrackerInterpretation]:
        interpretation = await self.repository.get_interpretation(interpretation_id)
        if interpretation is None or interpretation.owner_id != principal_id:
            return None
        return interpretation

    async def _get_owned(self, interpretation_id: str, principal_id: str) -> TrackerInterpretation:
        interpretation = await self.get_interpretation(interpretation_id, principal_id)
        if interpretation is None:
            raise NotFoundError("Interpretation not found", {"interpretation_id": interpretation_id})
        return interpretation

    async def update_interpretation(self, interpretation_id: str, principal_id: str,
                                    changes: Dict[str, Any]) -> TrackerInterpretation:
        interpretation = await self._get_owned(interpretation_id, principal_id)
        if interpretation.archived_at is not None:
            raise PermissionDeniedError("Archived interpretations are read-only",
                                        {"interpretation_id": interpretation_id})

        _reject_unknown(changes, INTERPRETATION_FIELDS, "interpretation")
        if "tracker_ids" in changes:
            interpretation.tracker_ids = await self._check_trackers(changes["tracker_ids"], principal_id)
        if "context_event_id" in changes:
            await self._check_context_event(changes["context_event_id"], principal_id)
            interpretation.context_event_id = changes["context_event_id"]
        if "title" in changes:
            interpretation.title = _require_text(changes["title"], "Title")
        if "body" in changes:
            interpretation.body = _require_text(changes["body"], "Body")
        interpretation.start_date, interpretation.end_date = _date_range(
            changes.get("start_date", interpretation.start_date),
            changes["end_date"] if "end_date" in changes else interpretation.end_date,
        )
        interpretation.updated_at = utc_now()

        interpretation = await self.repository.update_interpretation(interpretation)
        self.logger.info("Interpretation updated", interpretation_id=interpretation_id,
                         principal_id=principal_id)
        return interpretation

    async def archive_interpretation(self, interpretation_id: str, principal_id: str) -> TrackerInterpretation:
        interpretation = await self._get_owned(interpretation_id, principal_id)
        if interpretation.archived_at is None:
            interpretation.archived_at = utc_now()
            interpretation = await self.repository.update_interpretation(interpretation)
            self.logger.info("Interpretation archived", interpretation_id=interpretation_id,
                             principal_id=principal_id)
        return interpretation

    async def list_interpretations(self, principal_id: str,
                                   tracker_id: Optional[str] = None) -> List[TrackerInterpretation]:
        return await self.repository.list_interpretations(principal_id, tracker_id)
