"""
Tracker service.

A tracker owns a schema snapshot copied by value from its template at creation
time. Nothing after creation changes that snapshot.
"""

import copy
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError
from shared.logging import get_logger

from ..domain.models import (
    EntryGranularity,
    ObservationContext,
    Tracker,
    new_id,
    snapshot_schema,
    utc_now,
)
from ..permissions.enforcement import Enforcer
from ..permissions.resolver import PermissionResolver
from ..store.base import EntitlementStore, PrincipalDirectory, TrackerRepository
from ..tracker.validation import (
    validate_create_tracker_from_schema_input,
    validate_entry_granularity,
    validate_name,
)

UPDATABLE_TRACKER_FIELDS = {"name", "description", "chart_config", "icon", "color"}
IMMUTABLE_TRACKER_FIELDS = {"field_schema", "field_schema_snapshot", "template_id", "entry_granularity"}


class TrackerService:
    """Tracker creation, listing, settings, archival and ordering."""

    def __init__(
        self,
        repository: TrackerRepository,
        store: EntitlementStore,
        directory: PrincipalDirectory,
        resolver: PermissionResolver,
        enforcer: Enforcer,
    ):
        self.repository = repository
        self.store = store
        self.directory = directory
        self.resolver = resolver
        self.enforcer = enforcer
        self.logger = get_logger("trackers.services.trackers")

    async def _next_display_order(self, owner_id: str) -> int:
        return await self.repository.max_display_order(owner_id) + 1

    async def create_tracker_from_template(
        self,
        principal_id: str,
        template_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tracker:
        template = await self.repository.get_template(template_id)
        if template is None:
            raise NotFoundError("Template not found", {"template_id": template_id})
        permissions = await self.resolver.resolve_template_access(template, principal_id)
        if not permissions.can_view or template.archived_at is not None:
            raise NotFoundError("Template not found", {"template_id": template_id})

        tracker_name = template.name if name is None else name
        validate_name(tracker_name, "Tracker")

        tracker = Tracker(
            id=new_id(),
            owner_id=principal_id,
            template_id=template.id,
            name=tracker_name.strip(),
            description=template.description if description is None else (description.strip() or None),
            field_schema_snapshot=snapshot_schema(template.field_schema),
            entry_granularity=template.entry_granularity,
            display_order=await self._next_display_order(principal_id),
            chart_config=copy.deepcopy(template.chart_config),
        )
        tracker = await self.repository.insert_tracker(tracker)

        self.logger.info(
            "Tracker created from template",
            tracker_id=tracker.id,
            template_id=template_id,
            template_version=template.version,
            principal_id=principal_id
        )
        return tracker

    async def create_tracker_from_schema(
        self,
        principal_id: str,
        name: str,
        field_schema: List[Any],
        description: Optional[str] = None,
        entry_granularity: Optional[str] = None,
        chart_config: Optional[Dict[str, Any]] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Tracker:
        fields = validate_create_tracker_from_schema_input(name, field_schema, entry_granularity)

        tracker = Tracker(
            id=new_id(),
            owner_id=principal_id,
            template_id=None,
            name=name.strip(),
            description=(description or "").strip() or None,
            field_schema_snapshot=snapshot_schema(fields),
            entry_granularity=(validate_entry_granularity(entry_granularity)
                               if entry_granularity else EntryGranularity.DAILY),
            display_order=await self._next_display_order(principal_id),
            chart_config=copy.deepcopy(chart_config),
            icon=icon,
            color=color,
        )
        tracker = await self.repository.insert_tracker(tracker)

        self.logger.info(
            "Tracker created from schema",
            tracker_id=tracker.id,
            principal_id=principal_id,
            field_count=len(fields)
        )
        return tracker

    async def list_trackers(
        self,
        principal_id: str,
        context: Optional[ObservationContext] = None,
        include_archived: bool = False,
    ) -> List[Tracker]:
        """Owned trackers in display order, then granted, then observable in ``context``.

        Archived trackers are only ever listed for their owner.
        """
        owned = await self.repository.list_owned_trackers(principal_id, include_archived)
        seen = {t.id for t in owned}

        profile_id = await self.directory.resolve_profile_id(principal_id)
        group_ids = await self.directory.resolve_groups_for(principal_id)
        granted: List[Tracker] = []
        if profile_id is not None or group_ids:
            granted_ids = await self.store.list_entity_ids_granted_to("tracker", profile_id, group_ids)
            granted_ids = [tid for tid in granted_ids if tid not in seen]
            granted = await self.repository.list_trackers_by_ids(granted_ids)
            granted.sort(key=lambda t: t.created_at, reverse=True)
            seen.update(t.id for t in granted)

        observed: List[Tracker] = []
        if context is not None:
            observed_ids = await self.store.list_observable_tracker_ids(principal_id, context)
            observed_ids = [tid for tid in dict.fromkeys(observed_ids) if tid not in seen]
            observed = await self.repository.list_trackers_by_ids(observed_ids)
            observed.sort(key=lambda t: t.created_at, reverse=True)

        return owned + granted + observed

    async def get_tracker(self, tracker_id: str, principal_id: str,
                          context: Optional[ObservationContext] = None) -> Optional[Tracker]:
        """The tracker, or None when it does not exist or is not visible."""
        permissions = await self.enforcer.can_view(tracker_id, principal_id, context)
        if not permissions.can_view:
            return None
        return await self.repository.get_tracker(tracker_id)

    async def update_tracker(self, tracker_id: str, principal_id: str, changes: Dict[str, Any]) -> Tracker:
        permissions = await self.enforcer.require_edit(tracker_id, principal_id)
        if not permissions.is_owner:
            raise PermissionDeniedError(
                "Only the tracker owner can change tracker settings",
                {"tracker_id": tracker_id}
            )

        immutable = set(changes) & IMMUTABLE_TRACKER_FIELDS
        if immutable:
            raise ValidationError(
                "Tracker schema snapshot and origin are immutable",
                {"kind": "immutable_field", "fields": sorted(immutable)}
            )
        unknown = set(changes) - UPDATABLE_TRACKER_FIELDS
        if unknown:
            raise ValidationError(
                f"Unsupported tracker fields: {', '.join(sorted(unknown))}",
                {"kind": "input", "fields": sorted(unknown)}
            )
        if "name" in changes:
            validate_name(changes["name"], "Tracker")

        tracker = await self.repository.get_tracker(tracker_id)
        if "name" in changes:
            tracker.name = changes["name"].strip()
        if "description" in changes:
            tracker.description = (changes["description"] or "").strip() or None
        for key in ("chart_config", "icon", "color"):
            if key in changes:
                setattr(tracker, key, copy.deepcopy(changes[key]))
        tracker.updated_at = utc_now()

        tracker = await self.repository.update_tracker(tracker)
        self.logger.info("Tracker updated", tracker_id=tracker_id, principal_id=principal_id,
                         fields=sorted(changes))
        return tracker

    async def archive_tracker(self, tracker_id: str, principal_id: str) -> Tracker:
        """Archive a tracker. Archiving an archived tracker is a no-op."""
        await self.enforcer.require_manage(tracker_id, principal_id)

        tracker = await self.repository.get_tracker(tracker_id)
        if tracker.archived_at is not None:
            return tracker

        tracker.archived_at = utc_now()
        tracker.updated_at = tracker.archived_at
        tracker = await self.repository.update_tracker(tracker)
        self.logger.info("Tracker archived", tracker_id=tracker_id, principal_id=principal_id)
        return tracker

    async def reorder_trackers(self, principal_id: str, tracker_ids: List[str]) -> List[Tracker]:
        """Assign display order by list position. Every id must be an owned, active tracker."""
        if len(set(tracker_ids)) != len(tracker_ids):
            raise ValidationError("Tracker ids must be unique", {"kind": "reorder"})

        owned = {t.id: t for t in await self.repository.list_owned_trackers(principal_id)}
        invalid = [tid for tid in tracker_ids if tid not in owned]
        if invalid:
            raise ValidationError(
                "Only your own active trackers can be reordered",
                {"kind": "reorder", "tracker_ids": invalid}
            )

        now = utc_now()
        reordered = []
        for position, tracker_id in enumerate(tracker_ids):
            tracker = owned[tracker_id]
            if tracker.display_order != position:
                tracker.display_order = position
                tracker.updated_at = now
                tracker = await self.repository.update_tracker(tracker)
            reordered.append(tracker)

        self.logger.info("Trackers reordered", principal_id=principal_id, count=len(reordered))
        return reordered
