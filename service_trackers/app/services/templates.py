"""
Template service.

Templates are structure only. User templates are owned and lockable; global
templates are ownerless, always locked and mutable only by administrators.
"""

import copy
import time
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError
from shared.logging import get_logger

from ..domain.models import (
    EntryGranularity,
    TemplateScope,
    TrackerTemplate,
    new_id,
    snapshot_schema,
    utc_now,
)
from ..permissions.enforcement import Enforcer
from ..permissions.resolver import PermissionResolver
from ..store.base import TrackerRepository
from ..tracker.validation import (
    validate_create_template_input,
    validate_entry_granularity,
    validate_field_schema,
    validate_name,
)

UPDATABLE_TEMPLATE_FIELDS = {"name", "description", "field_schema", "entry_granularity", "chart_config", "tags"}


def _clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    return description.strip() or None


class TemplateService:
    """Template CRUD, locking, promotion and duplication."""

    def __init__(
        self,
        repository: TrackerRepository,
        resolver: PermissionResolver,
        enforcer: Enforcer,
        name_conflict_attempts: int = 99,
    ):
        self.repository = repository
        self.resolver = resolver
        self.enforcer = enforcer
        self.name_conflict_attempts = name_conflict_attempts
        self.logger = get_logger("trackers.services.templates")

    async def create_template(
        self,
        principal_id: str,
        name: str,
        field_schema: List[Any],
        description: Optional[str] = None,
        entry_granularity: Optional[str] = None,
        scope: TemplateScope = TemplateScope.USER,
        chart_config: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        published_at=None,
    ) -> TrackerTemplate:
        scope = TemplateScope(scope)
        if scope == TemplateScope.GLOBAL:
            await self.enforcer.require_admin(principal_id, "create_global_template")

        fields = validate_create_template_input(name, field_schema, entry_granularity)

        is_global = scope == TemplateScope.GLOBAL
        template = TrackerTemplate(
            id=new_id(),
            owner_id=None if is_global else principal_id,
            created_by=principal_id,
            name=name.strip(),
            description=_clean_description(description),
            field_schema=fields,
            entry_granularity=(validate_entry_granularity(entry_granularity)
                               if entry_granularity else EntryGranularity.DAILY),
            scope=scope,
            is_locked=is_global,
            published_at=published_at or (utc_now() if is_global else None),
            chart_config=copy.deepcopy(chart_config),
            tags=list(tags or []),
            version=1,
        )
        template = await self.repository.insert_template(template)

        self.logger.info(
            "Template created",
            template_id=template.id,
            principal_id=principal_id,
            scope=scope.value,
            field_count=len(fields)
        )
        return template

    async def create_global_template(self, principal_id: str, name: str, field_schema: List[Any],
                                     **kwargs) -> TrackerTemplate:
        return await self.create_template(principal_id, name, field_schema,
                                          scope=TemplateScope.GLOBAL, **kwargs)

    async def list_templates(self, principal_id: str, include_archived: bool = False) -> List[TrackerTemplate]:
        """Global templates plus the caller's own, filtered to what the caller may view."""
        templates = await self.repository.list_templates(principal_id, include_archived)
        visible = []
        for template in templates:
            permissions = await self.resolver.resolve_template_access(template, principal_id)
            if permissions.can_view:
                visible.append(template)
        return visible

    async def get_template(self, template_id: str, principal_id: str) -> Optional[TrackerTemplate]:
        template = await self.repository.get_template(template_id)
        if template is None:
            return None
        permissions = await self.resolver.resolve_template_access(template, principal_id)
        return template if permissions.can_view else None

    async def update_template(self, template_id: str, principal_id: str,
                              changes: Dict[str, Any]) -> TrackerTemplate:
        template = await self.repository.get_template(template_id)
        await self.enforcer.require_template_edit(template, template_id, principal_id)

        unknown = set(changes) - UPDATABLE_TEMPLATE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unsupported template fields: {', '.join(sorted(unknown))}",
                {"kind": "input", "fields": sorted(unknown)}
            )

        if "name" in changes:
            validate_name(changes["name"], "Template")
        fields = None
        if "field_schema" in changes:
            fields = validate_field_schema(changes["field_schema"])
        granularity = None
        if changes.get("entry_granularity") is not None:
            granularity = validate_entry_granularity(changes["entry_granularity"])

        if "name" in changes:
            template.name = changes["name"].strip()
        if "description" in changes:
            template.description = _clean_description(changes["description"])
        if fields is not None:
            template.field_schema = fields
        if granularity is not None:
            template.entry_granularity = granularity
        if "chart_config" in changes:
            template.chart_config = copy.deepcopy(changes["chart_config"])
        if "tags" in changes:
            template.tags = list(changes["tags"] or [])
        template.version += 1
        template.updated_at = utc_now()

        template = await self.repository.update_template(template)
        self.logger.info(
            "Template updated",
            template_id=template_id,
            principal_id=principal_id,
            fields=sorted(changes),
            version=template.version
        )
        return template

    async def archive_template(self, template_id: str, principal_id: str) -> TrackerTemplate:
        template = await self.repository.get_template(template_id)
        await self.enforcer.require_template_manage(template, template_id, principal_id)

        if template.archived_at is None:
            template.archived_at = utc_now()
            template.updated_at = template.archived_at
            template = await self.repository.update_template(template)
            self.logger.info("Template archived", template_id=template_id, principal_id=principal_id)
        return template

    async def set_template_lock(self, template_id: str, principal_id: str, locked: bool) -> TrackerTemplate:
        template = await self.repository.get_template(template_id)
        await self.enforcer.require_template_manage(template, template_id, principal_id)

        if template.archived_at is not None:
            raise PermissionDeniedError("Archived templates are read-only", {"template_id": template_id})
        if template.is_global and not locked:
            raise ValidationError(
                "Global templates are always locked",
                {"kind": "template_lock", "template_id": template_id}
            )

        if template.is_locked != locked:
            template.is_locked = locked
            template.updated_at = utc_now()
            template = await self.repository.update_template(template)
            self.logger.info("Template lock changed", template_id=template_id, locked=locked,
                             principal_id=principal_id)
        return template

    async def _get_global_for_admin(self, template_id: str, principal_id: str, operation: str) -> TrackerTemplate:
        await self.enforcer.require_admin(principal_id, operation)
        template = await self.repository.get_template(template_id)
        if template is None:
            raise NotFoundError("Template not found", {"template_id": template_id})
        if not template.is_global:
            raise ValidationError(
                "This operation only applies to global templates",
                {"kind": "template_scope", "template_id": template_id}
            )
        return template

    async def update_global_template(self, template_id: str, principal_id: str,
                                     changes: Dict[str, Any]) -> TrackerTemplate:
        await self._get_global_for_admin(template_id, principal_id, "update_global_template")
        return await self.update_template(template_id, principal_id, changes)

    async def archive_global_template(self, template_id: str, principal_id: str) -> TrackerTemplate:
        await self._get_global_for_admin(template_id, principal_id, "archive_global_template")
        return await self.archive_template(template_id, principal_id)

    async def promote_template_to_global(self, template_id: str, principal_id: str) -> TrackerTemplate:
        """One-way promotion of a user template. Force-locks it and clears its owner."""
        await self.enforcer.require_admin(principal_id, "promote_template_to_global")

        template = await self.repository.get_template(template_id)
        if template is None or template.archived_at is not None:
            raise NotFoundError("Template not found", {"template_id": template_id})
        if template.is_global:
            raise ValidationError(
                "Template is already global",
                {"kind": "template_scope", "template_id": template_id}
            )

        now = utc_now()
        previous_owner = template.owner_id
        template.scope = TemplateScope.GLOBAL
        template.is_locked = True
        template.owner_id = None
        template.published_at = now
        template.updated_at = now
        template = await self.repository.update_template(template)

        self.logger.info(
            "Template promoted to global",
            template_id=template_id,
            principal_id=principal_id,
            previous_owner=previous_owner
        )
        return template

    async def duplicate_template(self, template_id: str, principal_id: str,
                                 new_name: Optional[str] = None) -> TrackerTemplate:
        source = await self.repository.get_template(template_id)
        await self.enforcer.require_template_view(source, template_id, principal_id)
        if source.archived_at is not None:
            raise NotFoundError("Template not found", {"template_id": template_id})

        if new_name is not None:
            validate_name(new_name, "Template")
        return await self.create_owned_copy(source, principal_id, new_name)

    async def create_owned_copy(self, source: TrackerTemplate, owner_id: str,
                                name: Optional[str] = None) -> TrackerTemplate:
        """New user-scoped, unlocked copy of ``source`` owned by ``owner_id``."""
        final_name = name.strip() if name else await self.resolve_name_conflict(source.name, owner_id)

        duplicate = TrackerTemplate(
            id=new_id(),
            owner_id=owner_id,
            created_by=owner_id,
            name=final_name,
            description=source.description,
            field_schema=snapshot_schema(source.field_schema),
            entry_granularity=source.entry_granularity,
            scope=TemplateScope.USER,
            is_locked=False,
            published_at=None,
            chart_config=copy.deepcopy(source.chart_config),
            tags=list(source.tags),
            version=1,
        )
        duplicate = await self.repository.insert_template(duplicate)

        self.logger.info(
            "Template copied",
            source_template_id=source.id,
            template_id=duplicate.id,
            owner_id=owner_id,
            name=final_name
        )
        return duplicate

    async def resolve_name_conflict(self, base_name: str, owner_id: str) -> str:
        """``Name``, then ``Name (1)`` up to the attempt limit, then a timestamp suffix."""
        if not await self.repository.user_template_name_exists(owner_id, base_name):
            return base_name

        for counter in range(1, self.name_conflict_attempts + 1):
            candidate = f"{base_name} ({counter})"
            if not await self.repository.user_template_name_exists(owner_id, candidate):
                return candidate

        return f"{base_name} ({int(time.time() * 1000)})"
