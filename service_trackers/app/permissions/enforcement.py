"""
Enforcement layer.

Translates resolved permissions into allow/raise decisions. Callers get
``NotFoundError`` when they cannot see an entity at all, so that existence is
never leaked, and ``PermissionDeniedError`` when they can see it but lack the
capability the operation needs.
"""

from typing import Optional

from shared.errors import NotFoundError, PermissionDeniedError
from shared.logging import get_logger

from ..domain.models import OBSERVER_ROLE, ObservationContext, PermissionRole, TrackerTemplate
from ..store.base import PrincipalDirectory
from .models import Permissions
from .resolver import PermissionResolver


class Enforcer:
    """Permission gate used by every service before validation and persistence."""

    def __init__(self, resolver: PermissionResolver, directory: PrincipalDirectory):
        self.resolver = resolver
        self.directory = directory
        self.logger = get_logger("trackers.permissions.enforcement")

    async def can_view(self, tracker_id: str, principal_id: str,
                       context: Optional[ObservationContext] = None) -> Permissions:
        """Resolve without raising, for reads that return None on no access."""
        return await self.resolver.resolve(tracker_id, principal_id, context)

    async def require_view(self, tracker_id: str, principal_id: str,
                           context: Optional[ObservationContext] = None) -> Permissions:
        permissions = await self.resolver.resolve(tracker_id, principal_id, context)
        if not permissions.can_view:
            self._deny("view", "tracker", tracker_id, principal_id, permissions)
            raise NotFoundError("Tracker not found", {"tracker_id": tracker_id})
        return permissions

    async def require_edit(self, tracker_id: str, principal_id: str,
                           context: Optional[ObservationContext] = None) -> Permissions:
        permissions = await self.require_view(tracker_id, principal_id, context)
        if not permissions.can_edit:
            self._deny("edit", "tracker", tracker_id, principal_id, permissions)
            raise PermissionDeniedError(
                "You do not have permission to edit this tracker",
                {"tracker_id": tracker_id, "role": permissions.role}
            )
        return permissions

    async def require_manage(self, tracker_id: str, principal_id: str) -> Permissions:
        permissions = await self.require_view(tracker_id, principal_id)
        if not permissions.can_manage:
            self._deny("manage", "tracker", tracker_id, principal_id, permissions)
            raise PermissionDeniedError(
                "You do not have permission to manage this tracker",
                {"tracker_id": tracker_id, "role": permissions.role}
            )
        return permissions

    async def require_owner(self, tracker_id: str, principal_id: str) -> Permissions:
        """Manage rights plus ownership; used for sharing and observation links."""
        permissions = await self.require_manage(tracker_id, principal_id)
        if not permissions.is_owner:
            self._deny("own", "tracker", tracker_id, principal_id, permissions)
            raise PermissionDeniedError(
                "Only the tracker owner can perform this operation",
                {"tracker_id": tracker_id}
            )
        return permissions

    async def require_reminder_author(self, tracker_id: str, principal_id: str) -> Permissions:
        """Reminders need edit rights and a role that is neither viewer nor observer."""
        permissions = await self.require_view(tracker_id, principal_id)
        if (not permissions.can_edit
                or permissions.role in (PermissionRole.VIEWER.value, OBSERVER_ROLE)):
            self._deny("create_reminder", "tracker", tracker_id, principal_id, permissions)
            raise PermissionDeniedError(
                "You do not have permission to create reminders for this tracker",
                {"tracker_id": tracker_id, "role": permissions.role}
            )
        return permissions

    # Templates

    async def require_template_view(self, template: Optional[TrackerTemplate], template_id: str,
                                    principal_id: str) -> Permissions:
        if template is None:
            raise NotFoundError("Template not found", {"template_id": template_id})
        permissions = await self.resolver.resolve_template_access(template, principal_id)
        if not permissions.can_view:
            self._deny("view", "template", template_id, principal_id, permissions)
            raise NotFoundError("Template not found", {"template_id": template_id})
        return permissions

    async def require_template_edit(self, template: Optional[TrackerTemplate], template_id: str,
                                    principal_id: str) -> Permissions:
        permissions = await self.require_template_view(template, template_id, principal_id)
        if not permissions.can_edit:
            self._deny("edit", "template", template_id, principal_id, permissions)
            if template.archived_at is not None:
                message = "Archived templates are read-only"
            elif template.is_locked and permissions.can_manage:
                message = "Template is locked and cannot be edited"
            else:
                message = "You do not have permission to edit this template"
            raise PermissionDeniedError(message, {"template_id": template_id})
        return permissions

    async def require_template_manage(self, template: Optional[TrackerTemplate], template_id: str,
                                      principal_id: str) -> Permissions:
        permissions = await self.require_template_view(template, template_id, principal_id)
        if not permissions.can_manage:
            self._deny("manage", "template", template_id, principal_id, permissions)
            raise PermissionDeniedError(
                "You do not have permission to manage this template",
                {"template_id": template_id}
            )
        return permissions

    async def require_admin(self, principal_id: str, operation: str):
        if not await self.directory.is_admin(principal_id):
            self.logger.warning("Admin operation denied", operation=operation, principal_id=principal_id)
            raise PermissionDeniedError(
                "Only administrators can perform this operation",
                {"operation": operation}
            )

    def _deny(self, capability: str, entity_type: str, entity_id: str,
              principal_id: str, permissions: Permissions):
        self.logger.warning(
            "Permission denied",
            capability=capability,
            entity_type=entity_type,
            entity_id=entity_id,
            principal_id=principal_id,
            role=permissions.role,
            access_source=permissions.access_source.value
        )
