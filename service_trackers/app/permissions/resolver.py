"""
Permission resolution engine.

``PermissionResolver.resolve`` evaluates, first match wins:

1. archival gate: archived entities are visible to their owner only,
   read-only but still manageable;
2. ownership: full rights;
3. direct and group grants: highest active role, view always, edit from
   editor upward, never manage;
4. observation link: only when a context is supplied and no grant matched;
5. default deny.

``EntityPermissionResolver`` handles project-scoped tracks and subtracks,
where the project role is both the gate and the ceiling:
``final = min(max(project, creator, grant), project)``.
"""

import time
from typing import Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation

from ..domain.models import (
    AccessSource,
    ObservationContext,
    PermissionRole,
    TrackerTemplate,
)
from ..store.base import EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository
from .grants import GrantResolver
from .models import (
    CreatorSource,
    EntityPermissions,
    EntityPermissionSource,
    Permissions,
)
from .observation import ObservationResolver
from .roles import as_role, cap_role_at_ceiling, compare_roles, max_role, role_at_least, role_to_flags


class PermissionResolver:
    """Resolves tracker and template permissions for a principal."""

    def __init__(
        self,
        store: EntitlementStore,
        directory: PrincipalDirectory,
        repository: TrackerRepository,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.directory = directory
        self.repository = repository
        self.metrics = metrics
        self.grants = GrantResolver(store, directory)
        self.observation = ObservationResolver(store)
        self.logger = get_logger("trackers.permissions.resolver")

    async def resolve(
        self,
        entity_id: str,
        principal_id: str,
        context: Optional[ObservationContext] = None,
        entity_type: str = "tracker",
    ) -> Permissions:
        """Resolve one access decision. Unknown entities resolve to no access."""
        if entity_type == "template":
            return await self.resolve_template(entity_id, principal_id)

        start_time = time.time()
        with trace_operation("permissions.resolve", entity_type=entity_type, entity_id=entity_id) as span:
            permissions = await self._resolve(entity_id, principal_id, context, entity_type)
            span.set_attribute("permissions.access_source", permissions.access_source.value)
        self._record(permissions, start_time)

        self.logger.debug(
            "Permissions resolved",
            entity_type=entity_type,
            entity_id=entity_id,
            principal_id=principal_id,
            context_type=context.type.value if context else None,
            **permissions.to_dict()
        )
        return permissions

    async def _resolve(self, entity_id: str, principal_id: str,
                       context: Optional[ObservationContext], entity_type: str) -> Permissions:
        if not await self.store.entity_exists(entity_id, entity_type):
            return Permissions.deny()

        owner_id = await self.store.get_owner(entity_id, entity_type)
        is_owner = owner_id is not None and owner_id == principal_id

        archived_at = await self.store.get_archival_state(entity_id, entity_type)
        if archived_at is not None:
            if not is_owner:
                return Permissions.deny()
            return Permissions(
                can_view=True,
                can_edit=False,
                can_manage=True,
                is_owner=True,
                role=PermissionRole.OWNER.value,
                access_source=AccessSource.OWNERSHIP,
            )

        if is_owner:
            return Permissions.full_owner()

        resolution = await self.grants.resolve(entity_type, entity_id, principal_id)
        if resolution.highest_role is not None:
            return Permissions(
                can_view=True,
                can_edit=role_at_least(resolution.highest_role, PermissionRole.EDITOR),
                can_manage=False,
                is_owner=False,
                role=resolution.highest_role.value,
                access_source=AccessSource.GRANT,
            )

        if context is not None:
            link = await self.observation.find_active_link(entity_id, principal_id, context)
            if link is not None:
                return Permissions.observer()

        return Permissions.deny()

    async def resolve_template(self, template_id: str, principal_id: str) -> Permissions:
        """Template access follows scope: global templates are admin-managed, user templates owner-managed."""
        template = await self.repository.get_template(template_id)
        if template is None:
            return Permissions.deny()
        permissions = await self.resolve_template_access(template, principal_id)
        self._record(permissions, None)
        return permissions

    async def resolve_template_access(self, template: TrackerTemplate, principal_id: str) -> Permissions:
        archived = template.archived_at is not None

        if template.is_global:
            if await self.directory.is_admin(principal_id):
                return Permissions(
                    can_view=True,
                    can_edit=not archived,
                    can_manage=True,
                    is_owner=False,
                    role=PermissionRole.OWNER.value,
                    access_source=AccessSource.ADMIN,
                )
            if archived:
                return Permissions.deny()
            return Permissions(
                can_view=True,
                role=PermissionRole.VIEWER.value,
                access_source=AccessSource.SCOPE,
            )

        if template.owner_id is None or template.owner_id != principal_id:
            return Permissions.deny()

        return Permissions(
            can_view=True,
            can_edit=not archived and not template.is_locked,
            can_manage=True,
            is_owner=True,
            role=PermissionRole.OWNER.value,
            access_source=AccessSource.OWNERSHIP,
        )

    def _record(self, permissions: Permissions, start_time: Optional[float]):
        if self.metrics is None:
            return
        self.metrics.record_permission_decision(permissions.access_source.value, permissions.can_view)
        if start_time is not None:
            self.metrics.observe_resolution(time.time() - start_time)


class EntityPermissionResolver:
    """Project-ceiling resolver for tracks and subtracks."""

    def __init__(
        self,
        projects: ProjectDirectory,
        store: EntitlementStore,
        directory: PrincipalDirectory,
        enable_creator_rights: bool = True,
        enable_entity_grants: bool = True,
    ):
        self.projects = projects
        self.grants = GrantResolver(store, directory)
        self.enable_creator_rights = enable_creator_rights
        self.enable_entity_grants = enable_entity_grants
        self.logger = get_logger("trackers.permissions.entity_resolver")

    async def resolve(self, entity_type: str, entity_id: str, principal_id: str) -> EntityPermissions:
        project_id = await self.projects.get_project_for_entity(entity_type, entity_id)
        if project_id is None:
            return EntityPermissions()

        project_role = as_role(await self.projects.get_project_role(principal_id, project_id))
        if project_role is None:
            return EntityPermissions(source=EntityPermissionSource(project_id=project_id))

        source = EntityPermissionSource(project_id=project_id, project_role=project_role)

        creator_role: Optional[PermissionRole] = None
        if self.enable_creator_rights:
            creator_id = await self.projects.get_entity_creator(entity_type, entity_id)
            is_creator = creator_id is not None and creator_id == principal_id
            revoked = False
            if is_creator:
                revoked = await self.projects.is_creator_rights_revoked(entity_type, entity_id, principal_id)
                if not revoked:
                    creator_role = PermissionRole.EDITOR
            source.creator = CreatorSource(is_creator=is_creator, revoked=revoked, would_grant_role=creator_role)

        grant_role: Optional[PermissionRole] = None
        if self.enable_entity_grants:
            resolution = await self.grants.resolve(entity_type, entity_id, principal_id)
            grant_role = resolution.highest_role
            source.grants = resolution

        uncapped = max_role([project_role, creator_role, grant_role])
        final_role = cap_role_at_ceiling(uncapped, project_role)
        source.ceiling_applied = uncapped is not None and compare_roles(uncapped, project_role) > 0

        if source.ceiling_applied:
            self.logger.info(
                "Entity role capped at project ceiling",
                entity_type=entity_type,
                entity_id=entity_id,
                principal_id=principal_id,
                uncapped_role=uncapped.value,
                project_role=project_role.value
            )

        flags = role_to_flags(final_role)
        return EntityPermissions(
            role=final_role,
            can_view=flags.can_view,
            can_edit=flags.can_edit,
            can_comment=flags.can_comment,
            can_manage=flags.can_manage,
            source=source,
        )
