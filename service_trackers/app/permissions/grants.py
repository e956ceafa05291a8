"""
Grant resolver: highest active role granted to a principal on an entity.
"""

from typing import List, Optional

from shared.logging import get_logger

from ..domain.models import PermissionRole, SubjectType
from ..store.base import EntitlementStore, PrincipalDirectory
from .models import GrantResolution, GroupRole
from .roles import max_role


class GrantResolver:
    """Looks up direct and group grants and takes the maximum role."""

    def __init__(self, store: EntitlementStore, directory: PrincipalDirectory,
                 enable_groups: bool = True):
        self.store = store
        self.directory = directory
        self.enable_groups = enable_groups
        self.logger = get_logger("trackers.permissions.grants")

    async def resolve(self, entity_type: str, entity_id: str, principal_id: str) -> GrantResolution:
        profile_id = await self.directory.resolve_profile_id(principal_id)
        group_ids: List[str] = []
        if self.enable_groups:
            group_ids = await self.directory.resolve_groups_for(principal_id)

        if profile_id is None and not group_ids:
            return GrantResolution()

        grants = await self.store.list_active_grants(entity_type, entity_id, profile_id, group_ids)

        direct_role: Optional[PermissionRole] = None
        group_roles: List[GroupRole] = []
        for grant in grants:
            if not grant.is_active:
                continue
            if grant.subject_type == SubjectType.USER and grant.subject_id == profile_id:
                direct_role = max_role([direct_role, grant.role])
            elif grant.subject_type == SubjectType.GROUP and grant.subject_id in group_ids:
                group_roles.append(GroupRole(group_id=grant.subject_id, role=PermissionRole(grant.role)))

        highest = max_role([direct_role] + [g.role for g in group_roles])

        self.logger.debug(
            "Grants resolved",
            entity_type=entity_type,
            entity_id=entity_id,
            principal_id=principal_id,
            grant_count=len(grants),
            highest_role=highest.value if highest else None
        )

        return GrantResolution(
            profile_id=profile_id,
            direct_role=direct_role,
            group_roles=group_roles,
            highest_role=highest,
        )
