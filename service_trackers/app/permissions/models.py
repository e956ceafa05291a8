"""
Permission decision records.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain.models import AccessSource, OBSERVER_ROLE, PermissionRole


@dataclass
class RoleFlags:
    can_view: bool = False
    can_edit: bool = False
    can_comment: bool = False
    can_manage: bool = False


@dataclass
class Permissions:
    """Resolved access of one principal to one tracker or template."""
    can_view: bool = False
    can_edit: bool = False
    can_manage: bool = False
    is_owner: bool = False
    role: Optional[str] = None
    access_source: AccessSource = AccessSource.NONE

    @classmethod
    def deny(cls) -> "Permissions":
        return cls()

    @classmethod
    def full_owner(cls) -> "Permissions":
        return cls(
            can_view=True,
            can_edit=True,
            can_manage=True,
            is_owner=True,
            role=PermissionRole.OWNER.value,
            access_source=AccessSource.OWNERSHIP,
        )

    @classmethod
    def observer(cls) -> "Permissions":
        return cls(can_view=True, role=OBSERVER_ROLE, access_source=AccessSource.OBSERVATION)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_view": self.can_view,
            "can_edit": self.can_edit,
            "can_manage": self.can_manage,
            "is_owner": self.is_owner,
            "role": self.role,
            "access_source": self.access_source.value,
        }


@dataclass
class GroupRole:
    group_id: str
    role: PermissionRole


@dataclass
class GrantResolution:
    """Grant lookup result for a principal against an entity."""
    profile_id: Optional[str] = None
    direct_role: Optional[PermissionRole] = None
    group_roles: List[GroupRole] = field(default_factory=list)
    highest_role: Optional[PermissionRole] = None


@dataclass
class CreatorSource:
    is_creator: bool = False
    revoked: bool = False
    would_grant_role: Optional[PermissionRole] = None


@dataclass
class EntityPermissionSource:
    """Audit breakdown of how an entity permission was computed."""
    project_id: Optional[str] = None
    project_role: Optional[PermissionRole] = None
    ceiling_applied: bool = False
    creator: Optional[CreatorSource] = None
    grants: Optional[GrantResolution] = None


@dataclass
class EntityPermissions:
    """Resolved access to a project-scoped entity (track or subtrack)."""
    role: Optional[PermissionRole] = None
    can_view: bool = False
    can_edit: bool = False
    can_comment: bool = False
    can_manage: bool = False
    source: EntityPermissionSource = field(default_factory=EntityPermissionSource)

    def to_dict(self) -> Dict[str, Any]:
        source = self.source
        data: Dict[str, Any] = {
            "role": self.role.value if self.role else None,
            "can_view": self.can_view,
            "can_edit": self.can_edit,
            "can_comment": self.can_comment,
            "can_manage": self.can_manage,
            "source": {
                "project_id": source.project_id,
                "project_role": source.project_role.value if source.project_role else None,
                "ceiling_applied": source.ceiling_applied,
            },
        }
        if source.creator is not None:
            data["source"]["creator"] = {
                "is_creator": source.creator.is_creator,
                "revoked": source.creator.revoked,
                "would_grant_role": (source.creator.would_grant_role.value
                                     if source.creator.would_grant_role else None),
            }
        if source.grants is not None:
            data["source"]["grants"] = {
                "direct_user_role": source.grants.direct_role.value if source.grants.direct_role else None,
                "group_roles": [
                    {"group_id": g.group_id, "role": g.role.value} for g in source.grants.group_roles
                ],
                "highest_grant_role": (source.grants.highest_role.value
                                       if source.grants.highest_role else None),
            }
        return data
