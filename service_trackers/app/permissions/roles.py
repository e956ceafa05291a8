"""
Role ordering helpers shared by every resolver.
"""

from typing import Iterable, Optional, Union

from .models import RoleFlags
from ..domain.models import PermissionRole

ROLE_RANK = {
    PermissionRole.OWNER: 4,
    PermissionRole.EDITOR: 3,
    PermissionRole.COMMENTER: 2,
    PermissionRole.VIEWER: 1,
}

RoleLike = Union[PermissionRole, str]


def as_role(role: Optional[RoleLike]) -> Optional[PermissionRole]:
    if role is None:
        return None
    return PermissionRole(role)


def compare_roles(role1: RoleLike, role2: RoleLike) -> int:
    """Negative when role1 < role2, zero when equal, positive when role1 > role2."""
    return ROLE_RANK[PermissionRole(role1)] - ROLE_RANK[PermissionRole(role2)]


def max_role(roles: Iterable[Optional[RoleLike]]) -> Optional[PermissionRole]:
    """Highest role in the ordering, ignoring None."""
    best: Optional[PermissionRole] = None
    for role in roles:
        if role is None:
            continue
        role = PermissionRole(role)
        if best is None or compare_roles(role, best) > 0:
            best = role
    return best


def cap_role_at_ceiling(role: Optional[RoleLike], ceiling: Optional[RoleLike]) -> Optional[PermissionRole]:
    """Clamp ``role`` to ``ceiling``. A missing ceiling leaves the role as is."""
    role = as_role(role)
    ceiling = as_role(ceiling)
    if role is None or ceiling is None:
        return role
    return ceiling if compare_roles(role, ceiling) > 0 else role


def role_at_least(role: Optional[RoleLike], minimum: RoleLike) -> bool:
    if role is None:
        return False
    return compare_roles(role, minimum) >= 0


def role_to_flags(role: Optional[RoleLike]) -> RoleFlags:
    """Capability flags for the entity-permission resolver."""
    role = as_role(role)
    if role is None:
        return RoleFlags()
    if role == PermissionRole.OWNER:
        return RoleFlags(can_view=True, can_edit=True, can_comment=True, can_manage=True)
    if role == PermissionRole.EDITOR:
        return RoleFlags(can_view=True, can_edit=True, can_comment=True)
    if role == PermissionRole.COMMENTER:
        return RoleFlags(can_view=True, can_comment=True)
    return RoleFlags(can_view=True)
