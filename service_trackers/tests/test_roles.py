"""
Unit tests for role ordering helpers.
"""

import pytest

from service_trackers.app.domain.models import PermissionRole
from service_trackers.app.permissions.roles import (
    cap_role_at_ceiling,
    compare_roles,
    max_role,
    role_at_least,
    role_to_flags,
)


class TestRoleOrdering:
    """Test cases for the owner > editor > commenter > viewer ordering."""

    def test_compare_roles(self):
        """Test pairwise comparison accepts enums and strings."""
        assert compare_roles("owner", "editor") > 0
        assert compare_roles(PermissionRole.VIEWER, PermissionRole.COMMENTER) < 0
        assert compare_roles("editor", PermissionRole.EDITOR) == 0

    def test_unknown_role_rejected(self):
        """Test that roles outside the ordering raise."""
        with pytest.raises(ValueError):
            compare_roles("admin", "viewer")

    def test_max_role_ignores_missing(self):
        """Test max role over a list with gaps."""
        assert max_role([None, "viewer", "editor", None]) == PermissionRole.EDITOR
        assert max_role(["commenter", PermissionRole.VIEWER]) == PermissionRole.COMMENTER
        assert max_role([None, None]) is None
        assert max_role([]) is None

    def test_cap_role_at_ceiling(self):
        """Test clamping to a ceiling."""
        assert cap_role_at_ceiling("owner", "viewer") == PermissionRole.VIEWER
        assert cap_role_at_ceiling("viewer", "editor") == PermissionRole.VIEWER
        assert cap_role_at_ceiling("editor", "editor") == PermissionRole.EDITOR
        assert cap_role_at_ceiling("editor", None) == PermissionRole.EDITOR
        assert cap_role_at_ceiling(None, "editor") is None

    def test_role_at_least(self):
        """Test minimum role checks."""
        assert role_at_least("owner", "editor") is True
        assert role_at_least("editor", "editor") is True
        assert role_at_least("commenter", "editor") is False
        assert role_at_least(None, "viewer") is False


class TestRoleFlags:
    """Test cases for role to capability mapping."""

    def test_owner_flags(self):
        """Test owner has every capability."""
        flags = role_to_flags("owner")
        assert flags.can_view and flags.can_edit and flags.can_comment and flags.can_manage

    def test_editor_flags(self):
        """Test editor edits but does not manage."""
        flags = role_to_flags(PermissionRole.EDITOR)
        assert flags.can_view is True
        assert flags.can_edit is True
        assert flags.can_comment is True
        assert flags.can_manage is False

    def test_commenter_flags(self):
        """Test commenter comments but does not edit."""
        flags = role_to_flags("commenter")
        assert flags.can_view is True
        assert flags.can_comment is True
        assert flags.can_edit is False

    def test_viewer_flags(self):
        """Test viewer is read-only."""
        flags = role_to_flags("viewer")
        assert flags.can_view is True
        assert not (flags.can_edit or flags.can_comment or flags.can_manage)

    def test_no_role(self):
        """Test no role grants nothing."""
        flags = role_to_flags(None)
        assert not (flags.can_view or flags.can_edit or flags.can_comment or flags.can_manage)
