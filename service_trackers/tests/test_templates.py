"""
Unit tests for the template service.
"""

import re

import pytest

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError

from service_trackers.app.domain.models import EntryGranularity, TemplateScope
from service_trackers.app.services.templates import TemplateService
from service_trackers.app.tracker.validation import TrackerValidationError


class TestTemplateCreation:
    """Test cases for creating templates."""

    @pytest.mark.asyncio
    async def test_create_user_template(self, template_service, factory):
        """Test a user template is owned, unlocked and at version 1."""
        template = await template_service.create_template(
            "owner-1", "  Sleep Tracker ", factory.sleep_tracker_schema(),
            description="   ", entry_granularity="daily", tags=["health"]
        )

        assert template.name == "Sleep Tracker"
        assert template.owner_id == "owner-1"
        assert template.scope == TemplateScope.USER
        assert template.is_locked is False
        assert template.published_at is None
        assert template.description is None
        assert template.entry_granularity == EntryGranularity.DAILY
        assert template.version == 1
        assert template.tags == ["health"]

    @pytest.mark.asyncio
    async def test_global_template_requires_admin(self, store, template_service, factory):
        """Test only admins create global templates."""
        with pytest.raises(PermissionDeniedError):
            await template_service.create_global_template("owner-1", "Mood", factory.mood_tracker_schema())

        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())

        assert template.owner_id is None
        assert template.created_by == "admin-1"
        assert template.is_locked is True
        assert template.published_at is not None

    @pytest.mark.asyncio
    async def test_invalid_schema_writes_nothing(self, store, template_service):
        """Test validation runs before persistence."""
        with pytest.raises(TrackerValidationError):
            await template_service.create_template(
                "owner-1", "Broken", [{"id": "x", "label": "X", "type": "colour"}]
            )

        assert store.templates == {}


class TestTemplateReads:
    """Test cases for listing and reading templates."""

    @pytest.mark.asyncio
    async def test_list_templates(self, store, template_service, factory):
        """Test callers see global templates and their own."""
        store.set_admin("admin-1")
        global_template = await template_service.create_global_template(
            "admin-1", "Mood", factory.mood_tracker_schema()
        )
        own = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())
        await template_service.create_template("viewer-1", "Private", factory.mood_tracker_schema())
        archived = await template_service.create_template("owner-1", "Old", factory.mood_tracker_schema())
        await template_service.archive_template(archived.id, "owner-1")

        visible = await template_service.list_templates("owner-1")
        with_archived = await template_service.list_templates("owner-1", include_archived=True)

        assert {t.id for t in visible} == {global_template.id, own.id}
        assert archived.id in {t.id for t in with_archived}

    @pytest.mark.asyncio
    async def test_get_template_hides_foreign(self, template_service, factory):
        """Test foreign user templates read as missing."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        assert (await template_service.get_template(template.id, "owner-1")).id == template.id
        assert await template_service.get_template(template.id, "viewer-1") is None
        assert await template_service.get_template("missing", "owner-1") is None


class TestTemplateUpdates:
    """Test cases for updating, locking and archiving templates."""

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, template_service, factory):
        """Test each update increments the version."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        updated = await template_service.update_template(
            template.id, "owner-1", {"name": "Night sleep", "field_schema": factory.mood_tracker_schema()}
        )

        assert updated.name == "Night sleep"
        assert [f.id for f in updated.field_schema] == ["mood"]
        assert updated.version == 2

        updated = await template_service.update_template(template.id, "owner-1", {"description": "Nightly"})
        assert updated.version == 3
        assert updated.description == "Nightly"

    @pytest.mark.asyncio
    async def test_update_rejects_unsupported_fields(self, template_service, factory):
        """Test scope and ownership cannot be changed through update."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(ValidationError) as exc_info:
            await template_service.update_template(template.id, "owner-1", {"scope": "global"})

        assert exc_info.value.details["fields"] == ["scope"]

    @pytest.mark.asyncio
    async def test_update_invalid_schema(self, template_service, factory):
        """Test updated schemas are validated."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(TrackerValidationError):
            await template_service.update_template(template.id, "owner-1", {"field_schema": []})

    @pytest.mark.asyncio
    async def test_foreign_update_is_not_found(self, template_service, factory):
        """Test updating another user's template."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(NotFoundError):
            await template_service.update_template(template.id, "viewer-1", {"name": "Mine"})

    @pytest.mark.asyncio
    async def test_global_template_read_only_for_users(self, store, template_service, factory):
        """Test non-admins cannot edit global templates."""
        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())

        with pytest.raises(PermissionDeniedError) as exc_info:
            await template_service.update_template(template.id, "owner-1", {"name": "Mine"})
        assert exc_info.value.message == "You do not have permission to edit this template"

        updated = await template_service.update_global_template(template.id, "admin-1", {"name": "Daily mood"})
        assert updated.name == "Daily mood"

    @pytest.mark.asyncio
    async def test_lock_and_unlock(self, template_service, factory):
        """Test locking blocks edits until unlocked."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        locked = await template_service.set_template_lock(template.id, "owner-1", True)
        assert locked.is_locked is True
        with pytest.raises(PermissionDeniedError):
            await template_service.update_template(template.id, "owner-1", {"name": "Other"})

        unlocked = await template_service.set_template_lock(template.id, "owner-1", False)
        assert unlocked.is_locked is False
        updated = await template_service.update_template(template.id, "owner-1", {"name": "Other"})
        assert updated.name == "Other"

    @pytest.mark.asyncio
    async def test_global_templates_stay_locked(self, store, template_service, factory):
        """Test global templates cannot be unlocked."""
        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())

        with pytest.raises(ValidationError) as exc_info:
            await template_service.set_template_lock(template.id, "admin-1", False)

        assert exc_info.value.details["kind"] == "template_lock"

    @pytest.mark.asyncio
    async def test_archive_is_idempotent(self, template_service, factory):
        """Test archiving twice keeps the first timestamp."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        first = await template_service.archive_template(template.id, "owner-1")
        second = await template_service.archive_template(template.id, "owner-1")

        assert first.archived_at is not None
        assert second.archived_at == first.archived_at
        with pytest.raises(PermissionDeniedError):
            await template_service.set_template_lock(template.id, "owner-1", True)

    @pytest.mark.asyncio
    async def test_archive_global_requires_admin(self, store, template_service, factory):
        """Test global archival is admin-only."""
        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())
        own = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(PermissionDeniedError):
            await template_service.archive_global_template(template.id, "owner-1")
        with pytest.raises(ValidationError):
            await template_service.archive_global_template(own.id, "admin-1")

        archived = await template_service.archive_global_template(template.id, "admin-1")
        assert archived.archived_at is not None


class TestTemplateCopies:
    """Test cases for duplication and promotion."""

    @pytest.mark.asyncio
    async def test_duplicate_resolves_name_conflicts(self, template_service, factory):
        """Test duplicates get numbered names."""
        template = await template_service.create_template(
            "owner-1", "Sleep Tracker", factory.sleep_tracker_schema()
        )

        first = await template_service.duplicate_template(template.id, "owner-1")
        second = await template_service.duplicate_template(template.id, "owner-1")
        named = await template_service.duplicate_template(template.id, "owner-1", "Nap Tracker")

        assert first.name == "Sleep Tracker (1)"
        assert second.name == "Sleep Tracker (2)"
        assert named.name == "Nap Tracker"

    @pytest.mark.asyncio
    async def test_duplicate_global_template(self, store, template_service, factory):
        """Test duplicating a global template yields an owned, unlocked copy."""
        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())

        copy = await template_service.duplicate_template(template.id, "owner-1")

        assert copy.id != template.id
        assert copy.owner_id == "owner-1"
        assert copy.scope == TemplateScope.USER
        assert copy.is_locked is False
        assert copy.version == 1
        assert [f.to_dict() for f in copy.field_schema] == [f.to_dict() for f in template.field_schema]
        assert copy.field_schema[0] is not template.field_schema[0]

    @pytest.mark.asyncio
    async def test_duplicate_archived_template(self, template_service, factory):
        """Test archived templates cannot be duplicated."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())
        await template_service.archive_template(template.id, "owner-1")

        with pytest.raises(NotFoundError):
            await template_service.duplicate_template(template.id, "owner-1")

    @pytest.mark.asyncio
    async def test_duplicate_blank_name(self, template_service, factory):
        """Test an explicit blank name is rejected."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(TrackerValidationError):
            await template_service.duplicate_template(template.id, "owner-1", "  ")

    @pytest.mark.asyncio
    async def test_name_conflict_fallback(self, store, resolver, enforcer, factory):
        """Test a timestamp suffix once numbered names run out."""
        service = TemplateService(store, resolver, enforcer, name_conflict_attempts=2)
        for name in ("Sleep", "Sleep (1)", "Sleep (2)"):
            await service.create_template("owner-1", name, factory.sleep_tracker_schema())

        name = await service.resolve_name_conflict("Sleep", "owner-1")

        assert re.fullmatch(r"Sleep \(\d{13}\)", name)

    @pytest.mark.asyncio
    async def test_promote_to_global(self, store, template_service, factory):
        """Test promotion is admin-only and one-way."""
        store.set_admin("admin-1")
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(PermissionDeniedError):
            await template_service.promote_template_to_global(template.id, "owner-1")

        promoted = await template_service.promote_template_to_global(template.id, "admin-1")
        assert promoted.scope == TemplateScope.GLOBAL
        assert promoted.owner_id is None
        assert promoted.is_locked is True
        assert promoted.published_at is not None

        with pytest.raises(ValidationError):
            await template_service.promote_template_to_global(template.id, "admin-1")

        # The former owner now only views it, like everyone else.
        assert (await template_service.get_template(template.id, "viewer-1")).id == template.id
        with pytest.raises(PermissionDeniedError):
            await template_service.update_template(template.id, "owner-1", {"name": "Mine again"})

    @pytest.mark.asyncio
    async def test_promote_missing_template(self, store, template_service):
        """Test promoting an unknown template."""
        store.set_admin("admin-1")

        with pytest.raises(NotFoundError):
            await template_service.promote_template_to_global("missing", "admin-1")
