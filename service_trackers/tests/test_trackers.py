"""
Unit tests for the tracker service.
"""

import pytest

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError

from service_trackers.app.domain.models import (
    EntryGranularity,
    ObservationContext,
    ObservationContextType,
)
from service_trackers.app.tracker.validation import TrackerValidationError

HOUSEHOLD = ObservationContext(ObservationContextType.HOUSEHOLD, "home-1")


class TestTrackerCreation:
    """Test cases for creating trackers."""

    @pytest.mark.asyncio
    async def test_create_from_template_snapshots_schema(self, template_service, tracker_service, factory):
        """Test the tracker copies the template schema by value."""
        template = await template_service.create_template(
            "owner-1", "Sleep Tracker", factory.sleep_tracker_schema(),
            description="Nightly sleep", chart_config={"type": "line"}
        )

        tracker = await tracker_service.create_tracker_from_template("owner-1", template.id)

        assert tracker.template_id == template.id
        assert tracker.name == "Sleep Tracker"
        assert tracker.description == "Nightly sleep"
        assert tracker.chart_config == {"type": "line"}
        assert tracker.entry_granularity == EntryGranularity.DAILY
        assert [f.to_dict() for f in tracker.field_schema_snapshot] == \
            [f.to_dict() for f in template.field_schema]

    @pytest.mark.asyncio
    async def test_template_changes_never_reach_trackers(self, store, template_service, tracker_service, factory):
        """Test later template edits leave existing snapshots alone."""
        template = await template_service.create_template("owner-1", "Sleep", factory.sleep_tracker_schema())
        tracker = await tracker_service.create_tracker_from_template("owner-1", template.id)

        await template_service.update_template(template.id, "owner-1", {"field_schema": factory.mood_tracker_schema()})
        await template_service.archive_template(template.id, "owner-1")

        stored = await store.get_tracker(tracker.id)
        assert [f.id for f in stored.field_schema_snapshot] == ["hours", "quality", "woke_rested", "dream"]

    @pytest.mark.asyncio
    async def test_store_keeps_snapshot_on_update(self, store, tracker_service, factory):
        """Test the store refuses to overwrite a snapshot."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())

        tracker.field_schema_snapshot = []
        await store.update_tracker(tracker)

        stored = await store.get_tracker(tracker.id)
        assert len(stored.field_schema_snapshot) == 4

    @pytest.mark.asyncio
    async def test_display_order_appends(self, tracker_service, factory):
        """Test new trackers go to the end of the owner's list."""
        first = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        second = await tracker_service.create_tracker_from_schema("owner-1", "Mood", factory.mood_tracker_schema())
        other = await tracker_service.create_tracker_from_schema("viewer-1", "Mood", factory.mood_tracker_schema())

        assert (first.display_order, second.display_order) == (0, 1)
        assert other.display_order == 0

    @pytest.mark.asyncio
    async def test_create_from_unusable_template(self, store, template_service, tracker_service, factory):
        """Test foreign, archived and missing templates are all not found."""
        foreign = await template_service.create_template("viewer-1", "Private", factory.mood_tracker_schema())
        archived = await template_service.create_template("owner-1", "Old", factory.mood_tracker_schema())
        await template_service.archive_template(archived.id, "owner-1")

        for template_id in (foreign.id, archived.id, "missing"):
            with pytest.raises(NotFoundError):
                await tracker_service.create_tracker_from_template("owner-1", template_id)

        assert store.trackers == {}

    @pytest.mark.asyncio
    async def test_create_from_global_template(self, store, template_service, tracker_service, factory):
        """Test anyone can start tracking from a global template."""
        store.set_admin("admin-1")
        template = await template_service.create_global_template("admin-1", "Mood", factory.mood_tracker_schema())

        tracker = await tracker_service.create_tracker_from_template("owner-1", template.id, name="My mood")

        assert tracker.owner_id == "owner-1"
        assert tracker.name == "My mood"

    @pytest.mark.asyncio
    async def test_create_from_schema(self, tracker_service, factory):
        """Test ad hoc trackers without a template."""
        tracker = await tracker_service.create_tracker_from_schema(
            "owner-1", "Workouts", factory.all_field_types_schema(),
            entry_granularity="session", icon="dumbbell", color="#ff0000"
        )

        assert tracker.template_id is None
        assert tracker.entry_granularity == EntryGranularity.SESSION
        assert tracker.icon == "dumbbell"
        assert tracker.color == "#ff0000"

    @pytest.mark.asyncio
    async def test_create_from_invalid_schema(self, tracker_service):
        """Test schema validation for ad hoc trackers."""
        with pytest.raises(TrackerValidationError) as exc_info:
            await tracker_service.create_tracker_from_schema("owner-1", "", [{"id": "a", "label": "A", "type": "text"}])
        assert exc_info.value.message == "Tracker name is required and must be non-empty"


class TestTrackerReads:
    """Test cases for listing and reading trackers."""

    @pytest.mark.asyncio
    async def test_list_owned_granted_observed(self, tracker_service, grant_service, observation_service, factory):
        """Test list order: owned, then granted, then observed in context."""
        owned = await tracker_service.create_tracker_from_schema("viewer-1", "Mine", factory.mood_tracker_schema())
        shared = await tracker_service.create_tracker_from_schema("owner-1", "Shared", factory.mood_tracker_schema())
        observed = await tracker_service.create_tracker_from_schema("owner-1", "Observed", factory.mood_tracker_schema())
        await tracker_service.create_tracker_from_schema("owner-1", "Private", factory.mood_tracker_schema())
        await grant_service.grant_access(shared.id, "owner-1", "user", "viewer-1", "viewer")
        await observation_service.create_observation_link(observed.id, "owner-1", "viewer-1", HOUSEHOLD)

        without_context = await tracker_service.list_trackers("viewer-1")
        with_context = await tracker_service.list_trackers("viewer-1", HOUSEHOLD)

        assert [t.id for t in without_context] == [owned.id, shared.id]
        assert [t.id for t in with_context] == [owned.id, shared.id, observed.id]

    @pytest.mark.asyncio
    async def test_list_excludes_archived(self, tracker_service, grant_service, factory):
        """Test archived trackers are listed only for their owner, on request."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        await grant_service.grant_access(tracker.id, "owner-1", "user", "viewer-1", "viewer")
        await tracker_service.archive_tracker(tracker.id, "owner-1")

        assert await tracker_service.list_trackers("owner-1") == []
        assert [t.id for t in await tracker_service.list_trackers("owner-1", include_archived=True)] == [tracker.id]
        assert await tracker_service.list_trackers("viewer-1") == []

    @pytest.mark.asyncio
    async def test_group_granted_trackers_listed(self, store, tracker_service, grant_service, factory):
        """Test trackers shared with a group are listed for its members."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        store.add_group_member("household-1", "editor-1")
        await grant_service.grant_access(tracker.id, "owner-1", "group", "household-1", "editor")

        listed = await tracker_service.list_trackers("editor-1")

        assert [t.id for t in listed] == [tracker.id]

    @pytest.mark.asyncio
    async def test_get_tracker(self, tracker_service, factory):
        """Test invisible trackers read as None."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())

        assert (await tracker_service.get_tracker(tracker.id, "owner-1")).name == "Sleep"
        assert await tracker_service.get_tracker(tracker.id, "stranger-1") is None
        assert await tracker_service.get_tracker("missing", "owner-1") is None


class TestTrackerUpdates:
    """Test cases for tracker settings, archival and ordering."""

    @pytest.mark.asyncio
    async def test_update_settings(self, tracker_service, factory):
        """Test owners change display settings."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())

        updated = await tracker_service.update_tracker(
            tracker.id, "owner-1", {"name": " Night ", "description": "", "color": "#00ff00"}
        )

        assert updated.name == "Night"
        assert updated.description is None
        assert updated.color == "#00ff00"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["field_schema", "field_schema_snapshot", "template_id", "entry_granularity"])
    async def test_immutable_fields(self, tracker_service, factory, field):
        """Test schema and origin cannot be changed."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(ValidationError) as exc_info:
            await tracker_service.update_tracker(tracker.id, "owner-1", {field: None})

        assert exc_info.value.details["kind"] == "immutable_field"

    @pytest.mark.asyncio
    async def test_update_permissions(self, tracker_service, grant_service, factory):
        """Test only the owner changes settings."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        await grant_service.grant_access(tracker.id, "owner-1", "user", "editor-1", "editor")
        await grant_service.grant_access(tracker.id, "owner-1", "user", "viewer-1", "viewer")

        with pytest.raises(PermissionDeniedError) as exc_info:
            await tracker_service.update_tracker(tracker.id, "editor-1", {"name": "Ours"})
        assert exc_info.value.message == "Only the tracker owner can change tracker settings"

        with pytest.raises(PermissionDeniedError):
            await tracker_service.update_tracker(tracker.id, "viewer-1", {"name": "Ours"})
        with pytest.raises(NotFoundError):
            await tracker_service.update_tracker(tracker.id, "stranger-1", {"name": "Ours"})

    @pytest.mark.asyncio
    async def test_archive(self, tracker_service, grant_service, factory):
        """Test archival is owner-only, idempotent and hides the tracker from grantees."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        await grant_service.grant_access(tracker.id, "owner-1", "user", "editor-1", "editor")

        with pytest.raises(PermissionDeniedError):
            await tracker_service.archive_tracker(tracker.id, "editor-1")

        first = await tracker_service.archive_tracker(tracker.id, "owner-1")
        second = await tracker_service.archive_tracker(tracker.id, "owner-1")

        assert first.is_archived is True
        assert second.archived_at == first.archived_at
        assert await tracker_service.get_tracker(tracker.id, "editor-1") is None
        assert (await tracker_service.get_tracker(tracker.id, "owner-1")).is_archived is True
        with pytest.raises(PermissionDeniedError):
            await tracker_service.update_tracker(tracker.id, "owner-1", {"name": "Renamed"})

    @pytest.mark.asyncio
    async def test_reorder(self, tracker_service, factory):
        """Test display order follows list position."""
        first = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        second = await tracker_service.create_tracker_from_schema("owner-1", "Mood", factory.mood_tracker_schema())

        reordered = await tracker_service.reorder_trackers("owner-1", [second.id, first.id])
        listed = await tracker_service.list_trackers("owner-1")

        assert [t.display_order for t in reordered] == [0, 1]
        assert [t.id for t in listed] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_reorder_rejects_foreign_and_duplicate_ids(self, tracker_service, factory):
        """Test reorder input validation."""
        mine = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        theirs = await tracker_service.create_tracker_from_schema("viewer-1", "Mood", factory.mood_tracker_schema())

        with pytest.raises(ValidationError) as exc_info:
            await tracker_service.reorder_trackers("owner-1", [mine.id, theirs.id])
        assert exc_info.value.details["tracker_ids"] == [theirs.id]

        with pytest.raises(ValidationError):
            await tracker_service.reorder_trackers("owner-1", [mine.id, mine.id])
