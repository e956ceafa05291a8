"""
Unit tests for the entry service.
"""

from datetime import date

import pytest

from shared.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError

from service_trackers.app.domain.models import (
    EntryGranularity,
    ObservationContext,
    ObservationContextType,
)
from service_trackers.app.tracker.validation import TrackerValidationError

TEAM = ObservationContext(ObservationContextType.TEAM, "team-1")


class TestEntryCreation:
    """Test cases for creating entries."""

    @pytest.fixture
    def sleep_schema(self, factory):
        """Sleep tracker schema."""
        return factory.sleep_tracker_schema()

    @pytest.mark.asyncio
    async def test_create_entry(self, tracker_service, entry_service, sleep_schema):
        """Test a valid entry is stored with the tracker's granularity."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)

        entry = await entry_service.create_entry(
            tracker.id, "owner-1", "2024-03-05", {"hours": 7.5, "quality": 4}, notes="Slept well"
        )

        assert entry.tracker_id == tracker.id
        assert entry.user_id == "owner-1"
        assert entry.entry_date == date(2024, 3, 5)
        assert entry.field_values == {"hours": 7.5, "quality": 4}
        assert entry.notes == "Slept well"
        assert entry.entry_granularity == EntryGranularity.DAILY

    @pytest.mark.asyncio
    async def test_duplicate_daily_entry(self, tracker_service, entry_service, sleep_schema):
        """Test a second daily entry for the same date conflicts."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        first = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(ConflictError) as exc_info:
            await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 8})

        assert exc_info.value.details["kind"] == "duplicate_entry"
        assert exc_info.value.details["existing_entry_id"] == first.id
        assert exc_info.value.details["retryable"] is True

    @pytest.mark.asyncio
    async def test_daily_uniqueness_is_per_user(self, tracker_service, grant_service, entry_service, sleep_schema):
        """Test two authors can each log the same date."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        await grant_service.grant_access(tracker.id, "owner-1", "user", "editor-1", "editor")

        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})
        entry = await entry_service.create_entry(tracker.id, "editor-1", "2024-03-05", {"hours": 6})

        assert entry.user_id == "editor-1"

    @pytest.mark.asyncio
    async def test_session_entries_repeat(self, tracker_service, entry_service, factory):
        """Test non-daily granularities allow several entries per date."""
        tracker = await tracker_service.create_tracker_from_schema(
            "owner-1", "Workouts", factory.mood_tracker_schema(), entry_granularity="session"
        )

        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"mood": 3})
        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"mood": 4})

        entries = await entry_service.list_entries(tracker.id, "owner-1")
        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_daily_tracker_rejects_granularity_override(self, tracker_service, entry_service, factory):
        """Test a daily tracker refuses a per-entry granularity override."""
        tracker = await tracker_service.create_tracker_from_schema(
            "owner-1", "Mood", factory.mood_tracker_schema()
        )
        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"mood": 3})

        with pytest.raises(ValidationError) as exc_info:
            await entry_service.create_entry(
                tracker.id, "owner-1", "2024-03-05", {"mood": 4}, entry_granularity="session"
            )
        assert exc_info.value.details["kind"] == "entry"

        # Naming the tracker's own granularity is accepted and still unique per date
        with pytest.raises(ConflictError):
            await entry_service.create_entry(
                tracker.id, "owner-1", "2024-03-05", {"mood": 4}, entry_granularity="daily"
            )

        entries = await entry_service.list_entries(tracker.id, "owner-1")
        assert len(entries) == 1
        assert entries[0].entry_granularity == EntryGranularity.DAILY

    @pytest.mark.asyncio
    async def test_invalid_entry_writes_nothing(self, store, tracker_service, entry_service, sleep_schema):
        """Test validation failures leave the store untouched."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)

        with pytest.raises(TrackerValidationError):
            await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7, "quality": 6})
        with pytest.raises(TrackerValidationError) as exc_info:
            await entry_service.create_entry(tracker.id, "owner-1", "5 March", {"hours": 7})

        assert exc_info.value.message == "Entry date must be in format YYYY-MM-DD"
        assert store.entries == {}

    @pytest.mark.asyncio
    async def test_viewer_cannot_write_but_can_read(self, tracker_service, grant_service, entry_service, sleep_schema):
        """Test viewers are denied writes and allowed reads."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        await grant_service.grant_access(tracker.id, "owner-1", "user", "viewer-1", "viewer")
        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(PermissionDeniedError):
            await entry_service.create_entry(tracker.id, "viewer-1", "2024-03-06", {"hours": 7})

        entries = await entry_service.list_entries(tracker.id, "viewer-1")
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_stranger_sees_nothing(self, tracker_service, entry_service, sleep_schema):
        """Test no access reads as not found."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(NotFoundError):
            await entry_service.list_entries(tracker.id, "stranger-1")
        with pytest.raises(NotFoundError):
            await entry_service.create_entry(tracker.id, "stranger-1", "2024-03-06", {"hours": 7})
        assert await entry_service.get_entry(tracker.id, entry.id, "stranger-1") is None

    @pytest.mark.asyncio
    async def test_observer_reads_in_context_only(self, tracker_service, observation_service, entry_service,
                                                  sleep_schema):
        """Test observers read entries through their context and never write."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        await observation_service.create_observation_link(tracker.id, "owner-1", "observer-1", TEAM)
        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        entries = await entry_service.list_entries(tracker.id, "observer-1", context=TEAM)
        assert len(entries) == 1

        with pytest.raises(NotFoundError):
            await entry_service.list_entries(tracker.id, "observer-1")
        with pytest.raises(PermissionDeniedError):
            await entry_service.create_entry(tracker.id, "observer-1", "2024-03-06", {"hours": 7}, context=TEAM)

    @pytest.mark.asyncio
    async def test_archived_tracker_is_read_only(self, tracker_service, entry_service, sleep_schema):
        """Test the owner keeps reading an archived tracker but cannot write."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})
        await tracker_service.archive_tracker(tracker.id, "owner-1")

        with pytest.raises(PermissionDeniedError):
            await entry_service.create_entry(tracker.id, "owner-1", "2024-03-06", {"hours": 7})

        assert len(await entry_service.list_entries(tracker.id, "owner-1")) == 1


class TestEntryUpdates:
    """Test cases for updating entries."""

    @pytest.fixture
    def sleep_schema(self, factory):
        """Sleep tracker schema."""
        return factory.sleep_tracker_schema()

    @pytest.mark.asyncio
    async def test_update_merges_values(self, tracker_service, entry_service, sleep_schema):
        """Test updates merge into the stored values."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7, "quality": 4})

        updated = await entry_service.update_entry(
            tracker.id, entry.id, "owner-1", {"field_values": {"quality": 5}, "notes": "Better"}
        )

        assert updated.field_values == {"hours": 7, "quality": 5}
        assert updated.notes == "Better"
        assert updated.updated_at >= entry.updated_at

    @pytest.mark.asyncio
    async def test_update_validates_merged_values(self, store, tracker_service, entry_service, sleep_schema):
        """Test merged values are validated as a whole."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(TrackerValidationError):
            await entry_service.update_entry(tracker.id, entry.id, "owner-1", {"field_values": {"hours": None}})

        stored = await store.get_entry(entry.id)
        assert stored.field_values == {"hours": 7}

    @pytest.mark.asyncio
    async def test_update_author_or_owner(self, tracker_service, grant_service, entry_service, sleep_schema):
        """Test editors update their own entries, owners update any."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        await grant_service.grant_access(tracker.id, "owner-1", "user", "editor-1", "editor")
        owners = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})
        editors = await entry_service.create_entry(tracker.id, "editor-1", "2024-03-05", {"hours": 6})

        with pytest.raises(PermissionDeniedError):
            await entry_service.update_entry(tracker.id, owners.id, "editor-1", {"field_values": {"hours": 8}})

        mine = await entry_service.update_entry(tracker.id, editors.id, "editor-1", {"field_values": {"hours": 6.5}})
        theirs = await entry_service.update_entry(tracker.id, editors.id, "owner-1", {"notes": "checked"})

        assert mine.field_values["hours"] == 6.5
        assert theirs.notes == "checked"

    @pytest.mark.asyncio
    async def test_update_wrong_tracker(self, tracker_service, entry_service, sleep_schema):
        """Test entries are addressed through their own tracker."""
        first = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        second = await tracker_service.create_tracker_from_schema("owner-1", "Nap", sleep_schema)
        entry = await entry_service.create_entry(first.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(NotFoundError):
            await entry_service.update_entry(second.id, entry.id, "owner-1", {"notes": "moved"})
        assert await entry_service.get_entry(second.id, entry.id, "owner-1") is None

    @pytest.mark.asyncio
    async def test_update_unsupported_fields(self, tracker_service, entry_service, sleep_schema):
        """Test entry dates and authors cannot be changed."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", sleep_schema)
        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        with pytest.raises(ValidationError) as exc_info:
            await entry_service.update_entry(tracker.id, entry.id, "owner-1", {"entry_date": "2024-03-06"})

        assert exc_info.value.details["fields"] == ["entry_date"]


class TestEntryReads:
    """Test cases for reading entries."""

    @pytest.mark.asyncio
    async def test_list_entries_newest_first(self, tracker_service, entry_service, factory):
        """Test ordering and date range filtering."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        for entry in factory.sleep_entries():
            await entry_service.create_entry(tracker.id, "owner-1", entry["entry_date"], entry["field_values"])

        entries = await entry_service.list_entries(tracker.id, "owner-1")
        window = await entry_service.list_entries(tracker.id, "owner-1", "2024-03-05", "2024-03-07")

        assert [e.entry_date.isoformat() for e in entries] == [
            "2024-03-08", "2024-03-07", "2024-03-06", "2024-03-05", "2024-03-04"
        ]
        assert [e.entry_date.isoformat() for e in window] == ["2024-03-07", "2024-03-06", "2024-03-05"]

    @pytest.mark.asyncio
    async def test_list_entries_bad_range(self, tracker_service, entry_service, factory):
        """Test an inverted range is rejected."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())

        with pytest.raises(ValidationError) as exc_info:
            await entry_service.list_entries(tracker.id, "owner-1", "2024-03-07", "2024-03-05")

        assert exc_info.value.details["kind"] == "date_range"

    @pytest.mark.asyncio
    async def test_get_entry_for_date(self, tracker_service, entry_service, factory):
        """Test lookup by date."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        found = await entry_service.get_entry_for_date(tracker.id, "owner-1", "2024-03-05")

        assert found.id == entry.id
        assert await entry_service.get_entry_for_date(tracker.id, "owner-1", "2024-03-06") is None
        assert await entry_service.get_entry_for_date(tracker.id, "stranger-1", "2024-03-05") is None


class TestInsightsInvalidation:
    """Test cases for cache invalidation on entry writes."""

    @pytest.mark.asyncio
    async def test_writes_invalidate_cached_insights(self, tracker_service, entry_service, insights_cache, factory):
        """Test create and update drop cached insights for the tracker."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Sleep", factory.sleep_tracker_schema())
        other = await tracker_service.create_tracker_from_schema("owner-1", "Mood", factory.mood_tracker_schema())
        await insights_cache.set([tracker.id], {"cached": True})
        await insights_cache.set([tracker.id, other.id], {"cached": True})
        await insights_cache.set([other.id], {"cached": True})

        entry = await entry_service.create_entry(tracker.id, "owner-1", "2024-03-05", {"hours": 7})

        assert await insights_cache.get([tracker.id]) is None
        assert await insights_cache.get([tracker.id, other.id]) is None
        assert await insights_cache.get([other.id]) == {"cached": True}

        await insights_cache.set([tracker.id], {"cached": True})
        await entry_service.update_entry(tracker.id, entry.id, "owner-1", {"notes": "later"})
        assert await insights_cache.get([tracker.id]) is None
