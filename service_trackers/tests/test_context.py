"""
Unit tests for context events and interpretations.
"""

from datetime import date

import pytest

from shared.errors import NotFoundError, PermissionDeniedError, ValidationError

from service_trackers.app.tracker.validation import TrackerValidationError


class TestContextEvents:
    """Test cases for life-state context events."""

    @pytest.mark.asyncio
    async def test_create_and_list_overlapping(self, context_service):
        """Test listing returns events overlapping the requested range."""
        travel = await context_service.create_context_event(
            "owner-1", "travel", " Lisbon trip ", "2024-03-01", "2024-03-05"
        )
        illness = await context_service.create_context_event("owner-1", "illness", "Flu", "2024-03-10")
        await context_service.create_context_event("owner-1", "stress", "Exams", "2024-01-01", "2024-01-20")
        await context_service.create_context_event("viewer-1", "travel", "Elsewhere", "2024-03-02")

        events = await context_service.list_context_events(
            "owner-1", start_date=date(2024, 3, 4), end_date=date(2024, 3, 31)
        )

        assert travel.label == "Lisbon trip"
        assert illness.end_date is None
        assert [e.id for e in events] == [travel.id, illness.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [
        ("", "Label", "2024-03-01"),
        ("travel", "  ", "2024-03-01"),
        ("travel", "Trip", "2024-03-05", "2024-03-01"),
    ])
    async def test_create_validation(self, context_service, args):
        """Test blank text and inverted ranges are rejected."""
        with pytest.raises(ValidationError):
            await context_service.create_context_event("owner-1", *args)

    @pytest.mark.asyncio
    async def test_bad_date(self, context_service):
        """Test malformed dates."""
        with pytest.raises(TrackerValidationError):
            await context_service.create_context_event("owner-1", "travel", "Trip", "March 1st")

    @pytest.mark.asyncio
    async def test_update(self, context_service):
        """Test partial updates keep the date range valid."""
        event = await context_service.create_context_event("owner-1", "illness", "Flu", "2024-03-10")

        updated = await context_service.update_context_event(
            event.id, "owner-1", {"end_date": "2024-03-14", "severity": "mild"}
        )

        assert updated.end_date == date(2024, 3, 14)
        assert updated.severity == "mild"
        with pytest.raises(ValidationError):
            await context_service.update_context_event(event.id, "owner-1", {"start_date": "2024-03-20"})
        with pytest.raises(ValidationError):
            await context_service.update_context_event(event.id, "owner-1", {"owner_id": "viewer-1"})

    @pytest.mark.asyncio
    async def test_owner_only(self, context_service):
        """Test other principals cannot see or change an event."""
        event = await context_service.create_context_event("owner-1", "illness", "Flu", "2024-03-10")

        assert await context_service.get_context_event(event.id, "viewer-1") is None
        with pytest.raises(NotFoundError):
            await context_service.update_context_event(event.id, "viewer-1", {"label": "Cold"})
        with pytest.raises(NotFoundError):
            await context_service.archive_context_event(event.id, "viewer-1")

    @pytest.mark.asyncio
    async def test_archive(self, context_service):
        """Test archived events are read-only and hidden from listings."""
        event = await context_service.create_context_event("owner-1", "illness", "Flu", "2024-03-10")

        archived = await context_service.archive_context_event(event.id, "owner-1")

        assert archived.archived_at is not None
        assert await context_service.list_context_events("owner-1") == []
        with pytest.raises(PermissionDeniedError):
            await context_service.update_context_event(event.id, "owner-1", {"label": "Cold"})


class TestInterpretations:
    """Test cases for user-authored interpretations."""

    @pytest.fixture
    def schema(self, factory):
        """Mood tracker schema."""
        return factory.mood_tracker_schema()

    @pytest.mark.asyncio
    async def test_create_and_filter(self, tracker_service, interpretation_service, context_service, schema):
        """Test interpretations can be listed per tracker."""
        mood = await tracker_service.create_tracker_from_schema("owner-1", "Mood", schema)
        energy = await tracker_service.create_tracker_from_schema("owner-1", "Energy", schema)
        event = await context_service.create_context_event("owner-1", "travel", "Trip", "2024-03-01")

        both = await interpretation_service.create_interpretation(
            "owner-1", [mood.id, energy.id, mood.id], "2024-03-01", "Travel dip", "Low while away",
            end_date="2024-03-05", context_event_id=event.id
        )
        only_energy = await interpretation_service.create_interpretation(
            "owner-1", [energy.id], "2024-03-10", "Recovered", "Back to normal"
        )

        assert both.tracker_ids == [mood.id, energy.id]
        assert [i.id for i in await interpretation_service.list_interpretations("owner-1", mood.id)] == [both.id]
        assert {i.id for i in await interpretation_service.list_interpretations("owner-1")} == {
            both.id, only_energy.id
        }

    @pytest.mark.asyncio
    async def test_requires_view_access(self, tracker_service, grant_service, interpretation_service, schema):
        """Test interpretations only reference trackers the author can view."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Mood", schema)

        with pytest.raises(NotFoundError):
            await interpretation_service.create_interpretation(
                "viewer-1", [tracker.id], "2024-03-01", "Mine", "Not mine"
            )

        await grant_service.grant_access(tracker.id, "owner-1", "user", "viewer-1", "viewer")
        interpretation = await interpretation_service.create_interpretation(
            "viewer-1", [tracker.id], "2024-03-01", "Seen", "From the outside"
        )
        assert interpretation.owner_id == "viewer-1"

    @pytest.mark.asyncio
    async def test_foreign_context_event(self, tracker_service, interpretation_service, context_service, schema):
        """Test linking someone else's context event."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Mood", schema)
        event = await context_service.create_context_event("viewer-1", "travel", "Trip", "2024-03-01")

        with pytest.raises(NotFoundError):
            await interpretation_service.create_interpretation(
                "owner-1", [tracker.id], "2024-03-01", "Trip", "Body", context_event_id=event.id
            )

    @pytest.mark.asyncio
    async def test_requires_trackers(self, interpretation_service):
        """Test at least one tracker is required."""
        with pytest.raises(ValidationError):
            await interpretation_service.create_interpretation("owner-1", [], "2024-03-01", "T", "B")

    @pytest.mark.asyncio
    async def test_update_and_archive(self, tracker_service, interpretation_service, schema):
        """Test updates, then archival makes the interpretation read-only."""
        tracker = await tracker_service.create_tracker_from_schema("owner-1", "Mood", schema)
        interpretation = await interpretation_service.create_interpretation(
            "owner-1", [tracker.id], "2024-03-01", "Draft", "Body"
        )

        updated = await interpretation_service.update_interpretation(
            interpretation.id, "owner-1", {"title": "Final"}
        )
        assert updated.title == "Final"
        with pytest.raises(NotFoundError):
            await interpretation_service.update_interpretation(interpretation.id, "viewer-1", {"title": "X"})

        await interpretation_service.archive_interpretation(interpretation.id, "owner-1")
        assert await interpretation_service.list_interpretations("owner-1") == []
        with pytest.raises(PermissionDeniedError):
            await interpretation_service.update_interpretation(interpretation.id, "owner-1", {"title": "Again"})
