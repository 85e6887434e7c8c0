"""Tests for data models."""

import pytest
from datetime import datetime

import pytz
from pydantic import ValidationError

from feedsync.models import (
    CalendarSyncResult, FuzzyMode, ParsedEvent, PlannedOperation, SyncConfiguration, SyncOperationType,
    SyncPlan, SyncStats
)


class TestSyncConfiguration:
    """Tests for SyncConfiguration model."""

    def test_defaults(self):
        """Test default sync configuration values."""
        config = SyncConfiguration()

        assert config.target_timezone == "Europe/Copenhagen"
        assert config.grace_hours == 6
        assert config.max_miss_count == 3
        assert config.fuzzy_threshold == 0.65
        assert config.time_tolerance_seconds == 300
        assert config.fuzzy_mode == FuzzyMode.STRICT
        assert config.respect_cancellation
        assert config.unknown_category_name == "Ukendt"
        assert config.tz.zone == "Europe/Copenhagen"

    def test_invalid_timezone(self):
        """Test that unknown timezones are rejected."""
        with pytest.raises(ValidationError):
            SyncConfiguration(target_timezone="Mars/Olympus")

    def test_threshold_bounds(self):
        """Test that fuzzy threshold must lie within 0..1."""
        with pytest.raises(ValidationError):
            SyncConfiguration(fuzzy_threshold=1.5)

    def test_max_miss_count_positive(self):
        """Test that at least one miss is required before deletion."""
        with pytest.raises(ValidationError):
            SyncConfiguration(max_miss_count=0)


class TestParsedEvent:
    """Tests for ParsedEvent model."""

    def _event(self, **overrides):
        values = dict(
            uid="A1",
            summary="Training",
            start=datetime(2024, 3, 1, 10, 0),
            end=datetime(2024, 3, 1, 11, 0),
            start_date="2024-03-01",
            start_time="11:00:00",
            end_date="2024-03-01",
            end_time="12:00:00",
        )
        values.update(overrides)
        return ParsedEvent(**values)

    def test_naive_datetimes_become_utc(self):
        """Test that naive datetimes are made timezone-aware."""
        event = self._event()

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo == pytz.UTC

    def test_cancellation_flags(self):
        """Test STATUS and METHOD cancellation markers."""
        assert self._event(status="CANCELLED").is_cancelled
        assert self._event(method="cancel").is_cancelled
        assert not self._event(status="TENTATIVE").is_cancelled
        assert not self._event().is_cancelled


class TestSyncPlan:
    """Tests for SyncPlan model."""

    def test_operations_in_execution_order(self):
        """Test that operations are listed creates first, misses last."""
        plan = SyncPlan(
            misses=[PlannedOperation(operation=SyncOperationType.MISS, row_id="m", title="Missed")],
            creates=[PlannedOperation(operation=SyncOperationType.CREATE, title="New")],
        )

        assert [op.operation for op in plan.operations()] == [SyncOperationType.CREATE, SyncOperationType.MISS]
        assert plan.counts()['misses'] == 1
        assert plan.misses[0].display_title == "Missed"


class TestSyncStats:
    """Tests for SyncStats model."""

    def test_response_uses_camel_case(self):
        """Test the HTTP payload shape."""
        stats = SyncStats(event_count=4, events_created=2, events_updated=1, metadata_preserved=1)

        response = stats.to_response()

        assert response['success'] is True
        assert response['eventCount'] == 4
        assert response['eventsCreated'] == 2
        assert response['eventsImmediatelyDeleted'] == 0
        assert response['metadataCreatedDuringBackfill'] == 0
        assert response['failedEvents'] == []
        assert response['message'] == (
            "Successfully synced 4 events. 2 created, 1 updated, 0 restored, 0 soft-deleted, "
            "0 cancelled. 1 manually set categories preserved."
        )

    def test_failures_reported(self):
        """Test that per-row failures are counted and warned about."""
        stats = SyncStats(event_count=1)
        stats.record_failure("Training", "database is locked")

        assert stats.events_failed == 1
        assert stats.to_response()['failedEvents'] == [{'title': "Training", 'error': "database is locked"}]
        assert stats.message.endswith("WARNING: 1 events failed to process.")

    def test_populate_by_name_or_alias(self):
        """Test that stats accept both field names and camelCase aliases."""
        assert SyncStats(eventsCreated=3).events_created == 3
        assert SyncStats(events_created=3).events_created == 3


def test_calendar_result_omits_missing_fields():
    """Test that auto-sync results drop unset optional fields."""
    result = CalendarSyncResult(calendar_id="c1", calendar_name="Team", success=False, error="boom")

    assert result.model_dump(by_alias=True, exclude_none=True) == {
        'calendarId': "c1", 'calendarName': "Team", 'success': False, 'error': "boom",
    }
