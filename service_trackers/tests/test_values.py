"""
Unit tests for typed entry field values.
"""

from datetime import date

import pytest

from service_trackers.app.domain.models import schema_from_dicts
from service_trackers.app.tracker.validation import TrackerValidationError
from service_trackers.app.tracker.values import (
    BooleanValue,
    DateValue,
    NullValue,
    NumberValue,
    RatingValue,
    TextValue,
    numeric_value,
    parse_entry_values,
    serialize_entry_values,
)


class TestFieldValues:
    """Test cases for parsing raw field values into typed values."""

    @pytest.fixture
    def schema(self, factory):
        """Schema with one field of every type."""
        return schema_from_dicts(factory.all_field_types_schema())

    def test_parse_every_type(self, schema):
        """Test each field type maps to its value class."""
        values = parse_entry_values(schema, {
            "note": "slept badly",
            "count": 3,
            "done": True,
            "score": 4,
            "when": "2024-03-05",
        })

        assert values["note"] == TextValue("slept badly")
        assert values["count"] == NumberValue(3)
        assert values["done"] == BooleanValue(True)
        assert values["score"] == RatingValue(4)
        assert values["when"] == DateValue(date(2024, 3, 5))

    def test_null_values(self, schema):
        """Test cleared optional fields become NullValue."""
        values = parse_entry_values(schema, {"note": None})

        assert values == {"note": NullValue()}

    def test_serialize(self, schema):
        """Test typed values serialize back to plain JSON values."""
        values = parse_entry_values(schema, {"when": "2024-03-05", "done": False, "note": None})

        assert serialize_entry_values(values) == {"when": "2024-03-05", "done": False, "note": None}

    def test_parse_rejects_invalid(self, schema):
        """Test parsing validates first."""
        with pytest.raises(TrackerValidationError):
            parse_entry_values(schema, {"score": 9})

    def test_numeric_value(self):
        """Test numeric readings for analytics."""
        assert numeric_value(NumberValue(2.5)) == 2.5
        assert numeric_value(RatingValue(4)) == 4
        assert numeric_value(TextValue("4")) is None
        assert numeric_value(BooleanValue(True)) is None
        assert numeric_value(NullValue()) is None
