"""
Typed entry field values.

Raw field-value maps are parsed once at the boundary into one value object per
declared field type. Consumers work with the typed values and never re-check
types ad hoc.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Union

from ..domain.models import FieldDefinition, FieldType
from .validation import validate_entry_values


@dataclass(frozen=True)
class TextValue:
    value: str
    kind = FieldType.TEXT


@dataclass(frozen=True)
class NumberValue:
    value: float
    kind = FieldType.NUMBER


@dataclass(frozen=True)
class BooleanValue:
    value: bool
    kind = FieldType.BOOLEAN


@dataclass(frozen=True)
class RatingValue:
    value: float
    kind = FieldType.RATING


@dataclass(frozen=True)
class DateValue:
    value: date
    kind = FieldType.DATE


@dataclass(frozen=True)
class NullValue:
    """Explicitly cleared optional field."""
    value: None = None
    kind = None


FieldValue = Union[TextValue, NumberValue, BooleanValue, RatingValue, DateValue, NullValue]

_CONSTRUCTORS = {
    FieldType.TEXT.value: TextValue,
    FieldType.NUMBER.value: NumberValue,
    FieldType.BOOLEAN.value: BooleanValue,
    FieldType.RATING.value: RatingValue,
}


def to_field_value(field_def: FieldDefinition, raw: Any) -> FieldValue:
    """Wrap an already validated raw value."""
    if raw is None:
        return NullValue()
    if field_def.type == FieldType.DATE.value:
        return DateValue(date.fromisoformat(raw))
    return _CONSTRUCTORS[field_def.type](raw)


def parse_entry_values(schema: List[FieldDefinition], raw: Mapping[str, Any]) -> Dict[str, FieldValue]:
    """Validate a raw field-value map and convert it to typed values."""
    validate_entry_values(schema, raw)
    fields_by_id = {f.id: f for f in schema}
    return {field_id: to_field_value(fields_by_id[field_id], value) for field_id, value in raw.items()}


def serialize_field_value(value: FieldValue) -> Any:
    if isinstance(value, DateValue):
        return value.value.isoformat()
    return value.value


def serialize_entry_values(values: Mapping[str, FieldValue]) -> Dict[str, Any]:
    """Plain JSON form used for storage and API responses."""
    return {field_id: serialize_field_value(value) for field_id, value in values.items()}


def numeric_value(value: FieldValue):
    """Numeric reading of a value for analytics, None when not numeric."""
    if isinstance(value, (NumberValue, RatingValue)):
        return value.value
    return None
