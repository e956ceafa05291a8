"""
Validation rules for templates, trackers and entries.

All validation runs before any write. Field-level failures raise
``TrackerValidationError`` carrying the field id, label, type and the
offending value so that callers can render precise messages.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from shared.errors import ValidationError

from ..domain.models import EntryGranularity, FieldDefinition, FieldType, FieldValidation

VALID_FIELD_TYPES = [t.value for t in FieldType]
VALID_GRANULARITIES = [g.value for g in EntryGranularity]

RATING_MIN = 1
RATING_MAX = 5

_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

SchemaInput = Iterable[Union[FieldDefinition, Mapping[str, Any]]]


def _safe_value(value: Any) -> Any:
    """Render a value so it survives JSON serialization in error details."""
    if isinstance(value, float) and not math.isfinite(value):
        return repr(value)
    if isinstance(value, str):
        return value[:50]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return repr(value)[:50]


class TrackerValidationError(ValidationError):
    """Validation failure with field context."""

    def __init__(
        self,
        message: str,
        field_id: Optional[str] = None,
        field_label: Optional[str] = None,
        field_type: Optional[str] = None,
        value: Any = None,
        kind: str = "field",
    ):
        details: Dict[str, Any] = {"kind": kind}
        if field_id is not None:
            details["field_id"] = field_id
        if field_label is not None:
            details["field_label"] = field_label
        if field_type is not None:
            details["field_type"] = field_type
        if value is not None:
            details["value"] = _safe_value(value)
        super().__init__(message, details)
        self.field_id = field_id
        self.field_label = field_label
        self.field_type = field_type
        self.value = value


def _field_ref(field_id: str, label: Optional[str] = None) -> str:
    if label:
        return f'Field "{label}" ({field_id})'
    return f'Field "{field_id}"'


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def _is_number(value: Any) -> bool:
    """True for finite ints and floats. Booleans are not numbers."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or value.strip() == ""


def _coerce_field(item: Union[FieldDefinition, Mapping[str, Any]]) -> FieldDefinition:
    if isinstance(item, FieldDefinition):
        return item
    if isinstance(item, Mapping):
        rules = item.get("validation")
        if rules is not None and not isinstance(rules, Mapping):
            field_id = item.get("id") if isinstance(item.get("id"), str) else None
            label = item.get("label") if isinstance(item.get("label"), str) else None
            ref = _field_ref(field_id, label) if field_id else "Field definition"
            raise TrackerValidationError(
                f"{ref}: validation must be an object",
                field_id=field_id, field_label=label, value=rules, kind="schema"
            )
        return FieldDefinition.from_dict(dict(item))
    raise TrackerValidationError("Each field definition must be an object", kind="schema")


# Schema

def validate_field_schema(field_schema: Optional[SchemaInput]) -> List[FieldDefinition]:
    """Validate an ordered field list and return it as ``FieldDefinition`` objects."""
    if field_schema is None or isinstance(field_schema, (str, bytes, Mapping)):
        raise TrackerValidationError("Field schema must be a non-empty array", kind="schema")

    fields = [_coerce_field(item) for item in field_schema]
    if not fields:
        raise TrackerValidationError("Field schema must be a non-empty array", kind="schema")

    seen_ids = set()
    for field_def in fields:
        if _is_blank(field_def.id):
            raise TrackerValidationError(
                "Field ID is required and must be non-empty",
                field_id=field_def.id, field_label=field_def.label, field_type=field_def.type,
                kind="schema"
            )

        if field_def.id in seen_ids:
            raise TrackerValidationError(
                f"Duplicate field ID: {field_def.id}",
                field_id=field_def.id, field_label=field_def.label, field_type=field_def.type,
                kind="schema"
            )
        seen_ids.add(field_def.id)

        if _is_blank(field_def.label):
            raise TrackerValidationError(
                f'Field "{field_def.id}": label is required and must be non-empty',
                field_id=field_def.id, field_label=field_def.label, field_type=field_def.type,
                kind="schema"
            )

        if field_def.type not in VALID_FIELD_TYPES:
            raise TrackerValidationError(
                f'{_field_ref(field_def.id, field_def.label)}: type must be one of: '
                f'{", ".join(VALID_FIELD_TYPES)}. Got: {field_def.type}',
                field_id=field_def.id, field_label=field_def.label, field_type=field_def.type,
                kind="schema"
            )

        if field_def.validation is not None:
            _validate_validation_block(field_def)

        if field_def.has_default:
            validate_field_value(field_def.id, field_def.type, field_def.default, label=field_def.label)

    return fields


def _validate_validation_block(field_def: FieldDefinition):
    rules: FieldValidation = field_def.validation
    ref = _field_ref(field_def.id, field_def.label)

    def fail(message: str):
        raise TrackerValidationError(
            f"{ref}: {message}",
            field_id=field_def.id, field_label=field_def.label, field_type=field_def.type,
            kind="schema"
        )

    if not isinstance(rules.required, bool):
        fail("required must be a boolean")
    for key in ("min", "max"):
        bound = getattr(rules, key)
        if bound is not None and not _is_number(bound):
            fail(f"{key} must be a number")
    for key in ("min_length", "max_length"):
        bound = getattr(rules, key)
        if bound is not None and (isinstance(bound, bool) or not isinstance(bound, int) or bound < 0):
            fail(f"{key} must be a non-negative integer")

    if field_def.type in (FieldType.NUMBER.value, FieldType.RATING.value):
        if rules.min is not None and rules.max is not None and rules.min > rules.max:
            fail("min must be <= max")
        if field_def.type == FieldType.RATING.value:
            if rules.min is not None and rules.min < RATING_MIN:
                fail(f"rating min must be >= {RATING_MIN}")
            if rules.max is not None and rules.max > RATING_MAX:
                fail(f"rating max must be <= {RATING_MAX}")

    if field_def.type == FieldType.TEXT.value:
        if (rules.min_length is not None and rules.max_length is not None
                and rules.min_length > rules.max_length):
            fail("min_length must be <= max_length")
        if rules.pattern is not None:
            if not isinstance(rules.pattern, str):
                fail("pattern must be a valid regex")
            try:
                re.compile(rules.pattern)
            except re.error:
                fail("pattern must be a valid regex")


# Values

def validate_field_value(field_id: str, field_type: str, value: Any, label: Optional[str] = None):
    """Type-check a single value against its field type."""
    ref = _field_ref(field_id, label)

    def fail(message: str):
        raise TrackerValidationError(
            f"{ref}: {message}",
            field_id=field_id, field_label=label, field_type=field_type, value=value
        )

    if field_type == FieldType.TEXT.value:
        if not isinstance(value, str):
            fail(f"value must be a string, got {_describe(value)}")
    elif field_type == FieldType.NUMBER.value:
        if not _is_number(value):
            fail(f"value must be a finite number, got {_describe(value)}")
    elif field_type == FieldType.BOOLEAN.value:
        if not isinstance(value, bool):
            fail(f"value must be a boolean, got {_describe(value)}")
    elif field_type == FieldType.RATING.value:
        if not _is_number(value) or value < RATING_MIN or value > RATING_MAX:
            shown = value if _is_number(value) else _describe(value)
            fail(f"value must be a number between {RATING_MIN} and {RATING_MAX}, got {shown}")
    elif field_type == FieldType.DATE.value:
        if not isinstance(value, str):
            fail(f"value must be a date string, got {_describe(value)}")
        if not _DATE_PATTERN.fullmatch(value):
            fail(f'value must be a valid date (YYYY-MM-DD), got "{value}"')
        try:
            date.fromisoformat(value)
        except ValueError:
            fail(f'value must be a valid date (YYYY-MM-DD), got "{value}"')
    else:
        fail(f"unknown field type: {field_type}")


def validate_field_constraints(field_def: FieldDefinition, value: Any):
    """Check declared constraints. Assumes the value already type-checked."""
    rules = field_def.validation
    if rules is None:
        return
    ref = _field_ref(field_def.id, field_def.label)

    def fail(message: str):
        raise TrackerValidationError(
            f"{ref}: {message}",
            field_id=field_def.id, field_label=field_def.label, field_type=field_def.type, value=value
        )

    if field_def.type in (FieldType.NUMBER.value, FieldType.RATING.value):
        if rules.min is not None and value < rules.min:
            fail(f"value {value} must be >= {rules.min}")
        if rules.max is not None and value > rules.max:
            fail(f"value {value} must be <= {rules.max}")

    if field_def.type == FieldType.TEXT.value:
        if rules.min_length is not None and len(value) < rules.min_length:
            fail(f"length {len(value)} must be >= {rules.min_length} characters")
        if rules.max_length is not None and len(value) > rules.max_length:
            fail(f"length {len(value)} must be <= {rules.max_length} characters")
        if rules.pattern and not re.search(rules.pattern, value):
            fail(f"value does not match required pattern {rules.pattern}")


def validate_entry_values(schema: List[FieldDefinition], field_values: Mapping[str, Any]):
    """Validate a complete field-value map against a tracker's schema snapshot.

    Required fields must be present and non-null, every provided key must be a
    known field id, and each non-null value must type-check and satisfy its
    declared constraints.
    """
    if not isinstance(field_values, Mapping):
        raise TrackerValidationError("Field values must be an object", kind="entry")

    fields_by_id = {f.id: f for f in schema}

    for field_def in schema:
        if field_def.required and field_def.id not in field_values:
            raise TrackerValidationError(
                f'Required field "{field_def.label}" ({field_def.id}) is missing',
                field_id=field_def.id, field_label=field_def.label, field_type=field_def.type
            )

    for field_id, value in field_values.items():
        field_def = fields_by_id.get(field_id)
        if field_def is None:
            raise TrackerValidationError(
                f"Unknown field: {field_id}. Available fields: {', '.join(fields_by_id)}",
                field_id=field_id, value=value
            )

        if value is None:
            if field_def.required:
                raise TrackerValidationError(
                    f'Required field "{field_def.label}" ({field_id}) cannot be null',
                    field_id=field_id, field_label=field_def.label, field_type=field_def.type
                )
            continue

        validate_field_value(field_id, field_def.type, value, label=field_def.label)
        validate_field_constraints(field_def, value)


# Scalars

def validate_entry_granularity(granularity: Union[str, EntryGranularity]) -> EntryGranularity:
    if isinstance(granularity, EntryGranularity):
        return granularity
    if granularity not in VALID_GRANULARITIES:
        raise TrackerValidationError(
            f"Entry granularity must be one of: {', '.join(VALID_GRANULARITIES)}",
            value=granularity, kind="granularity"
        )
    return EntryGranularity(granularity)


def validate_entry_date(entry_date: Union[str, date]) -> date:
    """Accept a ``date`` or a ``YYYY-MM-DD`` string and return the date."""
    if isinstance(entry_date, datetime):
        return entry_date.date()
    if isinstance(entry_date, date):
        return entry_date
    if not isinstance(entry_date, str) or not _DATE_PATTERN.fullmatch(entry_date):
        raise TrackerValidationError(
            "Entry date must be in format YYYY-MM-DD", value=entry_date, kind="entry_date"
        )
    try:
        return date.fromisoformat(entry_date)
    except ValueError:
        raise TrackerValidationError(
            "Entry date must be a valid date", value=entry_date, kind="entry_date"
        )


def validate_name(name: Any, what: str = "Template") -> str:
    if _is_blank(name):
        raise TrackerValidationError(f"{what} name is required and must be non-empty", kind="name")
    return name


def validate_create_template_input(
    name: Any,
    field_schema: Optional[SchemaInput],
    entry_granularity: Optional[Union[str, EntryGranularity]] = None,
) -> List[FieldDefinition]:
    validate_name(name, "Template")
    if entry_granularity:
        validate_entry_granularity(entry_granularity)
    return validate_field_schema(field_schema)


def validate_create_tracker_from_schema_input(
    name: Any,
    field_schema: Optional[SchemaInput],
    entry_granularity: Optional[Union[str, EntryGranularity]] = None,
) -> List[FieldDefinition]:
    validate_name(name, "Tracker")
    if entry_granularity:
        validate_entry_granularity(entry_granularity)
    return validate_field_schema(field_schema)
