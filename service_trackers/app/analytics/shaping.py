"""
Analytics data shaping.

Pure functions that turn raw tracker entries into chart-ready structures.
Where several entries share a date, the most recently updated one wins.
Outputs are plain JSON-compatible dicts so that they can be cached as is.
"""

import calendar
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import ValidationError

from ..domain.models import ContextEvent, FieldDefinition, FieldType, TrackerEntry

NUMERIC_FIELD_TYPES = (FieldType.NUMBER.value, FieldType.RATING.value, FieldType.BOOLEAN.value)

CONTEXT_WINDOW_DAYS = 30


def is_numeric_field_type(field_type: str) -> bool:
    return field_type in NUMERIC_FIELD_TYPES


def extract_numeric_value(value: Any, field_type: str) -> Optional[float]:
    if value is None:
        return None
    if field_type == FieldType.BOOLEAN.value:
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        return None
    if field_type in (FieldType.NUMBER.value, FieldType.RATING.value):
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


def get_numeric_fields(schema: List[FieldDefinition]) -> List[FieldDefinition]:
    return [f for f in schema if is_numeric_field_type(f.type)]


def _in_range(entry_date: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and entry_date < start:
        return False
    if end is not None and entry_date > end:
        return False
    return True


def _filter(entries: Iterable[TrackerEntry], start: Optional[date], end: Optional[date]) -> List[TrackerEntry]:
    return [e for e in entries if _in_range(e.entry_date, start, end)]


def _latest_per_date(entries: Iterable[TrackerEntry]) -> Dict[date, TrackerEntry]:
    by_date: Dict[date, TrackerEntry] = {}
    for entry in entries:
        existing = by_date.get(entry.entry_date)
        if existing is None or entry.updated_at > existing.updated_at:
            by_date[entry.entry_date] = entry
    return by_date


def _field_type(field: Optional[FieldDefinition]) -> str:
    return field.type if field is not None else FieldType.NUMBER.value


def process_time_series_data(entries: List[TrackerEntry], field_id: str,
                             start: Optional[date] = None, end: Optional[date] = None,
                             field: Optional[FieldDefinition] = None) -> List[Dict[str, Any]]:
    field_type = _field_type(field)
    if not is_numeric_field_type(field_type):
        return []

    by_date = _latest_per_date(_filter(entries, start, end))
    return [
        {
            "date": day.isoformat(),
            "value": extract_numeric_value(entry.field_values.get(field_id), field_type),
            "entry_id": entry.id,
            "notes": entry.notes or None,
        }
        for day, entry in sorted(by_date.items())
    ]


def _numeric_values(entries: List[TrackerEntry], field_id: str, field_type: str) -> List[float]:
    values = []
    for _, entry in sorted(_latest_per_date(entries).items()):
        value = extract_numeric_value(entry.field_values.get(field_id), field_type)
        if value is not None:
            values.append(value)
    return values


def calculate_aggregated_stats(entries: List[TrackerEntry], field_id: str,
                               start: Optional[date] = None, end: Optional[date] = None,
                               field: Optional[FieldDefinition] = None) -> Dict[str, Any]:
    filtered = _filter(entries, start, end)
    field_type = _field_type(field)
    stats: Dict[str, Any] = {
        "average": None,
        "median": None,
        "min": None,
        "max": None,
        "count": 0,
        "total_entries": len(filtered),
        "start_date": start.isoformat() if start else None,
        "end_date": end.isoformat() if end else None,
    }
    if not is_numeric_field_type(field_type):
        return stats

    values = _numeric_values(filtered, field_id, field_type)
    if not values:
        return stats

    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        median = (ordered[middle - 1] + ordered[middle]) / 2
    else:
        median = ordered[middle]

    stats.update(
        average=round(sum(values) / len(values), 2),
        median=round(median, 2),
        min=ordered[0],
        max=ordered[-1],
        count=len(values),
    )
    return stats


def _months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def process_calendar_heatmap_data(entries: List[TrackerEntry], field_id: str, months: int = 6,
                                  field: Optional[FieldDefinition] = None,
                                  today: Optional[date] = None) -> List[Dict[str, Any]]:
    """One point per day over the last ``months`` months."""
    end = today or date.today()
    start = _months_before(end, months)
    field_type = _field_type(field)

    points = []
    for day, entry in sorted(_latest_per_date(_filter(entries, start, end)).items()):
        raw = entry.field_values.get(field_id)
        if field_type == FieldType.BOOLEAN.value:
            value: Any = raw is True
        elif field_type in (FieldType.NUMBER.value, FieldType.RATING.value):
            value = extract_numeric_value(raw, field_type)
        else:
            value = None
        points.append({"date": day.isoformat(), "value": value, "count": 1, "entry_id": entry.id})
    return points


def process_distribution_data(entries: List[TrackerEntry], field_id: str,
                              start: Optional[date] = None, end: Optional[date] = None,
                              field: Optional[FieldDefinition] = None) -> List[Dict[str, Any]]:
    """Histogram buckets. Ratings and booleans bucket by integer, numbers by one decimal."""
    field_type = _field_type(field)
    if not is_numeric_field_type(field_type):
        return []

    values = _numeric_values(_filter(entries, start, end), field_id, field_type)
    if not values:
        return []

    frequency: Dict[float, int] = {}
    for value in values:
        if field_type in (FieldType.RATING.value, FieldType.BOOLEAN.value):
            key = float(round(value))
        else:
            key = round(value, 1)
        frequency[key] = frequency.get(key, 0) + 1

    total = len(values)
    return [
        {"value": value, "count": count, "percentage": round(count / total * 100, 1)}
        for value, count in sorted(frequency.items())
    ]


def process_entry_frequency_data(entries: List[TrackerEntry], start: Optional[date] = None,
                                 end: Optional[date] = None) -> List[Dict[str, Any]]:
    """Entry counts per ISO week, oldest week first."""
    weeks: Dict[tuple, int] = {}
    for entry in _filter(entries, start, end):
        iso_year, iso_week, _ = entry.entry_date.isocalendar()
        weeks[(iso_year, iso_week)] = weeks.get((iso_year, iso_week), 0) + 1

    return [
        {
            "week": f"{iso_year}-W{iso_week:02d}",
            "week_start": date.fromisocalendar(iso_year, iso_week, 1).isoformat(),
            "count": count,
            "has_entry": count > 0,
        }
        for (iso_year, iso_week), count in sorted(weeks.items())
    ]


def process_multi_field_data(entries: List[TrackerEntry], field_ids: List[str],
                             schema: List[FieldDefinition],
                             start: Optional[date] = None, end: Optional[date] = None) -> List[Dict[str, Any]]:
    fields_by_id = {f.id: f for f in schema}
    numeric_ids = [fid for fid in field_ids if fid in fields_by_id and is_numeric_field_type(fields_by_id[fid].type)]

    return [
        {
            "date": day.isoformat(),
            "fields": {
                fid: extract_numeric_value(entry.field_values.get(fid), fields_by_id[fid].type)
                for fid in numeric_ids
            },
        }
        for day, entry in sorted(_latest_per_date(_filter(entries, start, end)).items())
    ]


def get_context_comparison_data(entries: List[TrackerEntry], field_id: str, event: ContextEvent,
                                field: Optional[FieldDefinition] = None) -> Dict[str, Any]:
    """Stats for the 30 days before, the span of, and the 30 days after a context event."""
    if event.end_date is None:
        raise ValidationError(
            "Context event must have an end date for comparison",
            {"kind": "context_comparison", "event_id": event.id}
        )

    before_start = event.start_date - timedelta(days=CONTEXT_WINDOW_DAYS)
    before_end = event.start_date - timedelta(days=1)
    after_start = event.end_date + timedelta(days=1)
    after_end = after_start + timedelta(days=CONTEXT_WINDOW_DAYS)

    return {
        "before": calculate_aggregated_stats(entries, field_id, before_start, before_end, field),
        "during": calculate_aggregated_stats(entries, field_id, event.start_date, event.end_date, field),
        "after": calculate_aggregated_stats(entries, field_id, after_start, after_end, field),
        "context_event": {
            "id": event.id,
            "label": event.label,
            "type": event.context_type,
            "start_date": event.start_date.isoformat(),
            "end_date": event.end_date.isoformat(),
        },
    }
