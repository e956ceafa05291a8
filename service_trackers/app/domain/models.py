"""
Domain data models for Tracker Studio.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FieldType(str, Enum):
    """Tracker field types."""
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    RATING = "rating"
    DATE = "date"


class EntryGranularity(str, Enum):
    """Entry granularity. Only daily allows a single entry per date."""
    DAILY = "daily"
    SESSION = "session"
    EVENT = "event"
    RANGE = "range"


class TemplateScope(str, Enum):
    """Template scope."""
    USER = "user"
    GLOBAL = "global"


class PermissionRole(str, Enum):
    """Grantable roles, ordered owner > editor > commenter > viewer."""
    OWNER = "owner"
    EDITOR = "editor"
    COMMENTER = "commenter"
    VIEWER = "viewer"


OBSERVER_ROLE = "observer"


class SubjectType(str, Enum):
    """Grant subject types."""
    USER = "user"
    GROUP = "group"


class ObservationContextType(str, Enum):
    """Contexts an observation link can be scoped to."""
    GUARDRAILS_PROJECT = "guardrails_project"
    TEAM = "team"
    HOUSEHOLD = "household"


class AccessSource(str, Enum):
    """Where a permission decision came from."""
    OWNERSHIP = "ownership"
    GRANT = "grant"
    OBSERVATION = "observation"
    ADMIN = "admin"
    SCOPE = "scope"
    NONE = "none"


class EntityType(str, Enum):
    """Project-scoped entity types resolved with a project-role ceiling."""
    TRACK = "track"
    SUBTRACK = "subtrack"


class ReminderKind(str, Enum):
    """Reminder kinds."""
    ENTRY_PROMPT = "entry_prompt"
    REFLECTION = "reflection"


@dataclass
class FieldValidation:
    """Validation constraints for a single field."""
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["FieldValidation"]:
        if data is None:
            return None
        return cls(
            required=data.get("required", False),
            min=data.get("min"),
            max=data.get("max"),
            min_length=data.get("min_length", data.get("minLength")),
            max_length=data.get("max_length", data.get("maxLength")),
            pattern=data.get("pattern"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"required": self.required}
        for key in ("min", "max", "min_length", "max_length", "pattern"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


_MISSING = object()


@dataclass
class FieldDefinition:
    """One field of a template or tracker schema.

    ``type`` is kept as the raw string so that schema validation can report
    unsupported types instead of failing during parsing.
    """
    id: str
    label: str
    type: str
    validation: Optional[FieldValidation] = None
    default: Any = _MISSING
    description: Optional[str] = None
    unit: Optional[str] = None

    @property
    def required(self) -> bool:
        return bool(self.validation and self.validation.required)

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        field_type = data.get("type")
        if isinstance(field_type, Enum):
            field_type = field_type.value
        return cls(
            id=data.get("id"),
            label=data.get("label"),
            type=field_type,
            validation=FieldValidation.from_dict(data.get("validation")),
            default=data["default"] if "default" in data else _MISSING,
            description=data.get("description"),
            unit=data.get("unit"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "label": self.label, "type": self.type}
        if self.validation is not None:
            data["validation"] = self.validation.to_dict()
        if self.has_default:
            data["default"] = copy.deepcopy(self.default)
        if self.description is not None:
            data["description"] = self.description
        if self.unit is not None:
            data["unit"] = self.unit
        return data


def schema_to_dicts(schema: List[FieldDefinition]) -> List[Dict[str, Any]]:
    return [f.to_dict() for f in schema]


def schema_from_dicts(data: List[Dict[str, Any]]) -> List[FieldDefinition]:
    return [FieldDefinition.from_dict(item) for item in data]


def snapshot_schema(schema: List[FieldDefinition]) -> List[FieldDefinition]:
    """Copy a schema by value. Trackers keep this copy forever."""
    return copy.deepcopy(schema)


@dataclass
class TrackerTemplate:
    """Structure-only tracker definition. Never holds data."""
    id: str
    owner_id: Optional[str]
    created_by: str
    name: str
    field_schema: List[FieldDefinition]
    description: Optional[str] = None
    entry_granularity: EntryGranularity = EntryGranularity.DAILY
    scope: TemplateScope = TemplateScope.USER
    is_locked: bool = False
    published_at: Optional[datetime] = None
    chart_config: Optional[Dict[str, Any]] = None
    tags: List[str] = field(default_factory=list)
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    archived_at: Optional[datetime] = None

    @property
    def is_global(self) -> bool:
        return self.scope == TemplateScope.GLOBAL


@dataclass
class Tracker:
    """A live, owned tracker with an immutable schema snapshot."""
    id: str
    owner_id: str
    name: str
    field_schema_snapshot: List[FieldDefinition]
    template_id: Optional[str] = None
    description: Optional[str] = None
    entry_granularity: EntryGranularity = EntryGranularity.DAILY
    display_order: int = 0
    chart_config: Optional[Dict[str, Any]] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    archived_at: Optional[datetime] = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


@dataclass
class TrackerEntry:
    """One data record for a tracker."""
    id: str
    tracker_id: str
    user_id: str
    entry_date: date
    field_values: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    entry_granularity: EntryGranularity = EntryGranularity.DAILY
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class PermissionGrant:
    """Revocable share of a role to a user or group."""
    id: str
    entity_type: str
    entity_id: str
    subject_type: SubjectType
    subject_id: str
    role: PermissionRole
    granted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass(frozen=True)
class ObservationContext:
    """Context an observation-aware call arrived through."""
    type: ObservationContextType
    id: str


@dataclass
class ObservationLink:
    """Consent-based, context-scoped, read-only access to a tracker."""
    id: str
    tracker_id: str
    observer_user_id: str
    context_type: ObservationContextType
    context_id: str
    granted_by: str
    created_at: datetime = field(default_factory=utc_now)
    revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def matches(self, context: ObservationContext) -> bool:
        return self.context_type == context.type and self.context_id == context.id


@dataclass
class QuietHours:
    start: str = "22:00"
    end: str = "07:00"


@dataclass
class ReminderSchedule:
    """When a reminder may fire. Empty ``days`` means every day."""
    time_of_day: Optional[str] = None
    days: List[str] = field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None


@dataclass
class TrackerReminder:
    id: str
    tracker_id: str
    owner_id: str
    reminder_kind: ReminderKind
    schedule: Optional[ReminderSchedule] = None
    delivery_channels: List[str] = field(default_factory=lambda: ["in_app"])
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class TemplateShareLink:
    """Tokenized link that imports an owned copy of a template."""
    id: str
    template_id: str
    created_by: str
    share_token: str
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    use_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    revoked_at: Optional[datetime] = None


@dataclass
class ContextEvent:
    """Life-state annotation over a date range. Never gates permissions."""
    id: str
    owner_id: str
    context_type: str
    label: str
    start_date: date
    end_date: Optional[date] = None
    severity: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    archived_at: Optional[datetime] = None


@dataclass
class TrackerInterpretation:
    """User-authored reflection anchored to trackers and a date range."""
    id: str
    owner_id: str
    tracker_ids: List[str]
    start_date: date
    title: str
    body: str
    end_date: Optional[date] = None
    context_event_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    archived_at: Optional[datetime] = None
