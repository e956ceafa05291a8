"""
Pydantic request and response models for the Tracker Studio API.

Update requests accept extra keys so that unsupported or immutable fields
reach the services and are rejected there with a descriptive error.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    ContextEvent,
    ObservationLink,
    PermissionGrant,
    TemplateShareLink,
    Tracker,
    TrackerEntry,
    TrackerInterpretation,
    TrackerReminder,
    TrackerTemplate,
    schema_to_dicts,
)


# Requests

class TemplateCreateRequest(BaseModel):
    """Create a user template, or a global one when the caller is an admin."""
    name: str = Field(..., description="Template name")
    field_schema: List[Dict[str, Any]] = Field(..., description="Field definitions")
    description: Optional[str] = Field(None, description="Template description")
    entry_granularity: Optional[str] = Field(None, description="daily, session, event or range")
    scope: str = Field("user", description="user or global")
    chart_config: Optional[Dict[str, Any]] = Field(None, description="Chart configuration")
    tags: List[str] = Field(default_factory=list, description="Template tags")


class TemplateUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    field_schema: Optional[List[Dict[str, Any]]] = None
    entry_granularity: Optional[str] = None
    chart_config: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


class TemplateDuplicateRequest(BaseModel):
    name: Optional[str] = Field(None, description="Name of the copy; defaults to a conflict-free variant")


class TemplateLockRequest(BaseModel):
    locked: bool = Field(..., description="Whether the template is locked")


class ShareLinkCreateRequest(BaseModel):
    expires_at: Optional[datetime] = Field(None, description="When the link stops working")
    max_uses: Optional[int] = Field(None, description="Maximum number of imports")


class ShareLinkImportRequest(BaseModel):
    name: Optional[str] = Field(None, description="Name of the imported template")


class TrackerCreateRequest(BaseModel):
    """Create a tracker from a template or from an inline schema."""
    template_id: Optional[str] = Field(None, description="Template to snapshot")
    name: Optional[str] = Field(None, description="Tracker name")
    description: Optional[str] = Field(None, description="Tracker description")
    field_schema: Optional[List[Dict[str, Any]]] = Field(None, description="Inline field definitions")
    entry_granularity: Optional[str] = Field(None, description="daily, session, event or range")
    chart_config: Optional[Dict[str, Any]] = None
    icon: Optional[str] = None
    color: Optional[str] = None


class TrackerUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    chart_config: Optional[Dict[str, Any]] = None
    icon: Optional[str] = None
    color: Optional[str] = None


class TrackerReorderRequest(BaseModel):
    tracker_ids: List[str] = Field(..., description="Tracker ids in their new display order")


class EntryCreateRequest(BaseModel):
    entry_date: str = Field(..., description="Entry date, YYYY-MM-DD")
    field_values: Dict[str, Any] = Field(default_factory=dict, description="Values keyed by field id")
    notes: Optional[str] = None
    entry_granularity: Optional[str] = None


class EntryUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    field_values: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class GrantCreateRequest(BaseModel):
    subject_type: str = Field(..., description="user or group")
    subject_id: str = Field(..., description="Profile or group id")
    role: str = Field(..., description="editor, commenter or viewer")


class ObservationLinkCreateRequest(BaseModel):
    observer_user_id: str = Field(..., description="Principal allowed to observe")
    context_type: str = Field(..., description="guardrails_project, team or household")
    context_id: str = Field(..., description="Context the link is scoped to")


class ReminderCreateRequest(BaseModel):
    reminder_kind: str = Field(..., description="entry_prompt or reflection")
    schedule: Optional[Dict[str, Any]] = Field(None, description="time_of_day, days and quiet_hours")
    delivery_channels: Optional[List[str]] = Field(None, description="in_app and/or push")
    is_active: bool = True


class ReminderUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    schedule: Optional[Dict[str, Any]] = None
    delivery_channels: Optional[List[str]] = None
    is_active: Optional[bool] = None


class ContextEventCreateRequest(BaseModel):
    context_type: str
    label: str
    start_date: str
    end_date: Optional[str] = None
    severity: Optional[str] = None
    notes: Optional[str] = None


class ContextEventUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    context_type: Optional[str] = None
    label: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    severity: Optional[str] = None
    notes: Optional[str] = None


class InterpretationCreateRequest(BaseModel):
    tracker_ids: List[str]
    start_date: str
    title: str
    body: str
    end_date: Optional[str] = None
    context_event_id: Optional[str] = None


class InterpretationUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    tracker_ids: Optional[List[str]] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    context_event_id: Optional[str] = None


class InsightsRequest(BaseModel):
    tracker_ids: List[str] = Field(..., description="Trackers to analyse")
    start_date: Optional[str] = None
    end_date: Optional[str] = None


# Responses

class TemplateResponse(BaseModel):
    id: str
    owner_id: Optional[str]
    created_by: str
    name: str
    description: Optional[str]
    field_schema: List[Dict[str, Any]]
    entry_granularity: str
    scope: str
    is_locked: bool
    published_at: Optional[datetime]
    chart_config: Optional[Dict[str, Any]]
    tags: List[str]
    version: int
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]

    @classmethod
    def from_domain(cls, template: TrackerTemplate) -> "TemplateResponse":
        return cls(
            id=template.id,
            owner_id=template.owner_id,
            created_by=template.created_by,
            name=template.name,
            description=template.description,
            field_schema=schema_to_dicts(template.field_schema),
            entry_granularity=template.entry_granularity.value,
            scope=template.scope.value,
            is_locked=template.is_locked,
            published_at=template.published_at,
            chart_config=template.chart_config,
            tags=list(template.tags),
            version=template.version,
            created_at=template.created_at,
            updated_at=template.updated_at,
            archived_at=template.archived_at,
        )


class TrackerResponse(BaseModel):
    id: str
    owner_id: str
    template_id: Optional[str]
    name: str
    description: Optional[str]
    field_schema_snapshot: List[Dict[str, Any]]
    entry_granularity: str
    display_order: int
    chart_config: Optional[Dict[str, Any]]
    icon: Optional[str]
    color: Optional[str]
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]

    @classmethod
    def from_domain(cls, tracker: Tracker) -> "TrackerResponse":
        return cls(
            id=tracker.id,
            owner_id=tracker.owner_id,
            template_id=tracker.template_id,
            name=tracker.name,
            description=tracker.description,
            field_schema_snapshot=schema_to_dicts(tracker.field_schema_snapshot),
            entry_granularity=tracker.entry_granularity.value,
            display_order=tracker.display_order,
            chart_config=tracker.chart_config,
            icon=tracker.icon,
            color=tracker.color,
            created_at=tracker.created_at,
            updated_at=tracker.updated_at,
            archived_at=tracker.archived_at,
        )


class EntryResponse(BaseModel):
    id: str
    tracker_id: str
    user_id: str
    entry_date: date
    field_values: Dict[str, Any]
    notes: Optional[str]
    entry_granularity: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, entry: TrackerEntry) -> "EntryResponse":
        return cls(
            id=entry.id,
            tracker_id=entry.tracker_id,
            user_id=entry.user_id,
            entry_date=entry.entry_date,
            field_values=entry.field_values,
            notes=entry.notes,
            entry_granularity=entry.entry_granularity.value,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


class GrantResponse(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    subject_type: str
    subject_id: str
    role: str
    granted_by: Optional[str]
    created_at: datetime
    revoked_at: Optional[datetime]

    @classmethod
    def from_domain(cls, grant: PermissionGrant) -> "GrantResponse":
        return cls(
            id=grant.id,
            entity_type=grant.entity_type,
            entity_id=grant.entity_id,
            subject_type=grant.subject_type.value,
            subject_id=grant.subject_id,
            role=grant.role.value,
            granted_by=grant.granted_by,
            created_at=grant.created_at,
            revoked_at=grant.revoked_at,
        )


class ObservationLinkResponse(BaseModel):
    id: str
    tracker_id: str
    observer_user_id: str
    context_type: str
    context_id: str
    granted_by: str
    created_at: datetime
    revoked_at: Optional[datetime]

    @classmethod
    def from_domain(cls, link: ObservationLink) -> "ObservationLinkResponse":
        return cls(
            id=link.id,
            tracker_id=link.tracker_id,
            observer_user_id=link.observer_user_id,
            context_type=link.context_type.value,
            context_id=link.context_id,
            granted_by=link.granted_by,
            created_at=link.created_at,
            revoked_at=link.revoked_at,
        )


class ShareLinkResponse(BaseModel):
    id: str
    template_id: str
    created_by: str
    share_token: str
    expires_at: Optional[datetime]
    max_uses: Optional[int]
    use_count: int
    created_at: datetime
    revoked_at: Optional[datetime]

    @classmethod
    def from_domain(cls, link: TemplateShareLink) -> "ShareLinkResponse":
        return cls(
            id=link.id,
            template_id=link.template_id,
            created_by=link.created_by,
            share_token=link.share_token,
            expires_at=link.expires_at,
            max_uses=link.max_uses,
            use_count=link.use_count,
            created_at=link.created_at,
            revoked_at=link.revoked_at,
        )


class ReminderResponse(BaseModel):
    id: str
    tracker_id: str
    owner_id: str
    reminder_kind: str
    schedule: Optional[Dict[str, Any]]
    delivery_channels: List[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, reminder: TrackerReminder) -> "ReminderResponse":
        schedule = None
        if reminder.schedule is not None:
            quiet = reminder.schedule.quiet_hours
            schedule = {
                "time_of_day": reminder.schedule.time_of_day,
                "days": list(reminder.schedule.days),
                "quiet_hours": {"start": quiet.start, "end": quiet.end} if quiet else None,
            }
        return cls(
            id=reminder.id,
            tracker_id=reminder.tracker_id,
            owner_id=reminder.owner_id,
            reminder_kind=reminder.reminder_kind.value,
            schedule=schedule,
            delivery_channels=list(reminder.delivery_channels),
            is_active=reminder.is_active,
            created_at=reminder.created_at,
            updated_at=reminder.updated_at,
        )


class ReminderDecisionResponse(BaseModel):
    reminder_id: str
    should_fire: bool
    reason: str


class ContextEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    context_type: str
    label: str
    start_date: date
    end_date: Optional[date]
    severity: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]

    @classmethod
    def from_domain(cls, event: ContextEvent) -> "ContextEventResponse":
        return cls.model_validate(event)


class InterpretationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    tracker_ids: List[str]
    start_date: date
    end_date: Optional[date]
    title: str
    body: str
    context_event_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]

    @classmethod
    def from_domain(cls, interpretation: TrackerInterpretation) -> "InterpretationResponse":
        return cls.model_validate(interpretation)


class PermissionsResponse(BaseModel):
    can_view: bool
    can_edit: bool
    can_manage: bool
    is_owner: bool
    role: Optional[str]
    access_source: str
