"""
In-memory store for local development and tests.

Rows are copied on the way in and on the way out, so callers never share
mutable state with the store. An ``asyncio.Lock`` makes the daily-entry
uniqueness check and the share-link compare-and-set atomic.
"""

import asyncio
import copy
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from shared.errors import ConflictError
from shared.logging import get_logger

from ..domain.models import (
    ContextEvent,
    EntryGranularity,
    ObservationContext,
    ObservationLink,
    PermissionGrant,
    PermissionRole,
    SubjectType,
    TemplateScope,
    TemplateShareLink,
    Tracker,
    TrackerEntry,
    TrackerInterpretation,
    TrackerReminder,
    TrackerTemplate,
)
from .base import EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository


class InMemoryStore(EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository):
    """Dict-backed implementation of every collaborator interface."""

    def __init__(self):
        self.logger = get_logger("trackers.store.memory")
        self._lock = asyncio.Lock()

        self.templates: Dict[str, TrackerTemplate] = {}
        self.trackers: Dict[str, Tracker] = {}
        self.entries: Dict[str, TrackerEntry] = {}
        self.grants: Dict[str, PermissionGrant] = {}
        self.observation_links: Dict[str, ObservationLink] = {}
        self.reminders: Dict[str, TrackerReminder] = {}
        self.share_links: Dict[str, TemplateShareLink] = {}
        self.context_events: Dict[str, ContextEvent] = {}
        self.interpretations: Dict[str, TrackerInterpretation] = {}

        # Directory data
        self.profiles: Dict[str, Optional[str]] = {}
        self.group_members: Dict[str, Set[str]] = {}
        self.admins: Set[str] = set()

        # Project data
        self.entity_projects: Dict[Tuple[str, str], str] = {}
        self.entity_creators: Dict[Tuple[str, str], str] = {}
        self.project_roles: Dict[Tuple[str, str], PermissionRole] = {}
        self.creator_revocations: Set[Tuple[str, str, str]] = set()

    # Seeding helpers

    def add_profile(self, principal_id: str, profile_id: Optional[str]):
        self.profiles[principal_id] = profile_id

    def add_group_member(self, group_id: str, principal_id: str):
        self.group_members.setdefault(principal_id, set()).add(group_id)

    def set_admin(self, principal_id: str, is_admin: bool = True):
        if is_admin:
            self.admins.add(principal_id)
        else:
            self.admins.discard(principal_id)

    def add_project_entity(self, entity_type: str, entity_id: str, project_id: str,
                           created_by: Optional[str] = None):
        self.entity_projects[(entity_type, entity_id)] = project_id
        if created_by:
            self.entity_creators[(entity_type, entity_id)] = created_by

    def set_project_role(self, project_id: str, principal_id: str, role: Optional[PermissionRole]):
        if role is None:
            self.project_roles.pop((project_id, principal_id), None)
        else:
            self.project_roles[(project_id, principal_id)] = PermissionRole(role)

    def revoke_creator_rights(self, entity_type: str, entity_id: str, creator_id: str):
        self.creator_revocations.add((entity_type, entity_id, creator_id))

    def restore_creator_rights(self, entity_type: str, entity_id: str, creator_id: str):
        self.creator_revocations.discard((entity_type, entity_id, creator_id))

    # EntitlementStore

    def _entity(self, entity_id: str, entity_type: str):
        if entity_type == "template":
            return self.templates.get(entity_id)
        if entity_type == "tracker":
            return self.trackers.get(entity_id)
        return None

    async def get_owner(self, entity_id: str, entity_type: str = "tracker") -> Optional[str]:
        entity = self._entity(entity_id, entity_type)
        return entity.owner_id if entity else None

    async def get_archival_state(self, entity_id: str, entity_type: str = "tracker") -> Optional[datetime]:
        entity = self._entity(entity_id, entity_type)
        return entity.archived_at if entity else None

    async def entity_exists(self, entity_id: str, entity_type: str = "tracker") -> bool:
        return self._entity(entity_id, entity_type) is not None

    async def list_active_grants(self, entity_type: str, entity_id: str,
                                 profile_id: Optional[str], group_ids: Sequence[str]) -> List[PermissionGrant]:
        groups = set(group_ids)
        result = []
        for grant in self.grants.values():
            if grant.entity_type != entity_type or grant.entity_id != entity_id or not grant.is_active:
                continue
            if grant.subject_type == SubjectType.USER and profile_id and grant.subject_id == profile_id:
                result.append(copy.deepcopy(grant))
            elif grant.subject_type == SubjectType.GROUP and grant.subject_id in groups:
                result.append(copy.deepcopy(grant))
        return result

    async def list_grants_for_entity(self, entity_type: str, entity_id: str,
                                     include_revoked: bool = False) -> List[PermissionGrant]:
        return [
            copy.deepcopy(g) for g in self.grants.values()
            if g.entity_type == entity_type and g.entity_id == entity_id
            and (include_revoked or g.is_active)
        ]

    async def find_grant(self, entity_type: str, entity_id: str,
                         subject_type: SubjectType, subject_id: str) -> Optional[PermissionGrant]:
        for grant in self.grants.values():
            if (grant.entity_type == entity_type and grant.entity_id == entity_id
                    and grant.subject_type == subject_type and grant.subject_id == subject_id):
                return copy.deepcopy(grant)
        return None

    async def save_grant(self, grant: PermissionGrant) -> PermissionGrant:
        self.grants[grant.id] = copy.deepcopy(grant)
        return copy.deepcopy(grant)

    async def list_entity_ids_granted_to(self, entity_type: str, profile_id: str,
                                         group_ids: Sequence[str]) -> List[str]:
        groups = set(group_ids)
        ids = []
        for grant in self.grants.values():
            if grant.entity_type != entity_type or not grant.is_active:
                continue
            direct = grant.subject_type == SubjectType.USER and grant.subject_id == profile_id
            via_group = grant.subject_type == SubjectType.GROUP and grant.subject_id in groups
            if (direct or via_group) and grant.entity_id not in ids:
                ids.append(grant.entity_id)
        return ids

    async def list_active_observation_links(self, tracker_id: str, observer_user_id: str,
                                            context: ObservationContext) -> List[ObservationLink]:
        return [
            copy.deepcopy(link) for link in self.observation_links.values()
            if link.tracker_id == tracker_id and link.observer_user_id == observer_user_id
            and link.matches(context) and link.is_active
        ]

    async def find_observation_link(self, tracker_id: str, observer_user_id: str,
                                    context: ObservationContext) -> Optional[ObservationLink]:
        for link in self.observation_links.values():
            if (link.tracker_id == tracker_id and link.observer_user_id == observer_user_id
                    and link.matches(context)):
                return copy.deepcopy(link)
        return None

    async def get_observation_link(self, link_id: str) -> Optional[ObservationLink]:
        return copy.deepcopy(self.observation_links.get(link_id))

    async def save_observation_link(self, link: ObservationLink) -> ObservationLink:
        self.observation_links[link.id] = copy.deepcopy(link)
        return copy.deepcopy(link)

    async def list_observation_links_for_tracker(self, tracker_id: str,
                                                 include_revoked: bool = False) -> List[ObservationLink]:
        return [
            copy.deepcopy(link) for link in self.observation_links.values()
            if link.tracker_id == tracker_id and (include_revoked or link.is_active)
        ]

    async def list_observable_tracker_ids(self, observer_user_id: str,
                                          context: ObservationContext) -> List[str]:
        return [
            link.tracker_id for link in self.observation_links.values()
            if link.observer_user_id == observer_user_id and link.matches(context) and link.is_active
        ]

    # PrincipalDirectory

    async def resolve_profile_id(self, principal_id: str) -> Optional[str]:
        # Unmapped principals use their own id as profile id; map to None to
        # model a principal without a profile.
        if principal_id in self.profiles:
            return self.profiles[principal_id]
        return principal_id

    async def resolve_groups_for(self, principal_id: str) -> List[str]:
        return sorted(self.group_members.get(principal_id, set()))

    async def is_admin(self, principal_id: str) -> bool:
        return principal_id in self.admins

    # ProjectDirectory

    async def get_project_for_entity(self, entity_type: str, entity_id: str) -> Optional[str]:
        return self.entity_projects.get((entity_type, entity_id))

    async def get_project_role(self, principal_id: str, project_id: str) -> Optional[PermissionRole]:
        return self.project_roles.get((project_id, principal_id))

    async def get_entity_creator(self, entity_type: str, entity_id: str) -> Optional[str]:
        return self.entity_creators.get((entity_type, entity_id))

    async def is_creator_rights_revoked(self, entity_type: str, entity_id: str, creator_id: str) -> bool:
        return (entity_type, entity_id, creator_id) in self.creator_revocations

    # Templates

    async def insert_template(self, template: TrackerTemplate) -> TrackerTemplate:
        self.templates[template.id] = copy.deepcopy(template)
        return copy.deepcopy(template)

    async def get_template(self, template_id: str) -> Optional[TrackerTemplate]:
        return copy.deepcopy(self.templates.get(template_id))

    async def update_template(self, template: TrackerTemplate) -> TrackerTemplate:
        self.templates[template.id] = copy.deepcopy(template)
        return copy.deepcopy(template)

    async def list_templates(self, owner_id: str, include_archived: bool = False) -> List[TrackerTemplate]:
        result = [
            t for t in self.templates.values()
            if (t.scope == TemplateScope.GLOBAL or t.owner_id == owner_id)
            and (include_archived or t.archived_at is None)
        ]
        result.sort(key=lambda t: t.created_at, reverse=True)
        return copy.deepcopy(result)

    async def user_template_name_exists(self, owner_id: str, name: str) -> bool:
        return any(
            t.owner_id == owner_id and t.name == name and t.scope == TemplateScope.USER
            and t.archived_at is None
            for t in self.templates.values()
        )

    # Trackers

    async def insert_tracker(self, tracker: Tracker) -> Tracker:
        self.trackers[tracker.id] = copy.deepcopy(tracker)
        return copy.deepcopy(tracker)

    async def get_tracker(self, tracker_id: str) -> Optional[Tracker]:
        return copy.deepcopy(self.trackers.get(tracker_id))

    async def update_tracker(self, tracker: Tracker) -> Tracker:
        stored = self.trackers.get(tracker.id)
        updated = copy.deepcopy(tracker)
        if stored is not None:
            updated.field_schema_snapshot = copy.deepcopy(stored.field_schema_snapshot)
        self.trackers[tracker.id] = updated
        return copy.deepcopy(updated)

    async def list_trackers_by_ids(self, tracker_ids: Sequence[str],
                                   include_archived: bool = False) -> List[Tracker]:
        return [
            copy.deepcopy(self.trackers[tid]) for tid in tracker_ids
            if tid in self.trackers and (include_archived or self.trackers[tid].archived_at is None)
        ]

    async def list_owned_trackers(self, owner_id: str, include_archived: bool = False) -> List[Tracker]:
        result = [
            t for t in self.trackers.values()
            if t.owner_id == owner_id and (include_archived or t.archived_at is None)
        ]
        result.sort(key=lambda t: (t.display_order, -t.created_at.timestamp()))
        return copy.deepcopy(result)

    async def max_display_order(self, owner_id: str) -> int:
        orders = [
            t.display_order for t in self.trackers.values()
            if t.owner_id == owner_id and t.archived_at is None
        ]
        return max(orders) if orders else -1

    # Entries

    async def insert_entry(self, entry: TrackerEntry) -> TrackerEntry:
        async with self._lock:
            if entry.entry_granularity == EntryGranularity.DAILY:
                for existing in self.entries.values():
                    if (existing.tracker_id == entry.tracker_id and existing.user_id == entry.user_id
                            and existing.entry_date == entry.entry_date
                            and existing.entry_granularity == EntryGranularity.DAILY):
                        raise ConflictError(
                            "An entry already exists for this date. Use update instead.",
                            {"kind": "duplicate_entry", "tracker_id": entry.tracker_id,
                             "entry_date": entry.entry_date.isoformat(), "existing_entry_id": existing.id}
                        )
            self.entries[entry.id] = copy.deepcopy(entry)
        return copy.deepcopy(entry)

    async def get_entry(self, entry_id: str) -> Optional[TrackerEntry]:
        return copy.deepcopy(self.entries.get(entry_id))

    async def update_entry(self, entry: TrackerEntry) -> TrackerEntry:
        self.entries[entry.id] = copy.deepcopy(entry)
        return copy.deepcopy(entry)

    async def find_entries_for_date(self, tracker_id: str, user_id: str, entry_date: date) -> List[TrackerEntry]:
        return [
            copy.deepcopy(e) for e in self.entries.values()
            if e.tracker_id == tracker_id and e.user_id == user_id and e.entry_date == entry_date
        ]

    async def list_entries(self, tracker_id: str, start_date: Optional[date] = None,
                           end_date: Optional[date] = None) -> List[TrackerEntry]:
        result = [
            e for e in self.entries.values()
            if e.tracker_id == tracker_id
            and (start_date is None or e.entry_date >= start_date)
            and (end_date is None or e.entry_date <= end_date)
        ]
        result.sort(key=lambda e: (e.entry_date, e.created_at), reverse=True)
        return copy.deepcopy(result)

    # Reminders

    async def insert_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        self.reminders[reminder.id] = copy.deepcopy(reminder)
        return copy.deepcopy(reminder)

    async def get_reminder(self, reminder_id: str) -> Optional[TrackerReminder]:
        return copy.deepcopy(self.reminders.get(reminder_id))

    async def update_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        self.reminders[reminder.id] = copy.deepcopy(reminder)
        return copy.deepcopy(reminder)

    async def delete_reminder(self, reminder_id: str) -> bool:
        return self.reminders.pop(reminder_id, None) is not None

    async def list_reminders(self, tracker_id: Optional[str] = None,
                             owner_id: Optional[str] = None) -> List[TrackerReminder]:
        return [
            copy.deepcopy(r) for r in self.reminders.values()
            if (tracker_id is None or r.tracker_id == tracker_id)
            and (owner_id is None or r.owner_id == owner_id)
        ]

    # Share links

    async def insert_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        self.share_links[link.id] = copy.deepcopy(link)
        return copy.deepcopy(link)

    async def get_share_link_by_token(self, token: str) -> Optional[TemplateShareLink]:
        for link in self.share_links.values():
            if link.share_token == token:
                return copy.deepcopy(link)
        return None

    async def get_share_link(self, link_id: str) -> Optional[TemplateShareLink]:
        return copy.deepcopy(self.share_links.get(link_id))

    async def update_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        self.share_links[link.id] = copy.deepcopy(link)
        return copy.deepcopy(link)

    async def list_share_links(self, template_id: str) -> List[TemplateShareLink]:
        return [copy.deepcopy(l) for l in self.share_links.values() if l.template_id == template_id]

    async def increment_share_link_use(self, link_id: str, expected_count: int) -> bool:
        async with self._lock:
            link = self.share_links.get(link_id)
            if link is None or link.use_count != expected_count:
                return False
            link.use_count = expected_count + 1
            return True

    # Context overlays

    async def insert_context_event(self, event: ContextEvent) -> ContextEvent:
        self.context_events[event.id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    async def get_context_event(self, event_id: str) -> Optional[ContextEvent]:
        return copy.deepcopy(self.context_events.get(event_id))

    async def update_context_event(self, event: ContextEvent) -> ContextEvent:
        self.context_events[event.id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    async def list_context_events(self, owner_id: str, start_date: Optional[date] = None,
                                  end_date: Optional[date] = None) -> List[ContextEvent]:
        result = []
        for event in self.context_events.values():
            if event.owner_id != owner_id or event.archived_at is not None:
                continue
            event_end = event.end_date or date.max
            if start_date and event_end < start_date:
                continue
            if end_date and event.start_date > end_date:
                continue
            result.append(event)
        result.sort(key=lambda e: e.start_date)
        return copy.deepcopy(result)

    async def insert_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        self.interpretations[interpretation.id] = copy.deepcopy(interpretation)
        return copy.deepcopy(interpretation)

    async def get_interpretation(self, interpretation_id: str) -> Optional[TrackerInterpretation]:
        return copy.deepcopy(self.interpretations.get(interpretation_id))

    async def update_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        self.interpretations[interpretation.id] = copy.deepcopy(interpretation)
        return copy.deepcopy(interpretation)

    async def list_interpretations(self, owner_id: str,
                                   tracker_id: Optional[str] = None) -> List[TrackerInterpretation]:
        result = [
            i for i in self.interpretations.values()
            if i.owner_id == owner_id and i.archived_at is None
            and (tracker_id is None or tracker_id in i.tracker_ids)
        ]
        result.sort(key=lambda i: i.start_date, reverse=True)
        return copy.deepcopy(result)

    async def stats(self) -> Dict[str, Any]:
        return {
            "templates": len(self.templates),
            "trackers": len(self.trackers),
            "entries": len(self.entries),
            "active_grants": len([g for g in self.grants.values() if g.is_active]),
            "active_observation_links": len([l for l in self.observation_links.values() if l.is_active]),
        }
