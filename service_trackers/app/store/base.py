"""
Collaborator interfaces consulted by the resolvers and services.

Implementations return only non-revoked rows from the ``list_active_*``
methods as of call time. None of them perform authorization; that is the
enforcement layer's job alone.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from ..domain.models import (
    ContextEvent,
    ObservationContext,
    ObservationLink,
    PermissionGrant,
    PermissionRole,
    SubjectType,
    TemplateShareLink,
    Tracker,
    TrackerEntry,
    TrackerInterpretation,
    TrackerReminder,
    TrackerTemplate,
)


class EntitlementStore(ABC):
    """Ownership, archival state, grants and observation links."""

    @abstractmethod
    async def get_owner(self, entity_id: str, entity_type: str = "tracker") -> Optional[str]:
        """Owner principal of an entity, None when unknown or ownerless."""

    @abstractmethod
    async def get_archival_state(self, entity_id: str, entity_type: str = "tracker") -> Optional[datetime]:
        """``archived_at`` of an entity, None when active or unknown."""

    @abstractmethod
    async def entity_exists(self, entity_id: str, entity_type: str = "tracker") -> bool:
        ...

    @abstractmethod
    async def list_active_grants(
        self,
        entity_type: str,
        entity_id: str,
        profile_id: Optional[str],
        group_ids: Sequence[str],
    ) -> List[PermissionGrant]:
        """Active grants addressed to the profile directly or to any of the groups."""

    @abstractmethod
    async def list_grants_for_entity(self, entity_type: str, entity_id: str,
                                     include_revoked: bool = False) -> List[PermissionGrant]:
        ...

    @abstractmethod
    async def find_grant(self, entity_type: str, entity_id: str,
                         subject_type: SubjectType, subject_id: str) -> Optional[PermissionGrant]:
        """Grant row for the (entity, subject) pair, revoked or not."""

    @abstractmethod
    async def save_grant(self, grant: PermissionGrant) -> PermissionGrant:
        ...

    @abstractmethod
    async def list_entity_ids_granted_to(self, entity_type: str, profile_id: str,
                                         group_ids: Sequence[str]) -> List[str]:
        ...

    @abstractmethod
    async def list_active_observation_links(
        self,
        tracker_id: str,
        observer_user_id: str,
        context: ObservationContext,
    ) -> List[ObservationLink]:
        ...

    @abstractmethod
    async def find_observation_link(self, tracker_id: str, observer_user_id: str,
                                    context: ObservationContext) -> Optional[ObservationLink]:
        """Link row for the (tracker, observer, context) tuple, revoked or not."""

    @abstractmethod
    async def get_observation_link(self, link_id: str) -> Optional[ObservationLink]:
        ...

    @abstractmethod
    async def save_observation_link(self, link: ObservationLink) -> ObservationLink:
        ...

    @abstractmethod
    async def list_observation_links_for_tracker(self, tracker_id: str,
                                                 include_revoked: bool = False) -> List[ObservationLink]:
        ...

    @abstractmethod
    async def list_observable_tracker_ids(self, observer_user_id: str,
                                          context: ObservationContext) -> List[str]:
        ...


class PrincipalDirectory(ABC):
    """Principal identity, group membership and admin status."""

    @abstractmethod
    async def resolve_profile_id(self, principal_id: str) -> Optional[str]:
        """Profile identity grants are addressed to, None when no profile exists."""

    @abstractmethod
    async def resolve_groups_for(self, principal_id: str) -> List[str]:
        ...

    @abstractmethod
    async def is_admin(self, principal_id: str) -> bool:
        ...


class ProjectDirectory(ABC):
    """Project membership data used by the project-ceiling entity resolver."""

    @abstractmethod
    async def get_project_for_entity(self, entity_type: str, entity_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_project_role(self, principal_id: str, project_id: str) -> Optional[PermissionRole]:
        ...

    @abstractmethod
    async def get_entity_creator(self, entity_type: str, entity_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def is_creator_rights_revoked(self, entity_type: str, entity_id: str, creator_id: str) -> bool:
        ...


class TrackerRepository(ABC):
    """Persistence for templates, trackers, entries and their overlays."""

    # Templates

    @abstractmethod
    async def insert_template(self, template: TrackerTemplate) -> TrackerTemplate:
        ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[TrackerTemplate]:
        ...

    @abstractmethod
    async def update_template(self, template: TrackerTemplate) -> TrackerTemplate:
        ...

    @abstractmethod
    async def list_templates(self, owner_id: str, include_archived: bool = False) -> List[TrackerTemplate]:
        """Global templates plus the user-scoped templates owned by ``owner_id``."""

    @abstractmethod
    async def user_template_name_exists(self, owner_id: str, name: str) -> bool:
        """Whether an active user-scoped template with this name is owned by ``owner_id``."""

    # Trackers

    @abstractmethod
    async def insert_tracker(self, tracker: Tracker) -> Tracker:
        ...

    @abstractmethod
    async def get_tracker(self, tracker_id: str) -> Optional[Tracker]:
        ...

    @abstractmethod
    async def update_tracker(self, tracker: Tracker) -> Tracker:
        ...

    @abstractmethod
    async def list_trackers_by_ids(self, tracker_ids: Sequence[str],
                                   include_archived: bool = False) -> List[Tracker]:
        ...

    @abstractmethod
    async def list_owned_trackers(self, owner_id: str, include_archived: bool = False) -> List[Tracker]:
        ...

    @abstractmethod
    async def max_display_order(self, owner_id: str) -> int:
        """Highest display order among the owner's active trackers, -1 when none."""

    # Entries

    @abstractmethod
    async def insert_entry(self, entry: TrackerEntry) -> TrackerEntry:
        """Insert an entry. Daily entries are unique per (tracker, user, date);
        a violation raises ``ConflictError`` from the store itself."""

    @abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[TrackerEntry]:
        ...

    @abstractmethod
    async def update_entry(self, entry: TrackerEntry) -> TrackerEntry:
        ...

    @abstractmethod
    async def find_entries_for_date(self, tracker_id: str, user_id: str, entry_date: date) -> List[TrackerEntry]:
        ...

    @abstractmethod
    async def list_entries(self, tracker_id: str, start_date: Optional[date] = None,
                           end_date: Optional[date] = None) -> List[TrackerEntry]:
        ...

    # Reminders

    @abstractmethod
    async def insert_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        ...

    @abstractmethod
    async def get_reminder(self, reminder_id: str) -> Optional[TrackerReminder]:
        ...

    @abstractmethod
    async def update_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        ...

    @abstractmethod
    async def delete_reminder(self, reminder_id: str) -> bool:
        ...

    @abstractmethod
    async def list_reminders(self, tracker_id: Optional[str] = None,
                             owner_id: Optional[str] = None) -> List[TrackerReminder]:
        ...

    # Share links

    @abstractmethod
    async def insert_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        ...

    @abstractmethod
    async def get_share_link_by_token(self, token: str) -> Optional[TemplateShareLink]:
        ...

    @abstractmethod
    async def get_share_link(self, link_id: str) -> Optional[TemplateShareLink]:
        ...

    @abstractmethod
    async def update_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        ...

    @abstractmethod
    async def list_share_links(self, template_id: str) -> List[TemplateShareLink]:
        ...

    @abstractmethod
    async def increment_share_link_use(self, link_id: str, expected_count: int) -> bool:
        """``UPDATE ... SET use_count = expected + 1 WHERE use_count = expected``.

        Returns False when zero rows were affected.
        """

    # Context overlays

    @abstractmethod
    async def insert_context_event(self, event: ContextEvent) -> ContextEvent:
        ...

    @abstractmethod
    async def get_context_event(self, event_id: str) -> Optional[ContextEvent]:
        ...

    @abstractmethod
    async def update_context_event(self, event: ContextEvent) -> ContextEvent:
        ...

    @abstractmethod
    async def list_context_events(self, owner_id: str, start_date: Optional[date] = None,
                                  end_date: Optional[date] = None) -> List[ContextEvent]:
        ...

    @abstractmethod
    async def insert_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        ...

    @abstractmethod
    async def get_interpretation(self, interpretation_id: str) -> Optional[TrackerInterpretation]:
        ...

    @abstractmethod
    async def update_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        ...

    @abstractmethod
    async def list_interpretations(self, owner_id: str,
                                   tracker_id: Optional[str] = None) -> List[TrackerInterpretation]:
        ...

    async def start(self):
        pass

    async def stop(self):
        pass

    async def health_check(self) -> bool:
        return True

    async def stats(self) -> Dict[str, Any]:
        return {}
