"""
Observation resolver: context-scoped, read-only links.
"""

from typing import Optional

from ..domain.models import ObservationContext, ObservationLink
from ..store.base import EntitlementStore


class ObservationResolver:
    """Finds an active observation link for (tracker, observer, context)."""

    def __init__(self, store: EntitlementStore):
        self.store = store

    async def find_active_link(self, tracker_id: str, principal_id: str,
                               context: Optional[ObservationContext]) -> Optional[ObservationLink]:
        if context is None:
            return None
        links = await self.store.list_active_observation_links(tracker_id, principal_id, context)
        for link in links:
            if link.is_active and link.matches(context):
                return link
        return None
