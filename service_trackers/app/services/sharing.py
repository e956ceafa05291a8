"""
Sharing: grants, observation links and template share links.

Grants and observation links are managed by the tracker owner only, checked
fresh on every call. Share links hand out owned copies of a template, never
references to it.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from shared.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from shared.logging import get_logger

from ..domain.models import (
    ObservationContext,
    ObservationLink,
    PermissionGrant,
    PermissionRole,
    SubjectType,
    TemplateShareLink,
    Tracker,
    TrackerTemplate,
    new_id,
    utc_now,
)
from ..permissions.enforcement import Enforcer
from ..permissions.resolver import PermissionResolver
from ..store.base import EntitlementStore, PrincipalDirectory, TrackerRepository
from .templates import TemplateService

GRANTABLE_ROLES = (PermissionRole.EDITOR, PermissionRole.COMMENTER, PermissionRole.VIEWER)


def _require_subject(value: Optional[str], what: str):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} is required", {"kind": "input"})


class GrantService:
    """Direct and group grants on trackers."""

    def __init__(self, store: EntitlementStore, directory: PrincipalDirectory, enforcer: Enforcer):
        self.store = store
        self.directory = directory
        self.enforcer = enforcer
        self.logger = get_logger("trackers.services.grants")

    async def grant_access(self, tracker_id: str, principal_id: str, subject_type: str,
                           subject_id: str, role: str) -> PermissionGrant:
        """Grant or re-grant a role. Re-granting an existing pair updates that row."""
        await self.enforcer.require_owner(tracker_id, principal_id)

        try:
            subject_type = SubjectType(subject_type)
        except ValueError:
            raise ValidationError(f"Unknown subject type: {subject_type}", {"kind": "input"})
        _require_subject(subject_id, "Subject id")
        try:
            role = PermissionRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}", {"kind": "input"})
        if role not in GRANTABLE_ROLES:
            raise ValidationError(
                "The owner role cannot be granted through sharing",
                {"kind": "grant_role", "role": role.value}
            )
        if subject_type == SubjectType.USER:
            owner_profile = await self.directory.resolve_profile_id(principal_id)
            if subject_id in (principal_id, owner_profile):
                raise ValidationError("Owners already have full access", {"kind": "grant_subject"})

        now = utc_now()
        grant = await self.store.find_grant("tracker", tracker_id, subject_type, subject_id)
        if grant is None:
            grant = PermissionGrant(
                id=new_id(),
                entity_type="tracker",
                entity_id=tracker_id,
                subject_type=subject_type,
                subject_id=subject_id,
                role=role,
                granted_by=principal_id,
                created_at=now,
            )
        else:
            grant.role = role
            grant.granted_by = principal_id
            grant.revoked_at = None
        grant = await self.store.save_grant(grant)

        self.logger.info(
            "Access granted",
            tracker_id=tracker_id,
            grant_id=grant.id,
            subject_type=subject_type.value,
            subject_id=subject_id,
            role=role.value,
            principal_id=principal_id
        )
        return grant

    async def revoke_access(self, tracker_id: str, grant_id: str, principal_id: str) -> PermissionGrant:
        await self.enforcer.require_owner(tracker_id, principal_id)

        grants = await self.store.list_grants_for_entity("tracker", tracker_id, include_revoked=True)
        grant = next((g for g in grants if g.id == grant_id), None)
        if grant is None:
            raise NotFoundError("Grant not found", {"grant_id": grant_id})

        if grant.revoked_at is None:
            grant.revoked_at = utc_now()
            grant = await self.store.save_grant(grant)
            self.logger.info("Access revoked", tracker_id=tracker_id, grant_id=grant_id,
                             principal_id=principal_id)
        return grant

    async def list_grants(self, tracker_id: str, principal_id: str,
                          include_revoked: bool = False) -> List[PermissionGrant]:
        await self.enforcer.require_owner(tracker_id, principal_id)
        return await self.store.list_grants_for_entity("tracker", tracker_id, include_revoked)


class ObservationLinkService:
    """Context-scoped, read-only observation links."""

    def __init__(self, store: EntitlementStore, repository: TrackerRepository,
                 resolver: PermissionResolver, enforcer: Enforcer):
        self.store = store
        self.repository = repository
        self.resolver = resolver
        self.enforcer = enforcer
        self.logger = get_logger("trackers.services.observation")

    async def create_observation_link(self, tracker_id: str, principal_id: str,
                                      observer_user_id: str, context: ObservationContext) -> ObservationLink:
        """Create or restore a link. Owners can never observe their own trackers."""
        await self.enforcer.require_owner(tracker_id, principal_id)

        _require_subject(observer_user_id, "Observer user id")
        _require_subject(context.id, "Context id")
        tracker = await self.repository.get_tracker(tracker_id)
        if observer_user_id in (principal_id, tracker.owner_id):
            raise ValidationError(
                "A tracker owner cannot observe their own tracker",
                {"kind": "self_observation", "tracker_id": tracker_id}
            )

        link = await self.store.find_observation_link(tracker_id, observer_user_id, context)
        if link is not None and link.is_active:
            return link

        if link is None:
            link = ObservationLink(
                id=new_id(),
                tracker_id=tracker_id,
                observer_user_id=observer_user_id,
                context_type=context.type,
                context_id=context.id,
                granted_by=principal_id,
            )
        else:
            link.revoked_at = None
            link.granted_by = principal_id
        link = await self.store.save_observation_link(link)

        self.logger.info(
            "Observation link granted",
            tracker_id=tracker_id,
            link_id=link.id,
            observer_user_id=observer_user_id,
            context_type=context.type.value,
            context_id=context.id
        )
        return link

    async def revoke_observation_link(self, link_id: str, principal_id: str) -> ObservationLink:
        link = await self.store.get_observation_link(link_id)
        if link is None:
            raise NotFoundError("Observation link not found", {"link_id": link_id})
        await self.enforcer.require_owner(link.tracker_id, principal_id)

        if link.revoked_at is None:
            link.revoked_at = utc_now()
            link = await self.store.save_observation_link(link)
            self.logger.info("Observation link revoked", link_id=link_id, tracker_id=link.tracker_id)
        return link

    async def list_observation_links(self, tracker_id: str, principal_id: str,
                                     include_revoked: bool = False) -> List[ObservationLink]:
        await self.enforcer.require_owner(tracker_id, principal_id)
        return await self.store.list_observation_links_for_tracker(tracker_id, include_revoked)

    async def list_observable_trackers(self, context: ObservationContext,
                                       observer_user_id: str) -> List[Tracker]:
        tracker_ids = await self.store.list_observable_tracker_ids(observer_user_id, context)
        trackers = await self.repository.list_trackers_by_ids(list(dict.fromkeys(tracker_ids)))
        visible = []
        for tracker in trackers:
            permissions = await self.resolver.resolve(tracker.id, observer_user_id, context)
            if permissions.can_view:
                visible.append(tracker)
        return visible


@dataclass
class ShareLinkStatus:
    valid: bool
    reason: Optional[str] = None
    link: Optional[TemplateShareLink] = None


class ShareLinkService:
    """Tokenized template sharing."""

    def __init__(self, repository: TrackerRepository, resolver: PermissionResolver,
                 enforcer: Enforcer, templates: TemplateService):
        self.repository = repository
        self.resolver = resolver
        self.enforcer = enforcer
        self.templates = templates
        self.logger = get_logger("trackers.services.share_links")

    async def create_share_link(self, template_id: str, principal_id: str,
                                expires_at: Optional[datetime] = None,
                                max_uses: Optional[int] = None) -> TemplateShareLink:
        template = await self.repository.get_template(template_id)
        permissions = await self.enforcer.require_template_view(template, template_id, principal_id)
        if not (permissions.can_manage or template.is_global):
            raise PermissionDeniedError("You cannot share this template", {"template_id": template_id})
        if template.archived_at is not None:
            raise PermissionDeniedError("Archived templates cannot be shared", {"template_id": template_id})

        if max_uses is not None and (isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1):
            raise ValidationError("max_uses must be a positive integer", {"kind": "share_link"})
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= utc_now():
                raise ValidationError("expires_at must be in the future", {"kind": "share_link"})

        link = TemplateShareLink(
            id=new_id(),
            template_id=template_id,
            created_by=principal_id,
            share_token=secrets.token_urlsafe(24),
            expires_at=expires_at,
            max_uses=max_uses,
        )
        link = await self.repository.insert_share_link(link)
        self.logger.info("Share link created", link_id=link.id, template_id=template_id,
                         principal_id=principal_id, max_uses=max_uses)
        return link

    async def revoke_share_link(self, link_id: str, principal_id: str) -> TemplateShareLink:
        link = await self.repository.get_share_link(link_id)
        if link is None:
            raise NotFoundError("Share link not found", {"link_id": link_id})
        if link.created_by != principal_id:
            raise PermissionDeniedError("Only the link creator can revoke it", {"link_id": link_id})

        if link.revoked_at is None:
            link.revoked_at = utc_now()
            link = await self.repository.update_share_link(link)
            self.logger.info("Share link revoked", link_id=link_id, principal_id=principal_id)
        return link

    async def list_share_links(self, template_id: str, principal_id: str) -> List[TemplateShareLink]:
        template = await self.repository.get_template(template_id)
        await self.enforcer.require_template_view(template, template_id, principal_id)
        links = await self.repository.list_share_links(template_id)
        return [link for link in links if link.created_by == principal_id]

    async def check_share_link(self, token: str, now: Optional[datetime] = None) -> ShareLinkStatus:
        """Validity in order: not revoked, not expired, under max uses."""
        link = await self.repository.get_share_link_by_token(token)
        if link is None:
            return ShareLinkStatus(valid=False, reason="not_found")
        if link.revoked_at is not None:
            return ShareLinkStatus(valid=False, reason="revoked", link=link)
        now = now or utc_now()
        if link.expires_at is not None and link.expires_at <= now:
            return ShareLinkStatus(valid=False, reason="expired", link=link)
        if link.max_uses is not None and link.use_count >= link.max_uses:
            return ShareLinkStatus(valid=False, reason="max_uses_reached", link=link)
        return ShareLinkStatus(valid=True, link=link)

    async def import_from_share_link(self, token: str, principal_id: str, name: Optional[str] = None,
                                     now: Optional[datetime] = None) -> TrackerTemplate:
        """Consume one use of the link and create an owned copy for ``principal_id``."""
        status = await self.check_share_link(token, now)
        if status.reason == "not_found":
            raise NotFoundError("Share link not found")
        if not status.valid:
            raise ValidationError(
                f"Share link is not valid: {status.reason}",
                {"kind": "share_link", "reason": status.reason}
            )
        link = status.link

        template = await self.repository.get_template(link.template_id)
        if template is None or template.archived_at is not None:
            raise NotFoundError("Template not found", {"template_id": link.template_id})
        if name is not None and (not isinstance(name, str) or not name.strip()):
            raise ValidationError("Template name is required and must be non-empty", {"kind": "name"})

        if not await self.repository.increment_share_link_use(link.id, link.use_count):
            raise ConflictError(
                "Share link was used concurrently, please retry",
                {"kind": "share_link_use", "link_id": link.id}
            )

        imported = await self.templates.create_owned_copy(template, principal_id, name)
        self.logger.info(
            "Template imported from share link",
            link_id=link.id,
            template_id=template.id,
            imported_template_id=imported.id,
            principal_id=principal_id
        )
        return imported
