"""
Tracker Studio service.

HTTP surface over the template, tracker, entry, sharing, reminder, context
and insights services. Observation-aware reads take the observation context as
``context_type``/``context_id`` query parameters. Reads of a single entity
answer 404 when it does not exist or the caller cannot see it.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, Query, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError, ValidationError

from .analytics.insights import InsightsService
from .auth import TokenAuthenticator
from .cache.insights_cache import InsightsCache, create_insights_cache
from .domain.models import EntityType, ObservationContext, ObservationContextType, TemplateScope
from .domain.schemas import (
    ContextEventCreateRequest,
    ContextEventResponse,
    ContextEventUpdateRequest,
    EntryCreateRequest,
    EntryResponse,
    EntryUpdateRequest,
    GrantCreateRequest,
    GrantResponse,
    InsightsRequest,
    InterpretationCreateRequest,
    InterpretationResponse,
    InterpretationUpdateRequest,
    ObservationLinkCreateRequest,
    ObservationLinkResponse,
    PermissionsResponse,
    ReminderCreateRequest,
    ReminderDecisionResponse,
    ReminderResponse,
    ReminderUpdateRequest,
    ShareLinkCreateRequest,
    ShareLinkImportRequest,
    ShareLinkResponse,
    TemplateCreateRequest,
    TemplateDuplicateRequest,
    TemplateLockRequest,
    TemplateResponse,
    TemplateUpdateRequest,
    TrackerCreateRequest,
    TrackerReorderRequest,
    TrackerResponse,
    TrackerUpdateRequest,
)
from .permissions.enforcement import Enforcer
from .permissions.resolver import EntityPermissionResolver, PermissionResolver
from .services.context import ContextEventService, InterpretationService
from .services.entries import EntryService
from .services.reminders import ReminderEvaluator, ReminderPolicy, ReminderService
from .services.sharing import GrantService, ObservationLinkService, ShareLinkService
from .services.templates import TemplateService
from .services.trackers import TrackerService
from .store import create_store

SERVICE_NAME = "trackers"
SERVICE_PORT = 8020


def parse_observation_context(context_type: Optional[str], context_id: Optional[str]) -> Optional[ObservationContext]:
    """Both parameters or neither."""
    if context_type is None and context_id is None:
        return None
    if not context_type or not context_id:
        raise ValidationError(
            "context_type and context_id must be supplied together",
            {"kind": "observation_context"}
        )
    try:
        return ObservationContext(ObservationContextType(context_type), context_id)
    except ValueError:
        raise ValidationError(f"Unknown context type: {context_type}", {"kind": "observation_context"})


async def observation_context(
    context_type: Optional[str] = Query(None, description="Observation context type"),
    context_id: Optional[str] = Query(None, description="Observation context id"),
) -> Optional[ObservationContext]:
    return parse_observation_context(context_type, context_id)


class TrackersService(BaseService):
    """Tracker Studio service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store=None,
                 cache: Optional[InsightsCache] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.store = store if store is not None else create_store(self.config)
        self.cache = cache if cache is not None else create_insights_cache(self.config, self.metrics)
        self.authenticator = TokenAuthenticator(
            self.config.jwt_secret,
            self.config.jwt_algorithm,
            self.config.jwt_audience
        )

        self.resolver = PermissionResolver(self.store, self.store, self.store, self.metrics)
        self.entity_resolver = EntityPermissionResolver(
            self.store,
            self.store,
            self.store,
            enable_creator_rights=self.config.enable_creator_rights,
            enable_entity_grants=self.config.enable_entity_grants
        )
        self.enforcer = Enforcer(self.resolver, self.store)

        self.templates = TemplateService(
            self.store, self.resolver, self.enforcer,
            name_conflict_attempts=self.config.template_name_conflict_attempts
        )
        self.trackers = TrackerService(self.store, self.store, self.store, self.resolver, self.enforcer)
        self.entries = EntryService(self.store, self.enforcer, self.cache)
        self.grants = GrantService(self.store, self.store, self.enforcer)
        self.observation_links = ObservationLinkService(self.store, self.store, self.resolver, self.enforcer)
        self.share_links = ShareLinkService(self.store, self.resolver, self.enforcer, self.templates)
        self.reminders = ReminderService(self.store, self.enforcer)
        self.reminder_evaluator = ReminderEvaluator(
            self.store, self.resolver, ReminderPolicy.from_config(self.config)
        )
        self.context_events = ContextEventService(self.store)
        self.interpretations = InterpretationService(self.store, self.enforcer)
        self.insights = InsightsService(self.store, self.enforcer, self.cache)

        self._setup_tracker_routes()

    async def current_principal(self, request: Request) -> str:
        principal = await self.authenticator.authenticate(request)
        return principal.principal_id

    def _setup_tracker_routes(self):
        """Set up Tracker Studio routes."""
        app = self.app
        principal = Depends(self.current_principal)
        context_param = Depends(observation_context)

        @app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Tracker Studio - Trackers Service",
                "version": "1.0.0",
                "capabilities": ["permissions", "templates", "trackers", "sharing", "reminders", "insights"]
            }

        # Templates

        @app.get("/templates")
        async def list_templates(include_archived: bool = False, principal_id: str = principal):
            templates = await self.templates.list_templates(principal_id, include_archived)
            return [TemplateResponse.from_domain(t) for t in templates]

        @app.post("/templates", status_code=201)
        async def create_template(request: TemplateCreateRequest, principal_id: str = principal):
            try:
                scope = TemplateScope(request.scope)
            except ValueError:
                raise ValidationError(f"Unknown template scope: {request.scope}", {"kind": "input"})
            template = await self.templates.create_template(
                principal_id,
                request.name,
                request.field_schema,
                description=request.description,
                entry_granularity=request.entry_granularity,
                scope=scope,
                chart_config=request.chart_config,
                tags=request.tags
            )
            return TemplateResponse.from_domain(template)

        @app.get("/templates/{template_id}")
        async def get_template(template_id: str, principal_id: str = principal):
            template = await self.templates.get_template(template_id, principal_id)
            if template is None:
                raise NotFoundError("Template not found", {"template_id": template_id})
            return TemplateResponse.from_domain(template)

        @app.patch("/templates/{template_id}")
        async def update_template(template_id: str, request: TemplateUpdateRequest,
                                  principal_id: str = principal):
            template = await self.templates.update_template(
                template_id, principal_id, request.model_dump(exclude_unset=True)
            )
            return TemplateResponse.from_domain(template)

        @app.delete("/templates/{template_id}")
        async def archive_template(template_id: str, principal_id: str = principal):
            template = await self.templates.archive_template(template_id, principal_id)
            return TemplateResponse.from_domain(template)

        @app.post("/templates/{template_id}/duplicate", status_code=201)
        async def duplicate_template(template_id: str, request: TemplateDuplicateRequest,
                                     principal_id: str = principal):
            template = await self.templates.duplicate_template(template_id, principal_id, request.name)
            return TemplateResponse.from_domain(template)

        @app.post("/templates/{template_id}/promote")
        async def promote_template(template_id: str, principal_id: str = principal):
            template = await self.templates.promote_template_to_global(template_id, principal_id)
            return TemplateResponse.from_domain(template)

        @app.put("/templates/{template_id}/lock")
        async def set_template_lock(template_id: str, request: TemplateLockRequest,
                                    principal_id: str = principal):
            template = await self.templates.set_template_lock(template_id, principal_id, request.locked)
            return TemplateResponse.from_domain(template)

        # Share links

        @app.post("/templates/{template_id}/share-links", status_code=201)
        async def create_share_link(template_id: str, request: ShareLinkCreateRequest,
                                    principal_id: str = principal):
            link = await self.share_links.create_share_link(
                template_id, principal_id, expires_at=request.expires_at, max_uses=request.max_uses
            )
            return ShareLinkResponse.from_domain(link)

        @app.get("/templates/{template_id}/share-links")
        async def list_share_links(template_id: str, principal_id: str = principal):
            links = await self.share_links.list_share_links(template_id, principal_id)
            return [ShareLinkResponse.from_domain(link) for link in links]

        @app.delete("/share-links/{link_id}")
        async def revoke_share_link(link_id: str, principal_id: str = principal):
            link = await self.share_links.revoke_share_link(link_id, principal_id)
            return ShareLinkResponse.from_domain(link)

        @app.get("/share-links/{token}")
        async def check_share_link(token: str, principal_id: str = principal):
            status = await self.share_links.check_share_link(token)
            if status.reason == "not_found":
                raise NotFoundError("Share link not found")
            return {
                "valid": status.valid,
                "reason": status.reason,
                "template_id": status.link.template_id,
                "expires_at": status.link.expires_at,
            }

        @app.post("/share-links/{token}/import", status_code=201)
        async def import_from_share_link(token: str, request: ShareLinkImportRequest,
                                         principal_id: str = principal):
            template = await self.share_links.import_from_share_link(token, principal_id, request.name)
            return TemplateResponse.from_domain(template)

        # Trackers

        @app.get("/trackers")
        async def list_trackers(include_archived: bool = False, principal_id: str = principal,
                                context: Optional[ObservationContext] = context_param):
            trackers = await self.trackers.list_trackers(principal_id, context, include_archived)
            return [TrackerResponse.from_domain(t) for t in trackers]

        @app.post("/trackers", status_code=201)
        async def create_tracker(request: TrackerCreateRequest, principal_id: str = principal):
            if request.template_id is not None:
                tracker = await self.trackers.create_tracker_from_template(
                    principal_id, request.template_id, name=request.name, description=request.description
                )
            else:
                tracker = await self.trackers.create_tracker_from_schema(
                    principal_id,
                    request.name,
                    request.field_schema,
                    description=request.description,
                    entry_granularity=request.entry_granularity,
                    chart_config=request.chart_config,
                    icon=request.icon,
                    color=request.color
                )
            return TrackerResponse.from_domain(tracker)

        @app.post("/trackers/reorder")
        async def reorder_trackers(request: TrackerReorderRequest, principal_id: str = principal):
            trackers = await self.trackers.reorder_trackers(principal_id, request.tracker_ids)
            return [TrackerResponse.from_domain(t) for t in trackers]

        @app.get("/trackers/{tracker_id}")
        async def get_tracker(tracker_id: str, principal_id: str = principal,
                              context: Optional[ObservationContext] = context_param):
            tracker = await self.trackers.get_tracker(tracker_id, principal_id, context)
            if tracker is None:
                raise NotFoundError("Tracker not found", {"tracker_id": tracker_id})
            return TrackerResponse.from_domain(tracker)

        @app.patch("/trackers/{tracker_id}")
        async def update_tracker(tracker_id: str, request: TrackerUpdateRequest,
                                 principal_id: str = principal):
            tracker = await self.trackers.update_tracker(
                tracker_id, principal_id, request.model_dump(exclude_unset=True)
            )
            return TrackerResponse.from_domain(tracker)

        @app.delete("/trackers/{tracker_id}")
        async def archive_tracker(tracker_id: str, principal_id: str = principal):
            tracker = await self.trackers.archive_tracker(tracker_id, principal_id)
            return TrackerResponse.from_domain(tracker)

        @app.get("/trackers/{tracker_id}/permissions", response_model=PermissionsResponse)
        async def get_tracker_permissions(tracker_id: str, principal_id: str = principal,
                                          context: Optional[ObservationContext] = context_param):
            permissions = await self.resolver.resolve(tracker_id, principal_id, context)
            if not permissions.can_view:
                raise NotFoundError("Tracker not found", {"tracker_id": tracker_id})
            return permissions.to_dict()

        @app.get("/entities/{entity_type}/{entity_id}/permissions")
        async def get_entity_permissions(entity_type: str, entity_id: str, principal_id: str = principal):
            try:
                entity_type = EntityType(entity_type).value
            except ValueError:
                raise ValidationError(f"Unknown entity type: {entity_type}", {"kind": "input"})
            permissions = await self.entity_resolver.resolve(entity_type, entity_id, principal_id)
            return permissions.to_dict()

        # Entries

        @app.get("/trackers/{tracker_id}/entries")
        async def list_entries(tracker_id: str, start_date: Optional[str] = None,
                               end_date: Optional[str] = None, principal_id: str = principal,
                               context: Optional[ObservationContext] = context_param):
            entries = await self.entries.list_entries(tracker_id, principal_id, start_date, end_date, context)
            return [EntryResponse.from_domain(e) for e in entries]

        @app.post("/trackers/{tracker_id}/entries", status_code=201)
        async def create_entry(tracker_id: str, request: EntryCreateRequest, principal_id: str = principal,
                               context: Optional[ObservationContext] = context_param):
            entry = await self.entries.create_entry(
                tracker_id,
                principal_id,
                request.entry_date,
                request.field_values,
                notes=request.notes,
                entry_granularity=request.entry_granularity,
                context=context
            )
            return EntryResponse.from_domain(entry)

        @app.get("/trackers/{tracker_id}/entries/by-date/{entry_date}")
        async def get_entry_for_date(tracker_id: str, entry_date: str, user_id: Optional[str] = None,
                                     principal_id: str = principal,
                                     context: Optional[ObservationContext] = context_param):
            entry = await self.entries.get_entry_for_date(tracker_id, principal_id, entry_date, user_id, context)
            if entry is None:
                raise NotFoundError("Entry not found", {"tracker_id": tracker_id, "entry_date": entry_date})
            return EntryResponse.from_domain(entry)

        @app.get("/trackers/{tracker_id}/entries/{entry_id}")
        async def get_entry(tracker_id: str, entry_id: str, principal_id: str = principal,
                            context: Optional[ObservationContext] = context_param):
            entry = await self.entries.get_entry(tracker_id, entry_id, principal_id, context)
            if entry is None:
                raise NotFoundError("Entry not found", {"entry_id": entry_id})
            return EntryResponse.from_domain(entry)

        @app.patch("/trackers/{tracker_id}/entries/{entry_id}")
        async def update_entry(tracker_id: str, entry_id: str, request: EntryUpdateRequest,
                               principal_id: str = principal,
                               context: Optional[ObservationContext] = context_param):
            entry = await self.entries.update_entry(
                tracker_id, entry_id, principal_id, request.model_dump(exclude_unset=True), context
            )
            return EntryResponse.from_domain(entry)

        # Grants and observation links

        @app.get("/trackers/{tracker_id}/grants")
        async def list_grants(tracker_id: str, include_revoked: bool = False, principal_id: str = principal):
            grants = await self.grants.list_grants(tracker_id, principal_id, include_revoked)
            return [GrantResponse.from_domain(g) for g in grants]

        @app.post("/trackers/{tracker_id}/grants", status_code=201)
        async def grant_access(tracker_id: str, request: GrantCreateRequest, principal_id: str = principal):
            grant = await self.grants.grant_access(
                tracker_id, principal_id, request.subject_type, request.subject_id, request.role
            )
            return GrantResponse.from_domain(grant)

        @app.delete("/trackers/{tracker_id}/grants/{grant_id}")
        async def revoke_access(tracker_id: str, grant_id: str, principal_id: str = principal):
            grant = await self.grants.revoke_access(tracker_id, grant_id, principal_id)
            return GrantResponse.from_domain(grant)

        @app.get("/trackers/{tracker_id}/observation-links")
        async def list_observation_links(tracker_id: str, include_revoked: bool = False,
                                         principal_id: str = principal):
            links = await self.observation_links.list_observation_links(tracker_id, principal_id, include_revoked)
            return [ObservationLinkResponse.from_domain(link) for link in links]

        @app.post("/trackers/{tracker_id}/observation-links", status_code=201)
        async def create_observation_link(tracker_id: str, request: ObservationLinkCreateRequest,
                                          principal_id: str = principal):
            context = parse_observation_context(request.context_type, request.context_id)
            link = await self.observation_links.create_observation_link(
                tracker_id, principal_id, request.observer_user_id, context
            )
            return ObservationLinkResponse.from_domain(link)

        @app.delete("/observation-links/{link_id}")
        async def revoke_observation_link(link_id: str, principal_id: str = principal):
            link = await self.observation_links.revoke_observation_link(link_id, principal_id)
            return ObservationLinkResponse.from_domain(link)

        @app.get("/observable-trackers")
        async def list_observable_trackers(principal_id: str = principal,
                                           context: Optional[ObservationContext] = context_param):
            if context is None:
                raise ValidationError("An observation context is required", {"kind": "observation_context"})
            trackers = await self.observation_links.list_observable_trackers(context, principal_id)
            return [TrackerResponse.from_domain(t) for t in trackers]

        # Reminders

        @app.get("/trackers/{tracker_id}/reminders")
        async def list_reminders(tracker_id: str, principal_id: str = principal):
            reminders = await self.reminders.list_reminders(tracker_id, principal_id)
            return [ReminderResponse.from_domain(r) for r in reminders]

        @app.post("/trackers/{tracker_id}/reminders", status_code=201)
        async def create_reminder(tracker_id: str, request: ReminderCreateRequest,
                                  principal_id: str = principal):
            reminder = await self.reminders.create_reminder(
                tracker_id,
                principal_id,
                request.reminder_kind,
                schedule=request.schedule,
                delivery_channels=request.delivery_channels,
                is_active=request.is_active
            )
            return ReminderResponse.from_domain(reminder)

        @app.patch("/reminders/{reminder_id}")
        async def update_reminder(reminder_id: str, request: ReminderUpdateRequest,
                                  principal_id: str = principal):
            reminder = await self.reminders.update_reminder(
                reminder_id, principal_id, request.model_dump(exclude_unset=True)
            )
            return ReminderResponse.from_domain(reminder)

        @app.delete("/reminders/{reminder_id}", status_code=204)
        async def delete_reminder(reminder_id: str, principal_id: str = principal):
            await self.reminders.delete_reminder(reminder_id, principal_id)
            return Response(status_code=204)

        @app.post("/reminders/{reminder_id}/evaluate", response_model=ReminderDecisionResponse)
        async def evaluate_reminder(reminder_id: str, at: Optional[datetime] = None,
                                    principal_id: str = principal):
            reminder = await self.reminders.get_reminder(reminder_id, principal_id)
            if reminder is None:
                raise NotFoundError("Reminder not found", {"reminder_id": reminder_id})
            decision = await self.reminder_evaluator.evaluate(reminder, at or datetime.now())
            return {"reminder_id": reminder_id, "should_fire": decision.should_fire, "reason": decision.reason}

        # Context events

        @app.get("/context-events")
        async def list_context_events(start_date: Optional[str] = None, end_date: Optional[str] = None,
                                      principal_id: str = principal):
            events = await self.context_events.list_context_events(principal_id, start_date, end_date)
            return [ContextEventResponse.from_domain(e) for e in events]

        @app.post("/context-events", status_code=201)
        async def create_context_event(request: ContextEventCreateRequest, principal_id: str = principal):
            event = await self.context_events.create_context_event(
                principal_id,
                request.context_type,
                request.label,
                request.start_date,
                end_date=request.end_date,
                severity=request.severity,
                notes=request.notes
            )
            return ContextEventResponse.from_domain(event)

        @app.get("/context-events/{event_id}")
        async def get_context_event(event_id: str, principal_id: str = principal):
            event = await self.context_events.get_context_event(event_id, principal_id)
            if event is None:
                raise NotFoundError("Context event not found", {"event_id": event_id})
            return ContextEventResponse.from_domain(event)

        @app.patch("/context-events/{event_id}")
        async def update_context_event(event_id: str, request: ContextEventUpdateRequest,
                                       principal_id: str = principal):
            event = await self.context_events.update_context_event(
                event_id, principal_id, request.model_dump(exclude_unset=True)
            )
            return ContextEventResponse.from_domain(event)

        @app.delete("/context-events/{event_id}")
        async def archive_context_event(event_id: str, principal_id: str = principal):
            event = await self.context_events.archive_context_event(event_id, principal_id)
            return ContextEventResponse.from_domain(event)

        # Interpretations

        @app.get("/interpretations")
        async def list_interpretations(tracker_id: Optional[str] = None, principal_id: str = principal):
            interpretations = await self.interpretations.list_interpretations(principal_id, tracker_id)
            return [InterpretationResponse.from_domain(i) for i in interpretations]

        @app.post("/interpretations", status_code=201)
        async def create_interpretation(request: InterpretationCreateRequest, principal_id: str = principal):
            interpretation = await self.interpretations.create_interpretation(
                principal_id,
                request.tracker_ids,
                request.start_date,
                request.title,
                request.body,
                end_date=request.end_date,
                context_event_id=request.context_event_id
            )
            return InterpretationResponse.from_domain(interpretation)

        @app.get("/interpretations/{interpretation_id}")
        async def get_interpretation(interpretation_id: str, principal_id: str = principal):
            interpretation = await self.interpretations.get_interpretation(interpretation_id, principal_id)
            if interpretation is None:
                raise NotFoundError("Interpretation not found", {"interpretation_id": interpretation_id})
            return InterpretationResponse.from_domain(interpretation)

        @app.patch("/interpretations/{interpretation_id}")
        async def update_interpretation(interpretation_id: str, request: InterpretationUpdateRequest,
                                        principal_id: str = principal):
            interpretation = await self.interpretations.update_interpretation(
                interpretation_id, principal_id, request.model_dump(exclude_unset=True)
            )
            return InterpretationResponse.from_domain(interpretation)

        @app.delete("/interpretations/{interpretation_id}")
        async def archive_interpretation(interpretation_id: str, principal_id: str = principal):
            interpretation = await self.interpretations.archive_interpretation(interpretation_id, principal_id)
            return InterpretationResponse.from_domain(interpretation)

        # Insights

        @app.post("/insights")
        async def get_insights(request: InsightsRequest, principal_id: str = principal,
                               context: Optional[ObservationContext] = context_param):
            return await self.insights.get_tracker_insights(
                request.tracker_ids, principal_id, request.start_date, request.end_date, context
            )

        @app.get("/trackers/{tracker_id}/context-comparison")
        async def get_context_comparison(tracker_id: str, field_id: str = Query(...),
                                         event_id: str = Query(...), principal_id: str = principal):
            return await self.insights.get_context_comparison(tracker_id, field_id, event_id, principal_id)

    async def _check_dependencies(self):
        """Check trackers service dependencies."""
        dependencies = {}

        if await self.store.health_check():
            dependencies["store"] = "ok"
        else:
            dependencies["store"] = "error"

        if await self.cache.health_check():
            dependencies["insights_cache"] = "ok"
        else:
            dependencies["insights_cache"] = "error"

        return dependencies

    async def start(self):
        """Start trackers service components."""
        await self.store.start()
        await self.cache.start()
        self.logger.info(
            "Trackers service started",
            store_backend=self.config.store_backend,
            insights_cache_backend=self.config.insights_cache_backend
        )

    async def stop(self):
        """Stop trackers service components."""
        await self.cache.stop()
        await self.store.stop()
        self.logger.info("Trackers service stopped")


def create_app(config: Optional[ServiceConfig] = None, store=None):
    """Create trackers service application."""
    service = TrackersService(config=config, store=store)
    return service.app


if __name__ == "__main__":
    service = TrackersService()
    service.run()
