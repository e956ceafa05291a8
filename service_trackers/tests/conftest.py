"""
Shared fixtures for the trackers service unit tests.

Every fixture wires the services against a fresh ``InMemoryStore`` the same
way ``TrackersService`` does, so tests exercise the real resolver and
enforcement layer.
"""

import pytest

from shared import test_helpers
from shared.metrics import get_metrics_collector

from service_trackers.app.analytics.insights import InsightsService
from service_trackers.app.cache.insights_cache import MemoryInsightsCache
from service_trackers.app.permissions.enforcement import Enforcer
from service_trackers.app.permissions.resolver import EntityPermissionResolver, PermissionResolver
from service_trackers.app.services.context import ContextEventService, InterpretationService
from service_trackers.app.services.entries import EntryService
from service_trackers.app.services.reminders import ReminderEvaluator, ReminderPolicy, ReminderService
from service_trackers.app.services.sharing import GrantService, ObservationLinkService, ShareLinkService
from service_trackers.app.services.templates import TemplateService
from service_trackers.app.services.trackers import TrackerService
from service_trackers.app.store.memory import InMemoryStore


@pytest.fixture
def factory():
    """Test data factory."""
    return test_helpers.test_data_factory


@pytest.fixture
def store():
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def metrics():
    """Metrics collector on its own registry."""
    return get_metrics_collector("trackers-test")


@pytest.fixture
def resolver(store, metrics):
    """Permission resolver over the in-memory store."""
    return PermissionResolver(store, store, store, metrics)


@pytest.fixture
def entity_resolver(store):
    """Project-ceiling resolver over the in-memory store."""
    return EntityPermissionResolver(store, store, store)


@pytest.fixture
def enforcer(resolver, store):
    """Enforcement layer."""
    return Enforcer(resolver, store)


@pytest.fixture
def insights_cache():
    """In-memory insights cache."""
    return MemoryInsightsCache(ttl_seconds=300)


@pytest.fixture
def template_service(store, resolver, enforcer):
    """Template service."""
    return TemplateService(store, resolver, enforcer)


@pytest.fixture
def tracker_service(store, resolver, enforcer):
    """Tracker service."""
    return TrackerService(store, store, store, resolver, enforcer)


@pytest.fixture
def entry_service(store, enforcer, insights_cache):
    """Entry service invalidating the insights cache."""
    return EntryService(store, enforcer, insights_cache)


@pytest.fixture
def grant_service(store, enforcer):
    """Grant service."""
    return GrantService(store, store, enforcer)


@pytest.fixture
def observation_service(store, resolver, enforcer):
    """Observation link service."""
    return ObservationLinkService(store, store, resolver, enforcer)


@pytest.fixture
def share_link_service(store, resolver, enforcer, template_service):
    """Template share link service."""
    return ShareLinkService(store, resolver, enforcer, template_service)


@pytest.fixture
def reminder_service(store, enforcer):
    """Reminder service."""
    return ReminderService(store, enforcer)


@pytest.fixture
def reminder_evaluator(store, resolver):
    """Reminder evaluator with the default policy."""
    return ReminderEvaluator(store, resolver, ReminderPolicy())


@pytest.fixture
def context_service(store):
    """Context event service."""
    return ContextEventService(store)


@pytest.fixture
def interpretation_service(store, enforcer):
    """Interpretation service."""
    return InterpretationService(store, enforcer)


@pytest.fixture
def insights_service(store, enforcer, insights_cache):
    """Insights service."""
    return InsightsService(store, enforcer, insights_cache)
