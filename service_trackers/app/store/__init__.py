"""Collaborator interfaces and their in-memory and PostgreSQL implementations."""

from .base import EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository
from .memory import InMemoryStore
from .postgres import PostgresStore

__all__ = [
    "EntitlementStore",
    "PrincipalDirectory",
    "ProjectDirectory",
    "TrackerRepository",
    "InMemoryStore",
    "PostgresStore",
]


def create_store(config):
    """Build the configured store backend."""
    if config.store_backend == "postgres":
        return PostgresStore(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size,
        )
    return InMemoryStore()
