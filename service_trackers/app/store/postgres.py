"""
PostgreSQL store.

Implements every collaborator interface on asyncpg. Daily-entry uniqueness is a
partial unique index, and share-link use counts are bumped with
``UPDATE ... WHERE use_count = $expected``. Driver errors are wrapped in
``StoreError`` naming the operation; unique violations become ``ConflictError``.
"""

import json
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from shared.errors import ConflictError, StoreError
from shared.logging import get_logger

from ..domain.models import (
    ContextEvent,
    EntryGranularity,
    ObservationContext,
    ObservationContextType,
    ObservationLink,
    PermissionGrant,
    PermissionRole,
    QuietHours,
    ReminderKind,
    ReminderSchedule,
    SubjectType,
    TemplateScope,
    TemplateShareLink,
    Tracker,
    TrackerEntry,
    TrackerInterpretation,
    TrackerReminder,
    TrackerTemplate,
    schema_from_dicts,
    schema_to_dicts,
)
from .base import EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository

DAILY_ENTRY_INDEX = "uq_tracker_entries_daily"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tracker_templates (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        created_by TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        field_schema JSONB NOT NULL,
        entry_granularity TEXT NOT NULL DEFAULT 'daily',
        scope TEXT NOT NULL DEFAULT 'user',
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        published_at TIMESTAMP WITH TIME ZONE,
        chart_config JSONB,
        tags JSONB NOT NULL DEFAULT '[]',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        archived_at TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_templates_owner ON tracker_templates(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_templates_scope ON tracker_templates(scope)",
    """
    CREATE TABLE IF NOT EXISTS trackers (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        template_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        field_schema_snapshot JSONB NOT NULL,
        entry_granularity TEXT NOT NULL DEFAULT 'daily',
        display_order INTEGER NOT NULL DEFAULT 0,
        chart_config JSONB,
        icon TEXT,
        color TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        archived_at TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trackers_owner ON trackers(owner_id)",
    """
    CREATE TABLE IF NOT EXISTS tracker_entries (
        id TEXT PRIMARY KEY,
        tracker_id TEXT NOT NULL REFERENCES trackers(id),
        user_id TEXT NOT NULL,
        entry_date DATE NOT NULL,
        field_values JSONB NOT NULL DEFAULT '{}',
        notes TEXT,
        entry_granularity TEXT NOT NULL DEFAULT 'daily',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {DAILY_ENTRY_INDEX}
        ON tracker_entries(tracker_id, user_id, entry_date)
        WHERE entry_granularity = 'daily'
    """,
    "CREATE INDEX IF NOT EXISTS idx_entries_tracker_date ON tracker_entries(tracker_id, entry_date DESC)",
    """
    CREATE TABLE IF NOT EXISTS permission_grants (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        subject_type TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        role TEXT NOT NULL,
        granted_by TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        revoked_at TIMESTAMP WITH TIME ZONE,
        UNIQUE (entity_type, entity_id, subject_type, subject_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_grants_subject ON permission_grants(subject_type, subject_id)",
    """
    CREATE TABLE IF NOT EXISTS observation_links (
        id TEXT PRIMARY KEY,
        tracker_id TEXT NOT NULL,
        observer_user_id TEXT NOT NULL,
        context_type TEXT NOT NULL,
        context_id TEXT NOT NULL,
        granted_by TEXT NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        revoked_at TIMESTAMP WITH TIME ZONE,
        UNIQUE (tracker_id, observer_user_id, context_type, context_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tracker_reminders (
        id TEXT PRIMARY KEY,
        tracker_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        reminder_kind TEXT NOT NULL,
        schedule JSONB,
        delivery_channels JSONB NOT NULL DEFAULT '["in_app"]',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS template_share_links (
        id TEXT PRIMARY KEY,
        template_id TEXT NOT NULL,
        created_by TEXT NOT NULL,
        share_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMP WITH TIME ZONE,
        max_uses INTEGER,
        use_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        revoked_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS context_events (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        context_type TEXT NOT NULL,
        label TEXT NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE,
        severity TEXT,
        notes TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        archived_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tracker_interpretations (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        tracker_ids JSONB NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE,
        title TEXT NOT NULL,
        body TEXT NOT NULL,
        context_event_id TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        archived_at TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_profiles (
        principal_id TEXT PRIMARY KEY,
        profile_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        PRIMARY KEY (group_id, principal_id)
    )
    """,
    "CREATE TABLE IF NOT EXISTS admins (principal_id TEXT PRIMARY KEY)",
    """
    CREATE TABLE IF NOT EXISTS project_entities (
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        created_by TEXT,
        PRIMARY KEY (entity_type, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_members (
        project_id TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        role TEXT NOT NULL,
        PRIMARY KEY (project_id, principal_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS creator_rights_revocations (
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        creator_id TEXT NOT NULL,
        revoked_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        PRIMARY KEY (entity_type, entity_id, creator_id)
    )
    """,
]

_ENTITY_TABLES = {"tracker": "trackers", "template": "tracker_templates"}


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


def _schedule_to_json(schedule: Optional[ReminderSchedule]) -> Optional[Dict[str, Any]]:
    if schedule is None:
        return None
    return {
        "time_of_day": schedule.time_of_day,
        "days": schedule.days,
        "quiet_hours": ({"start": schedule.quiet_hours.start, "end": schedule.quiet_hours.end}
                        if schedule.quiet_hours else None),
    }


def _schedule_from_json(data: Optional[Dict[str, Any]]) -> Optional[ReminderSchedule]:
    if data is None:
        return None
    quiet = data.get("quiet_hours")
    return ReminderSchedule(
        time_of_day=data.get("time_of_day"),
        days=data.get("days") or [],
        quiet_hours=QuietHours(quiet["start"], quiet["end"]) if quiet else None,
    )


class PostgresStore(EntitlementStore, PrincipalDirectory, ProjectDirectory, TrackerRepository):
    """asyncpg-backed implementation of every collaborator interface."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("trackers.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=_init_connection
            )
            async with self.pool.acquire() as conn:
                for statement in SCHEMA:
                    await conn.execute(statement)
            self.logger.info("PostgreSQL store started")
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StoreError("start", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL store stopped")

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == DAILY_ENTRY_INDEX:
                raise ConflictError(
                    "An entry already exists for this date. Use update instead.",
                    {"kind": "duplicate_entry", "operation": operation}
                )
            raise ConflictError(f"{operation}: duplicate row", {"kind": "unique", "operation": operation})
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Store operation failed", operation=operation, error=str(e))
            raise StoreError(operation, str(e))

    # EntitlementStore

    async def get_owner(self, entity_id: str, entity_type: str = "tracker") -> Optional[str]:
        table = _ENTITY_TABLES.get(entity_type)
        if table is None:
            return None
        async with self._connection("get_owner") as conn:
            return await conn.fetchval(f"SELECT owner_id FROM {table} WHERE id = $1", entity_id)

    async def get_archival_state(self, entity_id: str, entity_type: str = "tracker") -> Optional[datetime]:
        table = _ENTITY_TABLES.get(entity_type)
        if table is None:
            return None
        async with self._connection("get_archival_state") as conn:
            return await conn.fetchval(f"SELECT archived_at FROM {table} WHERE id = $1", entity_id)

    async def entity_exists(self, entity_id: str, entity_type: str = "tracker") -> bool:
        table = _ENTITY_TABLES.get(entity_type)
        if table is None:
            return False
        async with self._connection("entity_exists") as conn:
            return bool(await conn.fetchval(f"SELECT EXISTS(SELECT 1 FROM {table} WHERE id = $1)", entity_id))

    async def list_active_grants(self, entity_type: str, entity_id: str,
                                 profile_id: Optional[str], group_ids: Sequence[str]) -> List[PermissionGrant]:
        async with self._connection("list_active_grants") as conn:
            rows = await conn.fetch("""
                SELECT * FROM permission_grants
                WHERE entity_type = $1 AND entity_id = $2 AND revoked_at IS NULL
                  AND ((subject_type = 'user' AND subject_id = $3)
                       OR (subject_type = 'group' AND subject_id = ANY($4::text[])))
            """, entity_type, entity_id, profile_id, list(group_ids))
        return [self._row_to_grant(row) for row in rows]

    async def list_grants_for_entity(self, entity_type: str, entity_id: str,
                                     include_revoked: bool = False) -> List[PermissionGrant]:
        async with self._connection("list_grants_for_entity") as conn:
            rows = await conn.fetch("""
                SELECT * FROM permission_grants
                WHERE entity_type = $1 AND entity_id = $2 AND ($3 OR revoked_at IS NULL)
                ORDER BY created_at
            """, entity_type, entity_id, include_revoked)
        return [self._row_to_grant(row) for row in rows]

    async def find_grant(self, entity_type: str, entity_id: str,
                         subject_type: SubjectType, subject_id: str) -> Optional[PermissionGrant]:
        async with self._connection("find_grant") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM permission_grants
                WHERE entity_type = $1 AND entity_id = $2 AND subject_type = $3 AND subject_id = $4
            """, entity_type, entity_id, SubjectType(subject_type).value, subject_id)
        return self._row_to_grant(row) if row else None

    async def save_grant(self, grant: PermissionGrant) -> PermissionGrant:
        async with self._connection("save_grant") as conn:
            await conn.execute("""
                INSERT INTO permission_grants (
                    id, entity_type, entity_id, subject_type, subject_id, role,
                    granted_by, created_at, revoked_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (id) DO UPDATE SET
                    role = EXCLUDED.role,
                    granted_by = EXCLUDED.granted_by,
                    revoked_at = EXCLUDED.revoked_at
            """,
                grant.id, grant.entity_type, grant.entity_id, grant.subject_type.value,
                grant.subject_id, PermissionRole(grant.role).value, grant.granted_by,
                grant.created_at, grant.revoked_at
            )
        return grant

    async def list_entity_ids_granted_to(self, entity_type: str, profile_id: str,
                                         group_ids: Sequence[str]) -> List[str]:
        async with self._connection("list_entity_ids_granted_to") as conn:
            rows = await conn.fetch("""
                SELECT entity_id, MIN(created_at) AS first_granted FROM permission_grants
                WHERE entity_type = $1 AND revoked_at IS NULL
                  AND ((subject_type = 'user' AND subject_id = $2)
                       OR (subject_type = 'group' AND subject_id = ANY($3::text[])))
                GROUP BY entity_id
                ORDER BY first_granted
            """, entity_type, profile_id, list(group_ids))
        return [row["entity_id"] for row in rows]

    async def list_active_observation_links(self, tracker_id: str, observer_user_id: str,
                                            context: ObservationContext) -> List[ObservationLink]:
        async with self._connection("list_active_observation_links") as conn:
            rows = await conn.fetch("""
                SELECT * FROM observation_links
                WHERE tracker_id = $1 AND observer_user_id = $2
                  AND context_type = $3 AND context_id = $4 AND revoked_at IS NULL
            """, tracker_id, observer_user_id, context.type.value, context.id)
        return [self._row_to_link(row) for row in rows]

    async def find_observation_link(self, tracker_id: str, observer_user_id: str,
                                    context: ObservationContext) -> Optional[ObservationLink]:
        async with self._connection("find_observation_link") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM observation_links
                WHERE tracker_id = $1 AND observer_user_id = $2 AND context_type = $3 AND context_id = $4
            """, tracker_id, observer_user_id, context.type.value, context.id)
        return self._row_to_link(row) if row else None

    async def get_observation_link(self, link_id: str) -> Optional[ObservationLink]:
        async with self._connection("get_observation_link") as conn:
            row = await conn.fetchrow("SELECT * FROM observation_links WHERE id = $1", link_id)
        return self._row_to_link(row) if row else None

    async def save_observation_link(self, link: ObservationLink) -> ObservationLink:
        async with self._connection("save_observation_link") as conn:
            await conn.execute("""
                INSERT INTO observation_links (
                    id, tracker_id, observer_user_id, context_type, context_id,
                    granted_by, created_at, revoked_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (id) DO UPDATE SET
                    granted_by = EXCLUDED.granted_by,
                    revoked_at = EXCLUDED.revoked_at
            """,
                link.id, link.tracker_id, link.observer_user_id, link.context_type.value,
                link.context_id, link.granted_by, link.created_at, link.revoked_at
            )
        return link

    async def list_observation_links_for_tracker(self, tracker_id: str,
                                                 include_revoked: bool = False) -> List[ObservationLink]:
        async with self._connection("list_observation_links_for_tracker") as conn:
            rows = await conn.fetch("""
                SELECT * FROM observation_links
                WHERE tracker_id = $1 AND ($2 OR revoked_at IS NULL)
                ORDER BY created_at
            """, tracker_id, include_revoked)
        return [self._row_to_link(row) for row in rows]

    async def list_observable_tracker_ids(self, observer_user_id: str,
                                          context: ObservationContext) -> List[str]:
        async with self._connection("list_observable_tracker_ids") as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT tracker_id FROM observation_links
                WHERE observer_user_id = $1 AND context_type = $2 AND context_id = $3
                  AND revoked_at IS NULL
            """, observer_user_id, context.type.value, context.id)
        return [row["tracker_id"] for row in rows]

    # PrincipalDirectory

    async def resolve_profile_id(self, principal_id: str) -> Optional[str]:
        async with self._connection("resolve_profile_id") as conn:
            row = await conn.fetchrow(
                "SELECT profile_id FROM principal_profiles WHERE principal_id = $1", principal_id
            )
        if row is None:
            return principal_id
        return row["profile_id"]

    async def resolve_groups_for(self, principal_id: str) -> List[str]:
        async with self._connection("resolve_groups_for") as conn:
            rows = await conn.fetch(
                "SELECT group_id FROM group_members WHERE principal_id = $1 ORDER BY group_id", principal_id
            )
        return [row["group_id"] for row in rows]

    async def is_admin(self, principal_id: str) -> bool:
        async with self._connection("is_admin") as conn:
            return bool(await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM admins WHERE principal_id = $1)", principal_id
            ))

    # ProjectDirectory

    async def get_project_for_entity(self, entity_type: str, entity_id: str) -> Optional[str]:
        async with self._connection("get_project_for_entity") as conn:
            return await conn.fetchval(
                "SELECT project_id FROM project_entities WHERE entity_type = $1 AND entity_id = $2",
                entity_type, entity_id
            )

    async def get_project_role(self, principal_id: str, project_id: str) -> Optional[PermissionRole]:
        async with self._connection("get_project_role") as conn:
            role = await conn.fetchval(
                "SELECT role FROM project_members WHERE project_id = $1 AND principal_id = $2",
                project_id, principal_id
            )
        return PermissionRole(role) if role else None

    async def get_entity_creator(self, entity_type: str, entity_id: str) -> Optional[str]:
        async with self._connection("get_entity_creator") as conn:
            return await conn.fetchval(
                "SELECT created_by FROM project_entities WHERE entity_type = $1 AND entity_id = $2",
                entity_type, entity_id
            )

    async def is_creator_rights_revoked(self, entity_type: str, entity_id: str, creator_id: str) -> bool:
        async with self._connection("is_creator_rights_revoked") as conn:
            return bool(await conn.fetchval("""
                SELECT EXISTS(
                    SELECT 1 FROM creator_rights_revocations
                    WHERE entity_type = $1 AND entity_id = $2 AND creator_id = $3
                )
            """, entity_type, entity_id, creator_id))

    # Templates

    async def insert_template(self, template: TrackerTemplate) -> TrackerTemplate:
        async with self._connection("insert_template") as conn:
            await conn.execute("""
                INSERT INTO tracker_templates (
                    id, owner_id, created_by, name, description, field_schema, entry_granularity,
                    scope, is_locked, published_at, chart_config, tags, version,
                    created_at, updated_at, archived_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            """, *self._template_params(template))
        return template

    async def get_template(self, template_id: str) -> Optional[TrackerTemplate]:
        async with self._connection("get_template") as conn:
            row = await conn.fetchrow("SELECT * FROM tracker_templates WHERE id = $1", template_id)
        return self._row_to_template(row) if row else None

    async def update_template(self, template: TrackerTemplate) -> TrackerTemplate:
        async with self._connection("update_template") as conn:
            await conn.execute("""
                UPDATE tracker_templates SET
                    owner_id = $2, created_by = $3, name = $4, description = $5, field_schema = $6,
                    entry_granularity = $7, scope = $8, is_locked = $9, published_at = $10,
                    chart_config = $11, tags = $12, version = $13, created_at = $14,
                    updated_at = $15, archived_at = $16
                WHERE id = $1
            """, *self._template_params(template))
        return template

    async def list_templates(self, owner_id: str, include_archived: bool = False) -> List[TrackerTemplate]:
        async with self._connection("list_templates") as conn:
            rows = await conn.fetch("""
                SELECT * FROM tracker_templates
                WHERE (scope = 'global' OR owner_id = $1) AND ($2 OR archived_at IS NULL)
                ORDER BY created_at DESC
            """, owner_id, include_archived)
        return [self._row_to_template(row) for row in rows]

    async def user_template_name_exists(self, owner_id: str, name: str) -> bool:
        async with self._connection("user_template_name_exists") as conn:
            return bool(await conn.fetchval("""
                SELECT EXISTS(
                    SELECT 1 FROM tracker_templates
                    WHERE owner_id = $1 AND name = $2 AND scope = 'user' AND archived_at IS NULL
                )
            """, owner_id, name))

    # Trackers

    async def insert_tracker(self, tracker: Tracker) -> Tracker:
        async with self._connection("insert_tracker") as conn:
            await conn.execute("""
                INSERT INTO trackers (
                    id, owner_id, template_id, name, description, field_schema_snapshot,
                    entry_granularity, display_order, chart_config, icon, color,
                    created_at, updated_at, archived_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """,
                tracker.id, tracker.owner_id, tracker.template_id, tracker.name, tracker.description,
                schema_to_dicts(tracker.field_schema_snapshot), tracker.entry_granularity.value,
                tracker.display_order, tracker.chart_config, tracker.icon, tracker.color,
                tracker.created_at, tracker.updated_at, tracker.archived_at
            )
        return tracker

    async def get_tracker(self, tracker_id: str) -> Optional[Tracker]:
        async with self._connection("get_tracker") as conn:
            row = await conn.fetchrow("SELECT * FROM trackers WHERE id = $1", tracker_id)
        return self._row_to_tracker(row) if row else None

    async def update_tracker(self, tracker: Tracker) -> Tracker:
        """Updates mutable columns only. The schema snapshot is never written after insert."""
        async with self._connection("update_tracker") as conn:
            row = await conn.fetchrow("""
                UPDATE trackers SET
                    name = $2, description = $3, display_order = $4, chart_config = $5,
                    icon = $6, color = $7, updated_at = $8, archived_at = $9
                WHERE id = $1
                RETURNING *
            """,
                tracker.id, tracker.name, tracker.description, tracker.display_order,
                tracker.chart_config, tracker.icon, tracker.color, tracker.updated_at, tracker.archived_at
            )
        return self._row_to_tracker(row) if row else tracker

    async def list_trackers_by_ids(self, tracker_ids: Sequence[str],
                                   include_archived: bool = False) -> List[Tracker]:
        if not tracker_ids:
            return []
        async with self._connection("list_trackers_by_ids") as conn:
            rows = await conn.fetch("""
                SELECT * FROM trackers
                WHERE id = ANY($1::text[]) AND ($2 OR archived_at IS NULL)
            """, list(tracker_ids), include_archived)
        by_id = {row["id"]: self._row_to_tracker(row) for row in rows}
        return [by_id[tid] for tid in tracker_ids if tid in by_id]

    async def list_owned_trackers(self, owner_id: str, include_archived: bool = False) -> List[Tracker]:
        async with self._connection("list_owned_trackers") as conn:
            rows = await conn.fetch("""
                SELECT * FROM trackers
                WHERE owner_id = $1 AND ($2 OR archived_at IS NULL)
                ORDER BY display_order, created_at DESC
            """, owner_id, include_archived)
        return [self._row_to_tracker(row) for row in rows]

    async def max_display_order(self, owner_id: str) -> int:
        async with self._connection("max_display_order") as conn:
            value = await conn.fetchval(
                "SELECT MAX(display_order) FROM trackers WHERE owner_id = $1 AND archived_at IS NULL",
                owner_id
            )
        return -1 if value is None else value

    # Entries

    async def insert_entry(self, entry: TrackerEntry) -> TrackerEntry:
        async with self._connection("insert_entry") as conn:
            await conn.execute("""
                INSERT INTO tracker_entries (
                    id, tracker_id, user_id, entry_date, field_values, notes,
                    entry_granularity, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
                entry.id, entry.tracker_id, entry.user_id, entry.entry_date, entry.field_values,
                entry.notes, entry.entry_granularity.value, entry.created_at, entry.updated_at
            )
        return entry

    async def get_entry(self, entry_id: str) -> Optional[TrackerEntry]:
        async with self._connection("get_entry") as conn:
            row = await conn.fetchrow("SELECT * FROM tracker_entries WHERE id = $1", entry_id)
        return self._row_to_entry(row) if row else None

    async def update_entry(self, entry: TrackerEntry) -> TrackerEntry:
        async with self._connection("update_entry") as conn:
            await conn.execute("""
                UPDATE tracker_entries SET field_values = $2, notes = $3, updated_at = $4
                WHERE id = $1
            """, entry.id, entry.field_values, entry.notes, entry.updated_at)
        return entry

    async def find_entries_for_date(self, tracker_id: str, user_id: str, entry_date: date) -> List[TrackerEntry]:
        async with self._connection("find_entries_for_date") as conn:
            rows = await conn.fetch("""
                SELECT * FROM tracker_entries
                WHERE tracker_id = $1 AND user_id = $2 AND entry_date = $3
                ORDER BY created_at
            """, tracker_id, user_id, entry_date)
        return [self._row_to_entry(row) for row in rows]

    async def list_entries(self, tracker_id: str, start_date: Optional[date] = None,
                           end_date: Optional[date] = None) -> List[TrackerEntry]:
        async with self._connection("list_entries") as conn:
            rows = await conn.fetch("""
                SELECT * FROM tracker_entries
                WHERE tracker_id = $1
                  AND ($2::date IS NULL OR entry_date >= $2)
                  AND ($3::date IS NULL OR entry_date <= $3)
                ORDER BY entry_date DESC, created_at DESC
            """, tracker_id, start_date, end_date)
        return [self._row_to_entry(row) for row in rows]

    # Reminders

    async def insert_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        async with self._connection("insert_reminder") as conn:
            await conn.execute("""
                INSERT INTO tracker_reminders (
                    id, tracker_id, owner_id, reminder_kind, schedule, delivery_channels,
                    is_active, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
                reminder.id, reminder.tracker_id, reminder.owner_id, reminder.reminder_kind.value,
                _schedule_to_json(reminder.schedule), reminder.delivery_channels, reminder.is_active,
                reminder.created_at, reminder.updated_at
            )
        return reminder

    async def get_reminder(self, reminder_id: str) -> Optional[TrackerReminder]:
        async with self._connection("get_reminder") as conn:
            row = await conn.fetchrow("SELECT * FROM tracker_reminders WHERE id = $1", reminder_id)
        return self._row_to_reminder(row) if row else None

    async def update_reminder(self, reminder: TrackerReminder) -> TrackerReminder:
        async with self._connection("update_reminder") as conn:
            await conn.execute("""
                UPDATE tracker_reminders SET
                    schedule = $2, delivery_channels = $3, is_active = $4, updated_at = $5
                WHERE id = $1
            """,
                reminder.id, _schedule_to_json(reminder.schedule), reminder.delivery_channels,
                reminder.is_active, reminder.updated_at
            )
        return reminder

    async def delete_reminder(self, reminder_id: str) -> bool:
        async with self._connection("delete_reminder") as conn:
            result = await conn.execute("DELETE FROM tracker_reminders WHERE id = $1", reminder_id)
        return result == "DELETE 1"

    async def list_reminders(self, tracker_id: Optional[str] = None,
                             owner_id: Optional[str] = None) -> List[TrackerReminder]:
        async with self._connection("list_reminders") as conn:
            rows = await conn.fetch("""
                SELECT * FROM tracker_reminders
                WHERE ($1::text IS NULL OR tracker_id = $1) AND ($2::text IS NULL OR owner_id = $2)
                ORDER BY created_at
            """, tracker_id, owner_id)
        return [self._row_to_reminder(row) for row in rows]

    # Share links

    async def insert_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        async with self._connection("insert_share_link") as conn:
            await conn.execute("""
                INSERT INTO template_share_links (
                    id, template_id, created_by, share_token, expires_at, max_uses,
                    use_count, created_at, revoked_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
                link.id, link.template_id, link.created_by, link.share_token, link.expires_at,
                link.max_uses, link.use_count, link.created_at, link.revoked_at
            )
        return link

    async def get_share_link_by_token(self, token: str) -> Optional[TemplateShareLink]:
        async with self._connection("get_share_link_by_token") as conn:
            row = await conn.fetchrow("SELECT * FROM template_share_links WHERE share_token = $1", token)
        return self._row_to_share_link(row) if row else None

    async def get_share_link(self, link_id: str) -> Optional[TemplateShareLink]:
        async with self._connection("get_share_link") as conn:
            row = await conn.fetchrow("SELECT * FROM template_share_links WHERE id = $1", link_id)
        return self._row_to_share_link(row) if row else None

    async def update_share_link(self, link: TemplateShareLink) -> TemplateShareLink:
        async with self._connection("update_share_link") as conn:
            await conn.execute("""
                UPDATE template_share_links SET expires_at = $2, max_uses = $3, revoked_at = $4
                WHERE id = $1
            """, link.id, link.expires_at, link.max_uses, link.revoked_at)
        return link

    async def list_share_links(self, template_id: str) -> List[TemplateShareLink]:
        async with self._connection("list_share_links") as conn:
            rows = await conn.fetch(
                "SELECT * FROM template_share_links WHERE template_id = $1 ORDER BY created_at", template_id
            )
        return [self._row_to_share_link(row) for row in rows]

    async def increment_share_link_use(self, link_id: str, expected_count: int) -> bool:
        async with self._connection("increment_share_link_use") as conn:
            result = await conn.execute("""
                UPDATE template_share_links SET use_count = $2 + 1
                WHERE id = $1 AND use_count = $2
            """, link_id, expected_count)
        return result == "UPDATE 1"

    # Context overlays

    async def insert_context_event(self, event: ContextEvent) -> ContextEvent:
        async with self._connection("insert_context_event") as conn:
            await conn.execute("""
                INSERT INTO context_events (
                    id, owner_id, context_type, label, start_date, end_date, severity, notes,
                    created_at, updated_at, archived_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
                event.id, event.owner_id, event.context_type, event.label, event.start_date,
                event.end_date, event.severity, event.notes, event.created_at, event.updated_at,
                event.archived_at
            )
        return event

    async def get_context_event(self, event_id: str) -> Optional[ContextEvent]:
        async with self._connection("get_context_event") as conn:
            row = await conn.fetchrow("SELECT * FROM context_events WHERE id = $1", event_id)
        return ContextEvent(**dict(row)) if row else None

    async def update_context_event(self, event: ContextEvent) -> ContextEvent:
        async with self._connection("update_context_event") as conn:
            await conn.execute("""
                UPDATE context_events SET
                    context_type = $2, label = $3, start_date = $4, end_date = $5, severity = $6,
                    notes = $7, updated_at = $8, archived_at = $9
                WHERE id = $1
            """,
                event.id, event.context_type, event.label, event.start_date, event.end_date,
                event.severity, event.notes, event.updated_at, event.archived_at
            )
        return event

    async def list_context_events(self, owner_id: str, start_date: Optional[date] = None,
                                  end_date: Optional[date] = None) -> List[ContextEvent]:
        async with self._connection("list_context_events") as conn:
            rows = await conn.fetch("""
                SELECT * FROM context_events
                WHERE owner_id = $1 AND archived_at IS NULL
                  AND ($2::date IS NULL OR end_date IS NULL OR end_date >= $2)
                  AND ($3::date IS NULL OR start_date <= $3)
                ORDER BY start_date
            """, owner_id, start_date, end_date)
        return [ContextEvent(**dict(row)) for row in rows]

    async def insert_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        async with self._connection("insert_interpretation") as conn:
            await conn.execute("""
                INSERT INTO tracker_interpretations (
                    id, owner_id, tracker_ids, start_date, end_date, title, body, context_event_id,
                    created_at, updated_at, archived_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
                interpretation.id, interpretation.owner_id, interpretation.tracker_ids,
                interpretation.start_date, interpretation.end_date, interpretation.title,
                interpretation.body, interpretation.context_event_id, interpretation.created_at,
                interpretation.updated_at, interpretation.archived_at
            )
        return interpretation

    async def get_interpretation(self, interpretation_id: str) -> Optional[TrackerInterpretation]:
        async with self._connection("get_interpretation") as conn:
            row = await conn.fetchrow("SELECT * FROM tracker_interpretations WHERE id = $1", interpretation_id)
        return TrackerInterpretation(**dict(row)) if row else None

    async def update_interpretation(self, interpretation: TrackerInterpretation) -> TrackerInterpretation:
        async with self._connection("update_interpretation") as conn:
            await conn.execute("""
                UPDATE tracker_interpretations SET
                    tracker_ids = $2, start_date = $3, end_date = $4, title = $5, body = $6,
                    context_event_id = $7, updated_at = $8, archived_at = $9
                WHERE id = $1
            """,
                interpretation.id, interpretation.tracker_ids, interpretation.start_date,
                interpretation.end_date, interpretation.title, interpretation.body,
                interpretation.context_event_id, interpretation.updated_at, interpretation.archived_at
            )
        return interpretation

    async def list_interpretations(self, owner_id: str,
                                   tracker_id: Optional[str] = None) -> List[TrackerInterpretation]:
        async with self._connection("list_interpretations") as conn:
            rows = await conn.fetch("""
                SELECT * FROM tracker_interpretations
                WHERE owner_id = $1 AND archived_at IS NULL
                  AND ($2::text IS NULL OR tracker_ids ? $2)
                ORDER BY start_date DESC
            """, owner_id, tracker_id)
        return [TrackerInterpretation(**dict(row)) for row in rows]

    # Health

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False

    async def stats(self) -> Dict[str, Any]:
        async with self._connection("stats") as conn:
            row = await conn.fetchrow("""
                SELECT
                    (SELECT COUNT(*) FROM tracker_templates) AS templates,
                    (SELECT COUNT(*) FROM trackers) AS trackers,
                    (SELECT COUNT(*) FROM tracker_entries) AS entries,
                    (SELECT COUNT(*) FROM permission_grants WHERE revoked_at IS NULL) AS active_grants,
                    (SELECT COUNT(*) FROM observation_links WHERE revoked_at IS NULL) AS active_observation_links
            """)
        return dict(row)

    # Row mapping

    def _template_params(self, template: TrackerTemplate):
        return (
            template.id, template.owner_id, template.created_by, template.name, template.description,
            schema_to_dicts(template.field_schema), template.entry_granularity.value,
            template.scope.value, template.is_locked, template.published_at, template.chart_config,
            list(template.tags), template.version, template.created_at, template.updated_at,
            template.archived_at,
        )

    def _row_to_template(self, row) -> TrackerTemplate:
        return TrackerTemplate(
            id=row["id"],
            owner_id=row["owner_id"],
            created_by=row["created_by"],
            name=row["name"],
            description=row["description"],
            field_schema=schema_from_dicts(row["field_schema"]),
            entry_granularity=EntryGranularity(row["entry_granularity"]),
            scope=TemplateScope(row["scope"]),
            is_locked=row["is_locked"],
            published_at=row["published_at"],
            chart_config=row["chart_config"],
            tags=row["tags"] or [],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            archived_at=row["archived_at"],
        )

    def _row_to_tracker(self, row) -> Tracker:
        return Tracker(
            id=row["id"],
            owner_id=row["owner_id"],
            template_id=row["template_id"],
            name=row["name"],
            description=row["description"],
            field_schema_snapshot=schema_from_dicts(row["field_schema_snapshot"]),
            entry_granularity=EntryGranularity(row["entry_granularity"]),
            display_order=row["display_order"],
            chart_config=row["chart_config"],
            icon=row["icon"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            archived_at=row["archived_at"],
        )

    def _row_to_entry(self, row) -> TrackerEntry:
        return TrackerEntry(
            id=row["id"],
            tracker_id=row["tracker_id"],
            user_id=row["user_id"],
            entry_date=row["entry_date"],
            field_values=row["field_values"] or {},
            notes=row["notes"],
            entry_granularity=EntryGranularity(row["entry_granularity"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_grant(self, row) -> PermissionGrant:
        return PermissionGrant(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            subject_type=SubjectType(row["subject_type"]),
            subject_id=row["subject_id"],
            role=PermissionRole(row["role"]),
            granted_by=row["granted_by"],
            created_at=row["created_at"],
            revoked_at=row["revoked_at"],
        )

    def _row_to_link(self, row) -> ObservationLink:
        return ObservationLink(
            id=row["id"],
            tracker_id=row["tracker_id"],
            observer_user_id=row["observer_user_id"],
            context_type=ObservationContextType(row["context_type"]),
            context_id=row["context_id"],
            granted_by=row["granted_by"],
            created_at=row["created_at"],
            revoked_at=row["revoked_at"],
        )

    def _row_to_reminder(self, row) -> TrackerReminder:
        return TrackerReminder(
            id=row["id"],
            tracker_id=row["tracker_id"],
            owner_id=row["owner_id"],
            reminder_kind=ReminderKind(row["reminder_kind"]),
            schedule=_schedule_from_json(row["schedule"]),
            delivery_channels=row["delivery_channels"] or [],
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_share_link(self, row) -> TemplateShareLink:
        return TemplateShareLink(
            id=row["id"],
            template_id=row["template_id"],
            created_by=row["created_by"],
            share_token=row["share_token"],
            expires_at=row["expires_at"],
            max_uses=row["max_uses"],
            use_count=row["use_count"],
            created_at=row["created_at"],
            revoked_at=row["revoked_at"],
        )
