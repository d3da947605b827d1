"""
Schema migrations for the authorization tables.

Each migration creates one table (with its indexes) if it does not exist yet
and is recorded in scopeauth_migrations once applied, so running them on
every startup is safe. The users table read by SqlIdentityStore is created
here too when it does not exist yet; an existing one is left untouched.
"""
from dataclasses import dataclass
from typing import List, Set

from sqlalchemy import Table, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from scopeauth.features.rbac.models import RoleAssignment, RoleAuditLog, SchemaMigration, ScopeHierarchy
from scopeauth.features.rbac.schemas import MigrationStatus
from scopeauth.features.users.models import User
from scopeauth.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    id: str
    description: str
    table: Table

    async def apply(self, conn: AsyncConnection) -> None:
        await conn.run_sync(lambda sync_conn: self.table.create(sync_conn, checkfirst=True))


MIGRATIONS: List[Migration] = [
    Migration("scopeauth-001", "Create role_assignments table and indexes", RoleAssignment.__table__),
    Migration("scopeauth-002", "Create role_audit_log table and indexes", RoleAuditLog.__table__),
    Migration("scopeauth-003", "Create scope_hierarchy table and indexes", ScopeHierarchy.__table__),
    Migration("scopeauth-004", "Create users table if missing", User.__table__),
]

_TRACKING_TABLE: Table = SchemaMigration.__table__


async def _applied_ids(conn: AsyncConnection) -> Set[str]:
    await conn.run_sync(lambda sync_conn: _TRACKING_TABLE.create(sync_conn, checkfirst=True))
    result = await conn.execute(select(SchemaMigration.id))
    return set(result.scalars().all())


async def run_migrations(engine: AsyncEngine) -> int:
    """
    Apply pending migrations.

    Returns:
        Number of migrations applied by this call (0 when already up to date)
    """
    applied = 0
    async with engine.begin() as conn:
        done = await _applied_ids(conn)
        for migration in MIGRATIONS:
            if migration.id in done:
                continue
            log.info(f"Applying migration {migration.id}: {migration.description}")
            await migration.apply(conn)
            await conn.execute(
                _TRACKING_TABLE.insert().values(id=migration.id, description=migration.description)
            )
            applied += 1
    if applied:
        log.info(f"Applied {applied} migration(s)")
    else:
        log.debug("Schema up to date")
    return applied


async def migration_status(engine: AsyncEngine) -> MigrationStatus:
    async with engine.begin() as conn:
        done = await _applied_ids(conn)
    applied_ids = [m.id for m in MIGRATIONS if m.id in done]
    pending_ids = [m.id for m in MIGRATIONS if m.id not in done]
    return MigrationStatus(
        total=len(MIGRATIONS),
        applied=len(applied_ids),
        pending=len(pending_ids),
        applied_ids=applied_ids,
        pending_ids=pending_ids,
    )
