"""
Durable role assignments.

Every operation takes a RequestContext and runs on a session leased from the
ConnectionPoolManager. Inside a transaction the context already carries a
session and the store joins it instead of leasing a new one.

Mutation order for assign:
1. Registry validation (UnknownScope / UnknownRole)
2. Delegation check for the acting user (NotAuthorized)
3. Subject existence (UnknownSubject)
4. Conflict-free insert; a duplicate tuple is a silent no-op
"""
import asyncio
import inspect
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scopeauth.core import config
from scopeauth.core.database.pool import ConnectionPoolManager
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.errors import (
    BulkOperationError,
    Cancelled,
    NotAuthorized,
    RBACError,
    StoreUnavailable,
    UnknownSubject,
)
from scopeauth.features.rbac.hierarchy import ScopeHierarchyResolver, ScopeRef, TableScopeHierarchy
from scopeauth.features.rbac.models import RoleAssignment, RoleAuditLog, WILDCARD_SCOPE_ID
from scopeauth.features.rbac.registry import Registry
from scopeauth.features.rbac.schemas import (
    AssignableRole,
    AssignmentRequest,
    AuditLogFilter,
    BulkResult,
    ScopeMember,
    UserRoleEntry,
    UserRoles,
)
from scopeauth.features.users.identity import IdentityStore, SqlIdentityStore
from scopeauth.utils import get_logger


log = get_logger(__name__)

SYSTEM_ACTOR = "system"

ProgressCallback = Callable[[int, AssignmentRequest], Any]


class AssignmentStore:
    def __init__(
        self,
        registry: Registry,
        pool: ConnectionPoolManager,
        identity: Optional[IdentityStore] = None,
        hierarchy: Optional[ScopeHierarchyResolver] = None,
        audit_enabled: bool = config.RBAC_AUDIT_LOG,
    ):
        self.registry = registry
        self.pool = pool
        self.identity = identity or SqlIdentityStore()
        self.hierarchy = hierarchy or TableScopeHierarchy()
        self.audit_enabled = audit_enabled

    # ========================================================================
    # Instance resolution
    # ========================================================================

    async def instances(self, session: AsyncSession, scope: str, scope_id: str) -> List[ScopeRef]:
        """
        Every instance whose assignments apply at (scope, scope_id).

        That is the instance itself, the wildcard instance of its scope, and
        each ancestor instance together with its scope's wildcard instance.
        """
        refs = [ScopeRef(scope, scope_id)]
        if scope_id != WILDCARD_SCOPE_ID:
            refs.append(ScopeRef(scope, WILDCARD_SCOPE_ID))
            ancestors = await self.hierarchy.ancestors(session, scope, scope_id)
        else:
            ancestors = []

        seen_scopes = {scope}
        for ancestor in ancestors:
            refs.append(ancestor)
            if ancestor.scope not in seen_scopes:
                refs.append(ScopeRef(ancestor.scope, WILDCARD_SCOPE_ID))
                seen_scopes.add(ancestor.scope)
        # A wildcard grant on an ancestor scope covers every instance beneath it,
        # even when no instance edge has been recorded.
        for ancestor_scope in self.registry.ancestors(scope):
            if ancestor_scope not in seen_scopes:
                refs.append(ScopeRef(ancestor_scope, WILDCARD_SCOPE_ID))
                seen_scopes.add(ancestor_scope)
        return refs

    async def held_roles(
        self, session: AsyncSession, user_id: str, scope: str, scope_id: str
    ) -> List[Tuple[str, str]]:
        """(role, scope) pairs the user holds anywhere that applies at (scope, scope_id)."""
        refs = await self.instances(session, scope, scope_id)
        condition = or_(*[
            and_(RoleAssignment.scope == ref.scope, RoleAssignment.scope_id == ref.scope_id)
            for ref in refs
        ])
        result = await session.execute(
            select(RoleAssignment.role, RoleAssignment.scope)
            .where(RoleAssignment.user_id == user_id, condition)
            .distinct()
        )
        return [(row[0], row[1]) for row in result.all()]

    # ========================================================================
    # Delegation
    # ========================================================================

    async def _granting_role(
        self, session: AsyncSession, actor_id: str, role: str, scope: str, scope_id: str
    ) -> Optional[str]:
        for held_role, held_scope in await self.held_roles(session, actor_id, scope, scope_id):
            if self.registry.can_role_assign(held_role, held_scope, role, scope):
                return f"{held_scope}:{held_role}"
        return None

    async def _check_delegation(
        self, session: AsyncSession, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str
    ) -> str:
        if not ctx.actor_id:
            raise NotAuthorized(
                "no acting user in context", user_id=user_id, role=role, scope=scope, scope_id=scope_id
            )
        via = await self._granting_role(session, ctx.actor_id, role, scope, scope_id)
        if via is None:
            raise NotAuthorized(
                f"actor cannot assign role {role!r} in {scope}:{scope_id}",
                user_id=user_id,
                role=role,
                scope=scope,
                scope_id=scope_id,
                actor_id=ctx.actor_id,
            )
        return via

    async def can_assign_role(self, ctx: RequestContext, actor_id: str, role: str, scope: str, scope_id: str) -> bool:
        if self.registry.get_role(role, scope) is None:
            return False
        async with self.pool.lease(ctx) as session:
            return await self._granting_role(session, actor_id, role, scope, scope_id) is not None

    async def assignable_roles(self, ctx: RequestContext, actor_id: str, scope: str, scope_id: str) -> List[AssignableRole]:
        self.registry.validate_scope(scope)
        async with self.pool.lease(ctx) as session:
            held = await self.held_roles(session, actor_id, scope, scope_id)

        result: List[AssignableRole] = []
        for held_role, held_scope in held:
            for target_scope, target_role in self.registry.assignable_roles(held_role, held_scope):
                entry = AssignableRole(scope=target_scope, role=target_role)
                if target_scope == scope and entry not in result:
                    result.append(entry)
        return result

    # ========================================================================
    # Writes
    # ========================================================================

    async def _insert(self, session: AsyncSession, user_id: str, role: str, scope: str, scope_id: str, granted_by: str) -> bool:
        values = dict(user_id=user_id, role=role, scope=scope, scope_id=scope_id, granted_by=granted_by)
        dialect = session.bind.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else postgresql_insert
            stmt = insert(RoleAssignment).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "role", "scope", "scope_id"]
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        try:
            async with session.begin_nested():
                session.add(RoleAssignment(**values))
        except IntegrityError:
            return False
        return True

    def _audit(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        action: str,
        user_id: str,
        role: str,
        scope: str,
        scope_id: str,
        details: Optional[dict] = None,
    ) -> None:
        if not self.audit_enabled:
            return
        session.add(
            RoleAuditLog(
                actor_id=ctx.actor_id or SYSTEM_ACTOR,
                action=action,
                target_user_id=user_id,
                role=role,
                scope=scope,
                scope_id=scope_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                request_id=ctx.request_id,
                details=details,
            )
        )

    async def _assign_in(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        user_id: str,
        role: str,
        scope: str,
        scope_id: str,
        check_delegation: bool = True,
    ) -> bool:
        ctx.raise_if_cancelled()
        try:
            self.registry.resolve(role, scope)
            via = SYSTEM_ACTOR
            if check_delegation:
                via = await self._check_delegation(session, ctx, user_id, role, scope, scope_id)
            if not await self.identity.exists(session, user_id):
                raise UnknownSubject(f"user {user_id!r} does not exist")
        except RBACError as exc:
            raise exc.with_context(user_id=user_id, role=role, scope=scope, scope_id=scope_id, actor_id=ctx.actor_id)

        inserted = await self._insert(session, user_id, role, scope, scope_id, ctx.actor_id or SYSTEM_ACTOR)
        if inserted:
            self._audit(session, ctx, "assigned", user_id, role, scope, scope_id, {"via": via})
            await session.flush()
            log.info(f"Assigned role {role} in {scope}:{scope_id} to {user_id} (actor={ctx.actor_id})")
        else:
            log.debug(f"Role {role} in {scope}:{scope_id} already assigned to {user_id}")
        return inserted

    async def _revoke_in(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        user_id: str,
        role: str,
        scope: str,
        scope_id: str,
    ) -> bool:
        ctx.raise_if_cancelled()
        try:
            self.registry.resolve(role, scope)
            via = await self._check_delegation(session, ctx, user_id, role, scope, scope_id)
        except RBACError as exc:
            raise exc.with_context(user_id=user_id, role=role, scope=scope, scope_id=scope_id, actor_id=ctx.actor_id)

        result = await session.execute(
            delete(RoleAssignment).where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.role == role,
                RoleAssignment.scope == scope,
                RoleAssignment.scope_id == scope_id,
            )
        )
        if result.rowcount:
            self._audit(session, ctx, "revoked", user_id, role, scope, scope_id, {"via": via})
            await session.flush()
            log.info(f"Revoked role {role} in {scope}:{scope_id} from {user_id} (actor={ctx.actor_id})")
            return True
        log.debug(f"Role {role} in {scope}:{scope_id} not held by {user_id}, nothing to revoke")
        return False

    async def assign(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """
        Grant role at (scope, scope_id) to user_id on behalf of ctx.actor_id.

        Returns:
            True if a new assignment was stored, False if it already existed

        Raises:
            UnknownScope, UnknownRole, NotAuthorized, UnknownSubject, StoreUnavailable, Cancelled
        """
        async with self.pool.lease(ctx) as session:
            return await self._assign_in(session, ctx, user_id, role, scope, scope_id)

    async def bootstrap_assign(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """Assign without a delegation check. Meant for seeding the first administrator."""
        async with self.pool.lease(ctx) as session:
            return await self._assign_in(session, ctx, user_id, role, scope, scope_id, check_delegation=False)

    async def revoke(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """
        Remove an assignment. Revoking something that is not held is a no-op.

        Returns:
            True if an assignment was removed
        """
        async with self.pool.lease(ctx) as session:
            return await self._revoke_in(session, ctx, user_id, role, scope, scope_id)

    async def revoke_all(self, ctx: RequestContext, user_id: str, scope: str, scope_id: str) -> int:
        """Revoke every role user_id holds at exactly (scope, scope_id). Each role needs its own delegation."""
        self.registry.validate_scope(scope)
        async with self.pool.lease(ctx) as session:
            result = await session.execute(
                select(RoleAssignment.role).where(
                    RoleAssignment.user_id == user_id,
                    RoleAssignment.scope == scope,
                    RoleAssignment.scope_id == scope_id,
                )
            )
            removed = 0
            for role in result.scalars().all():
                if await self._revoke_in(session, ctx, user_id, role, scope, scope_id):
                    removed += 1
            return removed

    # ========================================================================
    # Bulk writes
    # ========================================================================

    async def assign_multiple(
        self,
        ctx: RequestContext,
        items: Iterable[AssignmentRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        return await self._bulk(ctx, items, self._assign_in, on_progress)

    async def revoke_multiple(
        self,
        ctx: RequestContext,
        items: Iterable[AssignmentRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        return await self._bulk(ctx, items, self._revoke_in, on_progress)

    async def _bulk(
        self,
        ctx: RequestContext,
        items: Iterable[AssignmentRequest],
        apply: Callable,
        on_progress: Optional[ProgressCallback],
    ) -> BulkResult:
        """
        Apply items one by one on a single leased session.

        Outside a transaction every item commits on its own, so on failure the
        committed count is exact. Inside a transaction items are only applied;
        committing them is up to the transaction owner.

        The batch stops with a BulkOperationError on the first RBAC or
        database error, on an exception raised by on_progress, and on
        cancellation, whether through the context's signal or by cancelling
        the task running the batch. A commit in flight when the task is
        cancelled is allowed to finish and is counted.
        """
        batch: Sequence[AssignmentRequest] = list(items)
        total = len(batch)
        in_transaction = ctx.in_transaction
        applied = 0
        committed = 0

        def stopped(index: int, exc: BaseException) -> BulkOperationError:
            cause = exc
            if isinstance(exc, SQLAlchemyError):
                cause = StoreUnavailable(f"database error: {exc}", actor_id=ctx.actor_id)
            elif isinstance(exc, asyncio.CancelledError):
                cause = Cancelled("bulk operation cancelled", actor_id=ctx.actor_id)
            log.warning(
                f"Bulk operation stopped at item {index} ({applied} applied, {committed} committed): {cause}"
            )
            item = batch[index] if index < total else None
            return BulkOperationError(index, item, committed, total, cause, applied=applied)

        async with self.pool.lease(ctx) as session:
            interrupted: Optional[asyncio.CancelledError] = None
            for index, item in enumerate(batch):
                if interrupted is not None:
                    raise stopped(index, interrupted) from interrupted
                try:
                    await apply(session, ctx, item.user_id, item.role, item.scope, item.scope_id)
                    if not in_transaction:
                        interrupted = await _commit_through_cancellation(session)
                except (RBACError, SQLAlchemyError, asyncio.CancelledError) as exc:
                    if not in_transaction:
                        await session.rollback()
                    raise stopped(index, exc) from exc

                applied += 1
                if not in_transaction:
                    committed += 1
                if on_progress is None or interrupted is not None:
                    continue
                try:
                    outcome = on_progress(index, item)
                    if inspect.isawaitable(outcome):
                        await outcome
                except asyncio.CancelledError as exc:
                    interrupted = exc
                except Exception as exc:
                    raise stopped(index, exc) from exc

            if interrupted is not None:
                raise stopped(total, interrupted) from interrupted

        return BulkResult(total=total, applied=applied, committed=committed)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_user_roles(self, ctx: RequestContext, user_id: str) -> UserRoles:
        async with self.pool.lease(ctx) as session:
            result = await session.execute(
                select(RoleAssignment)
                .where(RoleAssignment.user_id == user_id)
                .order_by(RoleAssignment.created_at, RoleAssignment.scope, RoleAssignment.scope_id, RoleAssignment.role)
            )
            rows = result.scalars().all()
        return UserRoles(
            user_id=user_id,
            assignments=[UserRoleEntry.model_validate(row) for row in rows],
        )

    async def role_exists(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        async with self.pool.lease(ctx) as session:
            result = await session.execute(
                select(func.count()).select_from(RoleAssignment).where(
                    RoleAssignment.user_id == user_id,
                    RoleAssignment.role == role,
                    RoleAssignment.scope == scope,
                    RoleAssignment.scope_id == scope_id,
                )
            )
            return result.scalar_one() > 0

    async def count_roles(self, ctx: RequestContext, scope: str, scope_id: str, role_pattern: str = "*") -> int:
        """
        Count assignments at exactly (scope, scope_id).

        role_pattern "*" counts all roles, "adm*" counts roles starting with
        "adm", anything else is an exact role name.
        """
        stmt = select(func.count()).select_from(RoleAssignment).where(
            RoleAssignment.scope == scope,
            RoleAssignment.scope_id == scope_id,
        )
        if role_pattern and role_pattern != "*":
            if role_pattern.endswith("*"):
                stmt = stmt.where(RoleAssignment.role.startswith(role_pattern[:-1], autoescape=True))
            else:
                stmt = stmt.where(RoleAssignment.role == role_pattern)
        async with self.pool.lease(ctx) as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def count_all_roles(self, ctx: RequestContext) -> int:
        async with self.pool.lease(ctx) as session:
            result = await session.execute(select(func.count()).select_from(RoleAssignment))
            return result.scalar_one()

    async def get_scope_members(
        self, ctx: RequestContext, scope: str, scope_id: str, role: Optional[str] = None
    ) -> List[ScopeMember]:
        stmt = select(RoleAssignment).where(
            RoleAssignment.scope == scope,
            RoleAssignment.scope_id == scope_id,
        )
        if role:
            stmt = stmt.where(RoleAssignment.role == role)
        stmt = stmt.order_by(RoleAssignment.user_id, RoleAssignment.role)
        async with self.pool.lease(ctx) as session:
            result = await session.execute(stmt)
            return [ScopeMember.model_validate(row) for row in result.scalars().all()]

    async def get_user_child_scopes(
        self,
        ctx: RequestContext,
        user_id: str,
        child_scope: str,
        parent_scope: str,
        parent_scope_id: str,
        role: Optional[str] = None,
    ) -> List[str]:
        """
        Child instance ids under a parent instance where the user holds a role.

        Children come from the hierarchy resolver; only assignments made
        directly at a child count.
        """
        self.registry.validate_scope(child_scope)
        self.registry.validate_scope(parent_scope)
        async with self.pool.lease(ctx) as session:
            children = await self.hierarchy.children(session, parent_scope, parent_scope_id)
            child_ids = [ref.scope_id for ref in children if ref.scope == child_scope]
            if not child_ids:
                return []
            stmt = select(RoleAssignment.scope_id).where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.scope == child_scope,
                RoleAssignment.scope_id.in_(child_ids),
            )
            if role:
                stmt = stmt.where(RoleAssignment.role == role)
            result = await session.execute(stmt.distinct().order_by(RoleAssignment.scope_id))
            return list(result.scalars().all())

    async def get_audit_log(self, ctx: RequestContext, filters: Optional[AuditLogFilter] = None) -> List[RoleAuditLog]:
        filters = filters or AuditLogFilter()
        stmt = select(RoleAuditLog)
        for column in ("actor_id", "target_user_id", "role", "scope", "scope_id", "action"):
            value = getattr(filters, column)
            if value is not None:
                stmt = stmt.where(getattr(RoleAuditLog, column) == value)
        if filters.since is not None:
            stmt = stmt.where(RoleAuditLog.created_at >= filters.since)
        if filters.until is not None:
            stmt = stmt.where(RoleAuditLog.created_at <= filters.until)
        stmt = stmt.order_by(RoleAuditLog.created_at.desc(), RoleAuditLog.id.desc()).limit(filters.limit).offset(filters.offset)
        async with self.pool.lease(ctx) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


async def _commit_through_cancellation(session: AsyncSession) -> Optional[asyncio.CancelledError]:
    """
    Commit, letting the commit finish even if the calling task is cancelled.

    Returns the CancelledError that arrived while committing, if any.
    """
    commit = asyncio.ensure_future(session.commit())
    try:
        await asyncio.shield(commit)
    except asyncio.CancelledError as exc:
        await commit
        return exc
    return None
