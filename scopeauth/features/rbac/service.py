"""
Authorization service.

The facade callers use: permission checks, delegated assignment and
revocation, transactions, migrations and pool management. Rules come from
the frozen Registry, facts from the AssignmentStore, and every database
access goes through the ConnectionPoolManager.
"""
import threading
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple, TypeVar

from scopeauth.core import config
from scopeauth.core.database.pool import ConnectionPoolManager, PoolConfig, PoolStats
from scopeauth.features.rbac.catalog import load_registry_file
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.hierarchy import ScopeHierarchyResolver, ScopeRef
from scopeauth.features.rbac.matcher import is_valid_permission, matches_any
from scopeauth.features.rbac.migrations import migration_status, run_migrations
from scopeauth.features.rbac.models import RoleAuditLog
from scopeauth.features.rbac.registry import Registry
from scopeauth.features.rbac.schemas import (
    AssignableRole,
    AssignmentRequest,
    AuditLogFilter,
    BulkResult,
    MigrationStatus,
    ScopeMember,
    TransactionMetrics,
    UserRoles,
)
from scopeauth.features.rbac.store import AssignmentStore, ProgressCallback
from scopeauth.features.users.identity import IdentityStore
from scopeauth.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# Transaction Monitoring
# ============================================================================

class TransactionMonitor:
    """Counts and times transactions run through AuthorizationService.transaction."""

    # Below this many samples the failure rate is too noisy to judge health
    MIN_SAMPLES = 10
    MAX_FAILURE_RATE = 0.05
    MAX_AVERAGE_DURATION = 1.0

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._succeeded = 0
            self._failed = 0
            self._total_duration = 0.0
            self._max_duration = 0.0
            self._min_duration: Optional[float] = None
            self._last_reset = datetime.now(timezone.utc)

    def record(self, duration: float, success: bool) -> None:
        with self._lock:
            self._total += 1
            if success:
                self._succeeded += 1
            else:
                self._failed += 1
            self._total_duration += duration
            self._max_duration = max(self._max_duration, duration)
            if self._min_duration is None or duration < self._min_duration:
                self._min_duration = duration

    def metrics(self) -> TransactionMetrics:
        with self._lock:
            average = self._total_duration / self._total if self._total else 0.0
            return TransactionMetrics(
                total=self._total,
                succeeded=self._succeeded,
                failed=self._failed,
                average_duration=average,
                max_duration=self._max_duration,
                min_duration=self._min_duration or 0.0,
                last_reset=self._last_reset,
            )

    def is_healthy(self) -> bool:
        metrics = self.metrics()
        if metrics.total < self.MIN_SAMPLES:
            return True
        failure_rate = metrics.failed / metrics.total
        return failure_rate <= self.MAX_FAILURE_RATE and metrics.average_duration <= self.MAX_AVERAGE_DURATION


# ============================================================================
# Service
# ============================================================================

class AuthorizationService:
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
        self.store = AssignmentStore(registry, pool, identity, hierarchy, audit_enabled)
        self.monitor = TransactionMonitor()

    @classmethod
    def from_settings(cls, registry: Optional[Registry] = None) -> "AuthorizationService":
        """Build a service from environment configuration."""
        registry = registry or load_registry_file(config.RBAC_REGISTRY_PATH)
        pool = ConnectionPoolManager(config.SQLALCHEMY_DATABASE_URL, PoolConfig.from_settings())
        return cls(registry, pool)

    @property
    def hierarchy(self) -> ScopeHierarchyResolver:
        return self.store.hierarchy

    async def close(self) -> None:
        await self.pool.dispose()

    # ------------------------------------------------------------------
    # Permission checks
    # ------------------------------------------------------------------

    def _checkable(self, user_id: str, scope: str, scope_id: str) -> bool:
        return bool(user_id) and bool(scope_id) and self.registry.has_scope(scope)

    async def _held_roles(self, ctx: RequestContext, user_id: str, scope: str, scope_id: str) -> List[Tuple[str, str]]:
        ctx.raise_if_cancelled()
        async with self.pool.lease(ctx) as session:
            return await self.store.held_roles(session, user_id, scope, scope_id)

    async def get_permissions(self, ctx: RequestContext, user_id: str, scope: str, scope_id: str) -> List[str]:
        """
        Effective permission patterns of user_id at (scope, scope_id).

        The union over every role that applies there, inherited roles
        included, sorted. Unknown scopes and users without roles yield [].
        """
        if not self._checkable(user_id, scope, scope_id):
            return []
        patterns: Set[str] = set()
        for role, role_scope in await self._held_roles(ctx, user_id, scope, scope_id):
            patterns.update(self.registry.permissions_for(role, role_scope))
        return sorted(patterns)

    async def _check(
        self,
        ctx: RequestContext,
        user_id: str,
        permissions: List[str],
        scope: str,
        scope_id: str,
        require_all: bool,
    ) -> bool:
        if not self._checkable(user_id, scope, scope_id):
            return False
        valid = [p for p in permissions if is_valid_permission(p, allow_wildcard=False)]
        if len(valid) != len(permissions):
            log.debug(f"Rejecting malformed permission(s) in {permissions!r}")
            if require_all:
                return False
        if not valid:
            return require_all and not permissions

        patterns = await self.get_permissions(ctx, user_id, scope, scope_id)
        outcomes = [matches_any(patterns, p) for p in valid]
        allowed = all(outcomes) if require_all else any(outcomes)
        log.debug(f"check({user_id}, {permissions}, {scope}:{scope_id}, all={require_all}) = {allowed}")
        return allowed

    async def can(self, ctx: RequestContext, user_id: str, permission: str, scope: str, scope_id: str) -> bool:
        """
        Whether user_id holds permission at (scope, scope_id).

        Roles held at the instance, at its wildcard instance and at every
        ancestor instance all count. Unknown users, users without roles,
        unknown scopes and malformed permissions all yield False; only store
        failures and cancellation raise.
        """
        return await self._check(ctx, user_id, [permission], scope, scope_id, require_all=True)

    async def can_any(self, ctx: RequestContext, user_id: str, permissions: Iterable[str], scope: str, scope_id: str) -> bool:
        """True if at least one of permissions is held. Malformed entries are skipped."""
        return await self._check(ctx, user_id, list(permissions), scope, scope_id, require_all=False)

    async def can_all(self, ctx: RequestContext, user_id: str, permissions: Iterable[str], scope: str, scope_id: str) -> bool:
        """True if every one of permissions is held. A malformed entry makes it False; an empty list is True."""
        return await self._check(ctx, user_id, list(permissions), scope, scope_id, require_all=True)

    async def _roles_at(self, ctx: RequestContext, user_id: str, scope: str, scope_id: str) -> Set[str]:
        if not self._checkable(user_id, scope, scope_id):
            return set()
        held = await self._held_roles(ctx, user_id, scope, scope_id)
        return {role for role, role_scope in held if role_scope == scope}

    async def has_role(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """Whether user_id holds role of scope at scope_id itself or at the scope's wildcard instance."""
        return role in await self._roles_at(ctx, user_id, scope, scope_id)

    async def has_any_role(self, ctx: RequestContext, user_id: str, roles: Iterable[str], scope: str, scope_id: str) -> bool:
        held = await self._roles_at(ctx, user_id, scope, scope_id)
        return any(role in held for role in roles)

    async def has_all_roles(self, ctx: RequestContext, user_id: str, roles: Iterable[str], scope: str, scope_id: str) -> bool:
        held = await self._roles_at(ctx, user_id, scope, scope_id)
        return all(role in held for role in roles)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        return await self.store.assign(ctx, user_id, role, scope, scope_id)

    async def revoke(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        return await self.store.revoke(ctx, user_id, role, scope, scope_id)

    async def revoke_all(self, ctx: RequestContext, user_id: str, scope: str, scope_id: str) -> int:
        return await self.store.revoke_all(ctx, user_id, scope, scope_id)

    async def assign_multiple(
        self,
        ctx: RequestContext,
        items: Iterable[AssignmentRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        return await self.store.assign_multiple(ctx, items, on_progress)

    async def revoke_multiple(
        self,
        ctx: RequestContext,
        items: Iterable[AssignmentRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        return await self.store.revoke_multiple(ctx, items, on_progress)

    async def bootstrap(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """Seat a user without a delegation check, e.g. the first super_admin."""
        if ctx.actor_id is None:
            ctx = RequestContext.system()
        log.warning(f"Bootstrap assignment of {role} in {scope}:{scope_id} to {user_id}")
        return await self.store.bootstrap_assign(ctx, user_id, role, scope, scope_id)

    async def can_assign_role(self, ctx: RequestContext, actor_id: str, role: str, scope: str, scope_id: str) -> bool:
        return await self.store.can_assign_role(ctx, actor_id, role, scope, scope_id)

    async def assignable_roles(self, ctx: RequestContext, actor_id: str, scope: str, scope_id: str) -> List[AssignableRole]:
        return await self.store.assignable_roles(ctx, actor_id, scope, scope_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_user_roles(self, ctx: RequestContext, user_id: str) -> UserRoles:
        return await self.store.get_user_roles(ctx, user_id)

    async def role_exists(self, ctx: RequestContext, user_id: str, role: str, scope: str, scope_id: str) -> bool:
        """Whether exactly this assignment tuple is stored. No inheritance, no wildcard expansion."""
        return await self.store.role_exists(ctx, user_id, role, scope, scope_id)

    async def count_roles(self, ctx: RequestContext, scope: str, scope_id: str, role_pattern: str = "*") -> int:
        return await self.store.count_roles(ctx, scope, scope_id, role_pattern)

    async def count_all_roles(self, ctx: RequestContext) -> int:
        return await self.store.count_all_roles(ctx)

    async def get_scope_members(self, ctx: RequestContext, scope: str, scope_id: str, role: Optional[str] = None) -> List[ScopeMember]:
        return await self.store.get_scope_members(ctx, scope, scope_id, role)

    async def get_audit_log(self, ctx: RequestContext, filters: Optional[AuditLogFilter] = None) -> List[RoleAuditLog]:
        return await self.store.get_audit_log(ctx, filters)

    # ------------------------------------------------------------------
    # Scope hierarchy
    # ------------------------------------------------------------------

    async def set_scope_parent(
        self, ctx: RequestContext, scope: str, scope_id: str, parent_scope: str, parent_scope_id: str
    ) -> None:
        async with self.pool.lease(ctx) as session:
            await self.hierarchy.set_parent(
                session, self.registry, ScopeRef(scope, scope_id), ScopeRef(parent_scope, parent_scope_id)
            )

    async def get_child_scopes(self, ctx: RequestContext, scope: str, scope_id: str) -> List[ScopeRef]:
        async with self.pool.lease(ctx) as session:
            return await self.hierarchy.children(session, scope, scope_id)

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
        Ids of child_scope instances under (parent_scope, parent_scope_id)
        where user_id holds a role directly, or holds role when given.

        Usage:
            project_ids = await service.get_user_child_scopes(ctx, "u1", "project", "organization", "o1")
        """
        return await self.store.get_user_child_scopes(ctx, user_id, child_scope, parent_scope, parent_scope_id, role)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def transaction(self, ctx: RequestContext, fn: Callable[[RequestContext], Awaitable[T]]) -> T:
        """
        Run fn on a single database transaction.

        fn receives a context bound to the transaction; every store call made
        with it joins the transaction. Any exception raised by fn (cancellation
        included) rolls everything back, a normal return commits. A context
        that is already inside a transaction reuses it.

        Usage:
            async def move(tx):
                await service.revoke(tx, "u1", "viewer", "organization", "o1")
                await service.assign(tx, "u1", "member", "organization", "o1")

            await service.transaction(ctx, move)
        """
        if ctx.in_transaction:
            return await fn(ctx)

        started = time.perf_counter()
        success = False
        try:
            async with self.pool.lease(ctx) as session:
                result = await fn(ctx.bind(session))
            success = True
            return result
        finally:
            self.monitor.record(time.perf_counter() - started, success)
            if not success:
                log.info("Transaction rolled back")

    def get_transaction_metrics(self) -> TransactionMetrics:
        return self.monitor.metrics()

    def reset_transaction_metrics(self) -> None:
        self.monitor.reset()

    def is_transaction_healthy(self) -> bool:
        return self.monitor.is_healthy()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def run_migrations(self) -> int:
        return await run_migrations(self.pool.engine)

    async def get_migration_status(self) -> MigrationStatus:
        return await migration_status(self.pool.engine)

    # ------------------------------------------------------------------
    # Connection pool
    # ------------------------------------------------------------------

    async def configure_connection_pool(self, pool_config: PoolConfig) -> None:
        await self.pool.configure(pool_config)

    def get_connection_pool_config(self) -> PoolConfig:
        return self.pool.get_config()

    def get_pool_stats(self) -> PoolStats:
        return self.pool.stats()

    async def optimize_connection_pool(self) -> PoolConfig:
        return await self.pool.optimize()

    async def reset_connection_pool(self) -> None:
        await self.pool.reset()

    async def is_healthy(self) -> bool:
        return await self.pool.is_healthy()
