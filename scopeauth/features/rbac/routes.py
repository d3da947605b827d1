"""
Role assignment API routes.

Provides endpoints for assigning and revoking roles, checking permissions,
inspecting assignments and operating the service (pool, audit trail,
migrations).
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from scopeauth.core import config
from scopeauth.core.database.pool import PoolConfig, PoolStats
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.dependencies import (
    get_authorization_service,
    get_request_context,
    limiter,
    mutation_rate_limit,
    require_admin,
    require_any_permission,
)
from scopeauth.features.rbac.schemas import (
    AssignableRole,
    AssignmentRequest,
    AuditLogFilter,
    AuditLogListResponse,
    AuditLogResponse,
    BulkAssignmentRequest,
    BulkResult,
    EffectivePermissions,
    MessageResponse,
    MigrationStatus,
    PermissionCheckRequest,
    PermissionCheckResponse,
    RoleCountResponse,
    ScopeMember,
    ScopeParentRequest,
    TransactionMetrics,
    UserChildScopes,
    UserRoles,
)
from scopeauth.features.rbac.service import AuthorizationService
from scopeauth.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

MEMBERS_READ = "members.read"


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/assignments", response_model=MessageResponse, status_code=status.HTTP_200_OK)
@limiter.limit(mutation_rate_limit)
async def assign_role(
    request: Request,
    assignment: AssignmentRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Assign a role to a user. Assigning an already held role succeeds without changes."""
    created = await service.assign(ctx, assignment.user_id, assignment.role, assignment.scope, assignment.scope_id)
    if not created:
        return {"message": "Role already assigned"}
    return {"message": "Role assigned successfully"}


@router.delete("/assignments", response_model=MessageResponse)
@limiter.limit(mutation_rate_limit)
async def revoke_role(
    request: Request,
    user_id: str = Query(..., min_length=1),
    role: str = Query(..., min_length=1),
    scope: str = Query(..., min_length=1),
    scope_id: str = Query(..., min_length=1),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Revoke a role. Revoking a role that is not held succeeds without changes."""
    removed = await service.revoke(ctx, user_id, role, scope, scope_id)
    if not removed:
        return {"message": "Role was not assigned"}
    return {"message": "Role revoked successfully"}


@router.post("/assignments/bulk", response_model=BulkResult)
@limiter.limit(mutation_rate_limit)
async def assign_roles_bulk(
    request: Request,
    batch: BulkAssignmentRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Assign many roles; stops at the first failure and reports how many committed."""
    return await service.assign_multiple(ctx, batch.items)


@router.post("/revocations/bulk", response_model=BulkResult)
@limiter.limit(mutation_rate_limit)
async def revoke_roles_bulk(
    request: Request,
    batch: BulkAssignmentRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return await service.revoke_multiple(ctx, batch.items)


@router.get("/assignable-roles", response_model=List[AssignableRole])
async def list_assignable_roles(
    scope: str = Query(..., min_length=1),
    scope_id: str = Query(..., min_length=1),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Roles the caller may grant at the given scope instance."""
    return await service.assignable_roles(ctx, ctx.actor_id, scope, scope_id)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check: PermissionCheckRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """
    Check whether a user holds a permission at a scope instance.

    Callers may always check themselves; checking someone else requires
    members.read at that instance.
    """
    user_id = check.user_id or ctx.actor_id
    if user_id != ctx.actor_id and not await service.can(ctx, ctx.actor_id, MEMBERS_READ, check.scope, check.scope_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to check permissions of other users here",
        )
    allowed = await service.can(ctx, user_id, check.permission, check.scope, check.scope_id)
    return PermissionCheckResponse(
        user_id=user_id,
        permission=check.permission,
        scope=check.scope,
        scope_id=check.scope_id,
        allowed=allowed,
    )


@router.get("/permissions", response_model=EffectivePermissions)
async def get_effective_permissions(
    scope: str = Query(..., min_length=1),
    scope_id: str = Query(..., min_length=1),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """The caller's permission patterns at a scope instance, inherited roles included."""
    permissions = await service.get_permissions(ctx, ctx.actor_id, scope, scope_id)
    return EffectivePermissions(user_id=ctx.actor_id, scope=scope, scope_id=scope_id, permissions=permissions)


# ============================================================================
# Lookup Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=UserRoles)
async def get_user_roles(
    user_id: str,
    scope: Optional[str] = Query(None),
    scope_id: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """
    List a user's assignments.

    Other users' roles need members.read at the scope/scope_id given as
    query parameters; only the assignments at that instance are returned.
    """
    roles = await service.get_user_roles(ctx, user_id)
    if user_id == ctx.actor_id:
        return roles

    if not scope or not scope_id or not await service.can(ctx, ctx.actor_id, MEMBERS_READ, scope, scope_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view roles of this user",
        )
    return UserRoles(
        user_id=user_id,
        assignments=[a for a in roles.assignments if a.scope == scope and a.scope_id == scope_id],
    )


@router.get("/scopes/{scope}/{scope_id}/members", response_model=List[ScopeMember])
async def get_scope_members(
    scope: str,
    scope_id: str,
    role: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    if not await service.can(ctx, ctx.actor_id, MEMBERS_READ, scope, scope_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Permission denied: {MEMBERS_READ} required")
    return await service.get_scope_members(ctx, scope, scope_id, role)


@router.get("/counts", response_model=RoleCountResponse)
async def count_roles(
    scope: str = Query(..., min_length=1),
    scope_id: str = Query(..., min_length=1),
    role: str = Query("*"),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    if not await service.can(ctx, ctx.actor_id, MEMBERS_READ, scope, scope_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Permission denied: {MEMBERS_READ} required")
    count = await service.count_roles(ctx, scope, scope_id, role)
    return RoleCountResponse(scope=scope, scope_id=scope_id, role_pattern=role, count=count)


@router.get("/counts/all", response_model=RoleCountResponse)
async def count_all_roles(
    ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return RoleCountResponse(count=await service.count_all_roles(ctx))


# ============================================================================
# Scope Hierarchy Routes
# ============================================================================

@router.post("/scopes/parent", response_model=MessageResponse)
async def set_scope_parent(
    edge: ScopeParentRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Attach a scope instance to its parent instance. Requires <parent_scope>.update on the parent."""
    permission = f"{edge.parent_scope}.update"
    if not await service.can(ctx, ctx.actor_id, permission, edge.parent_scope, edge.parent_scope_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Permission denied: {permission} required")
    await service.set_scope_parent(ctx, edge.scope, edge.scope_id, edge.parent_scope, edge.parent_scope_id)
    return {"message": f"{edge.scope}:{edge.scope_id} now belongs to {edge.parent_scope}:{edge.parent_scope_id}"}


@router.get("/scopes/{scope}/{scope_id}/children/{child_scope}", response_model=UserChildScopes)
async def get_user_child_scopes(
    scope: str,
    scope_id: str,
    child_scope: str,
    user_id: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """
    Child instances of scope:scope_id where a user holds a role (optionally a given role).

    Defaults to the caller; asking about someone else requires members.read
    on the parent instance.
    """
    target = user_id or ctx.actor_id
    if target != ctx.actor_id and not await service.can(ctx, ctx.actor_id, MEMBERS_READ, scope, scope_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Permission denied: {MEMBERS_READ} required")
    scope_ids = await service.get_user_child_scopes(ctx, target, child_scope, scope, scope_id, role)
    return UserChildScopes(
        user_id=target,
        scope=child_scope,
        parent_scope=scope,
        parent_scope_id=scope_id,
        role=role,
        scope_ids=scope_ids,
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/organizations/{scope_id}/audit-logs", response_model=AuditLogListResponse)
async def get_organization_audit_logs(
    scope_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(require_any_permission(["audit.read", config.RBAC_ADMIN_PERMISSION], "organization")),
    service: AuthorizationService = Depends(get_authorization_service),
):
    filters = AuditLogFilter(scope="organization", scope_id=scope_id, limit=limit, offset=offset)
    entries = await service.get_audit_log(ctx, filters)
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


@router.get("/audit-logs", response_model=AuditLogListResponse)
async def get_audit_logs(
    actor_id: Optional[str] = Query(None),
    target_user_id: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    scope_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None, pattern="^(assigned|revoked)$"),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    filters = AuditLogFilter(
        actor_id=actor_id,
        target_user_id=target_user_id,
        role=role,
        scope=scope,
        scope_id=scope_id,
        action=action,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    entries = await service.get_audit_log(ctx, filters)
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


# ============================================================================
# Operations Routes
# ============================================================================

@router.get("/pool", response_model=PoolConfig)
async def get_pool_config(
    _ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return service.get_connection_pool_config()


@router.put("/pool", response_model=PoolConfig)
async def configure_pool(
    pool_config: PoolConfig,
    ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    log.info(f"Pool reconfigured by {ctx.actor_id}")
    await service.configure_connection_pool(pool_config)
    return service.get_connection_pool_config()


@router.post("/pool/optimize", response_model=PoolConfig)
async def optimize_pool(
    _ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return await service.optimize_connection_pool()


@router.get("/pool/stats", response_model=PoolStats)
async def get_pool_stats(
    _ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return service.get_pool_stats()


@router.get("/migrations", response_model=MigrationStatus)
async def get_migration_status(
    _ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return await service.get_migration_status()


@router.get("/metrics/transactions", response_model=TransactionMetrics)
async def get_transaction_metrics(
    _ctx: RequestContext = Depends(require_admin()),
    service: AuthorizationService = Depends(get_authorization_service),
):
    return service.get_transaction_metrics()
