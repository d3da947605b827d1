"""
FastAPI dependencies for authentication and route protection.

The acting user comes from an HS256 bearer token (the "sub" claim). Every
request gets its own RequestContext carrying the actor, a deadline and the
audit metadata.
"""
from typing import Annotated, Awaitable, Callable, List, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from slowapi import Limiter

from scopeauth.core import config
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.models import WILDCARD_SCOPE_ID
from scopeauth.features.rbac.service import AuthorizationService
from scopeauth.utils import get_logger


log = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_authorization_service(request: Request) -> AuthorizationService:
    return request.app.state.authz


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"


limiter = Limiter(key_func=get_authorization_header)


def mutation_rate_limit() -> str:
    """Read on every request so the limit follows config.RATE_LIMIT_MUTATIONS."""
    return config.RATE_LIMIT_MUTATIONS


def decode_token(token: str) -> dict:
    """
    Verify a bearer token and return its payload.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        log.debug(f"Rejected token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_request_context(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> RequestContext:
    """
    Build the RequestContext for the authenticated caller.

    Usage:
        @router.get("/me")
        async def me(ctx: RequestContext = Depends(get_request_context)):
            return {"actor": ctx.actor_id}
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    actor_id = payload.get("sub")
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return RequestContext.for_actor(
        str(actor_id),
        timeout=config.REQUEST_TIMEOUT or None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_id=request.headers.get("x-request-id"),
    )


def _scope_instance(request: Request, scope_param: str, scope_id: Optional[str]) -> str:
    instance = scope_id or request.path_params.get(scope_param) or request.query_params.get(scope_param)
    if not instance:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {scope_param}",
        )
    return instance


def _guard(
    scope: str,
    scope_param: str,
    scope_id: Optional[str],
    requirement: str,
    check: Callable[[AuthorizationService, RequestContext, str], Awaitable[bool]],
):
    async def guard(
        request: Request,
        ctx: Annotated[RequestContext, Depends(get_request_context)],
        service: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> RequestContext:
        instance = _scope_instance(request, scope_param, scope_id)
        if not await check(service, ctx, instance):
            log.info(f"Denied {requirement} in {scope}:{instance} to {ctx.actor_id}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {requirement} required",
            )
        return ctx

    return guard


def require_permission(
    permission: str,
    scope: str,
    scope_param: str = "scope_id",
    scope_id: Optional[str] = None,
):
    """
    Dependency factory to require a permission on a route.

    The scope instance is taken from the path or query parameter named
    scope_param unless a fixed scope_id is given.

    Usage:
        @router.get("/organizations/{scope_id}/members")
        async def members(ctx: RequestContext = Depends(require_permission("members.read", "organization"))):
            ...
    """
    return _guard(
        scope, scope_param, scope_id, permission,
        lambda service, ctx, instance: service.can(ctx, ctx.actor_id, permission, scope, instance),
    )


def require_any_permission(
    permissions: List[str],
    scope: str,
    scope_param: str = "scope_id",
    scope_id: Optional[str] = None,
):
    """Like require_permission, satisfied by any one of permissions."""
    return _guard(
        scope, scope_param, scope_id, f"one of {', '.join(permissions)}",
        lambda service, ctx, instance: service.can_any(ctx, ctx.actor_id, permissions, scope, instance),
    )


def require_role(
    role: str,
    scope: str,
    scope_param: str = "scope_id",
    scope_id: Optional[str] = None,
):
    """
    Dependency factory to require a role held at the scope instance.

    A role held at the wildcard instance of the scope counts; roles held at
    other scopes do not.

    Usage:
        @router.post("/organizations/{scope_id}/settings")
        async def settings(ctx: RequestContext = Depends(require_role("admin", "organization"))):
            ...
    """
    return _guard(
        scope, scope_param, scope_id, f"role {role}",
        lambda service, ctx, instance: service.has_role(ctx, ctx.actor_id, role, scope, instance),
    )


def require_any_role(
    roles: List[str],
    scope: str,
    scope_param: str = "scope_id",
    scope_id: Optional[str] = None,
):
    return _guard(
        scope, scope_param, scope_id, f"one of roles {', '.join(roles)}",
        lambda service, ctx, instance: service.has_any_role(ctx, ctx.actor_id, roles, scope, instance),
    )


def require_admin():
    """Operator-level access: the admin permission on every instance of the admin scope."""
    return require_permission(config.RBAC_ADMIN_PERMISSION, config.RBAC_ADMIN_SCOPE, scope_id=WILDCARD_SCOPE_ID)
