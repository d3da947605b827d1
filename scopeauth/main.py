from typing import Optional

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from scopeauth.core import config
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.dependencies import limiter
from scopeauth.features.rbac.errors import (
    BulkOperationError,
    Cancelled,
    InvalidPermission,
    NotAuthorized,
    RBACError,
    RegistryConfigurationError,
    StoreUnavailable,
    UnknownRole,
    UnknownScope,
    UnknownSubject,
)
from scopeauth.features.rbac.routes import router as rbac_router
from scopeauth.features.rbac.schemas import HealthResponse
from scopeauth.features.rbac.service import AuthorizationService
from scopeauth.utils import get_logger


log = get_logger(__name__)

ERROR_STATUS = {
    NotAuthorized: 403,
    UnknownSubject: 404,
    UnknownRole: 404,
    UnknownScope: 404,
    InvalidPermission: 400,
    BulkOperationError: 409,
    Cancelled: 408,
    StoreUnavailable: 503,
    RegistryConfigurationError: 500,
}


def status_for(exc: RBACError) -> int:
    for error_class in type(exc).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    return 400


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.scopeauth.features."), timing=timing, tags=tags))


def create_app(service: Optional[AuthorizationService] = None) -> FastAPI:
    """
    Build the HTTP application.

    A ready service can be passed in (tests do); otherwise one is built from
    the environment on startup.
    """
    log.info("Initializing server")
    app = FastAPI(
        title="scopeauth",
        description="Scope-hierarchical role-based access control",
        version="0.1.0",
        docs_url="/docs" if config.ENABLE_DOCS else None,
        redoc_url="/redoc" if config.ENABLE_DOCS else None,
        openapi_url="/openapi.json" if config.ENABLE_DOCS else None
    )
    app.state.limiter = limiter
    app.state.authz = service

    app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

    if config.ENABLE_DOCS:
        log.warning("Docs enabled")
    if config.ALLOW_ORIGIN:
        log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
        origins = [config.ALLOW_ORIGIN]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError):
        errors = dict()
        for error in exc.errors():
            if "loc" not in error or "msg" not in error:
                continue
            key = error["loc"][-1]
            if key == "__root__":
                key = "root"
            errors[key] = error["msg"]
        log.info("Request validation error %s", errors)
        return JSONResponse(status_code=400, content=jsonable_encoder(errors))

    @app.exception_handler(RateLimitExceeded)
    def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
        return JSONResponse({"error": "You are going too fast"}, status_code=429)

    @app.exception_handler(RBACError)
    async def rbac_exception_handler(_request: Request, exc: RBACError):
        status_code = status_for(exc)
        if status_code >= 500:
            log.error("Authorization service error: %s", exc)
        else:
            log.info("Authorization request rejected: %s", exc)
        return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()))

    @app.on_event("startup")
    async def startup():
        """Build the service and bring its schema up to date."""
        if app.state.authz is None:
            app.state.authz = AuthorizationService.from_settings()
        log.info("Running migrations...")
        applied = await app.state.authz.run_migrations()
        log.info("Database ready (%d migration(s) applied)", applied)
        await bootstrap_admin(app.state.authz)

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.authz is not None:
            await app.state.authz.close()

    @app.get("/")
    async def root():
        """Root endpoint - API health check."""
        return {
            "message": "scopeauth API",
            "version": "0.1.0",
            "status": "online",
            "docs": "/docs" if config.ENABLE_DOCS else None,
            "authentication": {
                "info": "Protected endpoints require Bearer token in Authorization header",
                "protected_endpoints": ["/rbac/*"],
                "public_endpoints": ["/", "/health"],
            },
        }

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        service: AuthorizationService = app.state.authz
        database = await service.is_healthy()
        transactions = service.is_transaction_healthy()
        status = "healthy" if database and transactions else "degraded"
        if status != "healthy":
            log.warning("Health check degraded: database=%s transactions=%s", database, transactions)
        return HealthResponse(status=status, database=database, transactions=transactions)

    app.include_router(rbac_router, prefix="/rbac", tags=["rbac"])
    return app


async def bootstrap_admin(service: AuthorizationService) -> None:
    """Seat RBAC_BOOTSTRAP_USER as super_admin when configured."""
    if not config.RBAC_BOOTSTRAP_USER:
        return
    scope_id = config.RBAC_BOOTSTRAP_ORGANIZATION or "*"
    try:
        await service.bootstrap(
            RequestContext.system(), config.RBAC_BOOTSTRAP_USER, "super_admin", "organization", scope_id
        )
    except RBACError as e:
        log.warning("Bootstrap assignment skipped: %s", e)


app = create_app()
