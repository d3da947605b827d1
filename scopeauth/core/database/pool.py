"""
Connection pool management.

The ConnectionPoolManager owns the async engine, hands out scoped session
leases, exposes point-in-time pool statistics and runs health checks.

Usage:
    pool = ConnectionPoolManager(config.SQLALCHEMY_DATABASE_URL)
    async with pool.lease(ctx) as session:
        await session.execute(...)

Reconfiguring builds a fresh engine and swaps it in. Leases taken before the
swap keep their session and return their connection to the pool it came from.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import event, text
from sqlalchemy.exc import DisconnectionError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from scopeauth.core import config
from scopeauth.core.database.engine import build_engine, build_session_factory
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.errors import Cancelled, StoreUnavailable
from scopeauth.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Configuration and statistics
# ============================================================================

class PoolConfig(BaseModel):
    """Tunable pool settings. Durations are in seconds; 0 disables the limit."""
    max_open: int = Field(25, ge=1, description="Maximum open connections")
    max_idle: int = Field(25, ge=0, description="Maximum idle connections kept in the pool")
    max_lifetime: float = Field(3600.0, ge=0, description="Recycle connections older than this")
    max_idle_time: float = Field(300.0, ge=0, description="Discard connections idle for longer than this")
    acquire_timeout: float = Field(30.0, gt=0, description="Maximum wait for a free connection")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def idle_within_open(self) -> "PoolConfig":
        if self.max_idle > self.max_open:
            raise ValueError("max_idle cannot exceed max_open")
        return self

    @classmethod
    def default(cls) -> "PoolConfig":
        return cls(max_open=25, max_idle=25, max_lifetime=3600, max_idle_time=300)

    @classmethod
    def high_performance(cls) -> "PoolConfig":
        return cls(max_open=100, max_idle=50, max_lifetime=1800, max_idle_time=60)

    @classmethod
    def low_resource(cls) -> "PoolConfig":
        return cls(max_open=5, max_idle=2, max_lifetime=7200, max_idle_time=600)

    @classmethod
    def from_settings(cls) -> "PoolConfig":
        return cls(
            max_open=config.DB_POOL_MAX_OPEN,
            max_idle=min(config.DB_POOL_MAX_IDLE, config.DB_POOL_MAX_OPEN),
            max_lifetime=config.DB_POOL_MAX_LIFETIME,
            max_idle_time=config.DB_POOL_MAX_IDLE_TIME,
            acquire_timeout=config.DB_POOL_ACQUIRE_TIMEOUT,
        )


class PoolStats(BaseModel):
    max_open: int
    open: int
    in_use: int
    idle: int
    wait_count: int
    wait_duration: float


# ============================================================================
# Pool manager
# ============================================================================

class ConnectionPoolManager:
    def __init__(
        self,
        url: str,
        pool_config: Optional[PoolConfig] = None,
        health_timeout: float = config.DB_HEALTH_TIMEOUT,
    ):
        self.url = url
        self.health_timeout = health_timeout
        self._config = pool_config or PoolConfig.from_settings()
        self._engine = self._create_engine(self._config)
        self._session_factory = build_session_factory(self._engine)
        self._semaphore = asyncio.Semaphore(self._config.max_open)
        self._in_use = 0
        self._wait_count = 0
        self._wait_duration = 0.0

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def _create_engine(self, pool_config: PoolConfig) -> AsyncEngine:
        engine = build_engine(self.url, pool_config)
        if pool_config.max_idle_time:
            _install_idle_timeout(engine, pool_config.max_idle_time)
        return engine

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> PoolConfig:
        return self._config

    async def configure(self, pool_config: PoolConfig) -> None:
        """
        Apply new pool settings.

        Subsequent leases use the new engine and the new concurrency limit.
        Leases already held are untouched; the old engine only drops its idle
        connections.
        """
        new_engine = self._create_engine(pool_config)
        old_engine = self._engine

        self._engine = new_engine
        self._session_factory = build_session_factory(new_engine)
        self._semaphore = asyncio.Semaphore(pool_config.max_open)
        self._config = pool_config

        await old_engine.dispose()
        log.info(
            "Connection pool configured: max_open=%d max_idle=%d max_lifetime=%ss max_idle_time=%ss",
            pool_config.max_open, pool_config.max_idle, pool_config.max_lifetime, pool_config.max_idle_time,
        )

    async def optimize(self) -> PoolConfig:
        """Grow the pool when it runs hot, shrink it when it mostly sits idle."""
        stats = self.stats()
        current = self._config
        max_open, max_idle = current.max_open, current.max_idle

        if stats.in_use > 0 and stats.in_use / current.max_open > 0.8:
            max_open = int(max_open * 1.5)
            max_idle = int(max_idle * 1.5)
        elif stats.idle > 0 and stats.idle / current.max_open > 0.8:
            max_open = int(max_open * 0.75)
            max_idle = int(max_idle * 0.75)

        max_open = max(max_open, 5)
        max_idle = min(max(max_idle, 2), max_open)
        new_config = current.model_copy(update={"max_open": max_open, "max_idle": max_idle})
        if new_config != current:
            await self.configure(new_config)
        return new_config

    async def reset(self) -> None:
        await self.configure(PoolConfig.default())

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lease(self, ctx: Optional[RequestContext] = None) -> AsyncIterator[AsyncSession]:
        """
        Lease a session for the duration of the block.

        The session commits when the block exits normally and rolls back on
        any exception. A context already bound to a transaction gets its own
        session back, and commit/rollback is left to the transaction owner.
        """
        ctx = ctx or RequestContext()
        if ctx.session is not None:
            try:
                yield ctx.session
            except SQLAlchemyError as exc:
                raise StoreUnavailable(f"database error: {exc}", actor_id=ctx.actor_id) from exc
            return

        ctx.raise_if_cancelled()
        semaphore = self._semaphore
        await self._acquire(semaphore, ctx)
        self._in_use += 1
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    if session.in_transaction():
                        await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    raise StoreUnavailable(f"database error: {exc}", actor_id=ctx.actor_id) from exc
                except BaseException:
                    await session.rollback()
                    raise
        finally:
            self._in_use -= 1
            semaphore.release()

    async def _acquire(self, semaphore: asyncio.Semaphore, ctx: RequestContext) -> None:
        timeout = self._config.acquire_timeout
        remaining = ctx.remaining()
        bounded_by_deadline = remaining is not None and remaining <= timeout
        if bounded_by_deadline:
            timeout = remaining

        if not semaphore.locked():
            await semaphore.acquire()
            return

        self._wait_count += 1
        started = time.monotonic()
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            if bounded_by_deadline or ctx.cancelled:
                raise Cancelled("deadline exceeded waiting for a connection", actor_id=ctx.actor_id)
            raise StoreUnavailable("timed out waiting for a database connection", actor_id=ctx.actor_id)
        finally:
            self._wait_duration += time.monotonic() - started

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> PoolStats:
        """Point-in-time pool statistics. Never awaits, so it never blocks."""
        pool = self._engine.sync_engine.pool
        checkedin = getattr(pool, "checkedin", None)
        idle = checkedin() if callable(checkedin) else 0
        return PoolStats(
            max_open=self._config.max_open,
            open=self._in_use + idle,
            in_use=self._in_use,
            idle=idle,
            wait_count=self._wait_count,
            wait_duration=round(self._wait_duration, 6),
        )

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def is_healthy(self) -> bool:
        """Round-trip query bounded by the health timeout. Never raises."""
        try:
            await asyncio.wait_for(self.ping(), timeout=self.health_timeout)
        except asyncio.TimeoutError:
            log.warning("Database health check timed out after %ss", self.health_timeout)
            return False
        except (SQLAlchemyError, OSError) as exc:
            log.warning("Database health check failed: %s", exc)
            return False
        return True

    async def dispose(self) -> None:
        await self._engine.dispose()


def _install_idle_timeout(engine: AsyncEngine, max_idle_time: float) -> None:
    """Discard pooled connections that sat idle for longer than max_idle_time."""

    @event.listens_for(engine.sync_engine, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        connection_record.info["checked_in_at"] = time.monotonic()

    @event.listens_for(engine.sync_engine, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        checked_in_at = connection_record.info.get("checked_in_at")
        if checked_in_at is not None and time.monotonic() - checked_in_at > max_idle_time:
            # The pool drops the connection and retries with a fresh one
            raise DisconnectionError("connection idle for too long")
