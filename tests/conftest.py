import os
import sys

import pytest
import pytest_asyncio

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from scopeauth.core.database.pool import ConnectionPoolManager, PoolConfig
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.registry import RegistryBuilder
from scopeauth.features.rbac.service import AuthorizationService
from scopeauth.features.users.identity import StaticIdentityStore


USERS = ["alice", "bob", "carol", "dave", "erin", "frank"]
ORG = "org-1"


@pytest.fixture
def registry():
    return (
        RegistryBuilder()
        .define_scope("organization")
            .role("super_admin").permissions("*").can_assign("*")
            .role("admin").permissions("organization.*", "members.*", "project.*")
                .can_assign("viewer", "member", "project:editor")
            .role("member").permissions("project.read", "project.create", "task.*")
            .role("viewer").permissions("project.read", "team.read", "task.read")
        .define_scope("project", parent="organization")
            .role("editor").permissions("project.update", "task.*").can_assign("viewer")
            .role("viewer").permissions("project.read")
        .build()
    )


@pytest.fixture
def identity():
    return StaticIdentityStore(USERS)


@pytest_asyncio.fixture
async def pool(tmp_path):
    manager = ConnectionPoolManager(
        f"sqlite+aiosqlite:///{tmp_path / 'scopeauth.db'}",
        PoolConfig(max_open=5, max_idle=2),
        health_timeout=2.0,
    )
    yield manager
    await manager.dispose()


@pytest_asyncio.fixture
async def service(registry, pool, identity):
    svc = AuthorizationService(registry, pool, identity=identity)
    await svc.run_migrations()
    return svc


@pytest_asyncio.fixture
async def admin_ctx(service):
    """alice is super_admin of ORG; returns a context acting as alice."""
    await service.bootstrap(RequestContext.system(), "alice", "super_admin", "organization", ORG)
    return RequestContext(actor_id="alice")
