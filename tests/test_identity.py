import pytest

from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.errors import UnknownSubject
from scopeauth.features.rbac.service import AuthorizationService
from scopeauth.features.users.identity import SqlIdentityStore
from scopeauth.features.users.models import User


ORG = "org-1"


async def _sql_service(registry, pool):
    # no identity override: the service looks users up in the users table
    service = AuthorizationService(registry, pool)
    await service.run_migrations()
    async with pool.lease() as session:
        session.add_all([
            User(id="u-ada", email="ada@example.com", name="Ada"),
            User(id="u-old", email="old@example.com", name="Old", is_active=False),
        ])
        await session.commit()
    return service


@pytest.mark.asyncio
async def test_migrations_create_users_table(registry, pool):
    service = await _sql_service(registry, pool)
    assert isinstance(service.store.identity, SqlIdentityStore)

    status = await service.get_migration_status()
    assert "scopeauth-004" in status.applied_ids
    assert status.pending == 0


@pytest.mark.asyncio
async def test_sql_identity_store_lookups(registry, pool):
    await _sql_service(registry, pool)
    identity = SqlIdentityStore()

    async with pool.lease() as session:
        assert await identity.exists(session, "u-ada") is True
        assert await identity.exists(session, "u-nobody") is False
        # deactivated accounts count as unknown
        assert await identity.exists(session, "u-old") is False


@pytest.mark.asyncio
async def test_bootstrap_and_assign_against_users_table(registry, pool):
    service = await _sql_service(registry, pool)
    ctx = RequestContext.system()

    assert await service.bootstrap(ctx, "u-ada", "super_admin", "organization", ORG) is True
    assert await service.can(ctx, "u-ada", "members.read", "organization", ORG)

    with pytest.raises(UnknownSubject) as exc_info:
        await service.assign(RequestContext(actor_id="u-ada"), "u-nobody", "viewer", "organization", ORG)
    assert exc_info.value.user_id == "u-nobody"

    with pytest.raises(UnknownSubject):
        await service.bootstrap(ctx, "u-old", "viewer", "organization", ORG)
