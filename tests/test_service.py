import pytest

from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.errors import Cancelled
from scopeauth.features.rbac.hierarchy import StaticScopeHierarchy
from scopeauth.features.rbac.service import AuthorizationService


ORG = "org-1"


@pytest.mark.asyncio
async def test_viewer_scenario(service, admin_ctx):
    await service.assign(admin_ctx, "bob", "viewer", "organization", ORG)

    assert await service.can(admin_ctx, "bob", "task.read", "organization", ORG) is True
    assert await service.can(admin_ctx, "bob", "task.create", "organization", ORG) is False


@pytest.mark.asyncio
async def test_no_assignments_and_unknown_user_look_the_same(service, admin_ctx):
    # carol exists but holds nothing, ghost does not exist at all
    no_roles = await service.can(admin_ctx, "carol", "task.read", "organization", ORG)
    unknown = await service.can(admin_ctx, "ghost", "task.read", "organization", ORG)
    assert no_roles is False
    assert unknown is False


@pytest.mark.asyncio
async def test_super_admin_wildcard(service, admin_ctx):
    assert await service.can(admin_ctx, "alice", "anything.at.all", "organization", ORG)
    assert not await service.can(admin_ctx, "alice", "anything.at.all", "organization", "org-2")


@pytest.mark.asyncio
async def test_can_returns_false_for_bad_input(service, admin_ctx):
    assert not await service.can(admin_ctx, "alice", "task.read", "galaxy", ORG)
    assert not await service.can(admin_ctx, "alice", "task..read", "organization", ORG)
    assert not await service.can(admin_ctx, "alice", "task.*", "organization", ORG)
    assert not await service.can(admin_ctx, "", "task.read", "organization", ORG)


@pytest.mark.asyncio
async def test_roles_inherit_down_the_scope_tree(service, admin_ctx):
    await service.assign(admin_ctx, "bob", "member", "organization", ORG)
    assert not await service.can(admin_ctx, "bob", "task.delete", "project", "p-1")

    await service.set_scope_parent(admin_ctx, "project", "p-1", "organization", ORG)
    assert await service.can(admin_ctx, "bob", "task.delete", "project", "p-1")
    # rights granted inside a project never flow back up
    await service.assign(admin_ctx, "carol", "editor", "project", "p-1")
    assert await service.can(admin_ctx, "carol", "project.update", "project", "p-1")
    assert not await service.can(admin_ctx, "carol", "project.update", "organization", ORG)


@pytest.mark.asyncio
async def test_unions_permissions_across_roles(service, admin_ctx):
    await service.set_scope_parent(admin_ctx, "project", "p-1", "organization", ORG)
    await service.assign(admin_ctx, "bob", "viewer", "organization", ORG)
    await service.assign(admin_ctx, "bob", "editor", "project", "p-1")

    assert await service.can(admin_ctx, "bob", "team.read", "project", "p-1")
    assert await service.can(admin_ctx, "bob", "project.update", "project", "p-1")
    assert not await service.can(admin_ctx, "bob", "project.delete", "project", "p-1")


@pytest.mark.asyncio
async def test_static_hierarchy_resolver(registry, pool, identity):
    hierarchy = StaticScopeHierarchy({("project", "p-9"): ("organization", ORG)})
    service = AuthorizationService(registry, pool, identity=identity, hierarchy=hierarchy)
    await service.run_migrations()
    await service.bootstrap(RequestContext.system(), "bob", "member", "organization", ORG)

    ctx = RequestContext(actor_id="bob")
    assert await service.can(ctx, "bob", "task.update", "project", "p-9")
    assert not await service.can(ctx, "bob", "task.update", "project", "p-10")


@pytest.mark.asyncio
async def test_can_respects_cancellation(service, admin_ctx):
    ctx = RequestContext(actor_id="alice")
    ctx.cancel()
    with pytest.raises(Cancelled):
        await service.can(ctx, "alice", "task.read", "organization", ORG)


@pytest.mark.asyncio
async def test_run_migrations_is_idempotent(service):
    # the fixture already applied everything
    assert await service.run_migrations() == 0

    status = await service.get_migration_status()
    assert status.total == 4
    assert status.applied == 4
    assert status.pending == 0


@pytest.mark.asyncio
async def test_fresh_database_applies_all_migrations(registry, pool, identity):
    service = AuthorizationService(registry, pool, identity=identity)
    before = await service.get_migration_status()
    assert before.pending == 4
    assert await service.run_migrations() == 4
    assert await service.run_migrations() == 0


@pytest.mark.asyncio
async def test_effective_permissions_include_inherited_roles(service, admin_ctx):
    await service.set_scope_parent(admin_ctx, "project", "p-1", "organization", ORG)
    await service.assign(admin_ctx, "bob", "viewer", "organization", ORG)
    await service.assign(admin_ctx, "bob", "editor", "project", "p-1")

    assert await service.get_permissions(admin_ctx, "bob", "project", "p-1") == [
        "project.read", "project.update", "task.*", "task.read", "team.read",
    ]
    assert await service.get_permissions(admin_ctx, "bob", "organization", ORG) == [
        "project.read", "task.read", "team.read",
    ]
    assert await service.get_permissions(admin_ctx, "carol", "project", "p-1") == []
    assert await service.get_permissions(admin_ctx, "bob", "galaxy", "g-1") == []


@pytest.mark.asyncio
async def test_can_any_and_can_all(service, admin_ctx):
    await service.assign(admin_ctx, "bob", "viewer", "organization", ORG)

    assert await service.can_any(admin_ctx, "bob", ["task.create", "task.read"], "organization", ORG)
    assert not await service.can_any(admin_ctx, "bob", ["task.create", "task.delete"], "organization", ORG)
    # a malformed entry is skipped by can_any
    assert await service.can_any(admin_ctx, "bob", ["task..read", "team.read"], "organization", ORG)
    assert not await service.can_any(admin_ctx, "bob", [], "organization", ORG)

    assert await service.can_all(admin_ctx, "bob", ["task.read", "team.read"], "organization", ORG)
    assert not await service.can_all(admin_ctx, "bob", ["task.read", "task.create"], "organization", ORG)
    assert not await service.can_all(admin_ctx, "bob", ["task.read", "task..read"], "organization", ORG)
    assert await service.can_all(admin_ctx, "bob", [], "organization", ORG)


@pytest.mark.asyncio
async def test_role_checks(service, admin_ctx):
    await service.assign(admin_ctx, "bob", "viewer", "organization", ORG)
    await service.assign(admin_ctx, "bob", "member", "organization", ORG)
    await service.bootstrap(admin_ctx, "carol", "viewer", "organization", "*")

    assert await service.has_role(admin_ctx, "bob", "viewer", "organization", ORG)
    assert not await service.has_role(admin_ctx, "bob", "viewer", "organization", "org-2")
    # roles of another scope never satisfy a role check
    assert not await service.has_role(admin_ctx, "bob", "viewer", "project", "p-1")
    assert await service.has_role(admin_ctx, "carol", "viewer", "organization", "org-7")

    assert await service.has_any_role(admin_ctx, "bob", ["admin", "member"], "organization", ORG)
    assert not await service.has_any_role(admin_ctx, "bob", ["admin", "super_admin"], "organization", ORG)
    assert await service.has_all_roles(admin_ctx, "bob", ["viewer", "member"], "organization", ORG)
    assert not await service.has_all_roles(admin_ctx, "bob", ["viewer", "admin"], "organization", ORG)


@pytest.mark.asyncio
async def test_role_exists_matches_exact_tuple(service, admin_ctx):
    await service.bootstrap(admin_ctx, "bob", "viewer", "organization", "*")

    assert await service.role_exists(admin_ctx, "bob", "viewer", "organization", "*")
    assert not await service.role_exists(admin_ctx, "bob", "viewer", "organization", ORG)
    assert await service.role_exists(admin_ctx, "alice", "super_admin", "organization", ORG)


@pytest.mark.asyncio
async def test_user_child_scopes(service, admin_ctx):
    for project in ("p-1", "p-2", "p-3"):
        await service.set_scope_parent(admin_ctx, "project", project, "organization", ORG)
    await service.set_scope_parent(admin_ctx, "project", "p-9", "organization", "org-2")
    await service.bootstrap(admin_ctx, "bob", "viewer", "project", "p-9")
    await service.assign(admin_ctx, "bob", "editor", "project", "p-1")
    await service.assign(admin_ctx, "bob", "viewer", "project", "p-1")
    await service.assign(admin_ctx, "bob", "viewer", "project", "p-3")

    assert await service.get_user_child_scopes(admin_ctx, "bob", "project", "organization", ORG) == ["p-1", "p-3"]
    assert await service.get_user_child_scopes(
        admin_ctx, "bob", "project", "organization", ORG, role="editor"
    ) == ["p-1"]
    assert await service.get_user_child_scopes(admin_ctx, "carol", "project", "organization", ORG) == []


@pytest.mark.asyncio
async def test_user_child_scopes_with_static_hierarchy(registry, pool, identity):
    hierarchy = StaticScopeHierarchy({
        ("project", "p-1"): ("organization", ORG),
        ("project", "p-2"): ("organization", ORG),
    })
    service = AuthorizationService(registry, pool, identity=identity, hierarchy=hierarchy)
    await service.run_migrations()
    ctx = RequestContext.system()
    await service.bootstrap(ctx, "bob", "editor", "project", "p-2")
    await service.bootstrap(ctx, "bob", "editor", "project", "p-5")

    assert await service.get_user_child_scopes(ctx, "bob", "project", "organization", ORG) == ["p-2"]
