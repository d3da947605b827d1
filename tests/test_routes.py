import httpx
import jwt
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI

from scopeauth.core import config
from scopeauth.features.rbac.context import RequestContext
from scopeauth.features.rbac.dependencies import (
    limiter,
    require_any_permission,
    require_any_role,
    require_role,
)
from scopeauth.main import create_app


ORG = "org-1"


def _auth(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, config.JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(service, admin_ctx):
    # frank operates the service: super_admin on every organization
    await service.bootstrap(RequestContext.system(), "frank", "super_admin", "organization", "*")
    limiter.reset()
    app = create_app(service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _assignment(user_id, role="viewer", scope="organization", scope_id=ORG):
    return {"user_id": user_id, "role": role, "scope": scope, "scope_id": scope_id}


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "database": True, "transactions": True}


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    resp = await client.post("/rbac/assignments", json=_assignment("bob"))
    assert resp.status_code == 401

    resp = await client.post(
        "/rbac/assignments", json=_assignment("bob"), headers={"Authorization": "Bearer not-a-token"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_assign_is_idempotent(client):
    resp = await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["message"] == "Role assigned successfully"

    resp = await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["message"] == "Role already assigned"


@pytest.mark.asyncio
async def test_error_mapping(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    resp = await client.post("/rbac/assignments", json=_assignment("carol", "super_admin"), headers=_auth("bob"))
    assert resp.status_code == 403
    body = resp.json()
    assert body["error"] == "not_authorized"
    assert body["actor_id"] == "bob"

    resp = await client.post("/rbac/assignments", json=_assignment("ghost"), headers=_auth("alice"))
    assert resp.status_code == 404
    assert resp.json()["error"] == "unknown_subject"

    resp = await client.post("/rbac/assignments", json=_assignment("bob", "emperor"), headers=_auth("alice"))
    assert resp.status_code == 404
    assert resp.json()["error"] == "unknown_role"

    resp = await client.post("/rbac/assignments", json={"user_id": "bob"}, headers=_auth("alice"))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_revoke(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    params = _assignment("bob")
    resp = await client.delete("/rbac/assignments", params=params, headers=_auth("alice"))
    assert resp.json()["message"] == "Role revoked successfully"
    resp = await client.delete("/rbac/assignments", params=params, headers=_auth("alice"))
    assert resp.json()["message"] == "Role was not assigned"


@pytest.mark.asyncio
async def test_check(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    check = {"user_id": "bob", "permission": "task.read", "scope": "organization", "scope_id": ORG}
    resp = await client.post("/rbac/check", json=check, headers=_auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["allowed"] is True

    resp = await client.post("/rbac/check", json={**check, "permission": "task.create"}, headers=_auth("bob"))
    assert resp.json()["allowed"] is False

    resp = await client.post("/rbac/check", json={**check, "user_id": "alice"}, headers=_auth("bob"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_user_roles(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    resp = await client.get("/rbac/users/bob/roles", headers=_auth("bob"))
    assert resp.status_code == 200
    assert resp.json()["assignments"] == [{"role": "viewer", "scope": "organization", "scope_id": ORG}]

    resp = await client.get("/rbac/users/alice/roles", headers=_auth("bob"))
    assert resp.status_code == 403

    resp = await client.get(
        "/rbac/users/bob/roles", params={"scope": "organization", "scope_id": ORG}, headers=_auth("alice")
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_bulk_failure_reports_progress(client):
    items = [_assignment("bob"), _assignment("ghost"), _assignment("carol")]
    resp = await client.post("/rbac/assignments/bulk", json={"items": items}, headers=_auth("alice"))
    assert resp.status_code == 409
    body = resp.json()
    assert body["index"] == 1
    assert body["committed"] == 1
    assert body["not_applied"] == 2
    assert body["cause"]["error"] == "unknown_subject"

    resp = await client.post("/rbac/revocations/bulk", json={"items": items[:1]}, headers=_auth("alice"))
    assert resp.json() == {"total": 1, "applied": 1, "committed": 1}


@pytest.mark.asyncio
async def test_counts_and_members(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    params = {"scope": "organization", "scope_id": ORG, "role": "viewer"}
    resp = await client.get("/rbac/counts", params=params, headers=_auth("alice"))
    assert resp.json()["count"] == 1

    resp = await client.get("/rbac/scopes/organization/org-1/members", headers=_auth("alice"))
    assert {m["user_id"] for m in resp.json()} == {"alice", "bob"}

    resp = await client.get("/rbac/counts", params=params, headers=_auth("bob"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_endpoints_need_operator(client):
    # alice only administers one organization
    resp = await client.get("/rbac/counts/all", headers=_auth("alice"))
    assert resp.status_code == 403

    resp = await client.get("/rbac/counts/all", headers=_auth("frank"))
    assert resp.status_code == 200
    assert resp.json()["count"] == 2

    resp = await client.get("/rbac/pool/stats", headers=_auth("frank"))
    assert resp.status_code == 200
    assert resp.json()["in_use"] == 0

    resp = await client.put(
        "/rbac/pool", json={"max_open": 8, "max_idle": 4, "max_lifetime": 600}, headers=_auth("frank")
    )
    assert resp.status_code == 200
    assert resp.json()["max_open"] == 8

    resp = await client.get("/rbac/migrations", headers=_auth("frank"))
    assert resp.json()["pending"] == 0

    resp = await client.get("/rbac/audit-logs", params={"target_user_id": "frank"}, headers=_auth("frank"))
    assert resp.status_code == 200
    assert [e["action"] for e in resp.json()["items"]] == ["assigned"]


@pytest.mark.asyncio
async def test_scope_parent_and_assignable_roles(client):
    edge = {"scope": "project", "scope_id": "p-1", "parent_scope": "organization", "parent_scope_id": ORG}
    resp = await client.post("/rbac/scopes/parent", json=edge, headers=_auth("bob"))
    assert resp.status_code == 403

    resp = await client.post("/rbac/scopes/parent", json=edge, headers=_auth("alice"))
    assert resp.status_code == 200

    resp = await client.get(
        "/rbac/assignable-roles", params={"scope": "project", "scope_id": "p-1"}, headers=_auth("alice")
    )
    assert {r["role"] for r in resp.json()} == {"editor", "viewer"}


@pytest.mark.asyncio
async def test_mutations_are_rate_limited(client, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT_MUTATIONS", "2/minute")

    for user_id in ("bob", "carol"):
        resp = await client.post("/rbac/assignments", json=_assignment(user_id), headers=_auth("alice"))
        assert resp.status_code == 200
    resp = await client.post("/rbac/assignments", json=_assignment("dave"), headers=_auth("alice"))
    assert resp.status_code == 429

    # limits are tracked per bearer token, and reads are not limited
    resp = await client.post("/rbac/assignments", json=_assignment("dave"), headers=_auth("frank"))
    assert resp.status_code == 200
    resp = await client.get("/rbac/users/alice/roles", headers=_auth("alice"))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_effective_permissions(client):
    await client.post("/rbac/assignments", json=_assignment("bob"), headers=_auth("alice"))

    resp = await client.get("/rbac/permissions", params={"scope": "organization", "scope_id": ORG}, headers=_auth("bob"))
    assert resp.status_code == 200
    assert resp.json()["permissions"] == ["project.read", "task.read", "team.read"]

    resp = await client.get("/rbac/permissions", params={"scope": "organization", "scope_id": "org-2"}, headers=_auth("bob"))
    assert resp.json()["permissions"] == []


@pytest.mark.asyncio
async def test_user_child_scopes_route(client, service, admin_ctx):
    for project in ("p-1", "p-2"):
        await service.set_scope_parent(admin_ctx, "project", project, "organization", ORG)
    await service.assign(admin_ctx, "bob", "editor", "project", "p-2")

    url = f"/rbac/scopes/organization/{ORG}/children/project"
    resp = await client.get(url, headers=_auth("bob"))
    assert resp.status_code == 200
    assert resp.json()["scope_ids"] == ["p-2"]

    resp = await client.get(url, params={"user_id": "alice"}, headers=_auth("bob"))
    assert resp.status_code == 403

    resp = await client.get(url, params={"user_id": "bob", "role": "viewer"}, headers=_auth("alice"))
    assert resp.json()["scope_ids"] == []


@pytest_asyncio.fixture
async def guarded(service, admin_ctx):
    app = FastAPI()
    app.state.authz = service

    @app.get("/orgs/{scope_id}/settings")
    async def settings(ctx: RequestContext = Depends(require_role("admin", "organization"))):
        return {"actor": ctx.actor_id}

    @app.get("/orgs/{scope_id}/dashboard")
    async def dashboard(ctx: RequestContext = Depends(require_any_role(["admin", "member"], "organization"))):
        return {"actor": ctx.actor_id}

    @app.get("/orgs/{scope_id}/tasks")
    async def tasks(ctx: RequestContext = Depends(require_any_permission(["files.read", "task.read"], "organization"))):
        return {"actor": ctx.actor_id}

    @app.get("/tasks")
    async def unscoped_tasks(ctx: RequestContext = Depends(require_any_permission(["task.read"], "organization"))):
        return {"actor": ctx.actor_id}

    await service.assign(admin_ctx, "bob", "member", "organization", ORG)
    await service.assign(admin_ctx, "carol", "admin", "organization", ORG)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_require_role(guarded):
    resp = await guarded.get(f"/orgs/{ORG}/settings", headers=_auth("carol"))
    assert resp.status_code == 200
    assert resp.json() == {"actor": "carol"}

    resp = await guarded.get(f"/orgs/{ORG}/settings", headers=_auth("bob"))
    assert resp.status_code == 403
    # super_admin grants every permission but is not the admin role
    resp = await guarded.get(f"/orgs/{ORG}/settings", headers=_auth("alice"))
    assert resp.status_code == 403
    resp = await guarded.get("/orgs/org-2/settings", headers=_auth("carol"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_require_any_role(guarded):
    for user_id in ("bob", "carol"):
        resp = await guarded.get(f"/orgs/{ORG}/dashboard", headers=_auth(user_id))
        assert resp.status_code == 200
    resp = await guarded.get(f"/orgs/{ORG}/dashboard", headers=_auth("dave"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_require_any_permission(guarded):
    resp = await guarded.get(f"/orgs/{ORG}/tasks", headers=_auth("bob"))
    assert resp.status_code == 200

    resp = await guarded.get(f"/orgs/{ORG}/tasks", headers=_auth("dave"))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Permission denied: one of files.read, task.read required"

    resp = await guarded.get("/tasks", headers=_auth("bob"))
    assert resp.status_code == 400

    resp = await guarded.get(f"/orgs/{ORG}/tasks")
    assert resp.status_code == 401
