# tests/test_routes.py

"""
Tests for the permission routes and the route protection dependencies.
"""

from typing import Optional

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.features.permissions.ability import tagged
from app.features.permissions.audit import ACCESS_DENIED, ANONYMOUS_ACTOR
from app.features.permissions.dependencies import check_policies, get_principal, require_operation
from app.features.permissions.routes import router as permission_router
from app.features.permissions.schemas import Decision, Principal

from conftest import make_principal


class PrincipalOverride:
    """Stands in for the authentication layer."""

    def __init__(self):
        self.principal: Optional[Principal] = None

    def __call__(self) -> Optional[Principal]:
        return self.principal


@pytest.fixture
def current():
    return PrincipalOverride()


@pytest.fixture
def app(engine, current) -> FastAPI:
    app = FastAPI()
    app.include_router(permission_router, prefix="/permissions")

    @app.patch("/projects/{projectId}/issues/{issue_id}")
    async def update_issue(projectId: str, issue_id: str, decision: Decision = Depends(require_operation("issues.update"))):
        return {"id": issue_id, "role_id": decision.role_id}

    @app.post("/issues")
    async def create_issue(decision: Decision = Depends(require_operation("issues.create"))):
        return {"project_id": decision.scope_id}

    @app.put("/projects/{projectId}/comments/{comment_id}")
    async def update_comment(
        projectId: str,
        comment_id: str,
        _: Decision = Depends(check_policies(
            lambda ability: ability.can_on("update", tagged("Comment", author_id="member-1"))
        )),
    ):
        return {"id": comment_id}

    app.state.authz = engine
    app.dependency_overrides[get_principal] = current
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# /permissions/check
# ============================================================================

def test_check_allowed(client, current):
    current.principal = make_principal("member-1")

    response = client.post("/permissions/check", json={"permission": "issues:update", "project_id": "proj-1"})

    assert response.status_code == 200
    assert response.json() == {"allowed": True}


def test_check_denied_reveals_no_reason(client, current, sink):
    current.principal = make_principal("viewer-1")

    response = client.post("/permissions/check", json={"permission": "Issues:Delete", "project_id": "proj-1"})

    assert response.json() == {"allowed": False}
    assert sink.events(ACCESS_DENIED)[0].resource_id == "issues:delete"


def test_check_without_project(client, current):
    current.principal = make_principal("member-1")

    response = client.post("/permissions/check", json={"permission": "notifications:view"})

    assert response.json() == {"allowed": True}


def test_check_rejects_malformed_permission(client, current):
    current.principal = make_principal("member-1")

    response = client.post("/permissions/check", json={"permission": "issues-update"})

    assert response.status_code == 422


def test_check_denies_and_audits_anonymous_caller(client, sink):
    response = client.post("/permissions/check", json={"permission": "issues:view", "project_id": "proj-1"})

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}
    [record] = sink.events(ACCESS_DENIED)
    assert record.actor_id == ANONYMOUS_ACTOR
    assert record.metadata["required_permission"] == "issues:view"


# ============================================================================
# /permissions/projects/{project_id}/abilities
# ============================================================================

def test_abilities_for_member(client, current):
    current.principal = make_principal("member-1")

    response = client.get("/permissions/projects/proj-1/abilities")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "member-1"
    assert data["role_id"] == "role-member"
    assert {
        "action": "update", "subject_type": "Comment", "conditions": {"author_id": "member-1"}
    } in data["grants"]
    assert {"action": "update", "subject_type": "Issue", "conditions": None} in data["grants"]


def test_abilities_for_non_member_are_baseline(client, current):
    current.principal = make_principal("outsider-1")

    data = client.get("/permissions/projects/proj-1/abilities").json()

    assert data["role_id"] is None
    assert {g["subject_type"] for g in data["grants"]} == {"User"}


def test_abilities_require_principal(client):
    assert client.get("/permissions/projects/proj-1/abilities").status_code == 403


# ============================================================================
# /permissions/roles/{role_id}/cache
# ============================================================================

def test_invalidate_role_cache_requires_super_admin(client, current):
    current.principal = make_principal("lead-1")

    response = client.delete("/permissions/roles/role-member/cache")

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}


def test_invalidate_role_cache(client, current, role_store):
    current.principal = make_principal("member-1")
    client.post("/permissions/check", json={"permission": "issues:delete", "project_id": "proj-1"})
    role_store.permissions["role-member"] = ["issues:delete"]

    current.principal = make_principal("admin-1", is_super_admin=True)
    assert client.delete("/permissions/roles/role-member/cache").status_code == 204

    current.principal = make_principal("member-1")
    response = client.post("/permissions/check", json={"permission": "issues:delete", "project_id": "proj-1"})
    assert response.json() == {"allowed": True}


# ============================================================================
# Route protection
# ============================================================================

def test_require_operation_allows_member(client, current):
    current.principal = make_principal("member-1")

    response = client.patch("/projects/proj-1/issues/issue-7")

    assert response.status_code == 200
    assert response.json() == {"id": "issue-7", "role_id": "role-member"}


def test_require_operation_denies_viewer(client, current, sink):
    current.principal = make_principal("viewer-1")

    response = client.patch("/projects/proj-1/issues/issue-7", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}
    assert sink.events(ACCESS_DENIED)[0].actor_ip == "203.0.113.5"


def test_require_operation_reads_project_from_body(client, current):
    current.principal = make_principal("member-1")

    response = client.post("/issues", json={"projectId": "proj-1", "title": "Broken build"})

    assert response.status_code == 200
    assert response.json() == {"project_id": "proj-1"}


def test_require_operation_reads_project_from_query(client, current):
    current.principal = make_principal("member-1")

    response = client.post("/issues?projectId=proj-1")

    assert response.json() == {"project_id": "proj-1"}


def test_require_operation_without_project_denies(client, current):
    current.principal = make_principal("member-1")

    assert client.post("/issues", json={"title": "Broken build"}).status_code == 403


def test_anonymous_denied(client, sink):
    assert client.patch("/projects/proj-1/issues/issue-7").status_code == 403
    assert sink.events(ACCESS_DENIED)[0].actor_id == "anonymous"


def test_policy_dependency(client, current):
    current.principal = make_principal("member-1")
    assert client.put("/projects/proj-1/comments/c-1").status_code == 200

    current.principal = make_principal("member-2")
    assert client.put("/projects/proj-1/comments/c-1").status_code == 403


def test_missing_engine_denies(current):
    app = FastAPI()
    app.include_router(permission_router, prefix="/permissions")
    app.dependency_overrides[get_principal] = current
    current.principal = make_principal("member-1")

    with TestClient(app) as client:
        response = client.post("/permissions/check", json={"permission": "issues:view", "project_id": "proj-1"})

    assert response.status_code == 403
