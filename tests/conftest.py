# tests/conftest.py

"""
Pytest configuration and shared fixtures for testing.

The engine is assembled from in-memory fakes for the membership and role
stores, a recording audit sink and a cache driven by a fake clock.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from app.core.cache import MemoryCache
from app.features.permissions.ability import AbilityFactory
from app.features.permissions.catalog import PermissionCatalog
from app.features.permissions.enforcement import EnforcementPoint, OperationRegistry
from app.features.permissions.errors import StoreUnavailable
from app.features.permissions.operations import OPERATION_PERMISSIONS
from app.features.permissions.resolver import RoleResolver
from app.features.permissions.schemas import AuditRecord, MembershipRecord, Principal, RoleRecord
from app.features.permissions.static_roles import (
    MEMBER_PERMISSIONS,
    PROJECT_LEAD_PERMISSIONS,
    VIEWER_PERMISSIONS,
    build_static_role_table,
)


PROJECT_ID = "proj-1"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMembershipStore:
    def __init__(self, memberships: Dict[Tuple[str, str], MembershipRecord]):
        self.memberships = dict(memberships)
        self.calls = 0
        self.error: Optional[Exception] = None
        self.delay: float = 0

    async def get_role(self, scope_id: str, principal_id: str) -> Optional[MembershipRecord]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.memberships.get((scope_id, principal_id))


class FakeRoleStore:
    def __init__(self, permissions: Dict[str, List[str]], legacy_roles: Dict[str, RoleRecord]):
        self.permissions = dict(permissions)
        self.legacy_roles = dict(legacy_roles)
        self.permission_calls = 0
        self.error: Optional[Exception] = None
        self.delay: float = 0

    async def get_permissions(self, role_id: str) -> Optional[List[str]]:
        self.permission_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.permissions.get(role_id)

    async def get_role_by_legacy_name(self, name: str) -> Optional[RoleRecord]:
        if self.error is not None:
            raise self.error
        return self.legacy_roles.get(name)


class RecordingSink:
    def __init__(self):
        self.records: List[AuditRecord] = []

    def record(self, event: AuditRecord) -> None:
        self.records.append(event)

    def events(self, name: str) -> List[AuditRecord]:
        return [r for r in self.records if r.metadata.get("event") == name]


def make_principal(user_id: str, **kwargs) -> Principal:
    kwargs.setdefault("email", f"{user_id}@example.com")
    kwargs.setdefault("organization_id", "org-1")
    return Principal(id=user_id, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def static_table():
    return build_static_role_table()


@pytest.fixture
def membership_store() -> FakeMembershipStore:
    return FakeMembershipStore({
        (PROJECT_ID, "lead-1"): MembershipRecord(role_id="role-lead", role_name="ProjectLead"),
        (PROJECT_ID, "member-1"): MembershipRecord(role_id="role-member", role_name="Member"),
        (PROJECT_ID, "member-2"): MembershipRecord(role_id="role-member", role_name="Member"),
        (PROJECT_ID, "viewer-1"): MembershipRecord(role_id="role-viewer", role_name="Viewer"),
        # Memberships created before role records existed
        (PROJECT_ID, "legacy-member"): MembershipRecord(role_id=None, role_name="Member"),
        (PROJECT_ID, "dev-1"): MembershipRecord(role_id=None, role_name="Developer"),
        (PROJECT_ID, "ghost-1"): MembershipRecord(role_id=None, role_name="Ghost"),
    })


@pytest.fixture
def role_store() -> FakeRoleStore:
    return FakeRoleStore(
        permissions={
            "role-lead": list(PROJECT_LEAD_PERMISSIONS),
            "role-member": list(MEMBER_PERMISSIONS),
            "role-viewer": list(VIEWER_PERMISSIONS),
        },
        legacy_roles={
            "ProjectLead": RoleRecord(id="role-lead", name="ProjectLead", legacy_enum_name="ProjectLead"),
            "Member": RoleRecord(id="role-member", name="Member", legacy_enum_name="Member"),
            "Viewer": RoleRecord(id="role-viewer", name="Viewer", legacy_enum_name="Viewer"),
        },
    )


@pytest.fixture
def catalog(role_store, static_table, clock) -> PermissionCatalog:
    return PermissionCatalog(role_store, static_table, MemoryCache(clock=clock), ttl_seconds=300, timeout=0.5)


@pytest.fixture
def role_cache(clock) -> MemoryCache:
    return MemoryCache(clock=clock, name="project_roles")


@pytest.fixture
def resolver(membership_store, role_store, catalog, role_cache) -> RoleResolver:
    return RoleResolver(membership_store, role_store, catalog, role_cache, ttl_seconds=300, timeout=0.5)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(resolver, catalog, sink, role_store) -> EnforcementPoint:
    return EnforcementPoint(
        resolver,
        catalog,
        sink,
        operations=OperationRegistry(OPERATION_PERMISSIONS),
        ability_factory=AbilityFactory(catalog, role_store),
        audited_permissions={"projects:delete", "members:remove"},
    )


@pytest.fixture
def super_admin() -> Principal:
    return make_principal("admin-1", is_super_admin=True, organization_id=None)


@pytest.fixture
def member() -> Principal:
    return make_principal("member-1")


@pytest.fixture
def viewer() -> Principal:
    return make_principal("viewer-1")


@pytest.fixture
def lead() -> Principal:
    return make_principal("lead-1")


@pytest.fixture
def outsider() -> Principal:
    return make_principal("outsider-1")


@pytest.fixture
def unavailable():
    return StoreUnavailable("connection refused")
