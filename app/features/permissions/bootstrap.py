"""
Wires the authorization engine together.

Usage in main.py:
    @app.on_event("startup")
    async def startup():
        app.state.authz = build_engine(AsyncSessionLocal)
        await app.state.authz.audit_sink.start()
"""
from typing import Mapping, Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.cache import Cache, MemoryCache
from app.features.permissions.ability import AbilityFactory
from app.features.permissions.audit import AuditSink, QueuedAuditSink, SqlAuditWriter
from app.features.permissions.catalog import PermissionCatalog
from app.features.permissions.enforcement import EnforcementPoint, OperationRegistry
from app.features.permissions.operations import OPERATION_PERMISSIONS
from app.features.permissions.resolver import RoleResolver
from app.features.permissions.static_roles import StaticRoleTable, build_static_role_table
from app.features.permissions.stores import MembershipStore, RoleStore, SqlMembershipStore, SqlRoleStore


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    membership_store: Optional[MembershipStore] = None,
    role_store: Optional[RoleStore] = None,
    role_cache: Optional[Cache] = None,
    audit_sink: Optional[AuditSink] = None,
    static_table: Optional[StaticRoleTable] = None,
    operations: Optional[Mapping[str, str]] = None,
) -> EnforcementPoint:
    """
    Build an ``EnforcementPoint`` backed by the database.

    Any collaborator can be passed in to replace the default, e.g. a Redis
    cache for ``role_cache`` or a fake store in tests.
    """
    role_store = role_store or SqlRoleStore(session_factory)
    membership_store = membership_store or SqlMembershipStore(session_factory)
    static_table = static_table if static_table is not None else build_static_role_table()

    catalog = PermissionCatalog(
        role_store,
        static_table,
        MemoryCache(name="role_permissions"),
        ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS,
    )
    resolver = RoleResolver(
        membership_store,
        role_store,
        catalog,
        role_cache or MemoryCache(name="project_roles"),
        ttl_seconds=config.ROLE_CACHE_TTL_SECONDS,
    )
    return EnforcementPoint(
        resolver,
        catalog,
        audit_sink or QueuedAuditSink(SqlAuditWriter(session_factory)),
        operations=OperationRegistry(operations if operations is not None else OPERATION_PERMISSIONS),
        ability_factory=AbilityFactory(catalog, role_store),
    )
