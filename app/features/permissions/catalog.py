"""
Role -> permission lookup.

Two sources coexist while project roles migrate to the database:

1. Dynamic: permission rows the ``RoleStore`` holds for a role id, cached
   per role for ``PERMISSION_CACHE_TTL_SECONDS``.
2. Static: the hardcoded role table from ``static_roles``.

A role with a dynamic entry is governed by it alone, even when the static
table knows the same role name. The static table answers only for roles the
store has no entry for: ids of the form ``legacy:<Name>`` and database roles
whose rows have not been created yet.
"""
import asyncio
from typing import Iterable, Optional

from app.core import config
from app.core.cache import Cache, MemoryCache
from app.features.permissions.errors import InfrastructureFailure, StoreUnavailable
from app.features.permissions.static_roles import StaticRoleTable, static_role_name
from app.features.permissions.stores import RoleStore
from app.utils import get_logger


log = get_logger(__name__)

MANAGE = "manage"

# Actions spelled differently across the codebase that mean the same thing
ACTION_ALIASES = {
    "view": "read",
}


def normalize_permission(permission: str) -> str:
    return permission.strip().lower()


def split_permission(permission: str) -> tuple[str, str]:
    resource, _, action = normalize_permission(permission).partition(":")
    return resource, ACTION_ALIASES.get(action, action)


def allows(granted: Iterable[str], required: str) -> bool:
    """
    Check a required permission against a granted set.

    Comparison is case-insensitive, "view" and "read" are the same action,
    and "<resource>:manage" covers every action on that resource.
    """
    req_resource, req_action = split_permission(required)
    for permission in granted:
        resource, action = split_permission(permission)
        if resource != req_resource:
            continue
        if action == req_action or action == MANAGE:
            return True
    return False


class PermissionCatalog:
    def __init__(
        self,
        role_store: RoleStore,
        static_table: StaticRoleTable,
        cache: Optional[Cache] = None,
        ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ):
        self._role_store = role_store
        self._static_table = static_table
        self._cache = cache if cache is not None else MemoryCache(name="role_permissions")
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout

    @staticmethod
    def _cache_key(role_id: str) -> str:
        return f"role_permissions:{role_id}"

    def static_permissions(self, role_name: Optional[str]) -> Optional[frozenset[str]]:
        """Permissions the hardcoded table lists for a role name, None if unknown."""
        if not role_name:
            return None
        return self._static_table.get(role_name.lower())

    async def _read_cache(self, key: str) -> Optional[frozenset[str]]:
        try:
            return await self._cache.get(key)
        except Exception as e:
            log.warning(f"Permission cache read failed for {key}, falling back to store: {e}")
            return None

    async def _write_cache(self, key: str, permissions: frozenset[str]) -> None:
        try:
            stored = await self._cache.set(key, permissions, self._ttl_seconds)
        except Exception as e:
            log.warning(f"Permission cache write failed for {key}: {e}")
            return
        if stored is False:
            log.warning(f"Permission cache refused write for {key}")

    async def _dynamic_permissions(self, role_id: str) -> Optional[frozenset[str]]:
        key = self._cache_key(role_id)
        cached = await self._read_cache(key)
        if cached is not None:
            return cached

        try:
            rows = await asyncio.wait_for(self._role_store.get_permissions(role_id), self._timeout)
        except asyncio.TimeoutError as e:
            raise InfrastructureFailure(detail=f"role store timed out loading role {role_id}") from e
        except StoreUnavailable as e:
            raise InfrastructureFailure(detail=f"role store unavailable loading role {role_id}") from e

        if rows is None:
            return None

        permissions = frozenset(normalize_permission(p) for p in rows)
        await self._write_cache(key, permissions)
        return permissions

    async def get_permissions(self, role_id: str, role_name: Optional[str] = None) -> frozenset[str]:
        """
        Effective permission set for a role.

        Args:
            role_id: Database role id, or a ``legacy:<Name>`` static role id
            role_name: Legacy role name used when the store has no entry

        Returns:
            Lower-cased permission strings; empty when neither source knows the role

        Raises:
            InfrastructureFailure: the role store timed out or was unreachable
        """
        legacy_name = static_role_name(role_id)
        if legacy_name is None:
            dynamic = await self._dynamic_permissions(role_id)
            if dynamic is not None:
                return dynamic
            legacy_name = role_name

        static = self.static_permissions(legacy_name)
        if static is not None:
            log.debug(f"Role {role_id} resolved from static table as {legacy_name!r}")
            return static

        log.warning(f"No permissions found for role {role_id} (name={role_name!r})")
        return frozenset()

    async def has_all(self, role_id: str, required: Iterable[str]) -> bool:
        granted = await self.get_permissions(role_id)
        return all(allows(granted, p) for p in required)

    async def has_any(self, role_id: str, required: Iterable[str]) -> bool:
        granted = await self.get_permissions(role_id)
        return any(allows(granted, p) for p in required)

    async def invalidate(self, role_id: str) -> None:
        """Drop a role's cached permissions, e.g. after its rows change."""
        await self._cache.delete(self._cache_key(role_id))
