"""
Effective project role lookup, cache-aside over the membership store.
"""
import asyncio
from typing import Optional

from app.core import config
from app.core.cache import Cache
from app.features.permissions.catalog import PermissionCatalog
from app.features.permissions.errors import InfrastructureFailure, RoleUnresolvable, StoreUnavailable
from app.features.permissions.schemas import RoleDescriptor
from app.features.permissions.static_roles import static_role_id
from app.features.permissions.stores import MembershipStore, RoleStore
from app.utils import get_logger


log = get_logger(__name__)


class RoleResolver:
    """
    Resolves a principal's role in a project.

    Cache hits skip the stores entirely. A role change in the database is
    therefore seen only once the cached entry expires (``ttl_seconds``).
    """

    def __init__(
        self,
        membership_store: MembershipStore,
        role_store: RoleStore,
        catalog: PermissionCatalog,
        cache: Cache,
        ttl_seconds: int = config.ROLE_CACHE_TTL_SECONDS,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ):
        self._membership_store = membership_store
        self._role_store = role_store
        self._catalog = catalog
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout

    @staticmethod
    def cache_key(principal_id: str, scope_id: str) -> str:
        return f"project_role_id:{scope_id}:{principal_id}"

    async def _call_store(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except asyncio.TimeoutError as e:
            raise InfrastructureFailure(detail=f"{what} timed out after {self._timeout}s") from e
        except StoreUnavailable as e:
            raise InfrastructureFailure(detail=f"{what} unavailable: {e}") from e

    async def _read_cache(self, key: str) -> Optional[RoleDescriptor]:
        try:
            cached = await self._cache.get(key)
        except Exception as e:
            log.warning(f"Role cache read failed for {key}, falling back to store: {e}")
            return None
        if not isinstance(cached, dict) or not cached.get("role_id"):
            return None
        return RoleDescriptor(role_id=cached["role_id"], role_name=cached.get("role_name"), source="cache")

    async def _write_cache(self, key: str, descriptor: RoleDescriptor) -> None:
        # The role name travels with the id so a hit can fall back to the static table
        value = {"role_id": descriptor.role_id, "role_name": descriptor.role_name}
        try:
            stored = await self._cache.set(key, value, self._ttl_seconds)
        except Exception as e:
            log.warning(f"Role cache write failed for {key}: {e}")
            return
        if stored is False:
            log.warning(f"Role cache refused write for {key}")

    async def resolve(self, principal_id: str, scope_id: str) -> Optional[RoleDescriptor]:
        """
        Get the principal's role in a project.

        Returns:
            RoleDescriptor, or None when the principal is not a member

        Raises:
            RoleUnresolvable: the membership has a legacy role name nothing maps
            InfrastructureFailure: a store timed out or was unreachable
        """
        key = self.cache_key(principal_id, scope_id)
        cached = await self._read_cache(key)
        if cached is not None:
            return cached

        membership = await self._call_store(
            self._membership_store.get_role(scope_id, principal_id),
            "membership store",
        )
        if membership is None:
            return None

        if membership.role_id:
            descriptor = RoleDescriptor(
                role_id=membership.role_id,
                role_name=membership.role_name,
                source="membership",
            )
        else:
            descriptor = await self._bridge_legacy_role(membership.role_name, principal_id, scope_id)

        await self._write_cache(key, descriptor)
        return descriptor

    async def _bridge_legacy_role(
        self, role_name: Optional[str], principal_id: str, scope_id: str
    ) -> RoleDescriptor:
        if role_name:
            role = await self._call_store(
                self._role_store.get_role_by_legacy_name(role_name),
                "role store",
            )
            if role is not None:
                return RoleDescriptor(role_id=role.id, role_name=role_name, source="legacy_bridge")

            if self._catalog.static_permissions(role_name) is not None:
                log.info(f"Legacy role {role_name!r} has no role record, using static table")
                return RoleDescriptor(role_id=static_role_id(role_name), role_name=role_name, source="static")

        log.warning(
            f"Role not found for user {principal_id} in project {scope_id}: "
            f"legacy role {role_name!r} has no role record or static entry"
        )
        raise RoleUnresolvable(role_name)

    async def invalidate(self, principal_id: str, scope_id: str) -> None:
        await self._cache.delete(self.cache_key(principal_id, scope_id))
