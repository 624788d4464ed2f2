"""
Membership and role stores.

The engine depends only on the ``MembershipStore`` and ``RoleStore``
protocols. The SQLAlchemy implementations below open a short-lived session
per query and translate driver errors into ``StoreUnavailable`` so the
engine can tell an outage apart from "no record".
"""
from typing import List, Optional, Protocol
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.permissions.errors import StoreUnavailable
from app.features.permissions.models import ProjectMember, Role
from app.features.permissions.schemas import MembershipRecord, RoleRecord
from app.utils import get_logger


log = get_logger(__name__)


class MembershipStore(Protocol):
    async def get_role(self, scope_id: str, principal_id: str) -> Optional[MembershipRecord]:
        ...


class RoleStore(Protocol):
    async def get_permissions(self, role_id: str) -> Optional[List[str]]:
        """Permission strings for a role, or None when the store has no such role."""
        ...

    async def get_role_by_legacy_name(self, name: str) -> Optional[RoleRecord]:
        ...


class SqlMembershipStore:
    """Project memberships from the ``project_members`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_role(self, scope_id: str, principal_id: str) -> Optional[MembershipRecord]:
        stmt = select(ProjectMember.role_id, ProjectMember.role_name).where(
            ProjectMember.project_id == scope_id,
            ProjectMember.user_id == principal_id,
        )
        try:
            async with self._session_factory() as db:
                row = (await db.execute(stmt)).first()
        except (SQLAlchemyError, OSError) as e:
            log.error(f"Membership lookup failed for project {scope_id}: {e}")
            raise StoreUnavailable("membership store unavailable") from e

        if row is None:
            return None
        return MembershipRecord(role_id=row.role_id, role_name=row.role_name)


class SqlRoleStore:
    """Roles and their permission rows from the ``roles`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _fetch_role(self, *criteria) -> Optional[Role]:
        stmt = select(Role).where(*criteria).order_by(Role.organization_id.is_not(None), Role.sort_order)
        try:
            async with self._session_factory() as db:
                return (await db.execute(stmt)).scalars().first()
        except (SQLAlchemyError, OSError) as e:
            log.error(f"Role lookup failed: {e}")
            raise StoreUnavailable("role store unavailable") from e

    async def get_permissions(self, role_id: str) -> Optional[List[str]]:
        role = await self._fetch_role(Role.id == role_id)
        if role is None:
            return None
        return [p.permission_string for p in role.permissions]

    async def get_role_by_legacy_name(self, name: str) -> Optional[RoleRecord]:
        # System roles sort first, so a custom role reusing the name never shadows them
        role = await self._fetch_role(Role.legacy_enum_name == name)
        return RoleRecord.model_validate(role) if role else None

    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        role = await self._fetch_role(Role.id == role_id)
        return RoleRecord.model_validate(role) if role else None
