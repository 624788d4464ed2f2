"""
Role, Permission, project membership and audit log models.

This module holds the persistent side of project-scoped RBAC:
- System roles (organization_id is null) and organization custom roles
- Permission rows, one per "resource:action" pair
- Project memberships, each pointing at a role record or, for rows created
  before roles moved to the database, only a legacy role name
- Append-only audit log of authorization decisions
"""
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Boolean, Integer, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ulid import ULID

from app.core.database.base import Base, TimestampMixin


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


# ============================================================================
# Association Tables
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model: a single action on a resource.

    Examples:
    - resource="issues", action="update"  -> "issues:update"
    - resource="comments", action="manage" -> every action on comments
    """
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Permission definition
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    @property
    def permission_string(self) -> str:
        return f"{self.resource}:{self.action}"

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Roles are organization-specific or global (system roles).
    System roles carry ``legacy_enum_name``, the hardcoded role name they
    replace (e.g. "ProjectLead"), so memberships that only store that name
    can still be linked to a record.
    """
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_roles_org_name"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Null = system-wide role
    organization_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    legacy_enum_name: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, org_id={self.organization_id})>"


class ProjectMember(Base, TimestampMixin):
    """
    A user's single role within a project.

    ``role_id`` is null for memberships created before the database-backed
    roles existed; those rows carry only ``role_name``.
    """
    __tablename__ = "project_members"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    role_name: Mapped[str | None] = mapped_column(String(50), nullable=True)

    role: Mapped[Optional["Role"]] = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return f"<ProjectMember(project_id={self.project_id}, user_id={self.user_id}, role_id={self.role_id})>"


class AuditLog(Base):
    """
    Audit log of authorization decisions.

    Rows are written once and never updated.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    event_uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # Actor and tenant
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # What was attempted
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # "metadata" is reserved on declarative classes
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, resource={self.resource_type}:{self.resource_id})>"
