"""
Pydantic schemas for the authorization engine.

Value objects passed between the engine components, plus request and
response models for the permission routes.
"""
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from uuid import uuid4
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.errors import DenialReason


# ============================================================================
# Identity
# ============================================================================

class Principal(BaseModel):
    """Authenticated actor for one request. Built by the authentication layer."""
    id: str
    email: str
    is_super_admin: bool = False
    organization_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Store Records
# ============================================================================

class MembershipRecord(BaseModel):
    """A principal's role in one project, as the membership store returns it."""
    role_id: Optional[str] = None
    role_name: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)


class RoleRecord(BaseModel):
    """Role row as the role store returns it."""
    id: str
    name: str
    legacy_enum_name: Optional[str] = None
    organization_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)


class RoleDescriptor(BaseModel):
    """
    Effective role of a principal in a scope.

    ``source`` records how it was found: "cache", "membership", "legacy_bridge"
    or "static".
    """
    role_id: str
    role_name: Optional[str] = None
    source: str = "membership"

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Decisions
# ============================================================================

class Decision(BaseModel):
    """Outcome of one enforcement run."""
    allowed: bool
    permission: Optional[str] = None
    reason: Optional[DenialReason] = None
    scope_id: Optional[str] = None
    role_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def allow(cls, permission: Optional[str] = None, **kwargs) -> "Decision":
        return cls(allowed=True, permission=permission, **kwargs)

    @classmethod
    def deny(cls, permission: Optional[str], reason: DenialReason, **kwargs) -> "Decision":
        return cls(allowed=False, permission=permission, reason=reason, **kwargs)


class AuditRecord(BaseModel):
    """Append-only audit event."""
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant_id: str
    actor_id: str
    actor_ip: Optional[str] = None
    resource_type: str
    resource_id: str
    action_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking whether the caller holds a permission in a project."""
    permission: str = Field(..., min_length=3, max_length=100, description="Permission string, e.g. 'issues:update'")
    project_id: Optional[str] = Field(None, description="Project scope")

    @field_validator('permission')
    @classmethod
    def permission_format(cls, v: str) -> str:
        """Validate and normalize "resource:action" format."""
        resource, sep, action = v.partition(':')
        if not sep or not resource or not action or ':' in action:
            raise ValueError("Permission must look like 'resource:action'")
        return v.lower()


class PermissionCheckResponse(BaseModel):
    """Only the outcome is returned; denial reasons stay in the audit trail."""
    allowed: bool


class GrantResponse(BaseModel):
    action: str
    subject_type: str
    conditions: Optional[Dict[str, Any]] = None


class AbilityResponse(BaseModel):
    """Grants the caller holds in a project."""
    user_id: str
    project_id: str
    role_id: Optional[str] = None
    grants: List[GrantResponse] = []


# ============================================================================
# Role Administration Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    name: str
    description: Optional[str] = None
    organization_id: Optional[str] = None
    is_system_role: bool = False
    legacy_enum_name: Optional[str] = None
    sort_order: int = 0

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class RoleCreate(BaseModel):
    """Schema for creating an organization's custom role."""
    name: str = Field(..., min_length=1, max_length=100, description="Role name, unique within the organization")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    organization_id: str = Field(..., min_length=1, description="Owning organization")
    permission_ids: List[str] = Field(default_factory=list, description="Permissions the role grants")

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Role name must not be blank')
        return v


class RolePermissionsUpdate(BaseModel):
    """Replaces a custom role's permission set."""
    permission_ids: List[str] = Field(..., description="Permissions the role grants after the update")
