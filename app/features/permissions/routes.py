"""
Permission API routes.

Lets clients ask what the caller may do, and lets super admins manage
organization roles and drop cached role permissions after editing a role.
"""
from collections import defaultdict
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.ability import Ability
from app.features.permissions.dependencies import (
    forbidden,
    get_ability,
    get_client_ip,
    get_enforcement_point,
    get_principal,
    require_operation,
)
from app.features.permissions.enforcement import EnforcementPoint, RequestContext
from app.features.permissions.models import Permission, ProjectMember, Role
from app.features.permissions.schemas import (
    AbilityResponse,
    Decision,
    GrantResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionResponse,
    Principal,
    RoleCreate,
    RolePermissionsUpdate,
    RoleResponse,
    RoleWithPermissions,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

# Custom roles list after the system roles
CUSTOM_ROLE_SORT_ORDER = 100


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check: PermissionCheckRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    engine: EnforcementPoint = Depends(get_enforcement_point),
):
    """Check whether the caller holds a permission, optionally within a project."""
    ctx = RequestContext(
        principal=principal,
        path_params={"projectId": check.project_id} if check.project_id else {},
        client_ip=get_client_ip(request),
    )
    decision = await engine.enforce(check.permission, ctx)
    # Anonymous callers are audited by enforce, then refused outright
    if principal is None:
        raise forbidden()
    return PermissionCheckResponse(allowed=decision.allowed)


@router.get("/projects/{project_id}/abilities", response_model=AbilityResponse)
async def list_abilities(
    project_id: str,
    principal: Principal = Depends(get_principal),
    ability: Ability = Depends(get_ability),
):
    """List the caller's grants in a project."""
    return AbilityResponse(
        user_id=principal.id,
        project_id=project_id,
        role_id=ability.role_id,
        grants=[
            GrantResponse(action=g.action.value, subject_type=g.subject_type, conditions=g.conditions)
            for g in ability.rules
        ],
    )


@router.delete("/roles/{role_id}/cache", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_role_cache(
    role_id: str,
    engine: EnforcementPoint = Depends(get_enforcement_point),
    decision: Decision = Depends(require_operation("roles.invalidate_cache")),
):
    """Drop a role's cached permissions so edits apply immediately."""
    await engine.catalog.invalidate(role_id)
    log.info(f"Permission cache invalidated for role {role_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Role administration
# ============================================================================

async def _get_role(db: AsyncSession, role_id: str) -> Role:
    role = (await db.execute(select(Role).where(Role.id == role_id))).scalars().first()
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    return role


async def _get_permissions(db: AsyncSession, permission_ids: List[str]) -> List[Permission]:
    wanted = set(permission_ids)
    if not wanted:
        return []
    found = (await db.execute(select(Permission).where(Permission.id.in_(wanted)))).scalars().all()
    missing = wanted - {p.id for p in found}
    if missing:
        raise HTTPException(status_code=404, detail=f"Permission not found: {', '.join(sorted(missing))}")
    return list(found)


def _ensure_custom_role(role: Role) -> None:
    if role.is_system_role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="System roles cannot be modified")


@router.get("/catalog", response_model=Dict[str, List[PermissionResponse]])
async def list_permissions_by_resource(
    db: AsyncSession = Depends(get_db),
    decision: Decision = Depends(require_operation("permissions.list")),
):
    """List every permission grouped by resource."""
    stmt = select(Permission).order_by(Permission.resource, Permission.action)
    grouped: Dict[str, List[Permission]] = defaultdict(list)
    for permission in (await db.execute(stmt)).scalars().all():
        grouped[permission.resource].append(permission)
    return grouped


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    organization_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    decision: Decision = Depends(require_operation("roles.list")),
):
    """List system roles, plus an organization's custom roles when one is given."""
    stmt = select(Role)
    if organization_id:
        stmt = stmt.where(or_(Role.is_system_role.is_(True), Role.organization_id == organization_id))
    else:
        stmt = stmt.where(Role.is_system_role.is_(True))
    stmt = stmt.order_by(Role.sort_order, Role.name)
    return (await db.execute(stmt)).scalars().all()


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    decision: Decision = Depends(require_operation("roles.view")),
):
    """Get a specific role with its permissions."""
    return await _get_role(db, role_id)


@router.post("/roles", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: AsyncSession = Depends(get_db),
    decision: Decision = Depends(require_operation("roles.create")),
):
    """Create a custom role for an organization."""
    stmt = select(Role.id).where(Role.organization_id == role.organization_id, Role.name == role.name)
    if (await db.execute(stmt)).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Role with this name already exists")

    permissions = await _get_permissions(db, role.permission_ids)
    db_role = Role(
        name=role.name,
        description=role.description,
        organization_id=role.organization_id,
        is_system_role=False,
        sort_order=CUSTOM_ROLE_SORT_ORDER,
        permissions=permissions,
    )
    try:
        db.add(db_role)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this name already exists"
        )

    log.info(f"Custom role {db_role.name!r} created for organization {role.organization_id}")
    return db_role


@router.put("/roles/{role_id}/permissions", response_model=RoleWithPermissions)
async def update_role_permissions(
    role_id: str,
    update: RolePermissionsUpdate,
    db: AsyncSession = Depends(get_db),
    engine: EnforcementPoint = Depends(get_enforcement_point),
    decision: Decision = Depends(require_operation("roles.update")),
):
    """Replace a custom role's permissions. The new set applies on the next request."""
    db_role = await _get_role(db, role_id)
    _ensure_custom_role(db_role)

    db_role.permissions = await _get_permissions(db, update.permission_ids)
    await db.commit()
    await engine.catalog.invalidate(role_id)

    log.info(f"Permissions of role {role_id} replaced ({len(db_role.permissions)} granted)")
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EnforcementPoint = Depends(get_enforcement_point),
    decision: Decision = Depends(require_operation("roles.delete")),
):
    """Delete a custom role no project member holds."""
    db_role = await _get_role(db, role_id)
    _ensure_custom_role(db_role)

    stmt = select(func.count()).select_from(ProjectMember).where(ProjectMember.role_id == role_id)
    holders = (await db.execute(stmt)).scalar_one()
    if holders:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Role is assigned to {holders} project member(s)"
        )

    await db.delete(db_role)
    await db.commit()
    await engine.catalog.invalidate(role_id)

    log.info(f"Role {role_id} deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
