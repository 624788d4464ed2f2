"""
Seed script to populate default permissions and project roles.

Run this script after database initialization to create:
- Every permission the built-in project roles use
- System roles matching the legacy role names, linked through legacy_enum_name
- Initial role-permission assignments

Developer and QA get exactly the Member permissions, so memberships bridged
from those legacy names behave the same as before the migration.

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.models import Permission, Role
from app.features.permissions.static_roles import (
    MEMBER_PERMISSIONS,
    PROJECT_LEAD_PERMISSIONS,
    VIEWER_PERMISSIONS,
)
from app.utils import get_logger


log = get_logger(__name__)


DESCRIPTIONS = {
    "create": "Create {}",
    "view": "View {}",
    "update": "Update {}",
    "delete": "Delete {}",
    "add": "Add {}",
    "remove": "Remove {}",
    "manage": "Manage {}",
}

# Permissions no built-in role holds but that administrators assign
EXTRA_PERMISSIONS = (
    "roles:view", "roles:manage",
)


def default_permissions() -> list[tuple[str, str, str, str]]:
    """(name, resource, action, description) for every known permission."""
    names = sorted(set(PROJECT_LEAD_PERMISSIONS) | set(MEMBER_PERMISSIONS) | set(VIEWER_PERMISSIONS)
                   | set(EXTRA_PERMISSIONS))
    rows = []
    for name in names:
        resource, action = name.split(":", 1)
        description = DESCRIPTIONS.get(action, "{} " + action).format(resource)
        rows.append((name, resource, action, description))
    return rows


DEFAULT_ROLES = {
    "ProjectLead": {
        "description": "Leads the project, manages members and settings",
        "legacy_enum_name": "ProjectLead",
        "sort_order": 0,
        "permissions": PROJECT_LEAD_PERMISSIONS,
    },
    "Member": {
        "description": "Works on issues, stories and comments",
        "legacy_enum_name": "Member",
        "sort_order": 1,
        "permissions": MEMBER_PERMISSIONS,
    },
    "Developer": {
        "description": "Legacy role, same permissions as Member",
        "legacy_enum_name": "Developer",
        "sort_order": 2,
        "permissions": MEMBER_PERMISSIONS,
    },
    "QA": {
        "description": "Legacy role, same permissions as Member",
        "legacy_enum_name": "QA",
        "sort_order": 3,
        "permissions": MEMBER_PERMISSIONS,
    },
    "Viewer": {
        "description": "Read-only access, may comment",
        "legacy_enum_name": "Viewer",
        "sort_order": 4,
        "permissions": VIEWER_PERMISSIONS,
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}
    created = 0

    for name, resource, action, description in default_permissions():
        stmt = select(Permission).where(Permission.name == name)
        result = await db.execute(stmt)
        existing = result.scalars().first()

        if existing:
            log.debug(f"Permission '{name}' already exists, skipping")
            permissions_map[name] = existing
            continue

        permission = Permission(
            name=name,
            resource=resource,
            action=action,
            description=description
        )
        db.add(permission)
        permissions_map[name] = permission
        created += 1

    await db.commit()

    for perm in permissions_map.values():
        await db.refresh(perm)

    log.info(f"Created {created} permissions ({len(permissions_map)} total)")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]):
    """
    Create system roles and assign permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission name -> Permission object
    """
    log.info("Creating default roles...")

    for role_name, role_config in DEFAULT_ROLES.items():
        stmt = select(Role).where(Role.name == role_name, Role.organization_id.is_(None))
        result = await db.execute(stmt)
        existing = result.scalars().first()

        if existing:
            log.debug(f"Role '{role_name}' already exists, skipping")
            continue

        role = Role(
            name=role_name,
            description=role_config["description"],
            organization_id=None,
            is_system_role=True,
            legacy_enum_name=role_config["legacy_enum_name"],
            sort_order=role_config["sort_order"],
        )

        role_permissions = []
        for perm_name in role_config["permissions"]:
            if perm_name in permissions_map:
                role_permissions.append(permissions_map[perm_name])
            else:
                log.warning(f"Permission '{perm_name}' not found for role '{role_name}'")

        role.permissions = role_permissions
        log.info(f"Created role '{role_name}' with {len(role_permissions)} permissions")
        db.add(role)

    await db.commit()
    log.info("Default roles created successfully")


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)

            log.info("Permission seeding completed successfully!")
            for role_name, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_name}: {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
