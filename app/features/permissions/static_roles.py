"""
Hardcoded project role table.

These are the permissions project roles had before roles moved to the
database. The table is built once at startup and handed to the
``PermissionCatalog``; nothing imports it as module state.

"Developer" and "QA" are retired role names. Memberships that still carry
them get the "Member" permissions.
"""
from types import MappingProxyType
from typing import Mapping, Optional


StaticRoleTable = Mapping[str, frozenset[str]]

# Prefix used for role ids that point into this table rather than the database
STATIC_ROLE_PREFIX = "legacy:"

PROJECT_LEAD_PERMISSIONS = (
    "projects:view", "projects:update", "projects:delete",
    "members:view", "members:add", "members:remove",
    "invites:create",
    "issues:create", "issues:view", "issues:update", "issues:delete",
    "sprints:create", "sprints:view", "sprints:update", "sprints:delete",
    "comments:create", "comments:view", "comments:update", "comments:delete",
    "attachments:create", "attachments:view", "attachments:delete",
    "boards:create", "boards:view", "boards:update", "boards:delete",
    "columns:create", "columns:update", "columns:delete",
    "releases:create", "releases:view", "releases:update", "releases:delete",
    "labels:create", "labels:view", "labels:update", "labels:delete",
    "components:create", "components:view", "components:update", "components:delete",
    "epics:create", "epics:view", "epics:update", "epics:delete",
    "stories:create", "stories:view", "stories:update", "stories:delete",
    "backlog:view", "backlog:update",
    "watchers:view", "watchers:update",
)

MEMBER_PERMISSIONS = (
    "projects:view",
    "issues:create", "issues:view", "issues:update",
    "invites:view",
    "sprints:view",
    "comments:create", "comments:view", "comments:update",
    "attachments:create", "attachments:view",
    "boards:view",
    "releases:view",
    "labels:view", "labels:update",
    "components:view", "components:update",
    "epics:view",
    "stories:create", "stories:view", "stories:update",
    "backlog:view",
    "watchers:view", "watchers:update",
)

VIEWER_PERMISSIONS = (
    "projects:view",
    "issues:view",
    "invites:view",
    "sprints:view",
    "comments:create", "comments:view",
    "attachments:view",
    "boards:view",
    "releases:view",
    "labels:view",
    "components:view",
    "epics:view",
    "stories:view",
    "backlog:view",
    "watchers:view",
)

# Retired name -> current name
ROLE_ALIASES = {
    "Developer": "Member",
    "QA": "Member",
}


def build_static_role_table(
    roles: Optional[Mapping[str, tuple[str, ...]]] = None,
    aliases: Optional[Mapping[str, str]] = None,
) -> StaticRoleTable:
    """
    Build the read-only role name -> permissions table.

    Role names are stored lower-cased; permissions are lower-cased frozensets.
    Aliases share the exact set object of the role they point to.
    """
    if roles is None:
        roles = {
            "ProjectLead": PROJECT_LEAD_PERMISSIONS,
            "Member": MEMBER_PERMISSIONS,
            "Viewer": VIEWER_PERMISSIONS,
        }
    if aliases is None:
        aliases = ROLE_ALIASES

    table = {name.lower(): frozenset(p.lower() for p in perms) for name, perms in roles.items()}
    for alias, target in aliases.items():
        if target.lower() not in table:
            raise ValueError(f"Alias {alias!r} points to unknown role {target!r}")
        table[alias.lower()] = table[target.lower()]
    return MappingProxyType(table)


def static_role_id(role_name: str) -> str:
    return f"{STATIC_ROLE_PREFIX}{role_name}"


def static_role_name(role_id: str) -> Optional[str]:
    """Role name encoded in a static role id, or None for database ids."""
    if role_id.startswith(STATIC_ROLE_PREFIX):
        return role_id[len(STATIC_ROLE_PREFIX):]
    return None
