"""
Required permission per protected operation.

Handlers reference operations by id (``require_operation("issues.update")``);
an id missing from this table is not enforced.
"""

OPERATION_PERMISSIONS = {
    # Projects
    "projects.create": "projects:create",
    "projects.view": "projects:view",
    "projects.update": "projects:update",
    "projects.delete": "projects:delete",

    # Members
    "members.list": "members:view",
    "members.add": "members:add",
    "members.remove": "members:remove",

    # Issues
    "issues.create": "issues:create",
    "issues.list": "issues:view",
    "issues.view": "issues:view",
    "issues.update": "issues:update",
    "issues.delete": "issues:delete",

    # Comments
    "comments.create": "comments:create",
    "comments.list": "comments:view",
    "comments.update": "comments:update",
    "comments.delete": "comments:delete",

    # Sprints
    "sprints.create": "sprints:create",
    "sprints.view": "sprints:view",
    "sprints.update": "sprints:update",
    "sprints.delete": "sprints:delete",

    # Attachments
    "attachments.upload": "attachments:create",
    "attachments.view": "attachments:view",
    "attachments.delete": "attachments:delete",

    # Backlog and watchers
    "backlog.view": "backlog:view",
    "backlog.reorder": "backlog:update",
    "watchers.view": "watchers:view",
    "watchers.update": "watchers:update",

    # Notifications (any authenticated user)
    "notifications.preferences.view": "notifications:view",
    "notifications.preferences.update": "notifications:update",

    # Authorization administration
    "permissions.list": "roles:view",
    "roles.list": "roles:view",
    "roles.view": "roles:view",
    "roles.create": "roles:manage",
    "roles.update": "roles:manage",
    "roles.delete": "roles:manage",
    "roles.invalidate_cache": "roles:manage",
}
