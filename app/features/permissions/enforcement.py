"""
Policy decision point.

Every protected operation runs through ``EnforcementPoint.enforce``. The steps
below are evaluated in order and the first ALLOW or DENY ends the run:

 1. operation declares no permission           -> ALLOW
 2. no principal                               -> DENY (anonymous access attempt)
 3. super admin                                -> ALLOW
 4. permission in the global user set          -> ALLOW
 5. project creation                           -> ALLOW only inside an organization
 6. scope id from path, then body, then query
 7. no scope id                                -> DENY
 8. resolve role: not a member / unresolvable / store outage -> DENY
 9. role lacks the permission                  -> DENY, granted set audited
10.                                            -> ALLOW

Denials are audited through the sink without waiting on it, and outages are
logged separately from policy denials.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from app.core import config
from app.features.permissions.ability import Ability, AbilityFactory
from app.features.permissions.audit import (
    ACCESS_DENIED, ACCESS_GRANTED, ANONYMOUS_ACTOR, AuditSink, build_access_record,
)
from app.features.permissions.catalog import PermissionCatalog, allows, normalize_permission
from app.features.permissions.errors import (
    AuthorizationError, DenialReason, InfrastructureFailure, RoleUnresolvable,
)
from app.features.permissions.resolver import RoleResolver
from app.features.permissions.schemas import AuditRecord, Decision, Principal, RoleDescriptor
from app.utils import get_logger


log = get_logger(__name__)

# Available to every authenticated user, no project needed
GLOBAL_USER_PERMISSIONS = frozenset({
    "notifications:view",
    "notifications:update",
    "notifications:create",
})

# Creating a project needs an organization, not a project role
ORGANIZATION_SCOPED_PERMISSIONS = frozenset({
    "projects:create",
})

PATH_SCOPE_KEYS = ("projectId", "project_id", "id")
BODY_SCOPE_KEYS = ("projectId", "project_id")
QUERY_SCOPE_KEYS = ("projectId", "project_id")

PolicyHandler = Callable[[Ability], bool]


class OperationRegistry:
    """
    Operation id -> required permission.

    Built once from a plain mapping and read-only afterwards.
    """

    def __init__(self, operations: Mapping[str, str]):
        self._operations = MappingProxyType({op: normalize_permission(p) for op, p in operations.items()})

    def required_permission(self, operation_id: str) -> Optional[str]:
        return self._operations.get(operation_id)

    def __contains__(self, operation_id: str) -> bool:
        return operation_id in self._operations

    def __len__(self) -> int:
        return len(self._operations)


@dataclass(frozen=True)
class RequestContext:
    principal: Optional[Principal]
    path_params: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None
    query: Mapping[str, Any] = field(default_factory=dict)
    client_ip: Optional[str] = None


def _first_value(source: Optional[Mapping[str, Any]], keys: Iterable[str]) -> Optional[str]:
    if not source:
        return None
    for key in keys:
        value = source.get(key)
        if value:
            return str(value)
    return None


def extract_scope_id(ctx: RequestContext) -> Optional[str]:
    """Project id from path parameters, then request body, then query string."""
    return (
        _first_value(ctx.path_params, PATH_SCOPE_KEYS)
        or _first_value(ctx.body, BODY_SCOPE_KEYS)
        or _first_value(ctx.query, QUERY_SCOPE_KEYS)
    )


class EnforcementPoint:
    def __init__(
        self,
        resolver: RoleResolver,
        catalog: PermissionCatalog,
        audit_sink: AuditSink,
        operations: Optional[OperationRegistry] = None,
        ability_factory: Optional[AbilityFactory] = None,
        audited_permissions: Iterable[str] = config.AUDIT_ALLOWED_PERMISSIONS,
    ):
        self.resolver = resolver
        self.catalog = catalog
        self.audit_sink = audit_sink
        self.operations = operations or OperationRegistry({})
        self.ability_factory = ability_factory or AbilityFactory(catalog)
        self._audited_permissions = frozenset(normalize_permission(p) for p in audited_permissions)

    async def enforce_operation(self, operation_id: str, ctx: RequestContext) -> Decision:
        """Look the operation up in the registry and enforce its permission."""
        return await self.enforce(self.operations.required_permission(operation_id), ctx)

    async def enforce(self, required_permission: Optional[str], ctx: RequestContext) -> Decision:
        if not required_permission:
            return Decision.allow()

        permission = normalize_permission(required_permission)
        principal = ctx.principal

        if principal is None:
            self._deny_audit(
                ctx, permission, DenialReason.UNAUTHENTICATED, "No user in request context",
                actor_id=ANONYMOUS_ACTOR,
            )
            return Decision.deny(permission, DenialReason.UNAUTHENTICATED)

        if principal.is_super_admin:
            return self._allow(ctx, permission)

        if permission in GLOBAL_USER_PERMISSIONS:
            return Decision.allow(permission)

        if permission in ORGANIZATION_SCOPED_PERMISSIONS:
            if principal.organization_id:
                return self._allow(ctx, permission)
            self._deny_audit(
                ctx, permission, DenialReason.NO_ORGANIZATION,
                "User must belong to an organization to create projects",
            )
            return Decision.deny(permission, DenialReason.NO_ORGANIZATION)

        scope_id = extract_scope_id(ctx)
        if not scope_id:
            self._deny_audit(
                ctx, permission, DenialReason.MISSING_SCOPE_CONTEXT,
                "Insufficient permissions - no project context",
            )
            return Decision.deny(permission, DenialReason.MISSING_SCOPE_CONTEXT)

        return await self._check_project_permission(ctx, permission, scope_id)

    async def _resolve_role(
        self, ctx: RequestContext, permission: str, scope_id: str, audit_not_member: bool = True
    ) -> tuple[Optional[RoleDescriptor], Optional[Decision]]:
        principal = ctx.principal
        try:
            role = await self.resolver.resolve(principal.id, scope_id)
        except RoleUnresolvable as e:
            self._deny_audit(
                ctx, permission, e.reason, "Role not found in database",
                project_id=scope_id, role_name=e.role_name,
            )
            return None, Decision.deny(permission, e.reason, scope_id=scope_id)
        except InfrastructureFailure as e:
            return None, self._outage(ctx, permission, scope_id, e.detail)
        except AuthorizationError as e:
            self._deny_audit(ctx, permission, e.reason, e.detail, project_id=scope_id)
            return None, Decision.deny(permission, e.reason, scope_id=scope_id)
        except Exception as e:
            return None, self._outage(ctx, permission, scope_id, f"unexpected resolver error: {e!r}")

        if role is None:
            if audit_not_member:
                self._deny_audit(
                    ctx, permission, DenialReason.NOT_A_MEMBER, "Not a member of this project",
                    project_id=scope_id,
                )
            return None, Decision.deny(permission, DenialReason.NOT_A_MEMBER, scope_id=scope_id)
        return role, None

    async def _check_project_permission(self, ctx: RequestContext, permission: str, scope_id: str) -> Decision:
        role, denied = await self._resolve_role(ctx, permission, scope_id)
        if denied is not None:
            return denied

        try:
            granted = await self.catalog.get_permissions(role.role_id, role.role_name)
        except InfrastructureFailure as e:
            return self._outage(ctx, permission, scope_id, e.detail, role_id=role.role_id)
        except Exception as e:
            return self._outage(ctx, permission, scope_id, f"unexpected catalog error: {e!r}", role_id=role.role_id)

        if allows(granted, permission):
            log.debug(f"Permission granted: {permission} for user {ctx.principal.id} in project {scope_id}")
            return self._allow(ctx, permission, scope_id=scope_id, role_id=role.role_id)

        self._deny_audit(
            ctx, permission, DenialReason.INSUFFICIENT_PERMISSION,
            f"Role lacks required permission: {permission}",
            project_id=scope_id, role_id=role.role_id, role_name=role.role_name,
            granted_permissions=granted,
        )
        return Decision.deny(
            permission, DenialReason.INSUFFICIENT_PERMISSION, scope_id=scope_id, role_id=role.role_id,
        )

    async def check_policies(self, ctx: RequestContext, *handlers: PolicyHandler) -> Decision:
        """
        Evaluate ability-based policy handlers; all of them must pass.

        The role is resolved only when the request names a project. Without
        one the ability holds just the principal's baseline grants.
        """
        if not handlers:
            return Decision.allow()

        label = "policy"
        if ctx.principal is None:
            self._deny_audit(
                ctx, label, DenialReason.UNAUTHENTICATED, "User not authenticated", actor_id=ANONYMOUS_ACTOR,
            )
            return Decision.deny(label, DenialReason.UNAUTHENTICATED)

        ability = await self.ability_for(ctx)
        if isinstance(ability, Decision):
            return ability

        if all(handler(ability) for handler in handlers):
            return Decision.allow(label, scope_id=extract_scope_id(ctx))

        scope_id = extract_scope_id(ctx)
        self._deny_audit(ctx, label, DenialReason.POLICY_FAILED, "Policy handler rejected request", project_id=scope_id)
        return Decision.deny(label, DenialReason.POLICY_FAILED, scope_id=scope_id)

    async def ability_for(self, ctx: RequestContext) -> "Ability | Decision":
        """Build the principal's ability in the request's project, or the denial that prevented it."""
        principal = ctx.principal
        scope_id = extract_scope_id(ctx)
        role_id, role_name = None, None

        if scope_id and not principal.is_super_admin:
            role, denied = await self._resolve_role(ctx, "policy", scope_id, audit_not_member=False)
            if denied is not None and denied.reason is not DenialReason.NOT_A_MEMBER:
                return denied
            if role is not None:
                role_id, role_name = role.role_id, role.role_name

        try:
            return await self.ability_factory.build_ability(principal, role_id, role_name)
        except InfrastructureFailure as e:
            return self._outage(ctx, "policy", scope_id, e.detail, role_id=role_id)

    def _allow(self, ctx: RequestContext, permission: str, **kwargs) -> Decision:
        if permission in self._audited_permissions:
            principal = ctx.principal
            self._emit(build_access_record(
                event=ACCESS_GRANTED,
                actor_id=principal.id,
                tenant_id=principal.organization_id,
                actor_ip=ctx.client_ip,
                required_permission=permission,
                reason="Access granted to high-sensitivity operation",
                project_id=kwargs.get("scope_id"),
                role_id=kwargs.get("role_id"),
                severity="INFO",
            ))
        return Decision.allow(permission, **kwargs)

    def _outage(
        self, ctx: RequestContext, permission: str, scope_id: Optional[str], detail: str,
        role_id: Optional[str] = None,
    ) -> Decision:
        log.error(
            f"AUTHZ_OUTAGE: denying {permission!r} for user {ctx.principal.id} "
            f"in project {scope_id or 'N/A'}: {detail}"
        )
        self._deny_audit(
            ctx, permission, DenialReason.INFRASTRUCTURE_FAILURE,
            "Authorization backend unavailable", project_id=scope_id, role_id=role_id,
            severity="ERROR", log_denial=False,
        )
        return Decision.deny(permission, DenialReason.INFRASTRUCTURE_FAILURE, scope_id=scope_id, role_id=role_id)

    def _deny_audit(
        self,
        ctx: RequestContext,
        permission: str,
        reason: DenialReason,
        message: str,
        *,
        actor_id: Optional[str] = None,
        project_id: Optional[str] = None,
        role_id: Optional[str] = None,
        role_name: Optional[str] = None,
        granted_permissions: Optional[Iterable[str]] = None,
        severity: str = "WARNING",
        log_denial: bool = True,
    ) -> None:
        principal = ctx.principal
        actor_id = actor_id or principal.id
        if log_denial:
            log.warning(
                f"ACCESS_DENIED: User {actor_id} attempted {permission!r} "
                f"in project {project_id or 'N/A'}. Reason: {message}"
            )
        self._emit(build_access_record(
            event=ACCESS_DENIED,
            actor_id=actor_id,
            tenant_id=principal.organization_id if principal else None,
            actor_ip=ctx.client_ip,
            required_permission=permission,
            reason=f"{reason.value}: {message}",
            project_id=project_id,
            role_id=role_id,
            role_name=role_name,
            granted_permissions=granted_permissions,
            severity=severity,
        ))

    def _emit(self, record: AuditRecord) -> None:
        try:
            self.audit_sink.record(record)
        except Exception as e:
            # The decision already stands
            log.error(f"Failed to record audit event {record.event_id}: {e}")
