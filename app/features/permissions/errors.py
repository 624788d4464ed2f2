"""
Authorization failure taxonomy.

Every failure ends up as the same generic "Forbidden" for the caller; the
reason code is kept for logs and the audit trail only.
"""
import enum
from typing import Optional


class DenialReason(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_ORGANIZATION = "no_organization"
    MISSING_SCOPE_CONTEXT = "missing_scope_context"
    NOT_A_MEMBER = "not_a_member"
    ROLE_UNRESOLVABLE = "role_unresolvable"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    POLICY_FAILED = "policy_failed"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"


class StoreUnavailable(Exception):
    """A membership or role store could not be reached or failed mid-query."""


class AuthorizationError(Exception):
    reason: DenialReason = DenialReason.INSUFFICIENT_PERMISSION

    def __init__(self, message: str = "Forbidden", *, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail or message


class Unauthenticated(AuthorizationError):
    reason = DenialReason.UNAUTHENTICATED


class MissingScopeContext(AuthorizationError):
    reason = DenialReason.MISSING_SCOPE_CONTEXT


class NotAMember(AuthorizationError):
    reason = DenialReason.NOT_A_MEMBER


class RoleUnresolvable(AuthorizationError):
    """A legacy role name matched neither a role record nor the static table."""
    reason = DenialReason.ROLE_UNRESOLVABLE

    def __init__(self, role_name: Optional[str], **kwargs):
        super().__init__(f"Role not found: {role_name}", **kwargs)
        self.role_name = role_name


class InsufficientPermission(AuthorizationError):
    reason = DenialReason.INSUFFICIENT_PERMISSION


class InfrastructureFailure(AuthorizationError):
    """A backing store timed out or was unreachable. Always denies."""
    reason = DenialReason.INFRASTRUCTURE_FAILURE
