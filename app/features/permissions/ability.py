"""
Per-principal abilities with instance-level conditions.

A flat permission string says what a role may do to a kind of resource. An
``Ability`` adds what it may do to one particular instance, e.g. a member
holding "comments:update" may only update comments they wrote.

Subjects are identified by an explicit tag, never by the Python type of the
instance: pass ``subject_type`` to ``Ability.can`` or give the instance a
``subject_type`` field (``tagged()`` builds such a mapping).
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from app.features.permissions.catalog import PermissionCatalog, split_permission
from app.features.permissions.errors import InfrastructureFailure, StoreUnavailable
from app.features.permissions.schemas import Principal
from app.features.permissions.static_roles import static_role_id
from app.features.permissions.stores import RoleStore
from app.utils import get_logger


log = get_logger(__name__)

ALL_SUBJECTS = "all"
SUBJECT_TAG = "subject_type"


class Action(str, enum.Enum):
    MANAGE = "manage"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


# Permission resource -> subject tag. Both plural and singular spellings appear in stored rows.
SUBJECT_TYPES: Dict[str, str] = {
    "issues": "Issue", "issue": "Issue",
    "projects": "Project", "project": "Project",
    "comments": "Comment", "comment": "Comment",
    "users": "User", "user": "User",
    "sprints": "Sprint", "sprint": "Sprint",
    "attachments": "Attachment", "attachment": "Attachment",
}

# Subject -> actions granted only on instances the principal authored
AUTHOR_ONLY_ACTIONS: Dict[str, frozenset[Action]] = {
    "Comment": frozenset({Action.UPDATE, Action.DELETE}),
}

_MISSING = object()


def tagged(subject_type: str, **attrs: Any) -> Dict[str, Any]:
    """Build an instance mapping carrying its subject tag."""
    return {SUBJECT_TAG: subject_type, **attrs}


def subject_type_of(instance: Any) -> Optional[str]:
    """Read the declared subject tag from a mapping key or attribute."""
    if isinstance(instance, Mapping):
        return instance.get(SUBJECT_TAG)
    return getattr(instance, SUBJECT_TAG, None)


def _attribute(instance: Any, name: str) -> Any:
    if isinstance(instance, Mapping):
        return instance.get(name, _MISSING)
    return getattr(instance, name, _MISSING)


def to_action(action: str) -> Optional[Action]:
    _, normalized = split_permission(f"_:{action}")
    try:
        return Action(normalized)
    except ValueError:
        return None


@dataclass(frozen=True)
class Grant:
    action: Action
    subject_type: str
    conditions: Optional[Dict[str, Any]] = None

    def matches_instance(self, instance: Any) -> bool:
        if not self.conditions:
            return True
        if instance is None:
            return False
        return all(_attribute(instance, k) == v for k, v in self.conditions.items())


@dataclass
class Ability:
    """Grants for one principal in one scope."""
    rules: list[Grant] = field(default_factory=list)
    role_id: Optional[str] = None

    def add(self, action: Action, subject_type: str, conditions: Optional[Dict[str, Any]] = None) -> None:
        self.rules.append(Grant(action, subject_type, conditions))

    def can(self, action: str, subject_type: str, instance: Any = None) -> bool:
        candidates = [g for g in self.rules if g.subject_type in (subject_type, ALL_SUBJECTS)]

        # manage covers every action, including ones outside Action
        if any(g.action is Action.MANAGE and not g.conditions for g in candidates):
            return True

        wanted = to_action(action)
        if wanted is None:
            return False

        exact = [g for g in candidates if g.action is wanted]
        if any(not g.conditions for g in exact):
            return True

        return any(g.matches_instance(instance) for g in exact if g.conditions)

    def can_on(self, action: str, instance: Any) -> bool:
        """Check an action against an instance that declares its own subject tag."""
        subject = subject_type_of(instance)
        if subject is None:
            log.warning("Ability check on an instance without a subject tag, denying")
            return False
        return self.can(action, subject, instance)

    def cannot(self, action: str, subject_type: str, instance: Any = None) -> bool:
        return not self.can(action, subject_type, instance)


class AbilityFactory:
    """Builds ``Ability`` objects from the role permission catalog."""

    def __init__(self, catalog: PermissionCatalog, role_store: Optional[RoleStore] = None):
        self._catalog = catalog
        self._role_store = role_store

    async def build_ability(
        self,
        principal: Principal,
        role_id: Optional[str],
        role_name: Optional[str] = None,
    ) -> Ability:
        ability = Ability(role_id=role_id)

        if principal.is_super_admin:
            ability.add(Action.MANAGE, ALL_SUBJECTS)
            return ability

        # Every principal may read and update their own user record
        ability.add(Action.READ, "User", {"id": principal.id})
        ability.add(Action.UPDATE, "User", {"id": principal.id})

        if role_id:
            permissions = await self._catalog.get_permissions(role_id, role_name)
            for permission in sorted(permissions):
                self._add_permission(ability, principal, permission)

        return ability

    async def build_ability_for_legacy_role(self, principal: Principal, legacy_role_name: Optional[str]) -> Ability:
        """
        Build an ability from a legacy role name instead of a role id.

        Deprecated path for callers that still hold only the old role name.
        """
        role_id = None
        if legacy_role_name:
            role = None
            if self._role_store is not None:
                try:
                    role = await self._role_store.get_role_by_legacy_name(legacy_role_name)
                except StoreUnavailable as e:
                    raise InfrastructureFailure(detail=f"role store unavailable: {e}") from e
            if role is not None:
                role_id = role.id
            elif self._catalog.static_permissions(legacy_role_name) is not None:
                role_id = static_role_id(legacy_role_name)
        return await self.build_ability(principal, role_id, legacy_role_name)

    @staticmethod
    def _add_permission(ability: Ability, principal: Principal, permission: str) -> None:
        resource, action_name = split_permission(permission)
        subject = SUBJECT_TYPES.get(resource)
        action = to_action(action_name)
        if subject is None or action is None:
            return

        if action in AUTHOR_ONLY_ACTIONS.get(subject, frozenset()):
            ability.add(action, subject, {"author_id": principal.id})
        else:
            ability.add(action, subject)
