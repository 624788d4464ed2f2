# tests/test_ability.py

"""
Tests for abilities and instance-level conditions.
"""

from types import SimpleNamespace

import pytest

from app.features.permissions.ability import (
    Ability,
    AbilityFactory,
    Action,
    Grant,
    subject_type_of,
    tagged,
    to_action,
)
from app.features.permissions.errors import InfrastructureFailure

from conftest import make_principal


@pytest.fixture
def factory(catalog, role_store) -> AbilityFactory:
    return AbilityFactory(catalog, role_store)


def test_to_action_normalizes_aliases():
    assert to_action("VIEW") is Action.READ
    assert to_action("manage") is Action.MANAGE
    assert to_action("approve") is None


def test_tagged_instances_carry_subject_type():
    comment = tagged("Comment", id="c-1", author_id="u-1")
    assert subject_type_of(comment) == "Comment"
    assert subject_type_of(SimpleNamespace(subject_type="Issue")) == "Issue"
    assert subject_type_of({"id": "x"}) is None


def test_conditional_grant_needs_matching_instance():
    grant = Grant(Action.UPDATE, "Comment", {"author_id": "u-1"})

    assert grant.matches_instance({"author_id": "u-1"})
    assert grant.matches_instance(SimpleNamespace(author_id="u-1"))
    assert not grant.matches_instance({"author_id": "u-2"})
    assert not grant.matches_instance({})
    assert not grant.matches_instance(None)


def test_manage_covers_all_actions():
    ability = Ability()
    ability.add(Action.MANAGE, "Sprint")

    for action in ("create", "read", "view", "update", "delete"):
        assert ability.can(action, "Sprint")
    assert ability.cannot("read", "Issue")


@pytest.mark.asyncio
async def test_super_admin_can_do_anything(factory, super_admin):
    ability = await factory.build_ability(super_admin, role_id=None)

    assert ability.rules == [Grant(Action.MANAGE, "all")]
    assert ability.can("delete", "Project")
    assert ability.can("update", "Comment", tagged("Comment", author_id="someone-else"))


@pytest.mark.asyncio
async def test_super_admin_can_any_action_name(factory, super_admin):
    ability = await factory.build_ability(super_admin, role_id=None)

    for action in ("add", "remove", "assign", "approve", "update"):
        assert ability.can(action, "Member"), action
    assert ability.can_on("archive", tagged("Sprint", id="s-1"))


def test_resource_manage_covers_non_crud_actions():
    ability = Ability()
    ability.add(Action.MANAGE, "Sprint")

    assert ability.can("archive", "Sprint")
    assert ability.cannot("archive", "Issue")


def test_unknown_action_without_manage_is_denied():
    ability = Ability()
    ability.add(Action.UPDATE, "Issue")

    assert ability.cannot("archive", "Issue")


@pytest.mark.asyncio
async def test_baseline_grants_own_user_record(factory, outsider):
    ability = await factory.build_ability(outsider, role_id=None)

    assert ability.can("read", "User", {"id": outsider.id})
    assert ability.can("update", "User", {"id": outsider.id})
    assert ability.cannot("update", "User", {"id": "someone-else"})
    assert ability.cannot("delete", "User", {"id": outsider.id})
    assert ability.cannot("read", "Issue")


@pytest.mark.asyncio
async def test_member_updates_only_own_comments(factory, member):
    ability = await factory.build_ability(member, "role-member")

    own = tagged("Comment", id="c-1", author_id=member.id)
    other = tagged("Comment", id="c-2", author_id="member-2")

    assert ability.can_on("update", own)
    assert not ability.can_on("update", other)
    # Without an instance a conditional grant does not apply
    assert ability.cannot("update", "Comment")
    assert ability.can("create", "Comment")


@pytest.mark.asyncio
async def test_member_permissions_map_to_grants(factory, member):
    ability = await factory.build_ability(member, "role-member")

    assert ability.role_id == "role-member"
    assert ability.can("update", "Issue")
    assert ability.can("view", "Issue")
    assert ability.cannot("delete", "Issue")
    assert ability.can("read", "Project")
    assert ability.cannot("delete", "Project")


@pytest.mark.asyncio
async def test_resource_manage_permission_becomes_manage_grant(factory, role_store):
    role_store.permissions["role-issue-admin"] = ["issues:manage"]
    principal = make_principal("issue-admin-1")

    ability = await factory.build_ability(principal, "role-issue-admin")

    assert Grant(Action.MANAGE, "Issue") in ability.rules
    assert ability.can("delete", "Issue")
    assert ability.cannot("delete", "Sprint")


@pytest.mark.asyncio
async def test_untagged_instance_is_denied(factory, lead, caplog):
    ability = await factory.build_ability(lead, "role-lead")

    assert not ability.can_on("delete", {"id": "i-1"})
    assert "without a subject tag" in caplog.text


@pytest.mark.asyncio
async def test_legacy_role_name_matches_modern_role(factory, member):
    modern = await factory.build_ability(member, "role-member")
    bridged = await factory.build_ability_for_legacy_role(member, "Member")
    static = await factory.build_ability_for_legacy_role(member, "Developer")

    assert bridged.rules == modern.rules
    assert static.rules == modern.rules
    assert static.role_id == "legacy:Developer"


@pytest.mark.asyncio
async def test_unknown_legacy_role_gets_baseline_only(factory, member):
    ability = await factory.build_ability_for_legacy_role(member, "Janitor")

    assert {g.subject_type for g in ability.rules} == {"User"}


@pytest.mark.asyncio
async def test_legacy_lookup_outage_is_infrastructure_failure(factory, role_store, member, unavailable):
    role_store.error = unavailable
    with pytest.raises(InfrastructureFailure):
        await factory.build_ability_for_legacy_role(member, "Member")
