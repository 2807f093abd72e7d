"""Unit tests for actor role resolution"""

import pytest

from community_lending.domain.access import (
    require_privileged,
    require_self_or_privileged,
    resolve_actor_role,
)
from community_lending.domain.exceptions import AuthorizationError
from community_lending.domain.models import ActorRole, GroupMembership, Member, MembershipRole

MEMBER = Member(member_id="m1", is_verified=True)
PLATFORM_ADMIN = Member(member_id="root", is_verified=True, role=ActorRole.ADMIN)
TREASURER = Member(member_id="t1", is_verified=True)
TREASURER_SEAT = GroupMembership(member_id="t1", group_id="g1", role=MembershipRole.GROUP_ADMIN)


def test_resolve_roles():
    assert resolve_actor_role(MEMBER, None) == ActorRole.USER
    assert resolve_actor_role(PLATFORM_ADMIN, None) == ActorRole.ADMIN
    assert resolve_actor_role(TREASURER, TREASURER_SEAT) == ActorRole.GROUP_ADMIN


def test_privileged_operations():
    assert require_privileged(PLATFORM_ADMIN, None, "approve loans") == ActorRole.ADMIN
    assert require_privileged(TREASURER, TREASURER_SEAT, "approve loans") == ActorRole.GROUP_ADMIN

    with pytest.raises(AuthorizationError):
        require_privileged(MEMBER, GroupMembership(member_id="m1", group_id="g1"), "approve loans")


def test_group_admin_role_does_not_carry_across_groups():
    with pytest.raises(AuthorizationError):
        require_privileged(TREASURER, None, "approve loans")


def test_self_or_privileged():
    assert require_self_or_privileged(MEMBER, None, "m1", "record payments") == ActorRole.USER
    assert require_self_or_privileged(PLATFORM_ADMIN, None, "m1", "record payments") == ActorRole.ADMIN

    with pytest.raises(AuthorizationError):
        require_self_or_privileged(MEMBER, None, "m2", "record payments")
