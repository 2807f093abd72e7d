"""Actor role resolution and permission checks"""

from typing import Optional

from community_lending.domain.exceptions import AuthorizationError
from community_lending.domain.models import ActorRole, GroupMembership, Member, MembershipRole

PRIVILEGED_ROLES = frozenset({ActorRole.ADMIN, ActorRole.GROUP_ADMIN, ActorRole.SYSTEM})


def resolve_actor_role(actor: Member, membership: Optional[GroupMembership]) -> ActorRole:
    """Platform role wins; otherwise the actor's role within the group"""
    if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return actor.role
    if membership is not None and membership.role == MembershipRole.GROUP_ADMIN:
        return ActorRole.GROUP_ADMIN
    return ActorRole.USER


def require_privileged(actor: Member, membership: Optional[GroupMembership], operation: str) -> ActorRole:
    role = resolve_actor_role(actor, membership)
    if role not in PRIVILEGED_ROLES:
        raise AuthorizationError(
            f"Actor {actor.member_id} is not allowed to {operation}",
            {"actor_id": actor.member_id, "role": role.value},
        )
    return role


def require_self_or_privileged(
    actor: Member,
    membership: Optional[GroupMembership],
    member_id: str,
    operation: str,
) -> ActorRole:
    role = resolve_actor_role(actor, membership)
    if actor.member_id != member_id and role not in PRIVILEGED_ROLES:
        raise AuthorizationError(
            f"Actor {actor.member_id} is not allowed to {operation} for member {member_id}",
            {"actor_id": actor.member_id, "role": role.value},
        )
    return role
