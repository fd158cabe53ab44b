"""Role hierarchy rules for account management actions.

Roles are totally ordered by power: owner (3) > admin (2) > user (1). An actor
may disable or enable another account only when its role is strictly more
powerful than the target's, and never its own account. The self check always
runs first so the reason reported for acting on yourself is ``"self"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sumpauth.service.errors import AuthorizationDenied
from sumpauth.storage.models import AuthScope, Role, RoleAssignment

ROLE_POWER = {
    Role.OWNER: 3,
    Role.ADMIN: 2,
    Role.USER: 1,
}

REASON_SELF = "self"
REASON_INSUFFICIENT_POWER = "insufficient_role_power"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def power(role: Role) -> int:
    # Role(...) rejects anything outside the closed set
    return ROLE_POWER[Role(role)]


def has_authority_over(actor_role: Role, target_role: Role) -> bool:
    return power(actor_role) > power(target_role)


def manageable_roles(actor_role: Role) -> List[Role]:
    """Roles strictly below ``actor_role``, most powerful first."""
    actor_power = power(actor_role)
    return [role for role, rank in ROLE_POWER.items() if rank < actor_power]


def _decide(
    verb: str, actor_role: Role, actor_id: str, target_role: Role, target_id: str
) -> Decision:
    if actor_id == target_id:
        return Decision(False, REASON_SELF, f"Cannot {verb} your own account")
    if not has_authority_over(actor_role, target_role):
        return Decision(
            False,
            REASON_INSUFFICIENT_POWER,
            f"Role '{Role(actor_role).value}' cannot {verb} role '{Role(target_role).value}'",
        )
    return Decision(True)


def can_disable(
    actor_role: Role, actor_id: str, target_role: Role, target_id: str
) -> Decision:
    return _decide("disable", actor_role, actor_id, target_role, target_id)


def can_enable(
    actor_role: Role, actor_id: str, target_role: Role, target_id: str
) -> Decision:
    return _decide("enable", actor_role, actor_id, target_role, target_id)


def _require(decision: Decision) -> None:
    if not decision.allowed:
        raise AuthorizationDenied(decision.message or "forbidden", reason=decision.reason or "")


def require_can_disable(
    actor_role: Role, actor_id: str, target_role: Role, target_id: str
) -> None:
    _require(can_disable(actor_role, actor_id, target_role, target_id))


def require_can_enable(
    actor_role: Role, actor_id: str, target_role: Role, target_id: str
) -> None:
    _require(can_enable(actor_role, actor_id, target_role, target_id))


def at_least(role: Role, minimum: Role) -> bool:
    return power(role) >= power(minimum)


def effective_role(
    assignment: Optional[RoleAssignment], scope: AuthScope
) -> Optional[Role]:
    """The role an assignment grants inside ``scope``, or None.

    An assignment only counts in the tenant or environment it names.
    """
    if assignment is None:
        return None
    if assignment.target != scope.context_type or assignment.target_id != scope.context_id:
        return None
    return assignment.role
