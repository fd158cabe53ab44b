import itertools

import pytest

from sumpauth.service import roles
from sumpauth.service.errors import AuthorizationDenied
from sumpauth.storage.models import AuthScope, ContextType, Role, RoleAssignment

ALL_ROLES = [Role.OWNER, Role.ADMIN, Role.USER]


def test_power_ordering():
    assert roles.power(Role.OWNER) == 3
    assert roles.power(Role.ADMIN) == 2
    assert roles.power(Role.USER) == 1
    assert roles.power("admin") == 2


def test_unknown_role_is_rejected():
    with pytest.raises(ValueError):
        roles.power("superuser")


@pytest.mark.parametrize("actor,target", list(itertools.product(ALL_ROLES, ALL_ROLES)))
def test_disable_truth_table(actor, target):
    decision = roles.can_disable(actor, "actor-id", target, "target-id")

    expected = roles.power(actor) > roles.power(target)
    assert decision.allowed is expected
    assert bool(decision) is expected
    if expected:
        assert decision.reason is None
    else:
        assert decision.reason == roles.REASON_INSUFFICIENT_POWER
        assert decision.message == (
            f"Role '{actor.value}' cannot disable role '{target.value}'"
        )


@pytest.mark.parametrize("actor,target", list(itertools.product(ALL_ROLES, ALL_ROLES)))
def test_enable_matches_disable(actor, target):
    disable = roles.can_disable(actor, "a", target, "b")
    enable = roles.can_enable(actor, "a", target, "b")
    assert enable.allowed == disable.allowed
    assert enable.reason == disable.reason


@pytest.mark.parametrize("role", ALL_ROLES)
def test_self_action_is_always_denied(role):
    decision = roles.can_disable(role, "same-id", role, "same-id")
    assert decision.allowed is False
    assert decision.reason == roles.REASON_SELF
    assert decision.message == "Cannot disable your own account"


def test_self_check_runs_before_power_check():
    # An owner acting on itself with a lower target role still reports "self"
    decision = roles.can_disable(Role.OWNER, "owner-1", Role.USER, "owner-1")
    assert decision.reason == roles.REASON_SELF


def test_owner_disabling_itself_raises_with_self_reason():
    with pytest.raises(AuthorizationDenied) as exc_info:
        roles.require_can_disable(Role.OWNER, "owner-1", Role.OWNER, "owner-1")

    err = exc_info.value
    assert err.status_code == 403
    assert err.error_code == "forbidden"
    assert err.reason == roles.REASON_SELF
    assert err.detail == {"reason": "self"}


def test_require_can_enable_passes_when_allowed():
    roles.require_can_enable(Role.ADMIN, "admin-1", Role.USER, "user-1")


def test_require_can_enable_denies_peer():
    with pytest.raises(AuthorizationDenied) as exc_info:
        roles.require_can_enable(Role.ADMIN, "admin-1", Role.ADMIN, "admin-2")
    assert exc_info.value.reason == roles.REASON_INSUFFICIENT_POWER


def test_manageable_roles():
    assert roles.manageable_roles(Role.OWNER) == [Role.ADMIN, Role.USER]
    assert roles.manageable_roles(Role.ADMIN) == [Role.USER]
    assert roles.manageable_roles(Role.USER) == []


def test_has_authority_over_is_strict():
    assert roles.has_authority_over(Role.OWNER, Role.ADMIN)
    assert not roles.has_authority_over(Role.ADMIN, Role.ADMIN)
    assert not roles.has_authority_over(Role.USER, Role.OWNER)


def test_at_least_is_inclusive():
    assert roles.at_least(Role.ADMIN, Role.ADMIN)
    assert roles.at_least(Role.OWNER, Role.ADMIN)
    assert not roles.at_least(Role.USER, Role.ADMIN)


def test_effective_role_requires_matching_context():
    scope = AuthScope(ContextType.TENANT, "tenant-1")
    here = RoleAssignment(Role.ADMIN, ContextType.TENANT, "tenant-1")
    other_tenant = RoleAssignment(Role.ADMIN, ContextType.TENANT, "tenant-2")
    wrong_kind = RoleAssignment(Role.ADMIN, ContextType.ENVIRONMENT, "tenant-1")

    assert roles.effective_role(here, scope) == Role.ADMIN
    assert roles.effective_role(other_tenant, scope) is None
    assert roles.effective_role(wrong_kind, scope) is None
    assert roles.effective_role(None, scope) is None
