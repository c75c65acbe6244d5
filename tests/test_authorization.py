"""Tests for the role/user rule-table gate."""

from __future__ import annotations

import pytest

from retail_ledger import authorization, data_manager
from retail_ledger.constants import Role


def _user(role: Role, user_id: str = "U-1") -> data_manager.User:
    return data_manager.User(user_id=user_id, name="Someone", role=role)


@pytest.fixture
def gate():
    return authorization.RoleAccessGate(
        roles={
            Role.MANAGER: {"/inventory": {"view": True, "add": True, "edit": False}},
        },
        users={
            "U-special": {"/inventory": {"edit": True}},
            "U-blocked": {"/inventory": {"add": False}},
        },
    )


@pytest.mark.parametrize("role", [Role.OWNER, Role.SUPER_ADMIN])
def test_unrestricted_roles_always_pass(gate, role):
    assert gate.has_access(_user(role), "/anything", "delete")


def test_role_entry_applies(gate):
    manager = _user(Role.MANAGER)

    assert gate.has_access(manager, "/inventory", "add")
    assert not gate.has_access(manager, "/inventory", "edit")
    assert not gate.has_access(manager, "/inventory", "delete")


def test_user_override_wins_over_role(gate):
    assert gate.has_access(_user(Role.MANAGER, "U-special"), "/inventory", "edit")
    assert not gate.has_access(_user(Role.MANAGER, "U-blocked"), "/inventory", "add")


def test_unknown_role_or_path_is_denied(gate):
    assert not gate.has_access(_user(Role.CASHIER), "/inventory", "view")
    assert not gate.has_access(_user(Role.MANAGER), "/settings/business", "edit")


def test_missing_actor_is_denied(gate):
    assert not gate.has_access(None, "/inventory", "view")
    assert not authorization.AllowAllGate().has_access(None, "/inventory", "view")
    assert authorization.AllowAllGate().has_access(_user(Role.CUSTOM), "/inventory", "view")
