"""Authorization gate consulted before every mutating operation.

The ledger does not own a permission policy; it only needs a yes/no answer
for ``(actor, resource_path, action)``. :class:`RoleAccessGate` evaluates a
rule table supplied by the embedding application in the usual order:
owners and super admins first, then per-user overrides, then the role.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol

from .constants import Role


PermissionSet = Mapping[str, bool]
PathPermissions = Mapping[str, PermissionSet]

UNRESTRICTED_ROLES: frozenset[Role] = frozenset({Role.OWNER, Role.SUPER_ADMIN})


class AccessGate(Protocol):
    def has_access(self, actor, resource_path: str, action: str) -> bool: ...


@dataclass(frozen=True)
class RoleAccessGate:
    """Rule-table gate keyed by role and overridden per user.

    Args:
        roles: ``{role: {path: {action: allowed}}}``.
        users: ``{user_id: {path: {action: allowed}}}``; an explicit entry
            wins over the role entry, including an explicit ``False``.
    """

    roles: Mapping[Role, PathPermissions] = field(default_factory=dict)
    users: Mapping[str, PathPermissions] = field(default_factory=dict)

    def has_access(self, actor, resource_path: str, action: str) -> bool:
        if actor is None:
            return False
        if actor.role in UNRESTRICTED_ROLES:
            return True

        override = self.users.get(actor.user_id, {}).get(resource_path, {}).get(action)
        if isinstance(override, bool):
            return override

        granted = self.roles.get(actor.role, {}).get(resource_path, {}).get(action)
        if isinstance(granted, bool):
            return granted

        return False


class AllowAllGate:
    """Gate for embedding applications that authorize upstream."""

    def has_access(self, actor, resource_path: str, action: str) -> bool:
        return actor is not None
