"""
auth/roles.py -- Role gate.

Decides which role a sign-up gets, or whether the role has to be collected
later (deferred assignment). Two gates share the rules:

  RoleGate          -- local accounts, roles are plain names.
  PlatformRoleGate  -- delegated platform, roles carry permissions.

Rules:
  RBAC off                     -> always passes, role "user".
  RBAC on, inline channel      -> role required and must be configured.
  RBAC on, deferred, no role   -> placeholder "user", decision is pending.
  RBAC on, deferred, with role -> validated like inline.

Validation failures raise ValidationError before anything is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from auth.errors import ValidationError
from auth.models import DEFAULT_ROLE, Role
from core.config import PlatformRBACConfig, RBACConfig


class RoleChannel(str, Enum):
    INLINE = "inline"  # role collected in the same request (password, platform)
    DEFERRED = "deferred"  # role collected after an external redirect (social)


@dataclass(frozen=True)
class RoleDecision:
    role: str
    pending: bool = False


class RoleGate:
    def __init__(self, rbac: RBACConfig) -> None:
        self.rbac = rbac

    @property
    def enabled(self) -> bool:
        return self.rbac.enabled

    def validate(self, role: str | None) -> str:
        """Return `role` if it may be assigned, else raise ValidationError."""
        if not role:
            raise ValidationError("Role is required.", code="role_required")
        if role not in self.rbac.roles:
            raise ValidationError("Not a valid role.", code="invalid_role")
        return role

    def check(self, requested_role: str | None, channel: RoleChannel = RoleChannel.INLINE) -> RoleDecision:
        if not self.rbac.enabled:
            return RoleDecision(role=DEFAULT_ROLE)
        if channel is RoleChannel.DEFERRED and not requested_role:
            return RoleDecision(role=DEFAULT_ROLE, pending=True)
        return RoleDecision(role=self.validate(requested_role))


class PlatformRoleGate:
    """Role gate for the delegated platform. Always inline."""

    def __init__(self, rbac: PlatformRBACConfig) -> None:
        self.rbac = rbac

    @property
    def enabled(self) -> bool:
        return self.rbac.enabled

    def check(self, requested_role: str | None) -> Role:
        if not self.rbac.enabled:
            return Role(name=DEFAULT_ROLE, permissions=[])
        if not requested_role:
            raise ValidationError("Role is required for RBAC", code="role_required")
        for definition in self.rbac.roles:
            if definition.name == requested_role:
                return Role(name=definition.name, permissions=list(definition.permissions))
        raise ValidationError("This role is not allowed for RBAC", code="invalid_role")
