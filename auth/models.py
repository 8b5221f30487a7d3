"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the resolver
and the orchestrator do the work; these only own the shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from auth.errors import AuthError


DEFAULT_ROLE = "user"


@dataclass
class SocialIdentity:
    """A provider sub-identity linked to a Principal.

    Written once, on the first successful login through that provider, and
    never overwritten afterwards (first-link-wins). A stale subject after an
    upstream id rotation is the accepted cost.
    """

    subject: str  # provider's user id
    display_name: str = ""
    linked_at: str | None = None


@dataclass
class Principal:
    """A local account. email is globally unique.

    password_hash is None for principals that only ever signed in through a
    social provider. social maps provider name -> SocialIdentity.
    """

    email: str
    role: str = DEFAULT_ROLE
    id: int | None = None
    password_hash: str | None = None
    social: dict[str, SocialIdentity] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Role:
    """Platform role with permissions (delegated-platform variant)."""

    name: str
    permissions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"name": self.name, "permissions": list(self.permissions)}


@dataclass
class UserProjectRelation:
    """Remote-owned link between a platform user and a project.

    At most one per (user_id, project_id). session_ids is append-only from
    this side; duplicates are tolerated, losses are not.
    """

    id: str
    user_id: str
    project_id: str
    role: Role
    session_ids: list[str] = field(default_factory=list)
    platform_user_id: str | None = None


@dataclass(frozen=True)
class VerifiedIdentity:
    """An identity a collaborator has already vouched for.

    Produced by a method facade (password check passed, OAuth profile
    received, platform authentication succeeded). No raw secret ever appears
    here.
    """

    email: str
    provider: Optional[str] = None  # None for local password
    external_ref: Optional[str] = None  # provider subject / platform user id
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""


class Outcome(str, Enum):
    REGISTERED = "registered"
    AUTHENTICATED = "authenticated"
    ROLE_PENDING = "role-pending"
    ROLE_ASSIGNED = "role-assigned"
    SIGNED_OUT = "signed-out"
    REJECTED = "rejected"


@dataclass
class IssuedCredential:
    """A freshly signed token and where it was delivered."""

    token: str
    expires_in: int | None
    channels: tuple[str, ...]

    @property
    def via_header(self) -> bool:
        return "header" in self.channels


@dataclass
class AuthOutcome:
    """Terminal result of one orchestration run.

    Exactly one of (error) or (status != REJECTED) holds. credential and
    api_key are only ever set on success.
    """

    status: Outcome
    role: str | None = None
    principal_id: int | None = None
    relation_id: str | None = None
    session_id: str | None = None
    credential: IssuedCredential | None = None
    api_key: str | None = None
    redirect_url: str | None = None
    error: Optional["AuthError"] = None
    trail: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AuthContext:
    """What a secured route learns about its caller."""

    status: str  # "authenticated"
    role: str | None = None
    principal_id: int | None = None
    relation_id: str | None = None
    session_id: str | None = None
    via: tuple[str, ...] = ()
