"""
auth/tokens.py -- Credential codec (JWT / API key) and password hashing.

Security design decisions:
  JWT: python-jose with HS256. CredentialCodec signs whatever claims the
       orchestrator binds (principal id + role, or relation id + external
       session id) and verifies them from the configured channel(s).
       Verification returns an invalid CredentialCheck on any failure --
       callers turn that into a 401, nothing here raises.

  Channels: "cookie" and/or "header". When both are configured, each one
       must carry a token: a missing header OR a missing cookie is invalid,
       without falling over to the other channel (fail-closed). The cookie
       value is the one verified when both are present.

  API keys: the static configured key is the whole credential. It is compared
       with hmac.compare_digest to avoid leaking the key byte by byte through
       response timing. A static key carries no claims, so under RBAC the
       caller names its role in the x-api-role header.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH lets the
       password facade burn the same bcrypt cost for unknown emails [C1].

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import AuthenticationError
from auth.models import IssuedCredential
from auth.session import SessionContext
from core.config import ApiKeyDeliveryConfig, JWTDeliveryConfig

logger = logging.getLogger("authgate.auth.tokens")

_ALGORITHM = "HS256"

API_ROLE_HEADER = "x-api-role"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes; the API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or non-bcrypt hash in the store.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT codec
# ---------------------------------------------------------------------------


@dataclass
class CredentialCheck:
    valid: bool
    claims: dict[str, Any] | None = None
    expires_at: datetime | None = None
    channels: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def invalid(cls) -> CredentialCheck:
        return cls(valid=False, claims=None)


class CredentialCodec:
    """Sign, resolve and revoke JWT session credentials for one delivery config."""

    def __init__(self, config: JWTDeliveryConfig) -> None:
        if not config.secret:
            raise ValueError("JWT delivery requires a signing secret.")
        self.config = config

    @property
    def cookie_name(self) -> str:
        return self.config.cookie_options.name or "auth_token"

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(self.config.send_via)

    def _cookie_kwargs(self) -> dict[str, Any]:
        opts = self.config.cookie_options
        kwargs: dict[str, Any] = {
            "httponly": opts.http_only,
            "samesite": opts.same_site,
            "secure": opts.secure,
            "path": opts.path,
        }
        if opts.domain:
            kwargs["domain"] = opts.domain
        return kwargs

    def issue(self, claims: dict[str, Any], ctx: SessionContext | None = None) -> IssuedCredential:
        """Sign `claims` and deliver the token to the configured channel(s).

        Cookie channel: a cookie write is queued on ctx (applied to the response
        by the route). Header channel: the caller returns the token in the
        response body; the client sends it back as a Bearer header.
        """
        payload = dict(claims)
        expires_in = self.config.expires_in
        if expires_in:
            payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        token = jwt.encode(payload, self.config.secret, algorithm=_ALGORITHM)

        if "cookie" in self.config.send_via and ctx is not None:
            cookie_kwargs = self._cookie_kwargs()
            if expires_in:
                cookie_kwargs["max_age"] = expires_in
            ctx.set_cookie(self.cookie_name, token, **cookie_kwargs)

        return IssuedCredential(token=token, expires_in=expires_in, channels=self.channels)

    def decode(self, token: str, required_claims: tuple[str, ...] = ()) -> CredentialCheck:
        try:
            payload = jwt.decode(token, self.config.secret, algorithms=[_ALGORITHM])
        except JWTError:
            return CredentialCheck.invalid()
        if not isinstance(payload, dict) or any(name not in payload for name in required_claims):
            return CredentialCheck.invalid()
        expires_at = None
        exp = payload.pop("exp", None)
        if exp is not None:
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        return CredentialCheck(valid=True, claims=payload, expires_at=expires_at, channels=self.channels)

    def resolve(self, ctx: SessionContext, required_claims: tuple[str, ...] = ()) -> CredentialCheck:
        """Read the token from the configured channel(s) and verify it.

        Fail-closed per channel: every configured channel must carry a token.
        """
        token: str | None = None

        if "header" in self.config.send_via:
            auth_header = ctx.header("Authorization") or ""
            token = auth_header[7:].strip() if auth_header.startswith("Bearer ") else None
            if not token:
                return CredentialCheck.invalid()

        if "cookie" in self.config.send_via:
            token = ctx.cookie(self.cookie_name)
            if not token:
                return CredentialCheck.invalid()

        if not token:
            return CredentialCheck.invalid()
        return self.decode(token, required_claims)

    def revoke(self, ctx: SessionContext) -> None:
        """Clear the cookie channel. Header tokens are revoked out of band."""
        if "cookie" not in self.config.send_via:
            return
        kwargs = {"path": self.config.cookie_options.path}
        if self.config.cookie_options.domain:
            kwargs["domain"] = self.config.cookie_options.domain
        ctx.delete_cookie(self.cookie_name, **kwargs)


# ---------------------------------------------------------------------------
# API key codec (degenerate: static value, no claims)
# ---------------------------------------------------------------------------


class ApiKeyCodec:
    def __init__(self, config: ApiKeyDeliveryConfig) -> None:
        self.config = config

    def issue(self) -> str:
        return self.config.api_key_value

    def verify(self, ctx: SessionContext) -> bool:
        presented = ctx.header(self.config.header_name) or ""
        if not presented or not self.config.api_key_value:
            return False
        return hmac.compare_digest(presented.encode(), self.config.api_key_value.encode())

    def role_from(self, ctx: SessionContext, rbac_enabled: bool, roles: list[str]) -> str | None:
        """Return the caller-declared role, enforcing it under RBAC."""
        role = ctx.header(API_ROLE_HEADER)
        if not rbac_enabled:
            return role
        if not role:
            raise AuthenticationError("Unauthorized - No role provided", code="no_role")
        if role not in roles:
            raise AuthenticationError("Unauthorized - Unknown role", code="invalid_role")
        return role
