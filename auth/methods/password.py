"""
auth/methods/password.py -- Local email + password facade.

Security:
  [C1] sign_in() burns one bcrypt comparison against a dummy hash when the
       email is unknown (or has no password), so unknown-email and
       wrong-password responses take the same time. Both return the same
       generic "Invalid Email or Password." message.
"""

from __future__ import annotations

import logging

from auth.errors import AuthenticationError, ValidationError
from auth.models import AuthContext, AuthOutcome, VerifiedIdentity
from auth.orchestrator import CallbackOrchestrator
from auth.resolver import normalize_email
from auth.session import SessionContext
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("authgate.auth.password")

_BAD_CREDENTIALS = "Invalid Email or Password."


class PasswordAuth:
    def __init__(self, orchestrator: CallbackOrchestrator) -> None:
        self.orchestrator = orchestrator

    def sign_up(self, email: str, password: str, ctx: SessionContext, role: str | None = None) -> AuthOutcome:
        if not email or not password:
            return self.orchestrator.reject(
                ctx, ValidationError("Email and password are required.", code="missing_credentials")
            )
        identity = VerifiedIdentity(email=normalize_email(email))
        return self.orchestrator.authenticate(
            identity,
            ctx,
            requested_role=role,
            password_hash=hash_password(password),
        )

    def sign_in(self, email: str, password: str, ctx: SessionContext, role: str | None = None) -> AuthOutcome:
        if not email or not password:
            return self.orchestrator.reject(
                ctx, ValidationError("Email and password are required.", code="missing_credentials")
            )
        principal = self.orchestrator.resolver.resolve(email)
        if principal is None or not principal.password_hash:
            burn_password_check(password)  # [C1]
            return self.orchestrator.reject(ctx, AuthenticationError(_BAD_CREDENTIALS, code="bad_credentials"))
        if not verify_password(password, principal.password_hash):
            return self.orchestrator.reject(ctx, AuthenticationError(_BAD_CREDENTIALS, code="bad_credentials"))
        return self.orchestrator.authenticate(
            VerifiedIdentity(email=principal.email),
            ctx,
            requested_role=role,
            existing_required=True,
        )

    def secure(self, ctx: SessionContext) -> AuthContext:
        """Authenticate a request from its credential. Raises AuthenticationError.

        Every enabled delivery must verify: a valid API key never stands in
        for a missing JWT. With both enabled the role comes from the JWT
        claims; with the API key alone it comes from x-api-role.
        """
        codec = self.orchestrator.codec
        api_key_codec = self.orchestrator.api_key_codec
        if codec is None and api_key_codec is None:
            raise AuthenticationError("Unauthorized")

        auth = None
        if codec is not None:
            check = codec.resolve(ctx, required_claims=("sub", "role"))
            if not check.valid:
                raise AuthenticationError("Unauthorized")
            claims = check.claims or {}
            auth = AuthContext(
                status="authenticated",
                role=claims["role"],
                principal_id=int(claims["sub"]),
                via=check.channels,
            )

        if api_key_codec is not None:
            if not api_key_codec.verify(ctx):
                raise AuthenticationError("Unauthorized - Invalid API Key", code="invalid_api_key")
            if auth is not None:
                return AuthContext(
                    status=auth.status,
                    role=auth.role,
                    principal_id=auth.principal_id,
                    via=(*auth.via, "api_key"),
                )
            gate = self.orchestrator.role_gate
            role = api_key_codec.role_from(ctx, gate.enabled, gate.rbac.roles)
            return AuthContext(status="authenticated", role=role, via=("api_key",))

        return auth

    def sign_out(self, ctx: SessionContext) -> AuthOutcome:
        return self.orchestrator.sign_out(ctx)
