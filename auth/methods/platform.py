"""
auth/methods/platform.py -- Delegated identity platform facade (AuthKit + password).

The platform verifies the credentials; this facade only converts its answer
into a VerifiedIdentity plus the platform session id and lets the
orchestrator reconcile the user-project relation.

The AuthKit state parameter carries {"project", "role"} as JSON so the role
chosen before the redirect survives the round trip.
"""

from __future__ import annotations

import json
import logging

from auth.errors import AuthenticationError, AuthError, AuthorizationError, ValidationError
from auth.models import AuthContext, AuthOutcome, VerifiedIdentity
from auth.orchestrator import SIGNUP_DISABLED_MESSAGE, CallbackOrchestrator
from auth.platform import IdentityClient, PlatformAuthentication
from auth.session import SessionContext

logger = logging.getLogger("authgate.auth.platform_method")


def _identity(auth: PlatformAuthentication) -> VerifiedIdentity:
    return VerifiedIdentity(
        email=auth.email,
        provider="platform",
        external_ref=auth.user_id,
        first_name=auth.first_name,
        last_name=auth.last_name,
    )


class PlatformAuth:
    def __init__(
        self,
        client: IdentityClient,
        orchestrator: CallbackOrchestrator,
        project_name: str,
        redirect_url: str | None = None,
        logout_return_url: str | None = None,
    ) -> None:
        self.client = client
        self.orchestrator = orchestrator
        self.project_name = project_name
        self.redirect_url = redirect_url
        self.logout_return_url = logout_return_url

    def authorization_url(self, role: str | None = None) -> str:
        """Return the AuthKit URL to send the browser to. Raises ValidationError."""
        if not self.redirect_url:
            raise ValidationError("AuthKit redirect URL is not configured.", code="redirect_not_configured")
        binding = self.orchestrator.platform
        if binding is not None and role:
            binding.role_gate.check(role)
        state = json.dumps({"project": self.project_name, "role": role})
        return self.client.authorization_url(self.redirect_url, state)

    def callback(self, code: str | None, state: str | None, ctx: SessionContext) -> AuthOutcome:
        if not code:
            return self.orchestrator.reject(ctx, ValidationError("Missing authorization code.", code="missing_code"))
        try:
            parsed = json.loads(state) if state else {}
        except ValueError:
            return self.orchestrator.reject(ctx, ValidationError("Invalid state parameter.", code="invalid_state"))
        if not isinstance(parsed, dict) or parsed.get("project", self.project_name) != self.project_name:
            return self.orchestrator.reject(ctx, ValidationError("Invalid state parameter.", code="invalid_state"))

        try:
            auth = self.client.authenticate_with_code(code)
        except AuthError as exc:
            return self.orchestrator.reject(ctx, exc)
        return self.orchestrator.authenticate_relation(
            _identity(auth), ctx, session_id=auth.session_id, requested_role=parsed.get("role")
        )

    def sign_up(self, email: str, password: str, ctx: SessionContext, role: str | None = None) -> AuthOutcome:
        binding = self.orchestrator.platform
        # Gate checks run before the platform is asked to open a session.
        try:
            if binding is not None:
                if not binding.signup_enabled:
                    raise AuthorizationError(SIGNUP_DISABLED_MESSAGE, code="signup_disabled")
                binding.role_gate.check(role)
            auth = self.client.authenticate_with_password(email, password)
        except AuthError as exc:
            return self.orchestrator.reject(ctx, exc)
        return self.orchestrator.authenticate_relation(
            _identity(auth), ctx, session_id=auth.session_id, requested_role=role
        )

    def sign_in(self, email: str, password: str, ctx: SessionContext) -> AuthOutcome:
        try:
            auth = self.client.authenticate_with_password(email, password)
        except AuthError as exc:
            return self.orchestrator.reject(ctx, exc)
        return self.orchestrator.authenticate_relation(
            _identity(auth), ctx, session_id=auth.session_id, existing_required=True
        )

    def validate(self, ctx: SessionContext) -> AuthContext:
        """Authenticate a request from its platform credential. Raises AuthenticationError."""
        codec = self.orchestrator.codec
        if codec is not None:
            check = codec.resolve(ctx, required_claims=("up_id", "session_id"))
            if check.valid:
                claims = check.claims or {}
                return AuthContext(
                    status="authenticated",
                    relation_id=str(claims["up_id"]),
                    session_id=str(claims["session_id"]),
                    via=check.channels,
                )
        raise AuthenticationError("Unauthorized")

    def logout_url(self, session_id: str) -> str:
        return self.client.logout_url(session_id, return_to=self.logout_return_url)
