"""
auth/methods/social.py -- One facade for every OAuth provider.

The provider-specific parts live in auth/oauth.py descriptors; this class
only drives the handshake through authlib and hands the resulting identity
to the orchestrator on the deferred role channel.

Flow:
  login_redirect  -- optional ?role= is validated and parked in the session,
                     then authlib redirects to the provider (state in session).
  callback        -- code exchange, profile fetch, identity normalization,
                     orchestration. First-time sign-up under RBAC without a
                     role ends in role-pending and a redirect to the
                     provider's role_redirect_url.
  assign_role     -- completes the pending assignment of this browser session.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError

from auth.errors import AuthenticationError, AuthError
from auth.models import AuthOutcome
from auth.oauth import ProviderRegistry
from auth.orchestrator import CallbackOrchestrator
from auth.roles import RoleChannel
from auth.session import SessionContext

logger = logging.getLogger("authgate.auth.social")


class SocialAuth:
    def __init__(self, registry: ProviderRegistry, orchestrator: CallbackOrchestrator) -> None:
        self.registry = registry
        self.orchestrator = orchestrator

    async def login_redirect(self, request, provider: str, role: str | None = None):
        """Return authlib's redirect response to the provider's consent page.

        Raises AuthError for a disabled provider or an invalid role.
        """
        self.registry.get(provider)
        if role and self.orchestrator.role_gate.enabled:
            self.orchestrator.role_gate.validate(role)
        SessionContext.from_request(request).remember_requested_role(provider, role)

        client = self.registry.client(provider)
        redirect_uri = self.registry.callback_url(provider) or str(
            request.url_for("social_callback", provider=provider)
        )
        return await client.authorize_redirect(request, redirect_uri)

    async def callback(self, request, provider: str, ctx: SessionContext) -> AuthOutcome:
        try:
            descriptor, _ = self.registry.get(provider)
            client = self.registry.client(provider)
        except AuthError as exc:
            return self.orchestrator.reject(ctx, exc)
        # Parked by login_redirect for this attempt only, whatever its result.
        requested_role = ctx.pop_requested_role(provider)

        try:
            token = await client.authorize_access_token(request)
            profile = await descriptor.fetch_profile(client, token)
        except (OAuthError, httpx.HTTPError):
            logger.warning("OAuth exchange failed for provider %r", provider, exc_info=True)
            return self.orchestrator.reject(ctx, AuthenticationError("Unauthorized", code="provider_error"))

        try:
            identity = descriptor.profile_to_identity(profile)
        except AuthError as exc:
            logger.warning("OAuth login rejected for %r: %s", provider, exc.message)
            return self.orchestrator.reject(ctx, exc)

        return self.orchestrator.authenticate(
            identity,
            ctx,
            channel=RoleChannel.DEFERRED,
            requested_role=requested_role,
            role_redirect_url=self.registry.role_redirect_url(provider),
        )

    def assign_role(self, provider: str, role: str | None, ctx: SessionContext) -> AuthOutcome:
        try:
            self.registry.get(provider)
        except AuthError as exc:
            return self.orchestrator.reject(ctx, exc)
        return self.orchestrator.assign_role(ctx, role, provider)
