"""
auth/oauth.py -- Social provider descriptors and the provider registry.

Every supported provider is described by one ProviderDescriptor:
  - name / label / default scopes,
  - the authlib registration kwargs (endpoints or OIDC discovery),
  - fetch_profile(client, token): provider-specific profile retrieval,
  - profile_to_identity(profile): normalization into a VerifiedIdentity.

Nothing else differs between providers, so there is exactly one social
facade (auth/methods/social.py) and one orchestrator path for all of them.

ProviderRegistry is built once at startup from Settings and handed to the
facade explicitly; it owns the authlib OAuth instance. Only providers that
are enabled in configuration get registered with authlib.

Security notes:
  [H1] Where the provider reports email verification (Google/OIDC, GitHub),
       an unverified email is rejected. An unverified address could belong
       to someone else.

  OAuth state (CSRF) is handled by authlib via Starlette SessionMiddleware.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from authlib.integrations.starlette_client import OAuth

from auth.errors import NotFoundError, ValidationError
from auth.models import VerifiedIdentity
from core.config import Settings, SocialProviderConfig, env_value

logger = logging.getLogger("authgate.auth.oauth")

ProfileFetcher = Callable[[Any, dict], Awaitable[dict]]


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    label: str
    default_scopes: tuple[str, ...]
    fetch_profile: ProfileFetcher
    profile_to_identity: Callable[[dict], VerifiedIdentity]
    register_kwargs: dict[str, Any] = field(default_factory=dict)


def _require_email(provider: str, email: str | None) -> str:
    if not email:
        raise ValidationError(f"No email from {provider} profile", code="no_email")
    return email


# ---------------------------------------------------------------------------
# Google -- OIDC discovery; the profile is the id_token userinfo
# ---------------------------------------------------------------------------


async def _google_profile(client, token: dict) -> dict:
    userinfo = token.get("userinfo")
    if not userinfo:
        userinfo = await client.userinfo(token=token)
    return dict(userinfo)


def _google_identity(profile: dict) -> VerifiedIdentity:
    email = _require_email("Google", profile.get("email"))
    if not profile.get("email_verified", False):
        raise ValidationError("Google email is not verified", code="email_unverified")  # [H1]
    return VerifiedIdentity(
        email=email,
        provider="google",
        external_ref=str(profile.get("sub") or ""),
        display_name=profile.get("name") or "",
        first_name=profile.get("given_name") or "",
        last_name=profile.get("family_name") or "",
    )


# ---------------------------------------------------------------------------
# GitHub -- static endpoints; email comes from a second API call
# ---------------------------------------------------------------------------


async def _github_profile(client, token: dict) -> dict:
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = dict(resp.json())

    # [H1] Only the entry that is both primary and verified counts.
    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    profile["email"] = next(
        (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
        None,
    )
    return profile


def _github_identity(profile: dict) -> VerifiedIdentity:
    return VerifiedIdentity(
        email=_require_email("GitHub", profile.get("email")),
        provider="github",
        external_ref=str(profile.get("id") or ""),
        display_name=profile.get("name") or profile.get("login") or "",
    )


# ---------------------------------------------------------------------------
# Facebook -- Graph API
# ---------------------------------------------------------------------------


async def _facebook_profile(client, token: dict) -> dict:
    resp = await client.get("me", params={"fields": "id,name,email"}, token=token)
    resp.raise_for_status()
    return dict(resp.json())


def _facebook_identity(profile: dict) -> VerifiedIdentity:
    return VerifiedIdentity(
        email=_require_email("Facebook", profile.get("email")),
        provider="facebook",
        external_ref=str(profile.get("id") or ""),
        display_name=profile.get("name") or "",
    )


# ---------------------------------------------------------------------------
# Twitter / X -- OAuth 2.0 with PKCE
# ---------------------------------------------------------------------------


async def _twitter_profile(client, token: dict) -> dict:
    resp = await client.get("users/me", params={"user.fields": "confirmed_email,name,username"}, token=token)
    resp.raise_for_status()
    return dict(resp.json().get("data") or {})


def _twitter_identity(profile: dict) -> VerifiedIdentity:
    return VerifiedIdentity(
        email=_require_email("Twitter", profile.get("confirmed_email") or profile.get("email")),
        provider="twitter",
        external_ref=str(profile.get("id") or ""),
        display_name=profile.get("name") or profile.get("username") or "",
    )


DESCRIPTORS: dict[str, ProviderDescriptor] = {
    d.name: d
    for d in (
        ProviderDescriptor(
            name="google",
            label="Google",
            default_scopes=("openid", "email", "profile"),
            fetch_profile=_google_profile,
            profile_to_identity=_google_identity,
            register_kwargs={"server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration"},
        ),
        ProviderDescriptor(
            name="github",
            label="GitHub",
            default_scopes=("read:user", "user:email"),
            fetch_profile=_github_profile,
            profile_to_identity=_github_identity,
            register_kwargs={
                "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
                "authorize_url": "https://github.com/login/oauth/authorize",
                "api_base_url": "https://api.github.com/",
            },
        ),
        ProviderDescriptor(
            name="facebook",
            label="Facebook",
            default_scopes=("email", "public_profile"),
            fetch_profile=_facebook_profile,
            profile_to_identity=_facebook_identity,
            register_kwargs={
                "access_token_url": "https://graph.facebook.com/v19.0/oauth/access_token",  # noqa: S106
                "authorize_url": "https://www.facebook.com/v19.0/dialog/oauth",
                "api_base_url": "https://graph.facebook.com/v19.0/",
            },
        ),
        ProviderDescriptor(
            name="twitter",
            label="Twitter",
            default_scopes=("tweet.read", "users.read", "offline.access", "users.email"),
            fetch_profile=_twitter_profile,
            profile_to_identity=_twitter_identity,
            register_kwargs={
                "access_token_url": "https://api.twitter.com/2/oauth2/token",  # noqa: S106
                "authorize_url": "https://twitter.com/i/oauth2/authorize",
                "api_base_url": "https://api.twitter.com/2/",
                "code_challenge_method": "S256",
            },
        ),
    )
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Enabled social providers, keyed by name.

    Usage:
        registry = ProviderRegistry(get_settings())
        descriptor, cfg = registry.get("google")
        client = registry.client("google")
    """

    def __init__(self, settings: Settings, oauth: OAuth | None = None) -> None:
        self.env = settings.env
        self.oauth = oauth if oauth is not None else OAuth()
        self._providers: dict[str, tuple[ProviderDescriptor, SocialProviderConfig]] = {}
        for name, cfg in settings.enabled_providers().items():
            descriptor = DESCRIPTORS.get(name)
            if descriptor is None:
                logger.warning("Ignoring unknown social provider %r", name)
                continue
            self.register(descriptor, cfg)

    def register(self, descriptor: ProviderDescriptor, cfg: SocialProviderConfig) -> None:
        scopes = cfg.scope or list(descriptor.default_scopes)
        self.oauth.register(
            name=descriptor.name,
            client_id=cfg.client_id,
            client_secret=cfg.client_secret,
            client_kwargs={"scope": " ".join(scopes)},
            **descriptor.register_kwargs,
        )
        self._providers[descriptor.name] = (descriptor, cfg)
        logger.info("%s OAuth provider registered", descriptor.label)

    def get(self, name: str) -> tuple[ProviderDescriptor, SocialProviderConfig]:
        try:
            return self._providers[name]
        except KeyError:
            raise NotFoundError(f"{name} auth not enabled", code="provider_not_enabled") from None

    def client(self, name: str):
        self.get(name)
        return self.oauth.create_client(name)

    def callback_url(self, name: str) -> str | None:
        return env_value(self.get(name)[1].callback_url, self.env)

    def role_redirect_url(self, name: str) -> str | None:
        return env_value(self.get(name)[1].role_redirect_url, self.env)

    def enabled(self) -> list[dict]:
        """Return [{"name", "label"}] for every registered provider."""
        return [{"name": d.name, "label": d.label} for d, _ in self._providers.values()]
