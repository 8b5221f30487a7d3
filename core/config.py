"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Nested sections: RBAC, credential delivery (jwt / api_key), social
      providers and the delegated platform are plain pydantic models nested in
      Settings. Environment variables address them with a double underscore,
      e.g. JWT__SEND_VIA='["cookie","header"]', RBAC__ROLES='["user","admin"]',
      PROVIDERS__GOOGLE__CLIENT_ID=...

  @model_validator(mode="after"): cross-field checks that must fail at
      startup rather than halfway through a login flow.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright.
  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.
  [R1] RBAC with a social provider that has no role_redirect_url would leave
       first-time social users without a way to pick a role. Rejected here.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

# A URL either given directly or keyed by deployment environment:
#   callback_url: "https://app/cb"  or  {"development": "...", "production": "..."}
EnvValue = Union[str, dict[str, str]]

DEFAULT_ENV = "development"


def env_value(value: Optional[EnvValue], env: str) -> Optional[str]:
    """Pick the value for `env` from a plain or environment-keyed setting."""
    if value is None or isinstance(value, str):
        return value or None
    return value.get(env or DEFAULT_ENV) or None


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class RBACConfig(BaseModel):
    enabled: bool = False
    roles: list[str] = Field(default_factory=list)


class RoleDefinition(BaseModel):
    """A platform role: a name plus the permissions it grants."""

    name: str
    permissions: list[str] = Field(default_factory=list)


class PlatformRBACConfig(BaseModel):
    enabled: bool = False
    roles: list[RoleDefinition] = Field(default_factory=list)


class CookieOptions(BaseModel):
    name: str = "auth_token"
    path: str = "/"
    domain: Optional[str] = None
    secure: bool = False
    http_only: bool = True
    same_site: Literal["lax", "strict", "none"] = "lax"


class JWTDeliveryConfig(BaseModel):
    enabled: bool = True
    # Empty means "use Settings.secret_key" -- filled in by the validator below.
    secret: str = ""
    # Seconds. None leaves expiry to the signer (no exp claim).
    expires_in: Optional[int] = 86400
    send_via: list[Literal["cookie", "header"]] = Field(default_factory=lambda: ["cookie"])
    cookie_options: CookieOptions = Field(default_factory=CookieOptions)


class ApiKeyDeliveryConfig(BaseModel):
    enabled: bool = False
    header_name: str = "x-api-key"
    api_key_value: str = ""


class SocialProviderConfig(BaseModel):
    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    scope: Optional[list[str]] = None  # None -> the provider's default scopes
    callback_url: Optional[EnvValue] = None
    role_redirect_url: Optional[EnvValue] = None


class AuthKitConfig(BaseModel):
    enabled: bool = True
    redirect_url: Optional[EnvValue] = None
    logout_url: Optional[EnvValue] = None


class PlatformConfig(BaseModel):
    """Delegated identity platform (WorkOS) plus the remote CRUD service."""

    enabled: bool = False
    api_key: str = ""  # sent as x-api-key to the remote CRUD service
    base_url: str = "http://localhost:3000"
    api_base_url: str = "https://api.workos.com"
    project_name: str = ""
    client_id: Optional[EnvValue] = None
    client_secret: Optional[EnvValue] = None
    signup_enabled: bool = True
    rbac: PlatformRBACConfig = Field(default_factory=PlatformRBACConfig)
    authkit: AuthKitConfig = Field(default_factory=AuthKitConfig)
    request_timeout: float = 10.0


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model validators enforce
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    env: str = DEFAULT_ENV
    # Empty string is the sentinel for "not configured". The validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///authgate.db"

    # ------------------------------------------------------------------
    # Sign-up, RBAC and credential delivery
    # ------------------------------------------------------------------

    signup_enabled: bool = True
    login_rate_limit: str = "10/minute"
    rbac: RBACConfig = Field(default_factory=RBACConfig)
    jwt: JWTDeliveryConfig = Field(default_factory=JWTDeliveryConfig)
    api_key: ApiKeyDeliveryConfig = Field(default_factory=ApiKeyDeliveryConfig)

    # ------------------------------------------------------------------
    # Identity sources
    # ------------------------------------------------------------------

    providers: dict[str, SocialProviderConfig] = Field(default_factory=dict)
    platform: PlatformConfig = Field(default_factory=PlatformConfig)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7] and default the JWT secret to it.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.jwt.secret:
            self.jwt.secret = self.secret_key
        return self

    @model_validator(mode="after")
    def validate_delivery(self) -> "Settings":
        if self.jwt.enabled and not self.jwt.send_via:
            raise ValueError("jwt.send_via must name at least one channel (cookie, header).")
        if self.api_key.enabled and not self.api_key.api_key_value:
            raise ValueError("api_key.api_key_value is required when API key delivery is enabled.")
        return self

    @model_validator(mode="after")
    def validate_deferred_rbac(self) -> "Settings":
        """[R1] First-time social sign-ups under RBAC need somewhere to pick a role."""
        if not self.rbac.enabled:
            return self
        if not self.rbac.roles:
            raise ValueError("rbac.roles must not be empty when RBAC is enabled.")
        for name, provider in self.providers.items():
            if provider.enabled and not env_value(provider.role_redirect_url, self.env):
                raise ValueError(
                    f"RBAC is enabled but providers.{name}.role_redirect_url is not set "
                    f"for environment {self.env!r}."
                )
        return self

    def enabled_providers(self) -> dict[str, SocialProviderConfig]:
        return {name: cfg for name, cfg in self.providers.items() if cfg.enabled}


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
