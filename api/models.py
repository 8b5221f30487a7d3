"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthContext, AuthOutcome

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsRequest(BaseModel):
    """Request body for sign-up and sign-in (local and platform).

    Password length is capped below bcrypt's 72-byte truncation point.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=64)
    role: Optional[str] = Field(default=None, max_length=64)


class RoleAssignRequest(BaseModel):
    """Request body for POST /api/v1/auth/social/{provider}/role."""

    role: Optional[str] = Field(default=None, max_length=64)


class AuthorizeRequest(BaseModel):
    """Request body for POST /api/v1/platform/authorize."""

    role: Optional[str] = Field(default=None, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthResultResponse(BaseModel):
    """Result envelope of every successful orchestration.

    token is only present when the header channel is configured; with the
    cookie channel alone the credential travels in the Set-Cookie header.
    """

    status: str
    role: Optional[str] = None
    principal_id: Optional[int] = None
    relation_id: Optional[str] = None
    token: Optional[str] = None
    expires_in: Optional[int] = None
    api_key: Optional[str] = None
    session_id: Optional[str] = None
    redirect_url: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: AuthOutcome) -> "AuthResultResponse":
        credential = outcome.credential
        return cls(
            status=outcome.status.value,
            role=outcome.role,
            principal_id=outcome.principal_id,
            relation_id=outcome.relation_id,
            token=credential.token if credential is not None and credential.via_header else None,
            expires_in=credential.expires_in if credential is not None else None,
            api_key=outcome.api_key,
            session_id=outcome.session_id,
            redirect_url=outcome.redirect_url,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me and GET /api/v1/platform/session."""

    status: str
    role: Optional[str] = None
    principal_id: Optional[int] = None
    relation_id: Optional[str] = None
    session_id: Optional[str] = None
    via: list[str] = Field(default_factory=list)

    @classmethod
    def from_context(cls, auth: AuthContext) -> "MeResponse":
        return cls(
            status=auth.status,
            role=auth.role,
            principal_id=auth.principal_id,
            relation_id=auth.relation_id,
            session_id=auth.session_id,
            via=list(auth.via),
        )


class ProviderInfo(BaseModel):
    """Response item for GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class AuthorizeResponse(BaseModel):
    url: str


class LogoutResponse(BaseModel):
    status: str = "signed-out"
    logout_url: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    status: int
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
