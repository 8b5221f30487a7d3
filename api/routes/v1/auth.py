"""
api/routes/v1/auth.py -- Local account endpoints: password and social providers.

Routes:
  POST /api/v1/auth/signup                       -- password sign-up; issues credential
  POST /api/v1/auth/signin                       -- password sign-in; issues credential
  POST /api/v1/auth/signout                      -- clears the cookie channel
  GET  /api/v1/auth/me                           -- current caller (requires auth)
  GET  /api/v1/auth/providers                    -- enabled social providers (public)
  GET  /api/v1/auth/social/{provider}/login      -- redirect to provider (?role= optional)
  GET  /api/v1/auth/social/{provider}/callback   -- provider callback; credential or role-pending
  POST /api/v1/auth/social/{provider}/role       -- complete a pending role assignment

Security:
  [H2] POST /signin and /signup are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] PasswordAuth.sign_in() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a credential.

Cookie writes are queued on the SessionContext by the orchestrator and only
applied here, after a successful outcome. Rejections are raised as AuthError
and rendered by the handler in api/main.py without any Set-Cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import AuthResultResponse, CredentialsRequest, MeResponse, ProviderInfo, RoleAssignRequest
from auth.dependencies import get_auth_context
from auth.methods.password import PasswordAuth
from auth.methods.social import SocialAuth
from auth.models import AuthContext, AuthOutcome, Outcome
from auth.session import SessionContext
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/signup, /signin:           public -- rate limited [H2]
# - POST /api/v1/auth/signout:                   public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/providers:                 public -- login page renders provider buttons
# - GET  /api/v1/auth/social/{provider}/*:       public -- OAuth handshake
# - POST /api/v1/auth/social/{provider}/role:    session-bound -- only the browser that
#                                                started the sign-up holds the pending assignment
# - GET  /api/v1/auth/me:                        requires auth (get_auth_context)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def respond(outcome: AuthOutcome, ctx: SessionContext, status_code: int = 200) -> JSONResponse:
    """Render a successful outcome, or raise its error."""
    if not outcome.ok:
        raise outcome.error
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResultResponse.from_outcome(outcome).model_dump(exclude_none=True),
    )
    ctx.apply(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=AuthResultResponse, status_code=201)
def signup(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Create a local account and issue a credential.

    Under RBAC the role is mandatory and must be one of the configured roles.
    """
    password_auth: PasswordAuth = request.app.state.password_auth
    ctx = SessionContext.from_request(request)
    outcome = password_auth.sign_up(body.email, body.password, ctx, role=body.role)
    return respond(outcome, ctx, status_code=201)


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/auth/signin", response_model=AuthResultResponse)
def signin(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password return the same 401 [C1].
    """
    password_auth: PasswordAuth = request.app.state.password_auth
    ctx = SessionContext.from_request(request)
    outcome = password_auth.sign_in(body.email, body.password, ctx, role=body.role)
    return respond(outcome, ctx)


@router.post("/auth/signout")
def signout(request: Request) -> JSONResponse:
    """Clear the credential cookie. Header tokens and API keys are dropped client-side."""
    password_auth: PasswordAuth = request.app.state.password_auth
    ctx = SessionContext.from_request(request)
    password_auth.sign_out(ctx)
    resp = JSONResponse(content={"status": Outcome.SIGNED_OUT.value})
    ctx.apply(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(auth: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return what the credential says about the current caller."""
    return MeResponse.from_context(auth)


# ---------------------------------------------------------------------------
# Social providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[ProviderInfo])
async def list_providers(request: Request) -> list[ProviderInfo]:
    """Return the enabled social providers. Empty when none are configured."""
    return [ProviderInfo(**p) for p in request.app.state.providers.enabled()]


@router.get("/auth/social/{provider}/login")
async def social_login(request: Request, provider: str, role: str | None = None):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the registry before redirecting, so a
    spoofed name cannot produce a redirect to an arbitrary URL.
    """
    social_auth: SocialAuth = request.app.state.social_auth
    return await social_auth.login_redirect(request, provider, role)


@router.get("/auth/social/{provider}/callback", name="social_callback")
async def social_callback(request: Request, provider: str):
    """Finish the OAuth handshake.

    First-time sign-up under RBAC without a role redirects to the provider's
    role_redirect_url; the page there posts the chosen role to /role.
    """
    social_auth: SocialAuth = request.app.state.social_auth
    ctx = SessionContext.from_request(request)
    outcome = await social_auth.callback(request, provider, ctx)
    if outcome.ok and outcome.status is Outcome.ROLE_PENDING and outcome.redirect_url:
        resp = RedirectResponse(outcome.redirect_url, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return respond(outcome, ctx)


@router.post("/auth/social/{provider}/role", response_model=AuthResultResponse)
def social_assign_role(request: Request, provider: str, body: RoleAssignRequest) -> JSONResponse:
    """Complete a deferred sign-up with the chosen role. Works once per sign-up."""
    social_auth: SocialAuth = request.app.state.social_auth
    ctx = SessionContext.from_request(request)
    outcome = social_auth.assign_role(provider, body.role, ctx)
    return respond(outcome, ctx)
