"""
api/routes/v1/platform.py -- Delegated identity platform endpoints.

Routes:
  POST /api/v1/platform/authorize   -- AuthKit URL for the browser (role in state)
  GET  /api/v1/platform/callback    -- AuthKit callback; credential bound to relation + session
  POST /api/v1/platform/signup      -- platform password sign-up
  POST /api/v1/platform/signin      -- platform password sign-in
  GET  /api/v1/platform/session     -- current relation and session (requires auth)
  POST /api/v1/platform/logout      -- clears the cookie and returns the platform logout URL

Every route answers 403 platform_disabled when the platform is not configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import AuthorizeRequest, AuthorizeResponse, CredentialsRequest, LogoutResponse, MeResponse
from api.routes.v1.auth import respond
from auth.dependencies import get_platform_session
from auth.errors import AuthorizationError
from auth.methods.platform import PlatformAuth
from auth.models import AuthContext
from auth.session import SessionContext
from core.config import get_settings

router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _platform(request: Request) -> PlatformAuth:
    platform_auth = getattr(request.app.state, "platform_auth", None)
    if platform_auth is None:
        raise AuthorizationError("Delegated platform is not enabled.", code="platform_disabled")
    return platform_auth


@router.post("/platform/authorize", response_model=AuthorizeResponse)
def authorize(request: Request, body: AuthorizeRequest) -> AuthorizeResponse:
    return AuthorizeResponse(url=_platform(request).authorization_url(body.role))


@router.get("/platform/callback")
def callback(request: Request, code: str | None = None, state: str | None = None) -> JSONResponse:
    ctx = SessionContext.from_request(request)
    outcome = _platform(request).callback(code, state, ctx)
    return respond(outcome, ctx)


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/platform/signup", status_code=201)
def signup(request: Request, body: CredentialsRequest) -> JSONResponse:
    ctx = SessionContext.from_request(request)
    outcome = _platform(request).sign_up(body.email, body.password, ctx, role=body.role)
    return respond(outcome, ctx, status_code=201)


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/platform/signin")
def signin(request: Request, body: CredentialsRequest) -> JSONResponse:
    ctx = SessionContext.from_request(request)
    outcome = _platform(request).sign_in(body.email, body.password, ctx)
    return respond(outcome, ctx)


@router.get("/platform/session", response_model=MeResponse)
def session(auth: AuthContext = Depends(get_platform_session)) -> MeResponse:
    return MeResponse.from_context(auth)


@router.post("/platform/logout", response_model=LogoutResponse)
def logout(request: Request, auth: AuthContext = Depends(get_platform_session)) -> JSONResponse:
    """Clear the cookie channel and hand back the platform's logout URL.

    The browser must visit logout_url to end the platform session itself.
    """
    platform_auth = _platform(request)
    ctx = SessionContext.from_request(request)
    platform_auth.orchestrator.sign_out(ctx)
    resp = JSONResponse(
        content=LogoutResponse(logout_url=platform_auth.logout_url(auth.session_id or "")).model_dump()
    )
    ctx.apply(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp
