"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware     -- signed browser session: OAuth state (authlib),
                              requested role and pending role assignment

Lifespan builds every collaborator once from Settings and hands them to the
facades explicitly (store, provider registry, orchestrator, platform
clients). Nothing registers itself as global state on import.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.platform import router as platform_router
from auth.errors import AuthError
from auth.ledger import SessionLedger
from auth.methods.password import PasswordAuth
from auth.methods.platform import PlatformAuth
from auth.methods.social import SocialAuth
from auth.oauth import ProviderRegistry
from auth.orchestrator import CallbackOrchestrator, PlatformBinding
from auth.platform import IdentityClient, PlatformStore, resolve_project
from auth.resolver import AccountResolver
from auth.roles import PlatformRoleGate, RoleGate
from auth.store import PrincipalStore
from auth.tokens import ApiKeyCodec, CredentialCodec
from core.config import Settings, env_value, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    app: FastAPI,
    settings: Settings,
    *,
    store: PrincipalStore | None = None,
    registry: ProviderRegistry | None = None,
    platform_store: PlatformStore | None = None,
    identity_client: IdentityClient | None = None,
) -> None:
    """Build the orchestrator and facades and attach them to app.state.

    Collaborators may be passed in (tests do); anything omitted is built from
    settings.
    """
    store = store or PrincipalStore(settings.database_url)
    registry = registry or ProviderRegistry(settings)
    codec = CredentialCodec(settings.jwt) if settings.jwt.enabled else None
    api_key_codec = ApiKeyCodec(settings.api_key) if settings.api_key.enabled else None

    binding = None
    platform_auth = None
    if settings.platform.enabled:
        platform_store = platform_store or PlatformStore.from_config(settings.platform)
        project_id, platform_config = resolve_project(settings.platform, platform_store)
        binding = PlatformBinding(
            store=platform_store,
            ledger=SessionLedger(platform_store),
            role_gate=PlatformRoleGate(platform_config.rbac),
            project_id=project_id,
            signup_enabled=platform_config.signup_enabled,
        )
        identity_client = identity_client or IdentityClient.from_config(platform_config, settings.env)
        app.state.platform_store = platform_store
        app.state.identity_client = identity_client

    orchestrator = CallbackOrchestrator(
        resolver=AccountResolver(store, rbac_enabled=settings.rbac.enabled),
        role_gate=RoleGate(settings.rbac),
        codec=codec,
        api_key_codec=api_key_codec,
        signup_enabled=settings.signup_enabled,
        platform=binding,
    )
    if binding is not None:
        platform_auth = PlatformAuth(
            identity_client,
            orchestrator,
            project_name=settings.platform.project_name,
            redirect_url=env_value(platform_config.authkit.redirect_url, settings.env),
            logout_return_url=env_value(platform_config.authkit.logout_url, settings.env),
        )

    app.state.store = store
    app.state.providers = registry
    app.state.orchestrator = orchestrator
    app.state.password_auth = PasswordAuth(orchestrator)
    app.state.social_auth = SocialAuth(registry, orchestrator)
    app.state.platform_auth = platform_auth


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup and release connections on shutdown.

    A platform project that cannot be found fails startup rather than the
    first sign-in.
    """
    settings = get_settings()
    logger.info("AuthGate API starting up (env=%s)", settings.env)
    build_services(app, settings)
    logger.info(
        "Auth initialized (rbac=%s, signup=%s, providers=%s, platform=%s)",
        settings.rbac.enabled,
        settings.signup_enabled,
        [p["name"] for p in app.state.providers.enabled()],
        app.state.platform_auth is not None,
    )

    yield

    app.state.store.close()
    if getattr(app.state, "platform_store", None) is not None:
        app.state.platform_store.close()
    if getattr(app.state, "identity_client", None) is not None:
        app.state.identity_client.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Sign-up, sign-in, role assignment and credential delivery.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST call is outermost.
# SessionMiddleware is registered first so every other layer sees the session.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for the
# authorization code flow). The pending role assignment lives there too.
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    https_only=get_settings().jwt.cookie_options.secure,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-API-Role"],
    max_age=3600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(platform_router, prefix="/api/v1", tags=["Platform"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an orchestration rejection. 5xx details never reach the client."""
    message = exc.message if exc.status < 500 else "Authentication service error."
    response = JSONResponse(
        status_code=exc.status,
        content=ErrorResponse(
            error=ErrorDetail(status=exc.status, code=exc.code, message=message)
        ).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                status=429,
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                status=422,
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                status=exc.status_code,
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                status=500,
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and account store reachability."""
    database = "ok"
    try:
        with request.app.state.store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: account store unreachable")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
