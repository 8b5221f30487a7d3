"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials are checked per the delivery configuration:
  1. JWT -- cookie and/or Authorization: Bearer header (fail-closed when both
     channels are configured, see auth/tokens.py).
  2. Static API key header (default x-api-key), plus x-api-role under RBAC.

get_auth_context() raises 401 when neither yields a caller.
require_role(*roles) wraps it and raises 403 for any other role.
get_platform_session() is the delegated-platform equivalent of
get_auth_context(); its credential carries a relation id and session id.

The helpers raise AuthError subclasses; api/main.py renders them.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import AuthorizationError
from auth.models import AuthContext
from auth.session import SessionContext


def get_session_context(request: Request) -> SessionContext:
    return SessionContext.from_request(request)


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthContext = Depends(get_auth_context)): ...
    """
    return request.app.state.password_auth.secure(SessionContext.from_request(request))


def require_role(*roles: str):
    """Return a dependency that admits only callers holding one of `roles`.

        @router.get("/admin", dependencies=[Depends(require_role("admin"))])
    """

    def _check(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise AuthorizationError("Forbidden - Role not allowed.", code="role_not_allowed")
        return auth

    return _check


def get_platform_session(request: Request) -> AuthContext:
    platform_auth = getattr(request.app.state, "platform_auth", None)
    if platform_auth is None:
        raise AuthorizationError("Delegated platform is not enabled.", code="platform_disabled")
    return platform_auth.validate(SessionContext.from_request(request))
