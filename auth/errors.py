"""
auth/errors.py -- Error taxonomy for authentication orchestration.

Every rejection the orchestrator can produce is one of these. Each carries the
HTTP status it maps to, a stable machine-readable code and a human message.
api/main.py registers a single exception handler for AuthError that renders
the standard error envelope, so route code never builds error JSON by hand.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses pin status and default code."""

    status: int = 500
    code: str = "auth_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"status": self.status, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class ValidationError(AuthError):
    """Missing or invalid role, credentials or profile data."""

    status = 400
    code = "validation_error"


class AuthenticationError(AuthError):
    """Bad password, invalid credential, or no verifiable identity."""

    status = 401
    code = "unauthorized"


class AuthorizationError(AuthError):
    """Sign-up disabled, RBAC misconfigured for a deferred flow, or role not allowed."""

    status = 403
    code = "forbidden"


class NotFoundError(AuthError):
    status = 404
    code = "not_found"


class ConflictError(AuthError):
    """Duplicate email, or re-authentication asserting a different role."""

    status = 409
    code = "conflict"


class UpstreamError(AuthError):
    """Identity provider, remote store or other collaborator failure."""

    status = 500
    code = "upstream_error"
