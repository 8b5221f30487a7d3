"""
auth/session.py -- Per-request session context.

SessionContext is the one object the orchestrator and codec see of the HTTP
exchange. It gives:
  - read access to the inbound cookies and headers,
  - read/write access to the caller's browser session (Starlette
    SessionMiddleware's signed cookie), where the pending role assignment
    lives,
  - a queue of cookie writes that the route applies to its response only
    after the orchestration succeeded.

Queueing cookie writes (instead of writing straight to a response) is what
lets a rejected run leave the response untouched: the orchestrator calls
discard_delivery() on rejection and nothing reaches the browser.

The pending role assignment is stored in the session of the browser that
started the sign-up and nowhere else, so no other session can read or
consume it.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

from auth.errors import NotFoundError

_PENDING_KEY = "pending_role_assignment"
_REQUESTED_ROLE_KEY = "requested_role"


@dataclass(frozen=True)
class PendingRoleAssignment:
    principal_id: int
    provider: str


class SessionContext:
    def __init__(
        self,
        session: MutableMapping[str, Any] | None = None,
        cookies: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.session: MutableMapping[str, Any] = session if session is not None else {}
        self.cookies: Mapping[str, str] = cookies or {}
        self._headers: Mapping[str, str] = headers or {}
        self._cookie_ops: list[tuple[str, dict]] = []

    @classmethod
    def from_request(cls, request) -> SessionContext:
        # request.session raises AssertionError when SessionMiddleware is not installed.
        session = request.session if "session" in request.scope else None
        return cls(session=session, cookies=request.cookies, headers=request.headers)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def header(self, name: str) -> str | None:
        value = self._headers.get(name)
        if value is None and not hasattr(self._headers, "getlist"):
            # Plain dicts are case-sensitive; Starlette Headers are not.
            lowered = name.lower()
            for key, val in self._headers.items():
                if key.lower() == lowered:
                    return val
        return value

    def cookie(self, name: str) -> str | None:
        return self.cookies.get(name)

    # ------------------------------------------------------------------
    # Outbound cookie surface
    # ------------------------------------------------------------------

    def set_cookie(self, key: str, value: str, **options: Any) -> None:
        self._cookie_ops.append(("set", {"key": key, "value": value, **options}))

    def delete_cookie(self, key: str, **options: Any) -> None:
        self._cookie_ops.append(("delete", {"key": key, **options}))

    @property
    def pending_cookie_ops(self) -> list[tuple[str, dict]]:
        return list(self._cookie_ops)

    def discard_delivery(self) -> None:
        self._cookie_ops.clear()

    def apply(self, response) -> None:
        """Write queued cookie operations onto a Starlette response."""
        for op, kwargs in self._cookie_ops:
            if op == "set":
                response.set_cookie(**kwargs)
            else:
                response.delete_cookie(**kwargs)
        self._cookie_ops.clear()

    # ------------------------------------------------------------------
    # Pending role assignment (deferred RBAC)
    # ------------------------------------------------------------------

    def begin_pending_role(self, principal_id: int, provider: str) -> PendingRoleAssignment:
        self.session[_PENDING_KEY] = {"principal_id": principal_id, "provider": provider}
        return PendingRoleAssignment(principal_id=principal_id, provider=provider)

    def pending_role(self) -> PendingRoleAssignment | None:
        raw = self.session.get(_PENDING_KEY)
        if not raw:
            return None
        return PendingRoleAssignment(principal_id=int(raw["principal_id"]), provider=str(raw["provider"]))

    def consume_pending_role(self, provider: str | None = None) -> PendingRoleAssignment:
        """Remove and return the pending assignment. Consumable exactly once."""
        pending = self.pending_role()
        if pending is None or (provider is not None and pending.provider != provider):
            raise NotFoundError("No pending role assignment in this session.", code="no_pending_role")
        self.session.pop(_PENDING_KEY, None)
        return pending

    # ------------------------------------------------------------------
    # Role requested before an OAuth redirect
    # ------------------------------------------------------------------

    def remember_requested_role(self, provider: str, role: str | None) -> None:
        if role:
            self.session[_REQUESTED_ROLE_KEY] = {"provider": provider, "role": role}
        else:
            self.session.pop(_REQUESTED_ROLE_KEY, None)

    def pop_requested_role(self, provider: str) -> str | None:
        raw = self.session.pop(_REQUESTED_ROLE_KEY, None)
        if not raw or raw.get("provider") != provider:
            return None
        return raw.get("role")
