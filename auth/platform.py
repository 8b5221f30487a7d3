"""
auth/platform.py -- HTTP clients for the delegated identity platform.

Two collaborators, both reached with requests:

  PlatformStore   -- the remote CRUD service that owns users, projects,
                     user-project relations and per-project platform
                     configs. Authenticated with an x-api-key header.
  IdentityClient  -- the WorkOS user-management API: AuthKit authorization
                     URL, code and password authentication, logout URL.

Failure policy: transport errors and unexpected statuses become
UpstreamError; "no such record" becomes None so the orchestrator can decide
between sign-up and rejection. Rejected credentials from the identity
platform become AuthenticationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import requests
from jose import JWTError, jwt

from auth.errors import AuthenticationError, UpstreamError
from auth.models import Role, UserProjectRelation
from core.config import AuthKitConfig, PlatformConfig, PlatformRBACConfig, env_value

logger = logging.getLogger("authgate.auth.platform")


def _relation_from_json(data: dict) -> UserProjectRelation:
    role = data.get("role") or {}
    return UserProjectRelation(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        project_id=str(data["project_id"]),
        role=Role(name=role.get("name", "user"), permissions=list(role.get("permissions") or [])),
        session_ids=list(data.get("session_ids") or []),
        platform_user_id=data.get("workos_user_id"),
    )


# ---------------------------------------------------------------------------
# Remote CRUD service
# ---------------------------------------------------------------------------


class PlatformStore:
    """Client for the remote users / projects / user-projects / configs API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        # These are known internal services; a long redirect chain is a misconfiguration.
        self._session.max_redirects = 3
        self._session.headers.update({"Content-Type": "application/json", "x-api-key": api_key})

    @classmethod
    def from_config(cls, config: PlatformConfig) -> PlatformStore:
        return cls(config.base_url, config.api_key, timeout=config.request_timeout)

    def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Remote store %s %s failed: %s", method, path, exc)
            raise UpstreamError("Remote store unavailable.", code="remote_store_unavailable") from exc
        if resp.status_code == 404:
            return None
        if not resp.ok:
            logger.warning("Remote store %s %s returned %d", method, path, resp.status_code)
            raise UpstreamError(f"Remote store returned {resp.status_code}.", code="remote_store_error")
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError("Remote store returned malformed JSON.", code="remote_store_error") from exc

    def _first(self, path: str, key: str, **filters: str) -> Optional[dict]:
        params = {"page": 1, "limit": 1, **{k: v for k, v in filters.items() if v}}
        data = self._request("GET", path, params=params) or {}
        items = data.get(key) or []
        return items[0] if items else None

    # -- users ---------------------------------------------------------

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._first("/api/v1/users", "users", email=email)

    def create_user(self, email: str, first_name: str = "", last_name: str = "") -> dict:
        data = self._request(
            "POST",
            "/api/v1/users",
            json={"email": email, "first_name": first_name, "last_name": last_name},
        )
        if not data or "user" not in data:
            raise UpstreamError("Remote store did not return the created user.", code="remote_store_error")
        return data["user"]

    # -- projects ------------------------------------------------------

    def find_project_by_name(self, name: str) -> Optional[dict]:
        return self._first("/api/v1/projects", "projects", name=name)

    def get_platform_config(self, config_id: str) -> Optional[dict]:
        data = self._request("GET", f"/api/v1/workos-configs/{config_id}")
        return (data or {}).get("workosConfig")

    # -- user-project relations ----------------------------------------

    def find_relation(self, user_id: str, project_id: str) -> Optional[UserProjectRelation]:
        item = self._first("/api/v1/user-projects", "userProjectRelations", user_id=user_id, project_id=project_id)
        return _relation_from_json(item) if item else None

    def get_relation(self, relation_id: str) -> Optional[UserProjectRelation]:
        data = self._request("GET", f"/api/v1/user-projects/{relation_id}")
        item = (data or {}).get("userProjectRelation")
        return _relation_from_json(item) if item else None

    def create_relation(
        self,
        user_id: str,
        project_id: str,
        role: Role,
        session_ids: list[str],
        platform_user_id: str | None = None,
    ) -> UserProjectRelation:
        data = self._request(
            "POST",
            "/api/v1/user-projects",
            json={
                "user_id": user_id,
                "project_id": project_id,
                "role": role.to_dict(),
                "session_ids": session_ids,
                "workos_user_id": platform_user_id,
            },
        )
        item = (data or {}).get("userProjectRelation")
        if not item:
            raise UpstreamError("Remote store did not return the created relation.", code="remote_store_error")
        return _relation_from_json(item)

    def update_relation(
        self, relation_id: str, *, session_ids: list[str] | None = None, role: Role | None = None
    ) -> Optional[UserProjectRelation]:
        body: dict[str, Any] = {}
        if session_ids is not None:
            body["session_ids"] = session_ids
        if role is not None:
            body["role"] = role.to_dict()
        data = self._request("PUT", f"/api/v1/user-projects/{relation_id}", json=body)
        item = (data or {}).get("userProjectRelation")
        return _relation_from_json(item) if item else None

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Identity platform (WorkOS user management)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlatformAuthentication:
    """Result of a successful authentication against the identity platform."""

    user_id: str
    email: str
    first_name: str
    last_name: str
    session_id: str


def session_id_from_access_token(access_token: str) -> str:
    """Read the session id (sid claim) from a platform access token.

    The token was just returned by the platform over TLS in exchange for our
    client secret; only its sid claim is read here, nothing is trusted from it
    for authorization.
    """
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError as exc:
        raise UpstreamError("Identity platform returned a malformed access token.") from exc
    sid = claims.get("sid")
    if not sid:
        raise UpstreamError("Identity platform access token carries no session id.")
    return str(sid)


class IdentityClient:
    def __init__(
        self,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    @classmethod
    def from_config(cls, config: PlatformConfig, env: str) -> IdentityClient:
        return cls(
            config.api_base_url,
            env_value(config.client_id, env) or "",
            env_value(config.client_secret, env) or "",
            timeout=config.request_timeout,
        )

    def authorization_url(self, redirect_uri: str, state: str, provider: str = "authkit") -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "provider": provider,
                "state": state,
            }
        )
        return f"{self.api_base_url}/user_management/authorize?{query}"

    def logout_url(self, session_id: str, return_to: str | None = None) -> str:
        params = {"session_id": session_id}
        if return_to:
            params["return_to"] = return_to
        return f"{self.api_base_url}/user_management/sessions/logout?{urlencode(params)}"

    def _authenticate(self, grant: dict[str, str]) -> PlatformAuthentication:
        body = {"client_id": self.client_id, "client_secret": self.client_secret, **grant}
        try:
            resp = self._session.post(
                f"{self.api_base_url}/user_management/authenticate", json=body, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("Identity platform authenticate failed: %s", exc)
            raise UpstreamError("Identity platform unavailable.", code="identity_platform_unavailable") from exc
        if resp.status_code in (400, 401, 403, 422):
            raise AuthenticationError("Invalid credentials", code="bad_credentials")
        if not resp.ok:
            raise UpstreamError(f"Identity platform returned {resp.status_code}.", code="identity_platform_error")
        data = resp.json()
        user = data.get("user") or {}
        if not user.get("email") or not user.get("id"):
            raise UpstreamError("Identity platform returned no user.", code="identity_platform_error")
        return PlatformAuthentication(
            user_id=str(user["id"]),
            email=user["email"],
            first_name=user.get("first_name") or "",
            last_name=user.get("last_name") or "",
            session_id=session_id_from_access_token(data.get("access_token") or ""),
        )

    def authenticate_with_code(self, code: str) -> PlatformAuthentication:
        return self._authenticate({"grant_type": "authorization_code", "code": code})

    def authenticate_with_password(self, email: str, password: str) -> PlatformAuthentication:
        return self._authenticate({"grant_type": "password", "email": email, "password": password})

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Startup: project lookup and remote config overrides
# ---------------------------------------------------------------------------


def resolve_project(config: PlatformConfig, store: PlatformStore) -> tuple[str, PlatformConfig]:
    """Return (project_id, effective config) for config.project_name.

    When the project links a platform config on the remote store, its rbac,
    authkit, client credentials and signup flag replace the local values.
    Raises RuntimeError when the project or its linked config is missing.
    """
    if not config.project_name:
        raise RuntimeError("platform.project_name is required when the platform is enabled.")
    project = store.find_project_by_name(config.project_name)
    if project is None:
        raise RuntimeError(f"No such project {config.project_name!r}. Create it on the remote store first.")

    config_id = project.get("workos_config")
    if not config_id:
        return str(project["id"]), config

    remote = store.get_platform_config(str(config_id))
    if remote is None:
        raise RuntimeError(f"Project {config.project_name!r} links platform config {config_id!r}, which does not exist.")

    update: dict[str, Any] = {}
    if remote.get("rbac") is not None:
        update["rbac"] = PlatformRBACConfig.model_validate(remote["rbac"])
    if remote.get("authkit") is not None:
        update["authkit"] = AuthKitConfig.model_validate(remote["authkit"])
    if remote.get("workos_client_id"):
        update["client_id"] = remote["workos_client_id"]
    if remote.get("workos_client_secret"):
        update["client_secret"] = remote["workos_client_secret"]
    if remote.get("signup_enabled") is not None:
        update["signup_enabled"] = bool(remote["signup_enabled"])
    logger.info("Project %s: applied remote platform config %s", config.project_name, config_id)
    return str(project["id"]), config.model_copy(update=update)
