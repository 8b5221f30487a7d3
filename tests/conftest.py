"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - make_settings(): Settings with a fixed secret and per-test overrides
  - make_store(): isolated in-memory principal store
  - FakePlatformStore: in-memory stand-in for the remote CRUD service
  - oauth_mock(): authlib OAuth registry whose clients never hit the network
  - make_client(): TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import itertools
import os
import threading
import uuid
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Integration tests sign in far more than ten times a minute from one address.
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.models import Role, UserProjectRelation
from auth.oauth import ProviderRegistry
from auth.store import PrincipalStore
from core.config import Settings

TEST_SECRET = "s" * 48


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"debug": True, "secret_key": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


def make_store(suffix: str | None = None) -> PrincipalStore:
    name = suffix or uuid.uuid4().hex
    return PrincipalStore(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# Remote CRUD service stand-in
# ---------------------------------------------------------------------------


class FakePlatformStore:
    """In-memory PlatformStore with the same method surface."""

    def __init__(self, project_name: str = "demo", platform_config: dict | None = None) -> None:
        self._ids = itertools.count(1)
        self.users: dict[str, dict] = {}
        self.relations: dict[str, UserProjectRelation] = {}
        self.projects: dict[str, dict] = {"p1": {"id": "p1", "name": project_name}}
        self.configs: dict[str, dict] = {}
        if platform_config is not None:
            self.configs["c1"] = platform_config
            self.projects["p1"]["workos_config"] = "c1"
        self.update_calls = 0
        self._mutex = threading.Lock()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def find_user_by_email(self, email: str) -> dict | None:
        return next((u for u in self.users.values() if u["email"] == email), None)

    def create_user(self, email: str, first_name: str = "", last_name: str = "") -> dict:
        user = {"id": self._next_id("u"), "email": email, "first_name": first_name, "last_name": last_name}
        self.users[user["id"]] = user
        return user

    def find_project_by_name(self, name: str) -> dict | None:
        return next((p for p in self.projects.values() if p["name"] == name), None)

    def get_platform_config(self, config_id: str) -> dict | None:
        return self.configs.get(config_id)

    def find_relation(self, user_id: str, project_id: str) -> UserProjectRelation | None:
        return next(
            (r for r in self.relations.values() if r.user_id == user_id and r.project_id == project_id),
            None,
        )

    def get_relation(self, relation_id: str) -> UserProjectRelation | None:
        relation = self.relations.get(relation_id)
        if relation is None:
            return None
        return UserProjectRelation(
            id=relation.id,
            user_id=relation.user_id,
            project_id=relation.project_id,
            role=relation.role,
            session_ids=list(relation.session_ids),
            platform_user_id=relation.platform_user_id,
        )

    def create_relation(
        self,
        user_id: str,
        project_id: str,
        role: Role,
        session_ids: list[str],
        platform_user_id: str | None = None,
    ) -> UserProjectRelation:
        relation = UserProjectRelation(
            id=self._next_id("r"),
            user_id=user_id,
            project_id=project_id,
            role=role,
            session_ids=list(session_ids),
            platform_user_id=platform_user_id,
        )
        self.relations[relation.id] = relation
        return self.get_relation(relation.id)

    def update_relation(self, relation_id: str, *, session_ids=None, role=None) -> UserProjectRelation | None:
        with self._mutex:
            self.update_calls += 1
            relation = self.relations.get(relation_id)
            if relation is None:
                return None
            if session_ids is not None:
                relation.session_ids = list(session_ids)
            if role is not None:
                relation.role = role
        return self.get_relation(relation_id)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# authlib stand-in
# ---------------------------------------------------------------------------


def oauth_mock(token: dict | None = None) -> MagicMock:
    """Return a MagicMock OAuth registry whose clients complete any handshake.

    authorize_access_token() returns `token`; authorize_redirect() returns a
    plain 302 to the provider.
    """
    from starlette.responses import RedirectResponse

    oauth = MagicMock()
    client = MagicMock()
    client.authorize_access_token = AsyncMock(return_value=token or {})
    client.authorize_redirect = AsyncMock(
        side_effect=lambda request, redirect_uri: RedirectResponse(
            f"https://provider.example/authorize?redirect_uri={redirect_uri}", status_code=302
        )
    )
    oauth.create_client.return_value = client
    return oauth


def google_token(email: str = "g@example.com", sub: str = "g-1", verified: bool = True) -> dict:
    return {"userinfo": {"email": email, "sub": sub, "email_verified": verified, "name": "G User"}}


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def make_client(
    settings: Settings,
    store: PrincipalStore | None = None,
    oauth: MagicMock | None = None,
    platform_store: FakePlatformStore | None = None,
    identity_client: MagicMock | None = None,
) -> TestClient:
    """Return a TestClient whose lifespan wires the given collaborators.

    Use as a context manager so the lifespan runs:
        with make_client(settings) as client: ...
    """
    store = store or make_store()
    registry = ProviderRegistry(settings, oauth=oauth or oauth_mock())

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(
            app,
            settings,
            store=store,
            registry=registry,
            platform_store=platform_store,
            identity_client=identity_client,
        )
        yield
        store.close()

    app.router.lifespan_context = test_lifespan
    return TestClient(app, follow_redirects=False, raise_server_exceptions=True)


@pytest.fixture
def store():
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def client():
    """Default app client: RBAC off, cookie + header delivery."""
    settings = make_settings(jwt={"send_via": ["cookie", "header"]})
    with make_client(settings) as c:
        yield c
