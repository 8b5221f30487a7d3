"""
tests/test_platform.py -- Delegated platform: HTTP clients, ledger, orchestration.

Coverage:
  - PlatformStore: query params, 404 -> None, errors -> UpstreamError
    (requests.Session mocked, no network)
  - IdentityClient: authorize / logout URLs, code exchange, rejected
    credentials -> AuthenticationError, sid read from the access token
  - resolve_project: missing project fails, remote config overrides local
  - SessionLedger: append, missing relation, concurrent appends, lock eviction
  - CallbackOrchestrator.authenticate_relation: sign-up, sign-in, signup gate,
    missing user / relation, credential bound to relation + session,
    role mismatch on an existing relation, repeated sign-up appends the session
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests
from conftest import FakePlatformStore, make_store
from jose import jwt

from auth.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from auth.ledger import SessionLedger
from auth.models import Outcome, Role, VerifiedIdentity
from auth.orchestrator import CallbackOrchestrator, PlatformBinding
from auth.platform import IdentityClient, PlatformStore, resolve_project, session_id_from_access_token
from auth.resolver import AccountResolver
from auth.roles import PlatformRoleGate, RoleGate
from auth.session import SessionContext
from auth.tokens import CredentialCodec
from core.config import JWTDeliveryConfig, PlatformConfig, PlatformRBACConfig, RBACConfig

SECRET = "p" * 40


def _response(status: int, body: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = body or {}
    return resp


def _access_token(sid: str = "sess-1") -> str:
    return jwt.encode({"sid": sid, "sub": "wos-user"}, "platform-key", algorithm="HS256")


# ---------------------------------------------------------------------------
# Remote CRUD client
# ---------------------------------------------------------------------------


class TestPlatformStore:
    def _store(self, *responses) -> tuple[PlatformStore, MagicMock]:
        session = MagicMock()
        session.headers = {}
        session.request.side_effect = list(responses)
        return PlatformStore("http://crud.local/", "crud-key", session=session), session

    def test_api_key_header_sent(self) -> None:
        store, session = self._store()
        assert session.headers["x-api-key"] == "crud-key"
        assert store.base_url == "http://crud.local"

    def test_find_user_by_email(self) -> None:
        store, session = self._store(_response(200, {"users": [{"id": "u1", "email": "a@example.com"}]}))
        assert store.find_user_by_email("a@example.com")["id"] == "u1"
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", "http://crud.local/api/v1/users")
        assert session.request.call_args.kwargs["params"] == {"page": 1, "limit": 1, "email": "a@example.com"}

    def test_empty_list_is_none(self) -> None:
        store, _ = self._store(_response(200, {"users": []}))
        assert store.find_user_by_email("a@example.com") is None

    def test_404_is_none(self) -> None:
        store, _ = self._store(_response(404))
        assert store.get_relation("r1") is None

    def test_server_error_is_upstream(self) -> None:
        store, _ = self._store(_response(503))
        with pytest.raises(UpstreamError):
            store.find_project_by_name("demo")

    def test_transport_error_is_upstream(self) -> None:
        store, _ = self._store(requests.ConnectionError("refused"))
        with pytest.raises(UpstreamError):
            store.find_project_by_name("demo")

    def test_relation_mapping(self) -> None:
        body = {
            "userProjectRelation": {
                "id": "r1",
                "user_id": "u1",
                "project_id": "p1",
                "role": {"name": "editor", "permissions": ["write"]},
                "session_ids": ["s0"],
                "workos_user_id": "wos-1",
            }
        }
        store, session = self._store(_response(200, body))
        relation = store.update_relation("r1", session_ids=["s0", "s1"])
        assert relation.role == Role("editor", ["write"])
        assert relation.platform_user_id == "wos-1"
        assert session.request.call_args.kwargs["json"] == {"session_ids": ["s0", "s1"]}


# ---------------------------------------------------------------------------
# Identity platform client
# ---------------------------------------------------------------------------


class TestIdentityClient:
    def _client(self, response=None) -> tuple[IdentityClient, MagicMock]:
        session = MagicMock()
        if isinstance(response, Exception):
            session.post.side_effect = response
        else:
            session.post.return_value = response
        return IdentityClient("https://idp.example", "client_1", "secret_1", session=session), session

    def test_authorization_url(self) -> None:
        client, _ = self._client()
        url = client.authorization_url("https://app/cb", '{"project": "demo"}')
        assert url.startswith("https://idp.example/user_management/authorize?")
        assert "client_id=client_1" in url
        assert "provider=authkit" in url
        assert "state=%7B%22project%22" in url

    def test_logout_url(self) -> None:
        client, _ = self._client()
        url = client.logout_url("sess-1", return_to="https://app/bye")
        assert url.startswith("https://idp.example/user_management/sessions/logout?session_id=sess-1")
        assert "return_to=" in url

    def test_authenticate_with_code(self) -> None:
        body = {
            "user": {"id": "wos-1", "email": "a@example.com", "first_name": "Ada", "last_name": None},
            "access_token": _access_token("sess-9"),
        }
        client, session = self._client(_response(200, body))
        auth = client.authenticate_with_code("code-1")
        assert auth.user_id == "wos-1"
        assert auth.session_id == "sess-9"
        assert auth.last_name == ""
        sent = session.post.call_args.kwargs["json"]
        assert sent["grant_type"] == "authorization_code"
        assert sent["client_secret"] == "secret_1"

    def test_rejected_password_is_authentication_error(self) -> None:
        client, _ = self._client(_response(400, {"error": "invalid_grant"}))
        with pytest.raises(AuthenticationError, match="Invalid credentials"):
            client.authenticate_with_password("a@example.com", "bad")

    def test_transport_error_is_upstream(self) -> None:
        client, _ = self._client(requests.Timeout("slow"))
        with pytest.raises(UpstreamError):
            client.authenticate_with_code("code-1")

    def test_token_without_sid_is_upstream(self) -> None:
        token = jwt.encode({"sub": "x"}, "k", algorithm="HS256")
        with pytest.raises(UpstreamError):
            session_id_from_access_token(token)


# ---------------------------------------------------------------------------
# Startup project resolution
# ---------------------------------------------------------------------------


class TestResolveProject:
    def test_missing_project_fails(self) -> None:
        with pytest.raises(RuntimeError, match="No such project"):
            resolve_project(PlatformConfig(enabled=True, project_name="other"), FakePlatformStore("demo"))

    def test_project_without_remote_config(self) -> None:
        config = PlatformConfig(enabled=True, project_name="demo")
        project_id, effective = resolve_project(config, FakePlatformStore("demo"))
        assert project_id == "p1"
        assert effective is config

    def test_remote_config_overrides(self) -> None:
        remote = {
            "rbac": {"enabled": True, "roles": [{"name": "editor", "permissions": ["write"]}]},
            "signup_enabled": False,
            "workos_client_id": {"development": "client_remote"},
            "authkit": {"enabled": True, "redirect_url": "https://app/cb"},
        }
        config = PlatformConfig(enabled=True, project_name="demo")
        _, effective = resolve_project(config, FakePlatformStore("demo", platform_config=remote))
        assert effective.rbac.enabled is True
        assert effective.rbac.roles[0].name == "editor"
        assert effective.signup_enabled is False
        assert effective.client_id == {"development": "client_remote"}
        assert effective.authkit.redirect_url == "https://app/cb"


# ---------------------------------------------------------------------------
# Session ledger
# ---------------------------------------------------------------------------


class TestSessionLedger:
    def _relation(self, store: FakePlatformStore, sessions: list[str] | None = None) -> str:
        return store.create_relation("u1", "p1", Role("user"), sessions or []).id

    def test_append(self) -> None:
        store = FakePlatformStore()
        relation_id = self._relation(store, ["s0"])
        updated = SessionLedger(store).append_session(relation_id, "s1")
        assert updated.session_ids == ["s0", "s1"]

    def test_duplicates_tolerated(self) -> None:
        store = FakePlatformStore()
        relation_id = self._relation(store, ["s0"])
        assert SessionLedger(store).append_session(relation_id, "s0").session_ids == ["s0", "s0"]

    def test_missing_relation(self) -> None:
        with pytest.raises(NotFoundError):
            SessionLedger(FakePlatformStore()).append_session("nope", "s1")

    def test_concurrent_appends_keep_at_least_one(self) -> None:
        """Two sign-ins for one relation: at least one session id survives.

        Cross-process writers may still lose one (last write wins); within one
        process the ledger serializes, so here both survive.
        """
        store = FakePlatformStore()
        relation_id = self._relation(store)
        original_get = store.get_relation

        def slow_get(rid):
            relation = original_get(rid)
            time.sleep(0.05)  # widen the read-modify-write window
            return relation

        store.get_relation = slow_get
        ledger = SessionLedger(store)
        threads = [threading.Thread(target=ledger.append_session, args=(relation_id, sid)) for sid in ("s1", "s2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = set(original_get(relation_id).session_ids)
        assert final & {"s1", "s2"}
        assert final == {"s1", "s2"}
        assert ledger._locks == {}

    def test_locks_released_after_use(self) -> None:
        store = FakePlatformStore()
        ledger = SessionLedger(store)
        for n in range(5):
            ledger.append_session(self._relation(store), f"s{n}")
        with pytest.raises(NotFoundError):
            ledger.append_session("nope", "s1")
        assert ledger._locks == {}


# ---------------------------------------------------------------------------
# Orchestration (relation variant)
# ---------------------------------------------------------------------------


def _orchestrator(
    store: FakePlatformStore, rbac: PlatformRBACConfig | None = None, signup: bool = True
) -> CallbackOrchestrator:
    return CallbackOrchestrator(
        resolver=AccountResolver(make_store()),
        role_gate=RoleGate(RBACConfig()),
        codec=CredentialCodec(JWTDeliveryConfig(secret=SECRET, send_via=["header"])),
        platform=PlatformBinding(
            store=store,
            ledger=SessionLedger(store),
            role_gate=PlatformRoleGate(rbac or PlatformRBACConfig()),
            project_id="p1",
            signup_enabled=signup,
        ),
    )


def _identity(email: str = "a@example.com") -> VerifiedIdentity:
    return VerifiedIdentity(email=email, provider="platform", external_ref="wos-1", first_name="Ada")


class TestAuthenticateRelation:
    def test_first_login_creates_user_and_relation(self) -> None:
        store = FakePlatformStore()
        outcome = _orchestrator(store).authenticate_relation(_identity(), SessionContext(), session_id="s1")
        assert outcome.status is Outcome.REGISTERED
        relation = store.get_relation(outcome.relation_id)
        assert relation.session_ids == ["s1"]
        assert relation.role == Role("user", [])
        assert relation.platform_user_id == "wos-1"
        assert store.find_user_by_email("a@example.com")["first_name"] == "Ada"
        claims = jwt.decode(outcome.credential.token, SECRET, algorithms=["HS256"])
        assert claims["up_id"] == outcome.relation_id
        assert claims["session_id"] == "s1"

    def test_returning_user_appends_session(self) -> None:
        store = FakePlatformStore()
        orch = _orchestrator(store)
        first = orch.authenticate_relation(_identity(), SessionContext(), session_id="s1")
        second = orch.authenticate_relation(_identity(), SessionContext(), session_id="s2", existing_required=True)
        assert second.status is Outcome.AUTHENTICATED
        assert second.relation_id == first.relation_id
        assert store.get_relation(first.relation_id).session_ids == ["s1", "s2"]

    def test_existing_user_new_project_gets_relation(self) -> None:
        store = FakePlatformStore()
        store.create_user("a@example.com")
        outcome = _orchestrator(store).authenticate_relation(_identity(), SessionContext(), session_id="s1")
        assert outcome.status is Outcome.REGISTERED
        assert len(store.users) == 1

    def test_signin_unknown_user(self) -> None:
        outcome = _orchestrator(FakePlatformStore()).authenticate_relation(
            _identity(), SessionContext(), session_id="s1", existing_required=True
        )
        assert isinstance(outcome.error, NotFoundError)
        assert outcome.error.message == "User not found"

    def test_signin_user_without_relation(self) -> None:
        store = FakePlatformStore()
        store.create_user("a@example.com")
        outcome = _orchestrator(store).authenticate_relation(
            _identity(), SessionContext(), session_id="s1", existing_required=True
        )
        assert outcome.error.message == "User not found in project"

    def test_signup_disabled(self) -> None:
        store = FakePlatformStore()
        outcome = _orchestrator(store, signup=False).authenticate_relation(
            _identity(), SessionContext(), session_id="s1"
        )
        assert isinstance(outcome.error, AuthorizationError)
        assert store.users == {}
        assert outcome.credential is None

    def test_rbac_role_with_permissions(self) -> None:
        store = FakePlatformStore()
        rbac = PlatformRBACConfig(enabled=True, roles=[{"name": "editor", "permissions": ["write"]}])
        outcome = _orchestrator(store, rbac).authenticate_relation(
            _identity(), SessionContext(), session_id="s1", requested_role="editor"
        )
        assert outcome.role == "editor"
        assert store.get_relation(outcome.relation_id).role.permissions == ["write"]

    def test_rbac_missing_role_rejected_before_write(self) -> None:
        store = FakePlatformStore()
        rbac = PlatformRBACConfig(enabled=True, roles=[{"name": "editor"}])
        outcome = _orchestrator(store, rbac).authenticate_relation(_identity(), SessionContext(), session_id="s1")
        assert isinstance(outcome.error, ValidationError)
        assert store.users == {}

    def test_missing_session_id_rejected(self) -> None:
        outcome = _orchestrator(FakePlatformStore()).authenticate_relation(
            _identity(), SessionContext(), session_id=""
        )
        assert isinstance(outcome.error, AuthenticationError)

    def test_platform_disabled(self) -> None:
        orch = _orchestrator(FakePlatformStore())
        orch.platform = None
        outcome = orch.authenticate_relation(_identity(), SessionContext(), session_id="s1")
        assert isinstance(outcome.error, AuthorizationError)

    def test_rbac_role_mismatch_on_existing_relation(self) -> None:
        store = FakePlatformStore()
        rbac = PlatformRBACConfig(enabled=True, roles=[{"name": "editor"}, {"name": "viewer"}])
        orch = _orchestrator(store, rbac)
        first = orch.authenticate_relation(_identity(), SessionContext(), session_id="s1", requested_role="editor")
        calls_before = store.update_calls

        ctx = SessionContext()
        outcome = orch.authenticate_relation(_identity(), ctx, session_id="s2", requested_role="viewer")
        assert outcome.status is Outcome.REJECTED
        assert isinstance(outcome.error, ConflictError)
        assert outcome.error.code == "role_mismatch"
        assert outcome.credential is None
        assert ctx.pending_cookie_ops == []
        assert store.update_calls == calls_before
        relation = store.get_relation(first.relation_id)
        assert relation.session_ids == ["s1"]
        assert relation.role.name == "editor"

    def test_signup_on_existing_relation_appends_session(self) -> None:
        store = FakePlatformStore()
        rbac = PlatformRBACConfig(enabled=True, roles=[{"name": "editor"}])
        orch = _orchestrator(store, rbac)
        first = orch.authenticate_relation(_identity(), SessionContext(), session_id="s1", requested_role="editor")
        again = orch.authenticate_relation(_identity(), SessionContext(), session_id="s2", requested_role="editor")
        assert again.status is Outcome.AUTHENTICATED
        assert again.relation_id == first.relation_id
        assert len(store.relations) == 1
        assert store.get_relation(first.relation_id).session_ids == ["s1", "s2"]
        assert "reconciling" in again.trail
