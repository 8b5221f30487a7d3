"""
auth/orchestrator.py -- Callback orchestrator: identity reconciliation and
credential delivery.

Given an identity a method facade has already verified, one run walks:

    VERIFYING_IDENTITY -> RESOLVING_ACCOUNT -> {REGISTERING | RECONCILING}
        -> GATING_ROLE -> {ROLE_PENDING | ISSUING_CREDENTIAL} -> DONE

REJECTED is reachable from every state and is terminal: the first AuthError
ends the run, queued cookie writes are discarded, and the outcome carries the
error instead of a credential. Nothing after a rejection executes.

Two variants share the machine:
  authenticate()           -- local principals (password, social callback).
  authenticate_relation()  -- delegated platform: user-project relations on
                              the remote store, credential bound to the
                              relation id and the platform session id.

Ordering rule: account resolution and role gating always precede credential
issuance. Role validation happens before any account mutation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.errors import AuthenticationError, AuthError, AuthorizationError, ConflictError, NotFoundError, UpstreamError
from auth.ledger import SessionLedger
from auth.models import AuthOutcome, Outcome, Principal, VerifiedIdentity
from auth.platform import PlatformStore
from auth.resolver import AccountResolver
from auth.roles import PlatformRoleGate, RoleChannel, RoleGate
from auth.session import SessionContext
from auth.tokens import ApiKeyCodec, CredentialCodec

logger = logging.getLogger("authgate.auth.orchestrator")

SIGNUP_DISABLED_MESSAGE = "Signup is disabled. Please contact the administrator to get access."


class State(str, Enum):
    VERIFYING_IDENTITY = "verifying-identity"
    RESOLVING_ACCOUNT = "resolving-account"
    REGISTERING = "registering"
    RECONCILING = "reconciling"
    GATING_ROLE = "gating-role"
    ROLE_PENDING = "role-pending"
    ISSUING_CREDENTIAL = "issuing-credential"
    DONE = "done"
    REJECTED = "rejected"


class _Run:
    """State trail of one orchestration run."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.trail: list[str] = []

    def enter(self, state: State) -> None:
        if self.trail and self.trail[-1] in (State.DONE.value, State.REJECTED.value):
            raise RuntimeError(f"{self.kind}: run already terminated in {self.trail[-1]}")
        self.trail.append(state.value)

    @property
    def state(self) -> str | None:
        return self.trail[-1] if self.trail else None


@dataclass
class PlatformBinding:
    """Everything the delegated-platform variant needs besides the codec."""

    store: PlatformStore
    ledger: SessionLedger
    role_gate: PlatformRoleGate
    project_id: str
    signup_enabled: bool = True


class CallbackOrchestrator:
    def __init__(
        self,
        resolver: AccountResolver,
        role_gate: RoleGate,
        codec: CredentialCodec | None = None,
        api_key_codec: ApiKeyCodec | None = None,
        signup_enabled: bool = True,
        platform: PlatformBinding | None = None,
    ) -> None:
        self.resolver = resolver
        self.role_gate = role_gate
        self.codec = codec
        self.api_key_codec = api_key_codec
        self.signup_enabled = signup_enabled
        self.platform = platform

    # ------------------------------------------------------------------
    # Local principals
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identity: VerifiedIdentity,
        ctx: SessionContext,
        *,
        channel: RoleChannel = RoleChannel.INLINE,
        requested_role: str | None = None,
        allow_signup: bool = True,
        existing_required: bool = False,
        password_hash: str | None = None,
        role_redirect_url: str | None = None,
    ) -> AuthOutcome:
        """Reconcile a verified identity with the local account store.

        password_hash is set only by password sign-up. existing_required is
        set by sign-in paths that must never create an account.
        """
        run = _Run("authenticate")
        try:
            run.enter(State.VERIFYING_IDENTITY)
            if not identity.email:
                raise AuthenticationError("No verifiable identity.", code="no_identity")

            run.enter(State.RESOLVING_ACCOUNT)
            principal = self.resolver.resolve(identity.email)

            if principal is None:
                if existing_required:
                    raise AuthenticationError("Invalid Email or Password.", code="bad_credentials")
                run.enter(State.REGISTERING)
                self._check_signup(allow_signup)
                if (
                    channel is RoleChannel.DEFERRED
                    and self.role_gate.enabled
                    and not requested_role
                    and not role_redirect_url
                ):
                    raise AuthorizationError(
                        "RBAC is enabled but no role redirect URL is configured for this provider.",
                        code="rbac_misconfigured",
                    )
                decision = self.role_gate.check(requested_role, channel)
                if identity.provider:
                    principal = self.resolver.create_from_external(identity, decision.role)
                else:
                    principal = self.resolver.create_local(identity.email, decision.role, password_hash)
                status = Outcome.REGISTERED
                pending = decision.pending
            else:
                run.enter(State.RECONCILING)
                principal, status = self._reconcile(principal, identity, requested_role, password_hash)
                pending = False

            run.enter(State.GATING_ROLE)
            if pending:
                run.enter(State.ROLE_PENDING)
                ctx.begin_pending_role(principal.id, identity.provider or "")
                logger.info("Principal %s registered via %s; role pending", principal.id, identity.provider)
                return AuthOutcome(
                    status=Outcome.ROLE_PENDING,
                    role=principal.role,
                    principal_id=principal.id,
                    redirect_url=role_redirect_url,
                    trail=run.trail,
                )

            run.enter(State.ISSUING_CREDENTIAL)
            outcome = self._issue_for_principal(principal, ctx, status)
            run.enter(State.DONE)
            outcome.trail = run.trail
            logger.info("Principal %s %s (role=%s)", principal.id, status.value, principal.role)
            return outcome
        except AuthError as exc:
            return self._reject(run, ctx, exc)
        except Exception:
            logger.exception("Unexpected failure while authenticating %s identity", identity.provider or "local")
            return self._reject(run, ctx, UpstreamError("Authentication failed."))

    def _check_signup(self, allow_signup: bool) -> None:
        if not (self.signup_enabled and allow_signup):
            raise AuthorizationError(SIGNUP_DISABLED_MESSAGE, code="signup_disabled")

    def _reconcile(
        self,
        principal: Principal,
        identity: VerifiedIdentity,
        requested_role: str | None,
        password_hash: str | None,
    ) -> tuple[Principal, Outcome]:
        if password_hash is not None:
            # Password sign-up for an email that already exists, whether it
            # came from a password or a provider. Role mismatch is reported first.
            if self.role_gate.enabled:
                self.role_gate.validate(requested_role)
            self.resolver.check_role(principal, requested_role)
            raise ConflictError("Email already registered.", code="email_taken")

        if requested_role and self.role_gate.enabled:
            self.role_gate.validate(requested_role)
        self.resolver.check_role(principal, requested_role)
        if identity.provider:
            principal = self.resolver.merge_external_identity(
                principal, identity.provider, identity.external_ref or "", identity.display_name
            )
        return principal, Outcome.AUTHENTICATED

    def _issue_for_principal(self, principal: Principal, ctx: SessionContext, status: Outcome) -> AuthOutcome:
        outcome = AuthOutcome(status=status, role=principal.role, principal_id=principal.id)
        if self.codec is not None:
            outcome.credential = self.codec.issue({"sub": str(principal.id), "role": principal.role}, ctx)
        if self.api_key_codec is not None:
            outcome.api_key = self.api_key_codec.issue()
        return outcome

    # ------------------------------------------------------------------
    # Deferred role assignment
    # ------------------------------------------------------------------

    def assign_role(self, ctx: SessionContext, role: str | None, provider: str | None = None) -> AuthOutcome:
        """Complete a deferred sign-up. The pending assignment is consumed once."""
        run = _Run("assign_role")
        try:
            run.enter(State.GATING_ROLE)
            pending = ctx.pending_role()
            if pending is None or (provider is not None and pending.provider != provider):
                raise NotFoundError("No pending role assignment in this session.", code="no_pending_role")
            # Validate before consuming so a typo does not burn the assignment.
            role = self.role_gate.validate(role)
            ctx.consume_pending_role(provider)
            principal = self.resolver.assign_role(pending.principal_id, role)

            run.enter(State.ISSUING_CREDENTIAL)
            outcome = self._issue_for_principal(principal, ctx, Outcome.ROLE_ASSIGNED)
            run.enter(State.DONE)
            outcome.trail = run.trail
            logger.info("Principal %s assigned role %s", principal.id, role)
            return outcome
        except AuthError as exc:
            return self._reject(run, ctx, exc)
        except Exception:
            logger.exception("Unexpected failure during role assignment")
            return self._reject(run, ctx, UpstreamError("Role assignment failed."))

    # ------------------------------------------------------------------
    # Delegated platform
    # ------------------------------------------------------------------

    def authenticate_relation(
        self,
        identity: VerifiedIdentity,
        ctx: SessionContext,
        *,
        session_id: str,
        requested_role: str | None = None,
        allow_signup: bool = True,
        existing_required: bool = False,
    ) -> AuthOutcome:
        """Reconcile a platform-verified identity with its user-project relation."""
        run = _Run("authenticate_relation")
        try:
            if self.platform is None:
                raise AuthorizationError("Delegated platform is not enabled.", code="platform_disabled")
            platform = self.platform

            run.enter(State.VERIFYING_IDENTITY)
            if not identity.email or not session_id:
                raise AuthenticationError("No verifiable identity.", code="no_identity")

            run.enter(State.RESOLVING_ACCOUNT)
            user = platform.store.find_user_by_email(identity.email)
            relation = None
            if user is not None:
                relation = platform.store.find_relation(str(user["id"]), platform.project_id)
            elif existing_required:
                raise NotFoundError("User not found", code="user_not_found")

            if relation is None:
                if existing_required:
                    raise NotFoundError("User not found in project", code="relation_not_found")
                run.enter(State.REGISTERING)
                if not (platform.signup_enabled and allow_signup):
                    raise AuthorizationError(SIGNUP_DISABLED_MESSAGE, code="signup_disabled")
                role = platform.role_gate.check(requested_role)
                if user is None:
                    user = platform.store.create_user(identity.email, identity.first_name, identity.last_name)
                relation = platform.store.create_relation(
                    str(user["id"]),
                    platform.project_id,
                    role,
                    [session_id],
                    platform_user_id=identity.external_ref,
                )
                status = Outcome.REGISTERED
            else:
                run.enter(State.RECONCILING)
                if platform.role_gate.enabled and requested_role and requested_role != relation.role.name:
                    raise ConflictError("Email already registered with a different role.", code="role_mismatch")
                relation = platform.ledger.append_session(relation.id, session_id)
                status = Outcome.AUTHENTICATED

            run.enter(State.GATING_ROLE)
            run.enter(State.ISSUING_CREDENTIAL)
            outcome = AuthOutcome(
                status=status,
                role=relation.role.name,
                relation_id=relation.id,
                session_id=session_id,
            )
            if self.codec is not None:
                outcome.credential = self.codec.issue({"up_id": relation.id, "session_id": session_id}, ctx)
            run.enter(State.DONE)
            outcome.trail = run.trail
            logger.info("Relation %s %s (role=%s)", relation.id, status.value, relation.role.name)
            return outcome
        except AuthError as exc:
            return self._reject(run, ctx, exc)
        except Exception:
            logger.exception("Unexpected failure while authenticating platform identity")
            return self._reject(run, ctx, UpstreamError("Authentication failed."))

    # ------------------------------------------------------------------
    # Sign-out and rejection
    # ------------------------------------------------------------------

    def sign_out(self, ctx: SessionContext) -> AuthOutcome:
        # API key credentials are static; there is nothing to revoke for them.
        if self.codec is not None:
            self.codec.revoke(ctx)
        return AuthOutcome(status=Outcome.SIGNED_OUT)

    def reject(self, ctx: SessionContext, error: AuthError) -> AuthOutcome:
        """Reject before a run starts (facade-level failures)."""
        return self._reject(_Run("facade"), ctx, error)

    def _reject(self, run: _Run, ctx: SessionContext, error: AuthError) -> AuthOutcome:
        failed_in = run.state
        run.trail.append(State.REJECTED.value)
        ctx.discard_delivery()
        logger.warning("%s rejected in %s: %s %s", run.kind, failed_in, error.status, error.code)
        return AuthOutcome(status=Outcome.REJECTED, error=error, trail=run.trail)
