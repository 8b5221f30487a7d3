"""
auth/resolver.py -- Account resolver: find-or-create principals by email.

The resolver owns the account-integrity rules that sit above the store:
  - one principal per email, whichever method authenticates first
    (creation conflicts come back from the store as IntegrityError and
    leave here as ConflictError);
  - first-link-wins for provider sub-identities;
  - under RBAC, a returning principal asserting a different role is a
    conflict, never a silent role change.

Emails are normalized (trimmed, lower-cased) before every lookup and write.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, NotFoundError
from auth.models import Principal, SocialIdentity, VerifiedIdentity
from auth.store import PrincipalStore

logger = logging.getLogger("authgate.auth.resolver")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountResolver:
    def __init__(self, store: PrincipalStore, rbac_enabled: bool = False) -> None:
        self.store = store
        self.rbac_enabled = rbac_enabled

    def resolve(self, email: str) -> Principal | None:
        return self.store.get_by_email(normalize_email(email))

    def _create(self, principal: Principal) -> Principal:
        try:
            principal_id = self.store.create_principal(principal)
        except IntegrityError as exc:
            # A concurrent request created the same email first.
            raise ConflictError("Email already registered.", code="email_taken") from exc
        created = self.store.get_by_id(principal_id)
        if created is None:
            raise NotFoundError("Principal not found after write.")
        logger.info("Principal %s created (role=%s)", principal_id, created.role)
        return created

    def create_local(self, email: str, role: str, password_hash: str | None = None) -> Principal:
        return self._create(Principal(email=normalize_email(email), role=role, password_hash=password_hash))

    def create_from_external(self, identity: VerifiedIdentity, role: str) -> Principal:
        social = {}
        if identity.provider:
            social[identity.provider] = SocialIdentity(
                subject=identity.external_ref or "",
                display_name=identity.display_name,
            )
        return self._create(Principal(email=normalize_email(identity.email), role=role, social=social))

    def merge_external_identity(
        self, principal: Principal, provider: str, provider_id: str, display_name: str = ""
    ) -> Principal:
        """Link a provider sub-identity unless one is already linked (first-link-wins)."""
        existing = principal.social.get(provider)
        if existing is not None:
            if existing.subject != provider_id:
                logger.info(
                    "Principal %s: %s subject differs from linked one; keeping first link",
                    principal.id,
                    provider,
                )
            return principal
        if self.store.link_social(principal.id, provider, SocialIdentity(provider_id, display_name)):
            logger.info("Principal %s linked to %s", principal.id, provider)
        return self.store.get_by_id(principal.id) or principal

    def check_role(self, principal: Principal, asserted_role: str | None) -> None:
        if self.rbac_enabled and asserted_role and asserted_role != principal.role:
            raise ConflictError("Email already registered with a different role.", code="role_mismatch")

    def assign_role(self, principal_id: int, role: str) -> Principal:
        if not self.store.update_role(principal_id, role):
            raise NotFoundError("User not found for role assignment", code="principal_not_found")
        principal = self.store.get_by_id(principal_id)
        if principal is None:
            raise NotFoundError("User not found for role assignment", code="principal_not_found")
        return principal
