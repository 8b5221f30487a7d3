"""
auth/store.py -- SQLAlchemy Core persistence for principals.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_principal is the mapper. The resolver and routes never touch SQL.

Invariants enforced by the schema, not by code:
  UNIQUE(principals.email) -- the only cross-request synchronization this
      service relies on. Two concurrent sign-ups for one email: the second
      INSERT raises IntegrityError, which the resolver maps to a conflict.
  UNIQUE(social_identities.principal_id, provider) -- first-link-wins. A
      second link for the same provider loses at INSERT time, so a racing
      callback cannot overwrite the stored subject either.

All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import DEFAULT_ROLE, Principal, SocialIdentity

_DEFAULT_DB_URL = "sqlite:///authgate.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for social-only principals
    Column("role", String(64), nullable=False, server_default=DEFAULT_ROLE),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_social_identities = Table(
    "social_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, ForeignKey("principals.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(32), nullable=False),  # "google", "github", ...
    Column("subject", Text, nullable=False),  # provider's user id
    Column("display_name", Text),
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("principal_id", "provider", name="uq_social_principal_provider"),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """WAL for concurrent readers; foreign keys are off by default in SQLite."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal entities and their linked social identities.

    Usage:
        store = PrincipalStore("sqlite:///:memory:")
        pid = store.create_principal(Principal(email="a@example.com", role="admin"))
        principal = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a principal (and any social identities) and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Principal row and identities are written in one transaction.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _principals.insert().values(
                    email=principal.email,
                    password_hash=principal.password_hash,
                    role=principal.role,
                    created_at=now,
                    updated_at=now,
                )
            )
            principal_id = result.inserted_primary_key[0]
            for provider, identity in principal.social.items():
                conn.execute(
                    _social_identities.insert().values(
                        principal_id=principal_id,
                        provider=provider,
                        subject=identity.subject,
                        display_name=identity.display_name,
                        linked_at=now,
                    )
                )
        return principal_id

    def get_by_email(self, email: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.email == email)).fetchone()
            if row is None:
                return None
            return _row_to_principal(row, self._load_social(conn, row.id))

    def get_by_id(self, principal_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
            if row is None:
                return None
            return _row_to_principal(row, self._load_social(conn, row.id))

    def count_by_email(self, email: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_principals).where(_principals.c.email == email)
            ).scalar_one()

    def update_role(self, principal_id: int, role: str) -> bool:
        """Set the principal's role. Returns False if principal_id was not found."""
        return self._update(principal_id, role=role)

    def _update(self, principal_id: int, **fields) -> bool:
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Social identities
    # ------------------------------------------------------------------

    def link_social(self, principal_id: int, provider: str, identity: SocialIdentity) -> bool:
        """Link a provider identity. Returns False if one was already linked (kept as-is)."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _social_identities.insert().values(
                        principal_id=principal_id,
                        provider=provider,
                        subject=identity.subject,
                        display_name=identity.display_name,
                        linked_at=_now_iso(),
                    )
                )
                conn.execute(
                    _principals.update().where(_principals.c.id == principal_id).values(updated_at=_now_iso())
                )
        except IntegrityError:
            return False
        return True

    def _load_social(self, conn, principal_id: int) -> dict[str, SocialIdentity]:
        rows = conn.execute(
            _social_identities.select().where(_social_identities.c.principal_id == principal_id)
        ).fetchall()
        return {
            r.provider: SocialIdentity(subject=r.subject, display_name=r.display_name or "", linked_at=r.linked_at)
            for r in rows
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_principal(row, social: dict[str, SocialIdentity]) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        social=social,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
