"""
auth/store.py -- SQLAlchemy Core schema and the identity store.

Pattern: Repository + Data Mapper.
UserStore is the repository for users and their linked OAuth accounts;
_row_to_user / _row_to_oauth_account are the mappers. The session table is
declared here too (one MetaData, one create_all) but owned by
auth/sessions.py. Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) is enforced by the database. create_user() translates the
  IntegrityError into EmailTaken so a concurrent signup that slips past the
  facade's existence check still gets the right error.

  oauth_accounts has PRIMARY KEY (provider_id, provider_user_id). Linking uses
  INSERT ... ON CONFLICT so two concurrent first logins for the same provider
  identity cannot create two links; the loser reads back the winner's owner.

Timestamps are stored as UTC ISO-8601 text with fixed microsecond precision.
Fixed width keeps lexicographic order equal to chronological order, which
the session expiry checks in SQL rely on.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import EmailTaken, StoreError
from auth.models import OAuthAccount, ProviderToken, User

logger = logging.getLogger("tripplanner.auth.store")

Clock = Callable[[], datetime]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, server_default=""),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("access_token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("refresh_token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("access_expires_at", String(32), nullable=False),
    Column("refresh_expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_sessions_user_id", "user_id"),
    Index("idx_sessions_refresh_expires_at", "refresh_expires_at"),
)

oauth_accounts = Table(
    "oauth_accounts",
    metadata,
    Column("provider_id", String(100), primary_key=True),
    Column("provider_user_id", String(100), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("idx_oauth_accounts_user_id", "user_id"),
)

_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Without foreign_keys=ON, sessions for a
    non-existent user would be accepted silently.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def open_engine(db_url: str) -> Engine:
    """Create the engine, install SQLite pragmas, and create missing tables.

    Usage:
        engine = open_engine("sqlite:///:memory:")
        users = UserStore(engine)
        sessions = SessionStore(engine)
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as StoreError, keeping the cause chained."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Store operation failed: %s (%s)", action, type(exc).__name__)
        raise StoreError(f"Could not {action}.") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OAuthAccount entities.

    Usage:
        store = UserStore(open_engine(db_url))
        user = store.create_user(User(name="Ann", email="ann@x.com", hashed_password=digest))
        store.get_by_email("ann@x.com")
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises EmailTaken if the email already exists (including the case where
        a concurrent request inserted it after the caller's existence check).
        """
        now = to_iso(self._clock())
        user_id = str(uuid.uuid4())
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        name=user.name,
                        email=user.email,
                        hashed_password=user.hashed_password,
                        email_verified=1 if user.email_verified else 0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise EmailTaken(user.email) from exc
        except SQLAlchemyError as exc:
            raise StoreError("Could not create user.") from exc
        return User(
            id=user_id,
            name=user.name,
            email=user.email,
            hashed_password=user.hashed_password,
            email_verified=user.email_verified,
            created_at=from_iso(now),
            updated_at=from_iso(now),
        )

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with translate_errors("load user"), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with translate_errors("load user"), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_email_verified(self, user_id: str, verified: bool = True) -> bool:
        """Set the verification flag. Returns False if user_id was not found."""
        with translate_errors("update user"), self.engine.connect() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(email_verified=1 if verified else 0, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OAuth accounts
    # ------------------------------------------------------------------

    def get_oauth_account(self, provider_id: str, provider_user_id: str) -> OAuthAccount | None:
        """Look up the link for a provider identity. Returns None if never linked."""
        with translate_errors("load OAuth account"), self.engine.connect() as conn:
            row = conn.execute(
                oauth_accounts.select().where(
                    (oauth_accounts.c.provider_id == provider_id)
                    & (oauth_accounts.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_oauth_account(row) if row is not None else None

    def list_oauth_accounts(self, user_id: str) -> list[OAuthAccount]:
        """Return every provider identity linked to a user, oldest first."""
        with translate_errors("list OAuth accounts"), self.engine.connect() as conn:
            rows = conn.execute(
                oauth_accounts.select()
                .where(oauth_accounts.c.user_id == user_id)
                .order_by(oauth_accounts.c.created_at)
            ).fetchall()
        return [_row_to_oauth_account(r) for r in rows]

    def link_oauth_account(self, account: OAuthAccount) -> str:
        """Create the link for a provider identity and return its owner's user id.

        INSERT ... ON CONFLICT (provider_id, provider_user_id) DO UPDATE refreshes
        the provider tokens but never reassigns user_id. If another request
        linked the same identity first, the returned id is that request's user,
        not account.user_id -- callers must use the return value.
        """
        insert = _UPSERT_INSERTS.get(self.engine.dialect.name)
        if insert is None:
            raise StoreError(f"Unsupported database dialect: {self.engine.dialect.name}")
        now = to_iso(self._clock())
        expires_at = to_iso(account.expires_at) if account.expires_at else None
        stmt = insert(oauth_accounts).values(
            provider_id=account.provider_id,
            provider_user_id=account.provider_user_id,
            user_id=account.user_id,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[oauth_accounts.c.provider_id, oauth_accounts.c.provider_user_id],
            set_={
                "access_token": stmt.excluded.access_token,
                "refresh_token": stmt.excluded.refresh_token,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with translate_errors("link OAuth account"), self.engine.begin() as conn:
            conn.execute(stmt)
            owner = conn.execute(
                select(oauth_accounts.c.user_id).where(
                    (oauth_accounts.c.provider_id == account.provider_id)
                    & (oauth_accounts.c.provider_user_id == account.provider_user_id)
                )
            ).scalar_one()
        return owner

    def update_oauth_tokens(self, provider_id: str, provider_user_id: str, token: ProviderToken) -> bool:
        """Replace the stored provider tokens for an existing link.

        A refresh token is only overwritten when the provider sent a new one;
        Google omits it on repeat consents. Returns False if no link exists.
        """
        values: dict = {
            "access_token": token.access_token,
            "expires_at": to_iso(token.expires_at) if token.expires_at else None,
            "updated_at": to_iso(self._clock()),
        }
        if token.refresh_token:
            values["refresh_token"] = token.refresh_token
        with translate_errors("update OAuth tokens"), self.engine.connect() as conn:
            result = conn.execute(
                oauth_accounts.update()
                .where(
                    (oauth_accounts.c.provider_id == provider_id)
                    & (oauth_accounts.c.provider_user_id == provider_user_id)
                )
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        email_verified=bool(row.email_verified),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_oauth_account(row) -> OAuthAccount:
    return OAuthAccount(
        provider_id=row.provider_id,
        provider_user_id=row.provider_user_id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
