"""
auth/sessions.py -- Opaque dual-token sessions backed by the sessions table.

Security design decisions:
  Tokens: secrets.token_urlsafe(32) gives 256 bits of entropy per token.
       Access and refresh tokens are generated independently; knowing one
       says nothing about the other.

  Storage: only SHA-256 hex digests are persisted. A plain digest (not
       bcrypt) is enough because the inputs are long random values, and it
       keeps validation an O(1) indexed point read. A leaked sessions table
       yields no usable bearer token.

  Validation: the lookup matches digest AND unexpired in one WHERE clause.
       A wrong token and an expired token both come back as TokenInvalid so
       the response cannot be used as an oracle.

  Rotation: only the access half is replaced. The refresh token is the
       long-lived anchor for the session and keeps its digest and expiry
       until the session is revoked or ages out.

  Logging: plaintext tokens and digests are never logged. Session and user
       ids are.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from datetime import timedelta

from sqlalchemy.engine import Engine

from auth.errors import NotFound, TokenInvalid
from auth.models import Session
from auth.store import Clock, from_iso, sessions, to_iso, translate_errors, utcnow

logger = logging.getLogger("tripplanner.auth.sessions")

DEFAULT_ROTATION_TTL = timedelta(hours=1)


def generate_token() -> str:
    """Return a new URL-safe bearer token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def digest_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a plaintext token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionStore:
    """Issues, validates, rotates and revokes sessions.

    Usage:
        store = SessionStore(engine, rotation_ttl=timedelta(hours=1))
        session, access, refresh = store.issue(user.id, timedelta(hours=1), timedelta(days=7))
        store.validate_access(access)
    """

    def __init__(
        self,
        engine: Engine,
        rotation_ttl: timedelta = DEFAULT_ROTATION_TTL,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self.rotation_ttl = rotation_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user_id: str, access_ttl: timedelta, refresh_ttl: timedelta) -> tuple[Session, str, str]:
        """Create a session for user_id and return it with both plaintext tokens.

        The tokens in the returned tuple are the only copy that will ever exist.
        Raises StoreError if the insert fails, including a foreign key violation
        when user_id does not reference an existing user.
        """
        if access_ttl >= refresh_ttl:
            raise ValueError("access_ttl must be shorter than refresh_ttl")
        access_token = generate_token()
        refresh_token = generate_token()
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token_hash=digest_token(access_token),
            refresh_token_hash=digest_token(refresh_token),
            access_expiry=now + access_ttl,
            refresh_expiry=now + refresh_ttl,
            created_at=now,
        )
        with translate_errors("create session"), self.engine.connect() as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    access_token_hash=session.access_token_hash,
                    refresh_token_hash=session.refresh_token_hash,
                    access_expires_at=to_iso(session.access_expiry),
                    refresh_expires_at=to_iso(session.refresh_expiry),
                    created_at=to_iso(now),
                )
            )
            conn.commit()
        logger.info("Session %s issued for user %s", session.id, user_id)
        return session, access_token, refresh_token

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_access(self, token: str) -> Session:
        """Return the live session whose access token is token, else raise TokenInvalid."""
        return self._find_live(sessions.c.access_token_hash, sessions.c.access_expires_at, token)

    def validate_refresh(self, token: str) -> Session:
        """Return the live session whose refresh token is token, else raise TokenInvalid."""
        return self._find_live(sessions.c.refresh_token_hash, sessions.c.refresh_expires_at, token)

    def _find_live(self, hash_column, expiry_column, token: str) -> Session:
        if not token:
            raise TokenInvalid()
        now = to_iso(self._clock())
        with translate_errors("load session"), self.engine.connect() as conn:
            row = conn.execute(
                sessions.select().where((hash_column == digest_token(token)) & (expiry_column > now))
            ).fetchone()
        if row is None:
            raise TokenInvalid()
        return _row_to_session(row)

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def rotate_access(self, session_id: str) -> tuple[Session, str]:
        """Replace the access token of a session and return it with the new plaintext.

        The new access expiry is now + rotation_ttl, capped one microsecond
        before the refresh expiry so access always expires strictly first. The refresh
        digest and refresh expiry are not touched.

        Raises NotFound if the session no longer exists.
        """
        access_token = generate_token()
        access_hash = digest_token(access_token)
        now = self._clock()
        with translate_errors("rotate session"), self.engine.begin() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
            if row is None:
                raise NotFound("Session not found.")
            refresh_expiry = from_iso(row.refresh_expires_at)
            access_expiry = min(now + self.rotation_ttl, refresh_expiry - timedelta(microseconds=1))
            conn.execute(
                sessions.update()
                .where(sessions.c.id == session_id)
                .values(access_token_hash=access_hash, access_expires_at=to_iso(access_expiry))
            )
        session = _row_to_session(row)
        session.access_token_hash = access_hash
        session.access_expiry = access_expiry
        logger.info("Access token rotated for session %s", session_id)
        return session, access_token

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke_by_access_token(self, token: str) -> int:
        """Delete the session holding this access token. Missing rows are not an error."""
        return self._delete_where(sessions.c.access_token_hash == digest_token(token))

    def revoke_by_refresh_token(self, token: str) -> int:
        """Delete the session holding this refresh token. Missing rows are not an error."""
        return self._delete_where(sessions.c.refresh_token_hash == digest_token(token))

    def revoke_all(self, user_id: str) -> int:
        """Delete every session owned by user_id ("log out everywhere")."""
        removed = self._delete_where(sessions.c.user_id == user_id)
        logger.info("Revoked %d session(s) for user %s", removed, user_id)
        return removed

    def purge_expired(self) -> int:
        """Delete sessions whose refresh token has expired. Returns rows removed.

        Access-expired sessions are kept: their refresh token can still mint a
        new access token.
        """
        removed = self._delete_where(sessions.c.refresh_expires_at <= to_iso(self._clock()))
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed

    def _delete_where(self, condition) -> int:
        with translate_errors("delete session"), self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(condition))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> list[Session]:
        """Return the user's sessions whose refresh token is still valid, newest first."""
        now = to_iso(self._clock())
        with translate_errors("list sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where((sessions.c.user_id == user_id) & (sessions.c.refresh_expires_at > now))
                .order_by(sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        access_token_hash=row.access_token_hash,
        refresh_token_hash=row.refresh_token_hash,
        access_expiry=from_iso(row.access_expires_at),
        refresh_expiry=from_iso(row.refresh_expires_at),
        created_at=from_iso(row.created_at),
    )

