"""
auth/service.py -- Authentication facade.

Orchestrates the identity store, the credential hasher, the OAuth resolver and
the session store. Route handlers call this class and nothing below it; the
class itself knows nothing about requests, responses or cookies. It returns
AuthResult / SessionTokens and the API layer turns those into cookies.

Session issuance policy:
  register    -- signup succeeds even if issuance fails; tokens=None.
  oauth_login -- the identity is resolved even if issuance fails; tokens=None.
  login       -- issuance failure propagates: a password login that cannot
                 hand out a session has achieved nothing.

Security notes:
  login() always runs bcrypt, against a dummy digest when the email is
  unknown or the account has no password, so timing does not reveal which
  emails exist. Every failure is the same InvalidCredentials.

  current_user() separates "refresh and retry" (TokenExpired) from "log in
  again" (TokenInvalid) by whether the caller holds a refresh token. The
  session store cannot make that distinction on its own.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from requests.adapters import BaseAdapter
from sqlalchemy.engine import Engine

from auth.errors import AuthError, EmailTaken, InvalidCredentials, TokenExpired, TokenInvalid
from auth.federation import OAuthResolver
from auth.models import AuthResult, SessionTokens, User
from auth.oauth import build_providers, get_enabled_providers
from auth.passwords import CredentialHasher
from auth.sessions import SessionStore
from auth.store import UserStore, open_engine

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tripplanner.auth")


class AuthService:
    """Signup, password login, OAuth login, refresh and logout.

    Usage:
        service = AuthService(users, sessions, hasher, resolver,
                              access_ttl=timedelta(hours=1), refresh_ttl=timedelta(days=7))
        result = service.register("Ann", "ann@x.com", "Str0ng!pw")
        result.tokens.access_token   # set as the access_token cookie
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        hasher: CredentialHasher,
        resolver: OAuthResolver,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        if access_ttl >= refresh_ttl:
            raise ValueError("access_ttl must be shorter than refresh_ttl")
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.resolver = resolver
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str | None = None) -> AuthResult:
        """Create a local user and log it in.

        Raises EmailTaken if the email is already registered. The returned
        result carries tokens=None when the user was created but session
        issuance failed.
        """
        if self.users.get_by_email(email) is not None:
            raise EmailTaken(email)
        hashed = self.hasher.hash(password) if password else None
        user = self.users.create_user(User(name=name, email=email, hashed_password=hashed))
        logger.info("Registered user %s", user.id)
        return AuthResult(user=user, tokens=self._issue_best_effort(user))

    def login(self, email: str, password: str) -> AuthResult:
        """Verify email and password and open a session.

        Raises InvalidCredentials for an unknown email, an account without a
        password, and a wrong password alike.
        """
        user = self.users.get_by_email(email)
        if user is None or user.hashed_password is None:
            self.hasher.dummy_verify(password)
            raise InvalidCredentials()
        if not self.hasher.verify(user.hashed_password, password):
            logger.info("Failed password login for user %s", user.id)
            raise InvalidCredentials()
        return AuthResult(user=user, tokens=self._issue(user))

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def enabled_providers(self) -> list[dict]:
        return get_enabled_providers(self.resolver.providers)

    def oauth_authorization_url(self, provider: str, redirect_uri: str, return_to: str) -> str:
        return self.resolver.authorization_url(provider, redirect_uri, return_to)

    def oauth_login(self, provider: str, code: str, redirect_uri: str) -> AuthResult:
        """Resolve the provider identity and open a session for the local user."""
        user, path = self.resolver.authenticate(provider, code, redirect_uri)
        return AuthResult(user=user, tokens=self._issue_best_effort(user), oauth_path=path)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh_access(self, refresh_token: str) -> SessionTokens:
        """Mint a new access token from a live refresh token.

        The refresh token itself is not rotated; the returned SessionTokens
        carries only the access half.
        """
        session = self.sessions.validate_refresh(refresh_token)
        session, access_token = self.sessions.rotate_access(session.id)
        return SessionTokens(access_token=access_token, access_expiry=session.access_expiry)

    def current_user(self, access_token: str | None, refresh_token: str | None = None) -> User:
        """Return the user behind a live access token.

        Raises TokenExpired when the access token is missing or dead but a
        refresh token was presented, TokenInvalid otherwise.
        """
        try:
            if not access_token:
                raise TokenInvalid()
            session = self.sessions.validate_access(access_token)
        except TokenInvalid:
            if refresh_token:
                raise TokenExpired() from None
            raise
        user = self.users.get_by_id(session.user_id)
        if user is None:
            raise TokenInvalid()
        return user

    def logout(self, access_token: str | None = None, refresh_token: str | None = None) -> None:
        """End the session identified by either token. Unknown tokens are ignored."""
        if access_token:
            self.sessions.revoke_by_access_token(access_token)
        if refresh_token:
            self.sessions.revoke_by_refresh_token(refresh_token)

    def logout_everywhere(self, user_id: str) -> int:
        return self.sessions.revoke_all(user_id)

    def _issue(self, user: User) -> SessionTokens:
        session, access_token, refresh_token = self.sessions.issue(user.id, self.access_ttl, self.refresh_ttl)
        return SessionTokens(
            access_token=access_token,
            access_expiry=session.access_expiry,
            refresh_token=refresh_token,
            refresh_expiry=session.refresh_expiry,
        )

    def _issue_best_effort(self, user: User) -> SessionTokens | None:
        try:
            return self._issue(user)
        except AuthError:
            logger.exception("Session issuance failed for user %s; continuing without a session", user.id)
            return None


def build_auth_service(cfg: Settings, engine: Engine | None = None, adapter: BaseAdapter | None = None) -> AuthService:
    """Wire stores, hasher, providers and resolver from settings.

    engine defaults to a new engine on cfg.database_url. Tests pass their own
    in-memory engine and, for provider calls, a requests transport adapter.
    """
    engine = engine if engine is not None else open_engine(cfg.database_url)
    access_ttl = timedelta(seconds=cfg.access_token_ttl_seconds)
    users = UserStore(engine)
    return AuthService(
        users=users,
        sessions=SessionStore(engine, rotation_ttl=access_ttl),
        hasher=CredentialHasher(rounds=cfg.bcrypt_rounds),
        resolver=OAuthResolver(build_providers(cfg, adapter=adapter), users),
        access_ttl=access_ttl,
        refresh_ttl=timedelta(seconds=cfg.refresh_token_ttl_seconds),
    )
