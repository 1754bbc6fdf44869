"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the resolver and the facade do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A local identity.

    hashed_password is None for OAuth-only users -- they authenticate through
    a linked OAuthAccount and have no local password.
    """

    email: str
    name: str = ""
    id: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """A server-side session row.

    Only digests of the two bearer tokens are stored. The plaintext tokens
    exist in memory for the duration of the issuing request and are handed
    to the caller exactly once.
    """

    user_id: str
    access_token_hash: str  # SHA-256 hex of the access token
    refresh_token_hash: str  # SHA-256 hex of the refresh token
    access_expiry: datetime
    refresh_expiry: datetime
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class OAuthAccount:
    """Link between a provider identity and a local user.

    (provider_id, provider_user_id) is the primary key. Provider tokens are
    stored as issued; they are never included in API responses.
    """

    provider_id: str  # "github", "google"
    provider_user_id: str  # provider's stable user ID
    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ProviderToken:
    """Token set returned by a provider's code exchange."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass
class ProviderProfile:
    """Provider-neutral view of the authenticated provider account."""

    provider_user_id: str
    email: str
    name: str = ""
    email_verified: bool = False


@dataclass
class SessionTokens:
    """Plaintext tokens plus their expiries, ready for cookie placement.

    refresh_token / refresh_expiry are None after an access-token rotation:
    the refresh cookie already held by the client stays as it is.
    """

    access_token: str
    access_expiry: datetime
    refresh_token: str | None = None
    refresh_expiry: datetime | None = None


@dataclass
class AuthResult:
    """Outcome of register / login / OAuth login.

    tokens is None when the identity was authenticated or created but session
    issuance failed -- the caller skips setting cookies.
    """

    user: User
    tokens: SessionTokens | None = None
    oauth_path: str | None = None  # "link", "merge", "create" for OAuth logins
