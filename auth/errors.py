"""
auth/errors.py -- Exception taxonomy for the auth package.

Every failure the auth layer surfaces is an AuthError subclass so the API
layer can map the whole family to HTTP responses in one exception handler.
Messages are safe to show to clients: they never contain plaintext tokens,
password material, or provider secrets.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by the auth package."""

    code = "auth_error"


class InvalidCredentials(AuthError):
    """Email unknown or password wrong. Deliberately does not say which."""

    code = "invalid_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid email or password.")


class TokenInvalid(AuthError):
    """The presented token matches no live session (wrong, revoked, or expired)."""

    code = "token_invalid"

    def __init__(self, message: str = "Session token is invalid.") -> None:
        super().__init__(message)


class TokenExpired(TokenInvalid):
    """The access token is unusable but a refresh token was presented.

    The session store cannot tell "expired" from "wrong"; the facade raises
    this when the caller still holds a refresh cookie, which tells the client
    to call /auth/refresh instead of sending the user back to the login page.
    """

    code = "token_expired"

    def __init__(self) -> None:
        super().__init__("Access token expired; refresh the session.")


class EmailTaken(AuthError):
    code = "email_taken"

    def __init__(self, email: str) -> None:
        super().__init__("A user with this email already exists.")
        self.email = email


class NoEmailAvailable(AuthError):
    code = "no_email"

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} did not provide an email address for this account.")
        self.provider = provider


class OAuthExchangeFailed(AuthError):
    """Code exchange or profile fetch with the provider failed.

    Wraps transport errors, non-2xx responses, provider error payloads and
    malformed JSON. The original exception is chained via ``raise ... from``.
    """

    code = "oauth_failed"

    def __init__(self, provider: str, step: str) -> None:
        super().__init__(f"{provider} OAuth failed during {step}.")
        self.provider = provider
        self.step = step


class UnknownProvider(AuthError):
    code = "unknown_provider"

    def __init__(self, provider: str) -> None:
        super().__init__(f"OAuth provider {provider!r} is not configured.")
        self.provider = provider


class NotFound(AuthError):
    code = "not_found"


class StoreError(AuthError):
    """A persistence operation failed. The SQLAlchemy error is chained."""

    code = "store_error"


class HashingError(AuthError):
    code = "hashing_error"
