"""
API request and response models for the trip planner auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Password digests and provider tokens exist only on the domain side.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"

# Characters, not bytes. The hasher accepts any length; this only bounds work.
PASSWORD_MAX_LENGTH = 128

# Registration password policy: upper, lower, digit and special character.
_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]"), "Password must contain at least one special character"),
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    password is optional: an account created without one can only sign in
    through a linked OAuth provider. When given it must satisfy the policy.
    name and email are trimmed; the password is taken exactly as sent.
    """

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: Optional[str] = Field(default=None, min_length=8, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("name", "email", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def check_password_policy(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        for pattern, message in _PASSWORD_RULES:
            if not pattern.search(value):
                raise ValueError(message)
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. No policy checks on login.

    email is trimmed the same way as on register so both resolve the same account.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password digest."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    email_verified: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            email_verified=user.email_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh. The token itself travels in the cookie."""

    model_config = ConfigDict(frozen=True)

    message: str = "Access token refreshed."
    access_expires_at: datetime


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out of all sessions."
    sessions_revoked: int


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class AuthURLResponse(BaseModel):
    """Response for GET /api/v1/auth/{provider}/url."""

    model_config = ConfigDict(frozen=True)

    url: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
