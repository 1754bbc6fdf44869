"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from, in priority order:
  1. The "access_token" cookie -- set by register/login/OAuth callback.
  2. Authorization: Bearer <token> -- non-browser clients.

get_current_user() raises HTTP 401 with one of two codes so the frontend can
pick the right recovery:
  token_expired -- a refresh_token cookie is present; call POST /auth/refresh.
  unauthorized  -- no usable session; send the user to the login page.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because this module is part of the FastAPI dependency
injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenExpired, TokenInvalid
from auth.models import User
from auth.service import AuthService

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService wired into app.state during lifespan startup."""
    return request.app.state.auth


def read_access_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request has no live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    service = get_auth_service(request)
    try:
        return service.current_user(read_access_token(request), request.cookies.get(REFRESH_COOKIE))
    except TokenExpired as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "token_expired", "message": "Access token expired. Refresh the session."},
        ) from exc
    except TokenInvalid as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        ) from exc
