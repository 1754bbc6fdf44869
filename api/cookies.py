"""
api/cookies.py -- Session cookie placement.

httponly=True: JS cannot read the cookies (XSS mitigation).
samesite: COOKIE_SAMESITE, "lax" by default. The OAuth callback is a top-level
    cross-site navigation from the provider, and "lax" lets the new cookies
    stick on the redirect that follows it.
secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
expires: the session's own expiry, so cookie and server-side session die
    together.
"""

from __future__ import annotations

from fastapi import Response

from auth.dependencies import ACCESS_COOKIE, REFRESH_COOKIE
from auth.models import SessionTokens
from core.config import get_settings


def set_session_cookies(response: Response, tokens: SessionTokens) -> None:
    """Write access_token (and refresh_token, when present) cookies."""
    cfg = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        expires=tokens.access_expiry,
        path="/",
        httponly=True,
        secure=cfg.secure_cookies,
        samesite=cfg.cookie_samesite,
    )
    if tokens.refresh_token and tokens.refresh_expiry:
        response.set_cookie(
            REFRESH_COOKIE,
            value=tokens.refresh_token,
            expires=tokens.refresh_expiry,
            path="/",
            httponly=True,
            secure=cfg.secure_cookies,
            samesite=cfg.cookie_samesite,
        )


def clear_session_cookies(response: Response) -> None:
    cfg = get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", httponly=True, secure=cfg.secure_cookies, samesite=cfg.cookie_samesite)
