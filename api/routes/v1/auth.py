"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register               -- create local user; sets session cookies
  POST /api/v1/auth/login                  -- password login; sets session cookies
  POST /api/v1/auth/refresh                -- new access token from the refresh cookie
  POST /api/v1/auth/logout                 -- end the current session; clears cookies
  POST /api/v1/auth/logout-all             -- end every session of the user (requires auth)
  GET  /api/v1/auth/me                     -- current user (requires auth)
  GET  /api/v1/auth/providers              -- configured OAuth providers (public)
  GET  /api/v1/auth/{provider}/url         -- consent URL for provider (public)
  GET  /api/v1/auth/{provider}/callback    -- provider redirect target; 302 to frontend

Security:
  Login and register are rate-limited per IP (LOGIN_RATE_LIMIT).
  Cache-Control: no-store on every response that can carry session cookies.
  OAuth return paths are same-site relative paths only (open-redirect guard).
  Domain errors (auth/errors.py) are mapped to HTTP by the handler in api/main.py.
"""

from __future__ import annotations

import logging
from urllib.parse import quote, unquote

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from api.cookies import clear_session_cookies, set_session_cookies
from api.limiter import limiter, login_rate_limit
from api.models import (
    AuthURLResponse,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    OAuthProviderInfo,
    RefreshResponse,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import ACCESS_COOKIE, REFRESH_COOKIE, get_auth_service, get_current_user
from auth.errors import NoEmailAvailable, OAuthExchangeFailed, StoreError
from auth.models import User
from core.config import get_settings

logger = logging.getLogger("tripplanner.api.auth")

# Auth policy:
# - POST /auth/register, /auth/login:       public, rate-limited
# - POST /auth/refresh, /auth/logout:       public -- they act on the cookies presented
# - POST /auth/logout-all, GET /auth/me:    requires auth (get_current_user)
# - GET  /auth/providers, /auth/{p}/url:    public -- the login page calls these
# - GET  /auth/{p}/callback:                public -- the provider redirects here
router = APIRouter()


# ---------------------------------------------------------------------------
# Local accounts
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(login_rate_limit)
def register(request: Request, response: Response, body: RegisterRequest) -> UserResponse:
    """Create a local account and log it in.

    Signup succeeds even when the session cannot be issued; the response then
    carries no cookies and the client falls back to the login form.
    """
    result = get_auth_service(request).register(body.name, body.email, body.password)
    if result.tokens is not None:
        set_session_cookies(response, result.tokens)
    response.headers["Cache-Control"] = "no-store"
    return UserResponse.from_user(result.user)


@router.post("/auth/login", response_model=UserResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> UserResponse:
    """Authenticate with email and password; set session cookies.

    Unknown email and wrong password produce the same 401 invalid_credentials.
    """
    result = get_auth_service(request).login(body.email, body.password)
    set_session_cookies(response, result.tokens)
    response.headers["Cache-Control"] = "no-store"
    return UserResponse.from_user(result.user)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, response: Response) -> RefreshResponse:
    """Rotate the access token using the refresh_token cookie.

    Only the access cookie is rewritten; the refresh cookie keeps its value
    and expiry.
    """
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise HTTPException(
            status_code=401,
            detail={"code": "no_refresh_token", "message": "No refresh token provided."},
        )
    tokens = get_auth_service(request).refresh_access(refresh_token)
    set_session_cookies(response, tokens)
    response.headers["Cache-Control"] = "no-store"
    return RefreshResponse(access_expires_at=tokens.access_expiry)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, response: Response) -> MessageResponse:
    """End the session named by either cookie and clear both cookies.

    Logging out with expired or unknown tokens still succeeds. A store failure
    is logged and the cookies are cleared anyway -- the client is logged out
    from its own point of view either way.
    """
    access_token = request.cookies.get(ACCESS_COOKIE)
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not access_token and not refresh_token:
        return MessageResponse(message="Already logged out.")
    try:
        get_auth_service(request).logout(access_token, refresh_token)
    except StoreError:
        logger.exception("Failed to delete session on logout")
    clear_session_cookies(response)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> LogoutAllResponse:
    """Revoke every session of the current user, including this one."""
    revoked = get_auth_service(request).logout_everywhere(current_user.id)
    clear_session_cookies(response)
    return LogoutAllResponse(sessions_revoked=revoked)


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are configured."""
    return [OAuthProviderInfo(**p) for p in get_auth_service(request).enabled_providers()]


@router.get("/auth/{provider}/url", response_model=AuthURLResponse)
def oauth_url(request: Request, provider: str, returnTo: str = "/") -> AuthURLResponse:  # noqa: N803 -- query param name
    """Return the provider consent URL.

    The post-login return path rides in the OAuth state parameter, URL-escaped.
    The redirect URI is this API's callback route with no query string; the
    provider requires the same value again at code exchange.
    """
    state = quote(_safe_return_path(returnTo), safe="")
    url = get_auth_service(request).oauth_authorization_url(provider, _callback_uri(request, provider), state)
    return AuthURLResponse(url=url)


@router.get("/auth/{provider}/callback", name="oauth_callback")
def oauth_callback(
    request: Request,
    provider: str,
    code: str | None = None,
    state: str | None = None,
) -> RedirectResponse:
    """Finish the OAuth flow and redirect to the frontend.

    Success: 302 to {FRONTEND_URL}/auth/callback?returnTo=<path> with session
    cookies (unless issuance failed, in which case the user is resolved but
    no cookies are set). Provider failures: 302 to {FRONTEND_URL}/auth/error.
    """
    error_url = f"{get_settings().frontend_url}/auth/error?error=oauth_failed"
    if not code:
        logger.warning("OAuth callback for %s without a code", provider)
        return RedirectResponse(error_url, status_code=302)

    return_to = _safe_return_path(unquote(state) if state else None)
    try:
        result = get_auth_service(request).oauth_login(provider, code, _callback_uri(request, provider))
    except (OAuthExchangeFailed, NoEmailAvailable) as exc:
        logger.warning("OAuth callback for %s failed: %s", provider, exc.code)
        return RedirectResponse(error_url, status_code=302)

    frontend = get_settings().frontend_url
    resp = RedirectResponse(f"{frontend}/auth/callback?returnTo={quote(return_to, safe='')}", status_code=302)
    if result.tokens is not None:
        set_session_cookies(resp, result.tokens)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _callback_uri(request: Request, provider: str) -> str:
    """Absolute callback URL (scheme, host, path) with no query string."""
    return str(request.url_for("oauth_callback", provider=provider))


def _safe_return_path(path: str | None) -> str:
    """Return path if it is a same-site relative path, else "/".

    Rejects absolute URLs, protocol-relative "//host" paths and backslash
    variants that some browsers normalize to "//".
    """
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return "/"
    return path
