"""
auth/oauth.py -- OAuth provider capabilities (GitHub, Google) and their registry.

Each provider is one class exposing the same three operations:
  authorization_url(redirect_uri, state) -- consent URL the browser is sent to
  exchange_code(code, redirect_uri)      -- authorization code -> ProviderToken
  fetch_profile(token)                   -- ProviderToken -> ProviderProfile

The resolver (auth/federation.py) picks a provider from the dict returned by
build_providers() and never branches on provider names itself.

HTTP: authlib's requests-based OAuth2Session. Every outbound call carries the
configured timeout (OAUTH_HTTP_TIMEOUT, default 10s). Client credentials are
sent in the form body (client_secret_post), which both providers accept.

Failure semantics: transport errors, non-2xx responses, provider error
payloads ({"error": ...} with a 200, which GitHub does) and malformed JSON all
surface as OAuthExchangeFailed with the original exception chained. Nothing
is written to the database before both calls succeed.

Only providers with both client ID and secret configured are registered.

Layer rule: no imports from api/. Import from core/ is allowed for typing
only -- settings are passed in, not read at module load.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import requests
from authlib.integrations.requests_client import OAuth2Session, OAuthError
from requests.adapters import BaseAdapter

from auth.errors import NoEmailAvailable, OAuthExchangeFailed
from auth.models import ProviderProfile, ProviderToken
from auth.store import Clock, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tripplanner.auth.oauth")

DEFAULT_TIMEOUT = 10.0

# Exceptions that mean "the provider conversation failed" rather than a bug here.
_EXCHANGE_ERRORS = (requests.RequestException, OAuthError, ValueError, KeyError, TypeError)


class OAuthProvider:
    """Base class: authorization URL and code exchange are standard OAuth 2.0.

    Subclasses set the endpoint attributes and implement fetch_profile().

    adapter: optional requests transport adapter mounted on every session the
    provider opens. Tests use it to answer provider calls without a network.
    """

    name = ""
    label = ""
    authorize_url = ""
    token_url = ""
    scope = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: float = DEFAULT_TIMEOUT,
        adapter: BaseAdapter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._adapter = adapter
        self._clock = clock

    def _session(self, redirect_uri: str | None = None, token: dict | None = None) -> OAuth2Session:
        session = OAuth2Session(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=self.scope,
            redirect_uri=redirect_uri,
            token=token,
        )
        if self._adapter is not None:
            session.mount("https://", self._adapter)
        return session

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        """Return the consent URL. state is passed through for the provider to echo back."""
        with self._session(redirect_uri=redirect_uri) as session:
            url, _ = session.create_authorization_url(self.authorize_url, state=state)
        return url

    def exchange_code(self, code: str, redirect_uri: str) -> ProviderToken:
        """Trade an authorization code for the provider's token set."""
        try:
            with self._session(redirect_uri=redirect_uri) as session:
                token = session.fetch_token(self.token_url, code=code, timeout=self.timeout)
            access_token = token["access_token"]
            if not access_token:
                raise ValueError("empty access_token")
        except _EXCHANGE_ERRORS as exc:
            logger.warning("%s code exchange failed: %s", self.name, type(exc).__name__)
            raise OAuthExchangeFailed(self.name, "code exchange") from exc
        return ProviderToken(
            access_token=access_token,
            refresh_token=token.get("refresh_token") or None,
            expires_at=self._token_expiry(token),
        )

    def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        raise NotImplementedError

    def _token_expiry(self, token: dict):
        expires_in = token.get("expires_in")
        if expires_in:
            return self._clock() + timedelta(seconds=int(expires_in))
        return None

    def _get_json(self, token: ProviderToken, url: str, step: str) -> Any:
        """GET url with the provider token and return the decoded JSON body."""
        try:
            with self._session(token={"access_token": token.access_token, "token_type": "bearer"}) as session:
                resp = session.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except _EXCHANGE_ERRORS as exc:
            logger.warning("%s %s failed: %s", self.name, step, type(exc).__name__)
            raise OAuthExchangeFailed(self.name, step) from exc


class GitHubProvider(OAuthProvider):
    """GitHub OAuth app. Static endpoints, no OIDC discovery.

    GitHub tokens do not expire by default; the stored expiry is a nominal
    24 hours so the column always has a value.
    """

    name = "github"
    label = "GitHub"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    scope = "user:email"
    user_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"

    def _token_expiry(self, token: dict):
        return super()._token_expiry(token) or self._clock() + timedelta(hours=24)

    def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        """Read /user, and /user/emails when the public profile has no email.

        Email selection: the primary+verified entry if one exists, otherwise
        the first listed address. No addresses at all raises NoEmailAvailable.
        GitHub only lists addresses on the account, so the result is treated
        as verified.
        """
        profile = self._get_json(token, self.user_url, "profile fetch")
        try:
            provider_user_id = str(profile["id"])
            email = profile.get("email") or ""
            name = profile.get("name") or profile.get("login") or ""
        except (KeyError, TypeError, AttributeError) as exc:
            raise OAuthExchangeFailed(self.name, "profile fetch") from exc

        if not email:
            email = self._select_email(self._get_json(token, self.emails_url, "email fetch"))
        if not email:
            raise NoEmailAvailable(self.name)

        return ProviderProfile(
            provider_user_id=provider_user_id,
            email=email,
            name=name,
            email_verified=True,
        )

    def _select_email(self, entries: Any) -> str:
        if not isinstance(entries, list):
            raise OAuthExchangeFailed(self.name, "email fetch")
        entries = [e for e in entries if isinstance(e, dict)]
        for entry in entries:
            if entry.get("primary") and entry.get("verified") and entry.get("email"):
                return entry["email"]
        for entry in entries:
            if entry.get("email"):
                return entry["email"]
        return ""


class GoogleProvider(OAuthProvider):
    """Google OAuth 2.0 web client. Profile from the v1 userinfo endpoint."""

    name = "google"
    label = "Google"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    scope = "email profile"
    userinfo_url = "https://www.googleapis.com/oauth2/v1/userinfo"

    def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        info = self._get_json(token, self.userinfo_url, "profile fetch")
        try:
            provider_user_id = str(info["id"])
            email = info.get("email") or ""
            verified = bool(info.get("verified_email", False))
            name = info.get("name") or ""
        except (KeyError, TypeError, AttributeError) as exc:
            raise OAuthExchangeFailed(self.name, "profile fetch") from exc
        if not email:
            raise NoEmailAvailable(self.name)
        return ProviderProfile(
            provider_user_id=provider_user_id,
            email=email,
            name=name,
            email_verified=verified,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_PROVIDER_CLASSES: dict[str, type[OAuthProvider]] = {
    GitHubProvider.name: GitHubProvider,
    GoogleProvider.name: GoogleProvider,
}


def build_providers(cfg: Settings, adapter: BaseAdapter | None = None) -> dict[str, OAuthProvider]:
    """Instantiate every provider whose client ID and secret are both configured."""
    credentials = {
        "github": (cfg.github_client_id, cfg.github_client_secret),
        "google": (cfg.google_client_id, cfg.google_client_secret),
    }
    providers: dict[str, OAuthProvider] = {}
    for name, (client_id, client_secret) in credentials.items():
        if client_id and client_secret:
            providers[name] = _PROVIDER_CLASSES[name](
                client_id,
                client_secret,
                timeout=cfg.oauth_http_timeout,
                adapter=adapter,
            )
            logger.info("%s OAuth provider registered", _PROVIDER_CLASSES[name].label)
    return providers


def get_enabled_providers(providers: dict[str, OAuthProvider]) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for the login page's provider buttons."""
    return [{"name": p.name, "label": p.label} for p in providers.values()]
