"""
tests/conftest.py -- Shared fixtures for the trip planner auth tests.

This module provides:
  - FakeClock: settable clock injected into stores and providers for expiry tests
  - StubAdapter: requests transport adapter that answers GitHub/Google calls
    from canned JSON, so provider code runs end-to-end without a network
  - engine / user_store / session_store / hasher / service: unit-level
    fixtures on a private in-memory SQLite database
  - api_client: TestClient over the real app with a patched lifespan

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment defaults must be set before any api/auth/core import so the
cached Settings singleton sees them.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# Set before importing the app: get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
import requests
from fastapi.testclient import TestClient
from requests.adapters import BaseAdapter

from api.limiter import limiter
from api.main import app
from auth.federation import OAuthResolver
from auth.oauth import GitHubProvider, GoogleProvider
from auth.passwords import CredentialHasher
from auth.service import AuthService, build_auth_service
from auth.sessions import SessionStore
from auth.store import UserStore, open_engine
from core.config import Settings

ACCESS_TTL = timedelta(hours=1)
REFRESH_TTL = timedelta(days=7)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. advance() moves time forward for every holder at once."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubAdapter(BaseAdapter):
    """Answer outbound HTTPS calls from a routing table instead of the network.

    Routes are keyed by (METHOD, url-without-query). A route value is either
    (status, json_body) or an exception instance to raise. Unrouted calls
    raise ConnectionError, the same thing a dead network produces.
    Every request sent is recorded in .calls.
    """

    def __init__(self) -> None:
        super().__init__()
        self.routes: dict[tuple[str, str], object] = {}
        self.calls: list[requests.PreparedRequest] = []

    def add(self, method: str, url: str, body: object, status: int = 200) -> None:
        self.routes[(method.upper(), url)] = body if isinstance(body, Exception) else (status, body)

    def reset(self) -> None:
        self.routes.clear()
        self.calls.clear()

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.calls.append(request)
        route = self.routes.get((request.method, request.url.split("?")[0]))
        if route is None:
            raise requests.ConnectionError(f"no stub for {request.method} {request.url}")
        if isinstance(route, Exception):
            raise route
        status, body = route
        resp = requests.Response()
        resp.status_code = status
        resp.reason = "stub"
        resp._content = json.dumps(body).encode("utf-8")
        resp.encoding = "utf-8"
        resp.headers["Content-Type"] = "application/json"
        resp.url = request.url
        resp.request = request
        return resp

    def close(self) -> None:
        pass

    # -- canned provider conversations ------------------------------------

    def github_identity(
        self,
        provider_user_id: int = 1001,
        email: str | None = "octo@example.com",
        name: str | None = "Octo Cat",
        emails: list | None = None,
    ) -> None:
        """Route a successful GitHub token exchange and profile fetch."""
        self.add(
            "POST",
            GitHubProvider.token_url,
            {"access_token": "gho_stub", "token_type": "bearer", "scope": "user:email"},
        )
        self.add(
            "GET",
            GitHubProvider.user_url,
            {"id": provider_user_id, "login": "octocat", "name": name, "email": email},
        )
        if emails is not None:
            self.add("GET", GitHubProvider.emails_url, emails)

    def google_identity(
        self,
        provider_user_id: str = "g-2002",
        email: str = "traveler@example.com",
        verified: bool = True,
        name: str = "Tess Traveler",
    ) -> None:
        """Route a successful Google token exchange and userinfo fetch."""
        self.add(
            "POST",
            GoogleProvider.token_url,
            {"access_token": "ya29.stub", "token_type": "Bearer", "expires_in": 3599, "refresh_token": "1//stub"},
        )
        self.add(
            "GET",
            GoogleProvider.userinfo_url,
            {"id": provider_user_id, "email": email, "verified_email": verified, "name": name},
        )


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty rate-limit counters."""
    limiter.reset()


@pytest.fixture(scope="session")
def hasher() -> CredentialHasher:
    """Minimum bcrypt cost keeps the suite fast. Shared: the hasher is stateless."""
    return CredentialHasher(rounds=4)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    eng = open_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine, clock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture
def session_store(engine, clock) -> SessionStore:
    return SessionStore(engine, rotation_ttl=ACCESS_TTL, clock=clock)


@pytest.fixture
def adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def providers(adapter, clock) -> dict:
    return {
        "github": GitHubProvider("gh-id", "gh-secret", adapter=adapter, clock=clock),
        "google": GoogleProvider("g-id", "g-secret", adapter=adapter, clock=clock),
    }


@pytest.fixture
def resolver(providers, user_store) -> OAuthResolver:
    return OAuthResolver(providers, user_store)


@pytest.fixture
def service(user_store, session_store, hasher, resolver) -> AuthService:
    return AuthService(
        users=user_store,
        sessions=session_store,
        hasher=hasher,
        resolver=resolver,
        access_ttl=ACCESS_TTL,
        refresh_ttl=REFRESH_TTL,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service into app.state so routes use the isolated test DB
    and the stubbed provider transport. The purge task is a long-sleeping
    coroutine so shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def _api_app(request) -> Generator[tuple[TestClient, StubAdapter, AuthService], None, None]:
    """One app + TestClient per test module, on a module-private shared-memory DB."""
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    engine = open_engine(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    stub = StubAdapter()
    cfg = Settings(
        debug=True,
        bcrypt_rounds=4,
        github_client_id="gh-id",
        github_client_secret="gh-secret",
        google_client_id="g-id",
        google_client_secret="g-secret",
    )
    service = build_auth_service(cfg, engine=engine, adapter=stub)
    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, stub, service

    engine.dispose()


@pytest.fixture
def api_client(_api_app) -> tuple[TestClient, StubAdapter, AuthService]:
    """Yield (client, adapter, service) with an empty cookie jar and no stub routes."""
    client, stub, service = _api_app
    client.cookies.clear()
    stub.reset()
    return client, stub, service
