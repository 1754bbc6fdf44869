"""Unit tests for auth/federation.py -- provider identity -> local user.

Covers:
- create path: new password-less user, link recorded, email verified
- link path: repeat logins resolve to the same user (idempotency)
- merge path: provider email matching an existing password user attaches
  the identity to that user without touching the password
- one user can hold identities from several providers
- failures leave no user and no link behind
- the concurrent-link race resolves to the first owner
- unknown providers are rejected
"""

import pytest

from auth.errors import NoEmailAvailable, OAuthExchangeFailed, StoreError, UnknownProvider
from auth.federation import CREATE, LINK, MERGE, OAuthResolver
from auth.models import OAuthAccount, User
from auth.oauth import GitHubProvider

REDIRECT = "http://testserver/api/v1/auth/github/callback"


class TestResolutionPaths:
    def test_first_login_creates_user(self, resolver, adapter, user_store) -> None:
        adapter.github_identity(provider_user_id=7, email="new@example.com", name="New Person")

        user, path = resolver.authenticate("github", "code", REDIRECT)

        assert path == CREATE
        assert user.email == "new@example.com"
        assert user.name == "New Person"
        assert user.hashed_password is None
        assert user.email_verified is True
        account = user_store.get_oauth_account("github", "7")
        assert account.user_id == user.id
        assert account.access_token == "gho_stub"

    def test_repeat_login_is_idempotent(self, resolver, adapter, user_store) -> None:
        adapter.github_identity(provider_user_id=7, email="new@example.com")
        first, _ = resolver.authenticate("github", "code-1", REDIRECT)

        second, path = resolver.authenticate("github", "code-2", REDIRECT)

        assert path == LINK
        assert second.id == first.id
        assert len(user_store.list_oauth_accounts(first.id)) == 1

    def test_link_path_ignores_changed_provider_email(self, resolver, adapter, user_store) -> None:
        """Once linked, the provider user id decides -- not the current email."""
        adapter.github_identity(provider_user_id=7, email="old@example.com")
        first, _ = resolver.authenticate("github", "code-1", REDIRECT)

        adapter.github_identity(provider_user_id=7, email="renamed@example.com")
        second, path = resolver.authenticate("github", "code-2", REDIRECT)

        assert path == LINK
        assert second.id == first.id
        assert user_store.get_by_email("renamed@example.com") is None

    def test_merge_onto_existing_password_user(self, resolver, adapter, user_store, hasher) -> None:
        digest = hasher.hash("Str0ng!pass")
        existing = user_store.create_user(User(name="Ann", email="ann@example.com", hashed_password=digest))
        adapter.github_identity(provider_user_id=55, email="ann@example.com")

        user, path = resolver.authenticate("github", "code", REDIRECT)

        assert path == MERGE
        assert user.id == existing.id
        assert user_store.get_oauth_account("github", "55").user_id == existing.id
        # The password login keeps working.
        assert user_store.get_by_id(existing.id).hashed_password == digest

    def test_unverified_google_email_not_marked(self, resolver, adapter, user_store) -> None:
        adapter.google_identity(email="unverified@example.com", verified=False)
        user, path = resolver.authenticate("google", "code", REDIRECT)
        assert path == CREATE
        assert user_store.get_by_id(user.id).email_verified is False

    def test_two_providers_one_user(self, resolver, adapter, user_store) -> None:
        adapter.github_identity(provider_user_id=1, email="same@example.com")
        adapter.google_identity(provider_user_id="g-1", email="same@example.com")

        gh_user, _ = resolver.authenticate("github", "c1", REDIRECT)
        google_user, path = resolver.authenticate("google", "c2", REDIRECT)

        assert path == MERGE
        assert google_user.id == gh_user.id
        providers = sorted(a.provider_id for a in user_store.list_oauth_accounts(gh_user.id))
        assert providers == ["github", "google"]

    def test_link_path_refreshes_stored_tokens(self, resolver, adapter, user_store) -> None:
        adapter.google_identity(provider_user_id="g-1")
        resolver.authenticate("google", "c1", REDIRECT)
        adapter.add(
            "POST",
            "https://oauth2.googleapis.com/token",
            {"access_token": "ya29.second", "token_type": "Bearer", "expires_in": 3599},
        )

        resolver.authenticate("google", "c2", REDIRECT)

        account = user_store.get_oauth_account("google", "g-1")
        assert account.access_token == "ya29.second"
        assert account.refresh_token == "1//stub"


class TestFailures:
    def test_unknown_provider(self, resolver) -> None:
        with pytest.raises(UnknownProvider):
            resolver.authenticate("myspace", "code", REDIRECT)
        with pytest.raises(UnknownProvider):
            resolver.authorization_url("myspace", REDIRECT, "%2F")

    def test_exchange_failure_writes_nothing(self, resolver, adapter, user_store) -> None:
        adapter.add("POST", GitHubProvider.token_url, {"error": "bad_verification_code"})
        with pytest.raises(OAuthExchangeFailed):
            resolver.authenticate("github", "stale", REDIRECT)
        assert user_store.get_by_email("octo@example.com") is None

    def test_profile_failure_writes_nothing(self, resolver, adapter, user_store) -> None:
        adapter.github_identity()
        adapter.add("GET", GitHubProvider.user_url, {"message": "boom"}, status=500)
        with pytest.raises(OAuthExchangeFailed):
            resolver.authenticate("github", "code", REDIRECT)
        assert user_store.get_by_email("octo@example.com") is None

    def test_no_email_writes_nothing(self, resolver, adapter, user_store) -> None:
        adapter.github_identity(provider_user_id=9, email=None, emails=[])
        with pytest.raises(NoEmailAvailable):
            resolver.authenticate("github", "code", REDIRECT)
        assert user_store.get_oauth_account("github", "9") is None


class _RacingStore:
    """Wraps a UserStore so a "concurrent" login links the identity mid-flight.

    The first get_oauth_account() call reports no link, then another user
    grabs the link before this request writes its own.
    """

    def __init__(self, inner, rival_id: str) -> None:
        self._inner = inner
        self._rival_id = rival_id
        self._raced = False

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def get_oauth_account(self, provider_id, provider_user_id):
        if not self._raced:
            self._raced = True
            self._inner.link_oauth_account(
                OAuthAccount(
                    provider_id=provider_id,
                    provider_user_id=provider_user_id,
                    user_id=self._rival_id,
                    access_token="rival",
                )
            )
            return None
        return self._inner.get_oauth_account(provider_id, provider_user_id)


def test_concurrent_first_login_follows_first_link(providers, adapter, user_store) -> None:
    rival = user_store.create_user(User(name="Rival", email="rival@example.com"))
    resolver = OAuthResolver(providers, _RacingStore(user_store, rival.id))
    adapter.github_identity(provider_user_id=77, email="late@example.com")

    user, path = resolver.authenticate("github", "code", REDIRECT)

    assert path == LINK
    assert user.id == rival.id
    assert user_store.get_oauth_account("github", "77").user_id == rival.id


def test_link_to_vanished_user_is_store_error(providers, adapter, user_store, engine) -> None:
    """A link whose user row is gone (hand-edited DB) is reported, not papered over."""
    adapter.github_identity(provider_user_id=5)
    resolver = OAuthResolver(providers, user_store)
    user, _ = resolver.authenticate("github", "code", REDIRECT)

    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        conn.exec_driver_sql("DELETE FROM users WHERE id = ?", (user.id,))
        conn.commit()
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")

    with pytest.raises(StoreError):
        resolver.authenticate("github", "code", REDIRECT)
