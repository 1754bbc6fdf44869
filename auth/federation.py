"""
auth/federation.py -- Resolve a provider identity to a local user.

One authentication attempt runs:
  exchange_code -> fetch_profile -> {link | merge | create} -> session-eligible user

Resolution order:
  link   -- the (provider, provider_user_id) pair is already linked. Return the
            linked user and refresh the stored provider tokens.
  merge  -- no link, but a local user has the provider-supplied email. Attach
            the provider identity to that user.
  create -- neither exists. Create a password-less user named from the profile
            and attach the provider identity to it.

Security notes:
  Merge-by-email attaches a third-party identity to an existing (possibly
  password-based) account on email match alone, with no proof of password
  ownership. It is kept because the login UX depends on it; every merge is
  logged at WARNING so it can be audited.

  Both provider calls complete before anything is written. A failed exchange
  or profile fetch leaves no user and no link behind.

Concurrency:
  There is no transaction around check-then-create. Instead both writes are
  conflict-tolerant: a user insert that loses the unique-email race falls back
  to the merge path, and the link write is an upsert that reports the owner
  already on record. Two concurrent first logins for the same identity end
  up on the same user.

Non-critical side effects (marking the email verified, refreshing stored
provider tokens on the link path) log and continue; they never fail the login.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from auth.errors import AuthError, EmailTaken, StoreError, UnknownProvider
from auth.models import OAuthAccount, ProviderProfile, ProviderToken, User
from auth.oauth import OAuthProvider
from auth.store import UserStore

logger = logging.getLogger("tripplanner.auth.federation")

LINK = "link"
MERGE = "merge"
CREATE = "create"


class OAuthResolver:
    """Maps provider identities onto local users.

    Usage:
        resolver = OAuthResolver(build_providers(settings), user_store)
        url = resolver.authorization_url("github", redirect_uri, state="/trips")
        user, path = resolver.authenticate("github", code, redirect_uri)
    """

    def __init__(self, providers: dict[str, OAuthProvider], users: UserStore) -> None:
        self.providers = providers
        self.users = users

    def provider(self, name: str) -> OAuthProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise UnknownProvider(name) from None

    def authorization_url(self, provider: str, redirect_uri: str, state: str) -> str:
        """Build the consent URL for provider. state is echoed back unmodified."""
        return self.provider(provider).authorization_url(redirect_uri, state)

    def authenticate(self, provider: str, code: str, redirect_uri: str) -> tuple[User, str]:
        """Exchange code, fetch the profile, and resolve the local user.

        Returns (user, path) where path is "link", "merge" or "create".

        Raises:
            UnknownProvider:     provider is not configured.
            OAuthExchangeFailed: exchange or profile fetch failed.
            NoEmailAvailable:    the provider account has no usable email.
            StoreError:          a required write failed.
        """
        client = self.provider(provider)
        token = client.exchange_code(code, redirect_uri)
        profile = client.fetch_profile(token)

        account = self.users.get_oauth_account(client.name, profile.provider_user_id)
        if account is not None:
            user = self.users.get_by_id(account.user_id)
            if user is None:
                # ON DELETE CASCADE makes this unreachable unless rows were edited by hand.
                raise StoreError("Linked user no longer exists.")
            self._refresh_tokens(client.name, profile.provider_user_id, token)
            logger.info("OAuth login via %s linked to user %s", client.name, user.id)
            return user, LINK

        user, path = self._merge_or_create(client.name, profile)
        owner_id = self.users.link_oauth_account(
            OAuthAccount(
                provider_id=client.name,
                provider_user_id=profile.provider_user_id,
                user_id=user.id,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                expires_at=token.expires_at,
            )
        )
        if owner_id != user.id:
            # A concurrent callback linked this identity first; follow its link.
            logger.info("OAuth identity %s/%s already linked by a concurrent login", client.name, owner_id)
            winner = self.users.get_by_id(owner_id)
            if winner is None:
                raise StoreError("Linked user no longer exists.")
            return winner, LINK

        if profile.email_verified and not user.email_verified:
            self._mark_verified(user)
        return user, path

    def _merge_or_create(self, provider: str, profile: ProviderProfile) -> tuple[User, str]:
        existing = self.users.get_by_email(profile.email)
        if existing is not None:
            logger.warning("OAuth identity from %s merged into existing user %s by email match", provider, existing.id)
            return existing, MERGE
        try:
            created = self.users.create_user(User(name=profile.name, email=profile.email))
        except EmailTaken:
            # Lost the unique-email race to a concurrent signup or callback.
            existing = self.users.get_by_email(profile.email)
            if existing is None:
                raise StoreError("User vanished after email conflict.") from None
            logger.warning("OAuth identity from %s merged into concurrently created user %s", provider, existing.id)
            return existing, MERGE
        logger.info("OAuth login via %s created user %s", provider, created.id)
        return created, CREATE

    def _refresh_tokens(self, provider: str, provider_user_id: str, token: ProviderToken) -> None:
        try:
            self.users.update_oauth_tokens(provider, provider_user_id, token)
        except AuthError:
            logger.exception("Failed to update stored %s tokens; continuing", provider)

    def _mark_verified(self, user: User) -> None:
        try:
            self.users.set_email_verified(user.id, True)
        except AuthError:
            logger.exception("Failed to mark email verified for user %s; continuing", user.id)
            return
        user.email_verified = True
