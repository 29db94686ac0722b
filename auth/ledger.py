"""
auth/ledger.py -- Refresh-token rotation and PKCE authorization-code redemption.

RefreshLedger
  issue(user_id)   -> new opaque refresh token (default 30-day expiry)
  rotate(token)    -> TokenPair; the presented token is revoked and replaced
  revoke(token)    -> logout of one session
  revoke_all(uid)  -> logout everywhere

AuthorizationCodeLedger
  issue(user_id, challenge) -> new single-use code (default 5-minute expiry)
  redeem(code, verifier)    -> user id; the code is consumed

Reuse detection:
  A refresh token that is already revoked, or an authorization code that is
  already used, can only be presented again if the legitimate client or an
  attacker raced ahead with it. Either way the whole session family is
  revoked (every refresh token of that user) and the request fails. A losing
  racer in the atomic consume step lands in the same branch: it observed the
  record as consumed, so it is treated as a replay too.

Both ledgers rely on UserStore's conditional updates for atomicity.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import Unauthorized
from auth.models import TokenPair, User
from auth.pkce import challenge_matches
from auth.store import UserStore, to_iso
from auth.tokens import create_access_token, generate_authorization_code, generate_refresh_token

logger = logging.getLogger("keygate.auth.ledger")


def _is_expired(expires_at: str) -> bool:
    return datetime.now(timezone.utc) >= datetime.fromisoformat(expires_at)


class RefreshLedger:
    """Opaque refresh tokens with rotate-on-use and reuse detection."""

    def __init__(
        self,
        store: UserStore,
        ttl_days: int = 30,
        access_token_factory: Callable[[User], str] = create_access_token,
    ) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self._mint_access_token = access_token_factory

    def _expiry(self) -> str:
        return to_iso(datetime.now(timezone.utc) + self.ttl)

    def issue(self, user_id: int) -> str:
        """Store and return a fresh refresh token for user_id."""
        return self.store.create_refresh_token(user_id, generate_refresh_token(), self._expiry()).token

    def rotate(self, presented: str) -> TokenPair:
        """Exchange a live refresh token for a new access/refresh pair.

        Raises Unauthorized when the token is unknown, revoked (after revoking
        the user's whole session family), or expired.
        """
        record = self.store.get_refresh_token(presented)
        if record is None:
            raise Unauthorized("Invalid refresh token.")

        if record.is_revoked:
            self._revoke_family(record.user_id, "refresh token reuse")
            raise Unauthorized("Refresh token has been revoked.")

        if _is_expired(record.expires_at):
            raise Unauthorized("Refresh token has expired.")

        user = self.store.get_by_id(record.user_id)
        if user is None:
            raise Unauthorized("Invalid refresh token.")

        successor = self.store.rotate_refresh_token(record.id, generate_refresh_token(), self._expiry())
        if successor is None:
            # Lost the race: another request consumed this token between the read and the update.
            self._revoke_family(record.user_id, "concurrent refresh token reuse")
            raise Unauthorized("Refresh token has been revoked.")

        return TokenPair(access_token=self._mint_access_token(user), refresh_token=successor.token)

    def revoke(self, token: str) -> None:
        """Revoke a single refresh token. Unknown or already-revoked tokens are a no-op."""
        self.store.revoke_refresh_token(token)

    def revoke_all(self, user_id: int) -> int:
        """Revoke every refresh token of user_id. Returns the number revoked."""
        return self.store.revoke_all_refresh_tokens(user_id)

    def _revoke_family(self, user_id: int, reason: str) -> None:
        revoked = self.store.revoke_all_refresh_tokens(user_id)
        logger.warning("Detected %s for user %s -- revoked %d refresh token(s)", reason, user_id, revoked)


class AuthorizationCodeLedger:
    """Short-lived, single-use authorization codes bound to a PKCE challenge."""

    def __init__(self, store: UserStore, ttl_seconds: int = 300) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)

    def issue(self, user_id: int, code_challenge: str) -> str:
        """Store and return a new authorization code for user_id bound to code_challenge."""
        expires_at = to_iso(datetime.now(timezone.utc) + self.ttl)
        return self.store.create_authorization_code(
            user_id, generate_authorization_code(), code_challenge, expires_at
        ).code

    def redeem(self, code: str, code_verifier: str) -> int:
        """Consume code if code_verifier matches its challenge and return the owning user id.

        Order of checks:
          1. Unknown code -> Unauthorized.
          2. Already used -> revoke the user's session family, Unauthorized.
          3. Expired -> Unauthorized.
          4. base64url(SHA-256(verifier)) != stored challenge -> Unauthorized.
             The code stays redeemable so an interceptor guessing verifiers
             cannot burn the legitimate client's code.
          5. Atomic consume; losing a race is handled like step 2.
        """
        record = self.store.get_authorization_code(code)
        if record is None:
            raise Unauthorized("Invalid authorization code.")

        if record.is_used:
            self._revoke_family(record.user_id)
            raise Unauthorized("Authorization code has already been used.")

        if _is_expired(record.expires_at):
            raise Unauthorized("Authorization code has expired.")

        if not challenge_matches(code_verifier, record.code_challenge):
            logger.warning("PKCE verifier mismatch for authorization code %s", record.id)
            raise Unauthorized("Invalid code verifier.")

        if not self.store.consume_authorization_code(record.id):
            self._revoke_family(record.user_id)
            raise Unauthorized("Authorization code has already been used.")

        return record.user_id

    def _revoke_family(self, user_id: int) -> None:
        revoked = self.store.revoke_all_refresh_tokens(user_id)
        logger.warning(
            "Detected authorization code replay for user %s -- revoked %d refresh token(s)", user_id, revoked
        )
