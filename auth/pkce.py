"""
auth/pkce.py -- PKCE helpers and the signed anti-forgery OAuth state.

PKCE (RFC 7636, S256 only):
  challenge = base64url(SHA-256(verifier)), no padding. Verifiers are 43-128
  characters from the unreserved set [A-Za-z0-9-._~]. authlib supplies the
  transform and the syntax patterns.

OAuth state:
  The code challenge and the client app's callback URL travel to the identity
  provider and back inside the `state` parameter instead of a server-side
  session, so the callback may land on any process. The state is an HS256 JWT
  signed with SECRET_KEY and carrying:
    typ   -- always "oauth_state", so an access token can never pass as a state
    jti   -- server-generated id; UserStore.consume_oauth_state() makes each
             state single-use
    nonce -- the client's own state value, kept by the app that started the
             login and compared on the way back (state_matches_client)
    cc    -- the code challenge, or absent for the direct provider-code path
    cb    -- the app callback URL (must match an allowed prefix)
    exp   -- short expiry (Settings.oauth_state_expire_seconds)
  A signature only proves the server minted the state. Binding it to the
  caller is the nonce check (direct code path) or the PKCE verifier.
  A tampered, expired or foreign state raises Unauthorized.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from authlib.oauth2.rfc7636.challenge import CODE_CHALLENGE_PATTERN, CODE_VERIFIER_PATTERN
from jose import JWTError, jwt

from auth.errors import Unauthorized
from core.config import get_settings

logger = logging.getLogger("keygate.auth.pkce")

_STATE_TYPE = "oauth_state"
_ALGORITHM = "HS256"

# Client state: unreserved characters, at least 128 bits when random.
CLIENT_STATE_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{16,128}$")


@dataclass
class OAuthState:
    """Decoded contents of a verified OAuth state parameter."""

    jti: str
    app_callback: str
    expires_at: datetime
    code_challenge: str | None = None
    nonce: str | None = None


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


def is_valid_code_verifier(verifier: str) -> bool:
    return bool(CODE_VERIFIER_PATTERN.match(verifier))


def is_valid_code_challenge(challenge: str) -> bool:
    return bool(CODE_CHALLENGE_PATTERN.match(challenge))


def derive_code_challenge(verifier: str) -> str:
    """Return base64url(SHA-256(verifier)) without padding."""
    return create_s256_code_challenge(verifier)


def challenge_matches(verifier: str, challenge: str) -> bool:
    """Constant-time check that verifier hashes to challenge. Malformed verifiers never match."""
    if not is_valid_code_verifier(verifier):
        return False
    return hmac.compare_digest(derive_code_challenge(verifier), challenge)


# ---------------------------------------------------------------------------
# Signed state
# ---------------------------------------------------------------------------


def is_allowed_app_callback(url: str, prefixes: list[str]) -> bool:
    """Return True if url starts with one of the configured prefixes (open-redirect guard)."""
    return any(url.startswith(prefix) for prefix in prefixes)


def is_valid_client_state(value: str) -> bool:
    return bool(CLIENT_STATE_PATTERN.match(value))


def sign_state(
    app_callback: str,
    code_challenge: str | None = None,
    nonce: str | None = None,
    expire_seconds: int = 0,
) -> str:
    """Return a signed state value carrying the challenge, client nonce and app callback."""
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.oauth_state_expire_seconds
    payload: dict = {
        "typ": _STATE_TYPE,
        "jti": secrets.token_urlsafe(16),
        "cb": app_callback,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    if code_challenge:
        payload["cc"] = code_challenge
    if nonce:
        payload["nonce"] = nonce
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def verify_state(state: str) -> OAuthState:
    """Verify a state produced by sign_state(). Raises Unauthorized on any mismatch."""
    try:
        claims = jwt.decode(state, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        logger.warning("OAuth state rejected: %s", exc)
        raise Unauthorized("Invalid or expired state.") from exc
    if claims.get("typ") != _STATE_TYPE or not claims.get("jti") or not claims.get("cb") or "exp" not in claims:
        logger.warning("OAuth state rejected: not a state token")
        raise Unauthorized("Invalid or expired state.")
    return OAuthState(
        jti=claims["jti"],
        app_callback=claims["cb"],
        expires_at=datetime.fromtimestamp(claims["exp"], timezone.utc),
        code_challenge=claims.get("cc"),
        nonce=claims.get("nonce"),
    )


def state_matches_client(state: OAuthState, client_state: str | None) -> bool:
    """Constant-time check that the caller holds the nonce the login was started with."""
    if not state.nonce or not client_state:
        return False
    return hmac.compare_digest(state.nonce.encode("utf-8"), client_state.encode("utf-8"))
