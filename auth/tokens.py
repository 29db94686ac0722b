"""
auth/tokens.py -- Access tokens, password hashing, and opaque token generation.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (user id), email, provider, iat and exp. Verification checks the
       signature and expiry only -- there is no storage lookup, so verifying is
       safe for unlimited parallel calls. Any failure raises Unauthenticated.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time does
       not reveal whether an email is registered [C1].

  Opaque tokens: refresh tokens are secrets.token_hex(64) (512 bits) and
       authorization codes secrets.token_urlsafe(32) (256 bits). They carry no
       structure and are validated only by storage lookup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import Unauthenticated
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("keygate.auth")

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "provider", "iat", "exp")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    255 characters and they are ASCII letters and digits only.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than the rest.
_DUMMY_HASH: str = hash_password("keygate_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User:
    """Authenticate a local email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists [C1]:
    - Unknown email or provider-only account: bcrypt runs against _DUMMY_HASH.
    - Wrong password: bcrypt runs against the real hash.

    Raises Unauthenticated with the same message for every failure so the
    response does not reveal which check failed.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        raise Unauthenticated("Invalid email or password.")
    if not verify_password(password, user.hashed_password):
        raise Unauthenticated("Invalid email or password.")
    return user


# ---------------------------------------------------------------------------
# Access tokens (stateless, signed)
# ---------------------------------------------------------------------------


def create_access_token(user: User, expire_seconds: int = 0) -> str:
    """Sign a short-lived access token for user.

    Args:
        user:           The authenticated user. user.id must be set.
        expire_seconds: Lifetime override in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email or "",
        "provider": user.provider,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def verify_access_token(token: str) -> dict:
    """Verify signature and expiry and return the claims.

    Raises Unauthenticated on any failure: bad signature, expired, malformed,
    or missing required claims.
    """
    try:
        claims = jwt.decode(token, get_settings().secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired access token.") from exc
    if any(name not in claims for name in _REQUIRED_CLAIMS):
        raise Unauthenticated("Invalid or expired access token.")
    return claims


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token: 64 random bytes as 128 hex chars."""
    return secrets.token_hex(64)


def generate_authorization_code() -> str:
    """Return a new opaque, URL-safe authorization code (256 bits)."""
    return secrets.token_urlsafe(32)
