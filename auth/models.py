"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, ledgers and the service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

PROVIDER_LOCAL = "local"


@dataclass
class User:
    """An identity known to KeyGate.

    provider is "local" for email/password accounts and the external provider's
    name (e.g. "naver") for accounts created through the identity provider.

    email is None for provider-only accounts whose provider did not share one.
    hashed_password is None for provider-only accounts (no local password).
    provider_access_token / provider_refresh_token hold envelope strings
    produced by SecretCipher, never the raw provider tokens.
    """

    name: str
    provider: str = PROVIDER_LOCAL
    id: int | None = None
    email: str | None = None
    hashed_password: str | None = None
    provider_id: str | None = None  # provider's stable user ID
    provider_access_token: str | None = None
    provider_refresh_token: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """An opaque, single-use refresh token record.

    Rows are never deleted by the online path. is_revoked flips to True on
    rotation, logout, or reuse detection; purge_expired() removes rows whose
    expires_at has passed.
    """

    user_id: int
    token: str
    expires_at: str  # ISO 8601
    id: int | None = None
    is_revoked: bool = False
    created_at: str | None = None


@dataclass
class AuthorizationCode:
    """A single-use PKCE authorization code bound to a code challenge.

    code_challenge is base64url(SHA-256(verifier)) without padding.
    """

    user_id: int
    code: str
    code_challenge: str
    expires_at: str  # ISO 8601
    id: int | None = None
    is_used: bool = False
    created_at: str | None = None


@dataclass
class ProviderTokens:
    """Tokens returned by an external provider's code exchange."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None


@dataclass
class ProviderProfile:
    """Normalized profile fetched from an external provider."""

    id: str
    display_name: str
    email: str | None = None


@dataclass
class TokenPair:
    """An access token plus the refresh token issued alongside it."""

    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    """Outcome of a login, signup, exchange, or provider login."""

    access_token: str
    refresh_token: str
    user: User
