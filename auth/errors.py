"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every exception carries an HTTP status_code, a stable machine-readable code,
and a message that is safe to show the client. api/main.py renders them into
the shared {"error": {...}} envelope.

ProviderError is an Unauthorized: the client only ever sees the opaque
message. The upstream detail goes to the server log via the `internal`
attribute and must never be placed in a response body.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication-core errors."""

    status_code: int = 400
    code: str = "auth_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(AuthError):
    """Bad local credentials, or an invalid/expired access token."""

    status_code = 401
    code = "unauthenticated"


class Unauthorized(AuthError):
    """Invalid, expired, revoked, or replayed refresh token / authorization code,
    verifier mismatch, or anti-forgery state mismatch."""

    status_code = 401
    code = "unauthorized"


class Conflict(AuthError):
    """Duplicate registration email."""

    status_code = 409
    code = "conflict"


class ProviderError(Unauthorized):
    """External provider code exchange or profile fetch failed."""

    code = "provider_error"

    def __init__(self, internal: str, message: str = "External provider authentication failed.") -> None:
        super().__init__(message)
        self.internal = internal


class NotFound(AuthError):
    """Unknown or unconfigured identity provider."""

    status_code = 404
    code = "not_found"
