"""
API request and response models for keygate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Secrets (refresh tokens, authorization codes, verifiers) only ever travel in
request bodies, never in URLs.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 255


def _check_password_strength(value: str) -> str:
    """Require at least one letter and one digit.

    Pydantic's regex engine has no lookahead, so this runs as a validator
    instead of a Field pattern.
    """
    if not any(c.isalpha() for c in value) or not any(c.isdigit() for c in value):
        raise ValueError("Password must contain at least one letter and one digit.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    name: str = Field(min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and POST /api/v1/auth/logout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=256)


class TokenExchangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/token (PKCE authorization code exchange)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=128)
    # Verifier syntax is checked on redemption: malformed and wrong verifiers are both 401.
    code_verifier: str = Field(min_length=1, max_length=256)


class ProviderTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/{provider}/token (direct provider code login)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=512)
    state: str = Field(min_length=1, max_length=2048)
    # The value the client passed as `state` to the authorize endpoint.
    client_state: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries password hashes or provider tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    name: str
    provider: str
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from an auth User dataclass."""
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            provider=user.provider,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class AuthResponse(BaseModel):
    """Response for signup, login, token exchange and provider code login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class MeResponse(BaseModel):
    """Identity of the bearer of an access token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    email: Optional[str]
    name: str
    provider: str


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
