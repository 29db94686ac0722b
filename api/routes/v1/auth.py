"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/signup               -- register a local account; 201 + token pair
  POST /api/v1/auth/login                -- email/password login; token pair
  POST /api/v1/auth/refresh              -- rotate a refresh token
  POST /api/v1/auth/logout               -- revoke one refresh token
  POST /api/v1/auth/logout-all           -- revoke every refresh token (requires auth)
  GET  /api/v1/auth/me                   -- current identity (requires auth)
  GET  /api/v1/auth/providers            -- list enabled identity providers (public)
  GET  /api/v1/auth/{provider}/authorize -- 302 to the provider login page
  GET  /api/v1/auth/{provider}/callback  -- provider redirect target; 302 to the app
  POST /api/v1/auth/token                -- PKCE code exchange; token pair
  POST /api/v1/auth/{provider}/token     -- direct provider code login; token pair

Security:
  [C1] AuthService.login() goes through authenticate_user() for timing
       equalization -- never inline the lookup and password check here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Route handlers are plain `def`: the service does blocking DB and network
  I/O, and FastAPI runs sync handlers in its threadpool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import RedirectResponse

from api.models import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    ProviderInfo,
    ProviderTokenRequest,
    RefreshRequest,
    SignupRequest,
    TokenExchangeRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import AuthError
from auth.models import AuthResult, User
from auth.providers import get_enabled_providers
from auth.service import AuthService

# Auth policy:
# - signup, login, refresh, logout, providers, authorize, callback, token: public
# - logout-all, me: require a bearer access token (get_current_user)
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    response.headers["Pragma"] = "no-cache"


def _auth_response(result: AuthResult, service: AuthService) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=service.settings.access_token_expire_seconds,
        user=UserResponse.from_user(result.user),
    )


# ---------------------------------------------------------------------------
# Local accounts
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(
    body: SignupRequest, response: Response, service: AuthService = Depends(get_auth_service)
) -> AuthResponse:
    """Register a local account and start a session. 409 if the email is taken."""
    result = service.register(body.email, body.password, body.name)
    _no_store(response)
    return _auth_response(result, service)


@router.post("/auth/login", response_model=AuthResponse)
def login(body: LoginRequest, response: Response, service: AuthService = Depends(get_auth_service)) -> AuthResponse:
    """Authenticate with email and password.

    Returns the same 401 for an unknown email and a wrong password so the
    response does not reveal which accounts exist.
    """
    result = service.login(body.email, body.password)
    _no_store(response)
    return _auth_response(result, service)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    body: RefreshRequest, response: Response, service: AuthService = Depends(get_auth_service)
) -> TokenResponse:
    """Rotate a refresh token. Replaying an old one revokes every session of its user."""
    pair = service.refresh(body.refresh_token)
    _no_store(response)
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=service.settings.access_token_expire_seconds,
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Revoke the given refresh token. Unknown tokens are accepted silently."""
    service.logout(body.refresh_token)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    current_user: User = Depends(get_current_user), service: AuthService = Depends(get_auth_service)
) -> LogoutAllResponse:
    """Revoke every refresh token of the current user."""
    revoked = service.logout_all(current_user.id)
    return LogoutAllResponse(message="Logged out of all sessions.", revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the bearer of the access token."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        provider=current_user.provider,
    )


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[ProviderInfo])
def list_providers(service: AuthService = Depends(get_auth_service)) -> list[ProviderInfo]:
    """Return the configured identity providers. Empty when none are set up."""
    return [ProviderInfo(**p) for p in get_enabled_providers(service.providers)]


@router.get("/auth/{provider}/authorize")
def authorize(
    provider: str,
    code_challenge: Optional[str] = Query(default=None),
    code_challenge_method: str = Query(default="S256"),
    app_callback: Optional[str] = Query(default=None, max_length=2048),
    state: Optional[str] = Query(default=None, max_length=128),
    service: AuthService = Depends(get_auth_service),
) -> RedirectResponse:
    """Start a provider login and redirect the browser to the provider.

    With code_challenge the login completes through the callback and
    POST /auth/token. Only the S256 method is accepted. Without one the
    client must send its own random `state` and repeat it as client_state
    when it posts the provider code.
    """
    if code_challenge is not None and code_challenge_method != "S256":
        raise AuthError("Only the S256 code challenge method is supported.")
    url = service.begin_provider_authorization(provider, code_challenge, app_callback, state)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/{provider}/callback")
def callback(
    provider: str,
    state: str = Query(min_length=1, max_length=2048),
    code: Optional[str] = Query(default=None, max_length=512),
    error: Optional[str] = Query(default=None, max_length=256),
    error_description: Optional[str] = Query(default=None, max_length=1024),
    service: AuthService = Depends(get_auth_service),
) -> RedirectResponse:
    """Provider redirect target. Sends the browser on to the app callback URL."""
    url = service.complete_provider_callback(provider, code, state, error, error_description)
    response = RedirectResponse(url, status_code=302)
    _no_store(response)
    return response


@router.post("/auth/token", response_model=AuthResponse)
def exchange_token(
    body: TokenExchangeRequest, response: Response, service: AuthService = Depends(get_auth_service)
) -> AuthResponse:
    """Redeem a PKCE-bound authorization code with its code verifier."""
    result = service.exchange(body.code, body.code_verifier)
    _no_store(response)
    return _auth_response(result, service)


@router.post("/auth/{provider}/token", response_model=AuthResponse)
def provider_token_login(
    provider: str,
    body: ProviderTokenRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Log in with a provider authorization code the client obtained itself."""
    result = service.login_with_provider_code(provider, body.code, body.state, body.client_state)
    _no_store(response)
    return _auth_response(result, service)
