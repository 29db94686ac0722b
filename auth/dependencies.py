"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive only as `Authorization: Bearer <token>`. There is no
cookie or API-key fallback.

get_bearer_token() extracts the raw token (HTTP 401 if absent).
get_current_user() resolves it through AuthService.current_user() and lets
Unauthenticated propagate to the AuthError handler in api/main.py.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import Unauthenticated
from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService wired into app.state by the lifespan."""
    return request.app.state.auth_service


def get_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Authentication required.")
    return token.strip()


def get_current_user(
    token: str = Depends(get_bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """Require a valid bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    return service.current_user(token)
