"""
auth/providers.py -- External identity provider adapters.

Each adapter covers the three provider round trips the login flows need:
  authorization_url(state)    -- where to send the user's browser
  exchange_code(code, state)  -- server-to-server code-for-token exchange
  fetch_profile(access_token) -- stable external id, display name, email

Adding a provider means writing another class with this shape; the ledgers
and AuthService only see ProviderAdapter.

Network policy:
  exchange_code() is never retried. The provider code is single-use, so a
  second POST after an ambiguous failure would either fail or, worse, race
  the first one.
  fetch_profile() is idempotent and retried a bounded number of times with
  jittered exponential backoff on connection errors and 5xx responses.

Every failure is raised as ProviderError. The provider's own message stays in
ProviderError.internal and the server log; clients only see an opaque message.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Protocol
from urllib.parse import urlencode

import requests
from authlib.integrations.requests_client import OAuth2Session, OAuthError

from auth.errors import ProviderError
from auth.models import ProviderProfile, ProviderTokens
from core.config import Settings, get_settings

logger = logging.getLogger("keygate.auth.providers")

_TIMEOUT = 10
_BACKOFF_BASE = 0.25

# Module-level session shared across profile fetches for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


class ProviderAdapter(Protocol):
    name: str
    label: str

    def authorization_url(self, state: str) -> str: ...

    def exchange_code(self, code: str, state: str) -> ProviderTokens: ...

    def fetch_profile(self, access_token: str) -> ProviderProfile: ...


class NaverProvider:
    """Naver Login (nid.naver.com) adapter.

    The profile endpoint wraps the user in an envelope:
        {"resultcode": "00", "message": "success",
         "response": {"id": "...", "email": "...", "nickname": "...", "name": "..."}}
    Any resultcode other than "00" is a failure even on HTTP 200.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        authorize_url: str,
        token_url: str,
        profile_url: str,
        scope: str = "",
        name: str = "naver",
        label: str = "Naver",
        profile_attempts: int = 3,
    ) -> None:
        self.name = name
        self.label = label
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.profile_url = profile_url
        self.scope = scope or None
        self.profile_attempts = max(1, profile_attempts)

    @classmethod
    def from_settings(cls, settings: Settings) -> NaverProvider:
        return cls(
            client_id=settings.provider_client_id,
            client_secret=settings.provider_client_secret,
            callback_url=settings.provider_callback_url,
            authorize_url=settings.provider_authorize_url,
            token_url=settings.provider_token_url,
            profile_url=settings.provider_profile_url,
            scope=settings.provider_scope,
            name=settings.provider_name,
            label=settings.provider_label,
            profile_attempts=settings.profile_fetch_attempts,
        )

    def _client(self) -> OAuth2Session:
        return OAuth2Session(
            self.client_id,
            self.client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=self.scope,
            redirect_uri=self.callback_url,
        )

    def authorization_url(self, state: str) -> str:
        with self._client() as client:
            uri, _ = client.create_authorization_url(self.authorize_url, state=state)
        return uri

    def exchange_code(self, code: str, state: str) -> ProviderTokens:
        """Trade a provider authorization code for provider tokens. Single attempt."""
        try:
            with self._client() as client:
                # Naver expects the state echoed in the token request body.
                token = client.fetch_token(
                    self.token_url,
                    code=code,
                    body=urlencode({"state": state}),
                    timeout=_TIMEOUT,
                )
        except OAuthError as exc:
            logger.warning("%s token exchange rejected: %s", self.name, exc.error)
            raise ProviderError(f"token exchange rejected: {exc.error} {exc.description}") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.warning("%s token exchange failed: %s", self.name, exc)
            raise ProviderError(f"token exchange failed: {exc}") from exc

        access_token = token.get("access_token")
        if not access_token:
            logger.warning("%s token response carried no access_token", self.name)
            raise ProviderError("token response missing access_token")
        return ProviderTokens(
            access_token=access_token,
            refresh_token=token.get("refresh_token"),
            token_type=token.get("token_type", "bearer"),
            expires_in=_as_int(token.get("expires_in")),
        )

    def fetch_profile(self, access_token: str) -> ProviderProfile:
        """Fetch the user profile, retrying transient failures."""
        headers = {"Authorization": f"Bearer {access_token}"}
        last_error = "no attempt made"
        for attempt in range(self.profile_attempts):
            try:
                resp = _session.get(self.profile_url, headers=headers, timeout=_TIMEOUT)
            except requests.RequestException as exc:
                last_error = str(exc)
                logger.warning(
                    "%s profile fetch attempt %d/%d failed: %s", self.name, attempt + 1, self.profile_attempts, exc
                )
            else:
                if resp.status_code < 500:
                    return self._parse_profile(resp)
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "%s profile fetch attempt %d/%d failed: HTTP %d",
                    self.name,
                    attempt + 1,
                    self.profile_attempts,
                    resp.status_code,
                )
            if attempt < self.profile_attempts - 1:
                time.sleep(random.uniform(0, _BACKOFF_BASE * 2**attempt))
        raise ProviderError(f"profile fetch failed after {self.profile_attempts} attempt(s): {last_error}")

    def _parse_profile(self, resp: requests.Response) -> ProviderProfile:
        if resp.status_code != 200:
            logger.warning("%s profile fetch rejected: HTTP %d", self.name, resp.status_code)
            raise ProviderError(f"profile fetch rejected: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError("profile response is not JSON") from exc
        if body.get("resultcode") != "00" or not isinstance(body.get("response"), dict):
            logger.warning("%s profile fetch returned resultcode %r", self.name, body.get("resultcode"))
            raise ProviderError(f"profile fetch returned {body.get('resultcode')!r}: {body.get('message')}")
        profile = body["response"]
        if not profile.get("id"):
            raise ProviderError("profile response missing id")
        return ProviderProfile(
            id=str(profile["id"]),
            display_name=profile.get("nickname") or profile.get("name") or "Unknown",
            email=profile.get("email") or None,
        )


def _as_int(value) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_providers(settings: Settings | None = None) -> dict[str, ProviderAdapter]:
    """Return the configured provider adapters keyed by name.

    A provider is registered only when both its client ID and secret are set.
    """
    cfg = settings or get_settings()
    providers: dict[str, ProviderAdapter] = {}
    if cfg.provider_enabled:
        providers[cfg.provider_name] = NaverProvider.from_settings(cfg)
        logger.info("%s OAuth provider registered", cfg.provider_label)
    return providers


def get_enabled_providers(providers: dict[str, ProviderAdapter]) -> list[dict]:
    """Return {"name", "label"} metadata for every registered provider."""
    return [{"name": p.name, "label": p.label} for p in providers.values()]
