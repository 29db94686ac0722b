"""
tests/test_providers.py -- Unit tests for auth/providers.py.

No test touches the network: the module-level requests session and authlib's
OAuth2Session are patched with unittest.mock.

Covers:
  - authorization URL carries client_id, redirect_uri and state
  - token exchange: success, provider rejection, transport failure; never retried
  - profile fetch: envelope parsing, resultcode failures, bounded retry on 5xx
  - build_providers() registers a provider only when it is configured
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from authlib.integrations.requests_client import OAuthError

import auth.providers as providers
from auth.errors import ProviderError
from auth.providers import NaverProvider, build_providers, get_enabled_providers
from core.config import Settings

SECRET = "s" * 64


def _provider(**overrides) -> NaverProvider:
    fields = {
        "client_id": "client-123",
        "client_secret": "secret-456",
        "callback_url": "https://api.example.com/api/v1/auth/naver/callback",
        "authorize_url": "https://nid.naver.com/oauth2.0/authorize",
        "token_url": "https://nid.naver.com/oauth2.0/token",
        "profile_url": "https://openapi.naver.com/v1/nid/me",
    }
    fields.update(overrides)
    return NaverProvider(**fields)


def _response(status_code: int, body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _profile_body(**profile) -> dict:
    return {"resultcode": "00", "message": "success", "response": profile}


class TestAuthorizationUrl:
    def test_url_carries_client_and_state(self) -> None:
        url = _provider().authorization_url("state-abc")
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://nid.naver.com/oauth2.0/authorize"
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client-123"]
        assert query["state"] == ["state-abc"]
        assert query["redirect_uri"] == ["https://api.example.com/api/v1/auth/naver/callback"]


class TestExchangeCode:
    @patch("auth.providers.OAuth2Session")
    def test_success(self, mock_session_cls) -> None:
        client = mock_session_cls.return_value.__enter__.return_value
        client.fetch_token.return_value = {
            "access_token": "pat",
            "refresh_token": "prt",
            "token_type": "bearer",
            "expires_in": "3600",
        }
        tokens = _provider().exchange_code("provider-code", "state-abc")
        assert tokens.access_token == "pat"
        assert tokens.refresh_token == "prt"
        assert tokens.expires_in == 3600
        client.fetch_token.assert_called_once()
        args, kwargs = client.fetch_token.call_args
        assert args == ("https://nid.naver.com/oauth2.0/token",)
        assert kwargs["code"] == "provider-code"
        assert "state=state-abc" in kwargs["body"]

    @patch("auth.providers.OAuth2Session")
    def test_rejection_is_not_retried(self, mock_session_cls) -> None:
        client = mock_session_cls.return_value.__enter__.return_value
        client.fetch_token.side_effect = OAuthError(error="invalid_grant", description="code expired")
        with pytest.raises(ProviderError) as excinfo:
            _provider().exchange_code("used-code", "state-abc")
        assert client.fetch_token.call_count == 1
        assert "invalid_grant" in excinfo.value.internal
        assert excinfo.value.message == "External provider authentication failed."

    @patch("auth.providers.OAuth2Session")
    def test_transport_failure_is_not_retried(self, mock_session_cls) -> None:
        client = mock_session_cls.return_value.__enter__.return_value
        client.fetch_token.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(ProviderError):
            _provider().exchange_code("code", "state-abc")
        assert client.fetch_token.call_count == 1

    @patch("auth.providers.OAuth2Session")
    def test_missing_access_token(self, mock_session_cls) -> None:
        client = mock_session_cls.return_value.__enter__.return_value
        client.fetch_token.return_value = {"token_type": "bearer"}
        with pytest.raises(ProviderError):
            _provider().exchange_code("code", "state-abc")


class TestFetchProfile:
    def test_success(self) -> None:
        body = _profile_body(id="nv-1", nickname="nick", name="Real Name", email="n@x.com")
        with patch.object(providers._session, "get", return_value=_response(200, body)) as mock_get:
            profile = _provider().fetch_profile("pat")
        assert (profile.id, profile.display_name, profile.email) == ("nv-1", "nick", "n@x.com")
        assert mock_get.call_args.kwargs["headers"] == {"Authorization": "Bearer pat"}

    def test_display_name_fallbacks(self) -> None:
        with patch.object(providers._session, "get", return_value=_response(200, _profile_body(id="nv-1", name="Real"))):
            assert _provider().fetch_profile("pat").display_name == "Real"
        with patch.object(providers._session, "get", return_value=_response(200, _profile_body(id="nv-1"))):
            profile = _provider().fetch_profile("pat")
        assert profile.display_name == "Unknown"
        assert profile.email is None

    def test_failed_resultcode(self) -> None:
        body = {"resultcode": "024", "message": "Authentication failed"}
        with patch.object(providers._session, "get", return_value=_response(200, body)):
            with pytest.raises(ProviderError) as excinfo:
                _provider().fetch_profile("pat")
        assert "024" in excinfo.value.internal

    def test_missing_id(self) -> None:
        with patch.object(providers._session, "get", return_value=_response(200, _profile_body(nickname="x"))):
            with pytest.raises(ProviderError):
                _provider().fetch_profile("pat")

    def test_non_json_body(self) -> None:
        with patch.object(providers._session, "get", return_value=_response(200, ValueError("no json"))):
            with pytest.raises(ProviderError):
                _provider().fetch_profile("pat")

    @patch("auth.providers.time.sleep")
    def test_server_error_is_retried(self, mock_sleep) -> None:
        ok = _response(200, _profile_body(id="nv-1", nickname="nick"))
        with patch.object(providers._session, "get", side_effect=[_response(502), _response(503), ok]) as mock_get:
            profile = _provider().fetch_profile("pat")
        assert profile.id == "nv-1"
        assert mock_get.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("auth.providers.time.sleep")
    def test_retries_are_bounded(self, mock_sleep) -> None:
        with patch.object(
            providers._session, "get", side_effect=requests.ConnectionError("refused")
        ) as mock_get:
            with pytest.raises(ProviderError) as excinfo:
                _provider(profile_attempts=2).fetch_profile("pat")
        assert mock_get.call_count == 2
        assert mock_sleep.call_count == 1
        assert "2 attempt(s)" in excinfo.value.internal

    @patch("auth.providers.time.sleep")
    def test_client_error_is_not_retried(self, mock_sleep) -> None:
        with patch.object(providers._session, "get", return_value=_response(401, {})) as mock_get:
            with pytest.raises(ProviderError):
                _provider().fetch_profile("pat")
        assert mock_get.call_count == 1
        mock_sleep.assert_not_called()


class TestRegistry:
    def test_unconfigured_provider_is_not_registered(self) -> None:
        assert build_providers(Settings(debug=True, secret_key=SECRET)) == {}

    def test_configured_provider_is_registered(self) -> None:
        settings = Settings(
            debug=True,
            secret_key=SECRET,
            provider_client_id="client-123",
            provider_client_secret="secret-456",
            provider_callback_url="https://api.example.com/api/v1/auth/naver/callback",
        )
        registered = build_providers(settings)
        assert list(registered) == ["naver"]
        assert registered["naver"].client_id == "client-123"
        assert get_enabled_providers(registered) == [{"name": "naver", "label": "Naver"}]

    def test_client_id_alone_is_not_enough(self) -> None:
        settings = Settings(debug=True, secret_key=SECRET, provider_client_id="client-123")
        assert build_providers(settings) == {}
