"""
auth/service.py -- AuthService: the operations the HTTP layer calls.

AuthService glues the Credential Store, the ledgers, the token issuer and the
provider adapters together. Route handlers stay thin: parse the request, call
one method here, shape the response. Every failure is an AuthError subclass.

Local accounts:
  register(email, password, name) -> AuthResult   Conflict on duplicate email
  login(email, password)          -> AuthResult   Unauthenticated on bad credentials
  refresh(refresh_token)          -> TokenPair
  logout(refresh_token) / logout_all(user_id)
  current_user(access_token)      -> User         Unauthenticated on bad token

External provider, PKCE round trip:
  begin_provider_authorization(provider, code_challenge, app_callback, client_state) -> provider URL
  complete_provider_callback(provider, code, state, ...)               -> app callback URL
  exchange(code, code_verifier)                                        -> AuthResult

External provider, direct code path (state without a challenge):
  login_with_provider_code(provider, code, state, client_state) -> AuthResult

Emails are stored and matched lower-cased.
"""

from __future__ import annotations

import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError, Conflict, NotFound, ProviderError, Unauthenticated, Unauthorized
from auth.ledger import AuthorizationCodeLedger, RefreshLedger
from auth.models import PROVIDER_LOCAL, AuthResult, TokenPair, User
from auth.pkce import (
    OAuthState,
    is_allowed_app_callback,
    is_valid_client_state,
    is_valid_code_challenge,
    sign_state,
    state_matches_client,
    verify_state,
)
from auth.providers import ProviderAdapter
from auth.store import UserStore, to_iso
from auth.tokens import authenticate_user, create_access_token, hash_password, verify_access_token
from core.config import Settings, get_settings

logger = logging.getLogger("keygate.auth.service")


def _with_query(url: str, params: dict[str, str]) -> str:
    """Append params to url, keeping any query it already carries."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class AuthService:
    def __init__(
        self,
        store: UserStore,
        refresh_ledger: RefreshLedger,
        code_ledger: AuthorizationCodeLedger,
        providers: dict[str, ProviderAdapter] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.refresh_ledger = refresh_ledger
        self.code_ledger = code_ledger
        self.providers = providers or {}
        self.settings = settings or get_settings()

    @classmethod
    def build(
        cls, store: UserStore, providers: dict[str, ProviderAdapter], settings: Settings | None = None
    ) -> AuthService:
        """Wire both ledgers from settings around an existing store."""
        cfg = settings or get_settings()
        return cls(
            store,
            RefreshLedger(store, ttl_days=cfg.refresh_token_expire_days),
            AuthorizationCodeLedger(store, ttl_seconds=cfg.authorization_code_expire_seconds),
            providers,
            cfg,
        )

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> AuthResult:
        email = email.strip().lower()
        if self.store.get_by_email(email) is not None:
            raise Conflict("Email is already registered.")
        try:
            user = self.store.create_user(
                User(name=name, email=email, hashed_password=hash_password(password), provider=PROVIDER_LOCAL)
            )
        except IntegrityError as exc:
            # Lost a race with a concurrent registration of the same email.
            raise Conflict("Email is already registered.") from exc
        logger.info("Registered local user %s", user.id)
        return self._start_session(user)

    def login(self, email: str, password: str) -> AuthResult:
        user = authenticate_user(self.store, email.strip().lower(), password)
        return self._start_session(user)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.refresh_ledger.rotate(refresh_token)

    def logout(self, refresh_token: str) -> None:
        self.refresh_ledger.revoke(refresh_token)

    def logout_all(self, user_id: int) -> int:
        revoked = self.refresh_ledger.revoke_all(user_id)
        logger.info("Revoked %d refresh token(s) for user %s", revoked, user_id)
        return revoked

    def current_user(self, access_token: str) -> User:
        """Resolve a bearer access token to its user. Raises Unauthenticated."""
        claims = verify_access_token(access_token)
        try:
            user_id = int(claims["sub"])
        except (TypeError, ValueError) as exc:
            raise Unauthenticated("Invalid or expired access token.") from exc
        user = self.store.get_by_id(user_id)
        if user is None:
            raise Unauthenticated("Invalid or expired access token.")
        return user

    # ------------------------------------------------------------------
    # External providers
    # ------------------------------------------------------------------

    def provider(self, name: str) -> ProviderAdapter:
        adapter = self.providers.get(name)
        if adapter is None:
            raise NotFound(f"Unknown provider: {name}")
        return adapter

    def begin_provider_authorization(
        self,
        provider: str,
        code_challenge: str | None = None,
        app_callback: str | None = None,
        client_state: str | None = None,
    ) -> str:
        """Return the provider authorization URL for a new login attempt.

        With a code challenge the attempt completes through the server
        callback and exchange(). Without one the callback relays the provider
        code to the app for login_with_provider_code(), and a client_state is
        required: the app keeps it and presents it again with the code, which
        is what binds the relayed state to the app that started the login.
        """
        adapter = self.provider(provider)
        callback = app_callback or self.settings.app_callback_url
        if not is_allowed_app_callback(callback, self.settings.allowed_app_callback_prefixes):
            raise AuthError("Callback URL is not allowed.")
        if code_challenge is not None and not is_valid_code_challenge(code_challenge):
            raise AuthError("Invalid code challenge.")
        if client_state is not None and not is_valid_client_state(client_state):
            raise AuthError("Invalid state.")
        if code_challenge is None and client_state is None:
            raise AuthError("A state is required when no code challenge is given.")
        state = sign_state(callback, code_challenge, client_state)
        return adapter.authorization_url(state)

    def complete_provider_callback(
        self,
        provider: str,
        code: str | None,
        state: str,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Handle the provider redirect and return the app callback URL to send the user to.

        The state must verify before anything is redirected anywhere; a bad
        state raises Unauthorized. Provider errors and provider failures are
        reported to the app as an `error` query parameter.

        PKCE logins spend the state here and return the authorization code
        together with the client's own state value, if it sent one. Direct
        logins get the provider code and the signed state relayed unspent.
        """
        adapter = self.provider(provider)
        verified = verify_state(state)
        target = verified.app_callback

        if error:
            logger.warning("%s authorization returned error %r", adapter.name, error)
            return _with_query(target, {"error": error, "error_description": error_description or ""})
        if not code:
            return _with_query(target, {"error": "invalid_request"})

        if verified.code_challenge is None:
            return _with_query(target, {"code": code, "state": state})

        self._spend_state(verified)
        try:
            user = self._resolve_provider_user(adapter, code, state)
        except ProviderError as exc:
            logger.error("%s callback failed: %s", adapter.name, exc.internal)
            return _with_query(target, {"error": exc.code})
        auth_code = self.code_ledger.issue(user.id, verified.code_challenge)
        return _with_query(target, {"code": auth_code, "state": verified.nonce or ""})

    def exchange(self, code: str, code_verifier: str) -> AuthResult:
        """Redeem a PKCE-bound authorization code for a session."""
        user_id = self.code_ledger.redeem(code, code_verifier)
        user = self.store.get_by_id(user_id)
        if user is None:
            raise Unauthorized("Invalid authorization code.")
        return self._start_session(user)

    def login_with_provider_code(self, provider: str, code: str, state: str, client_state: str) -> AuthResult:
        """Bridge a provider code obtained by the client directly into a session.

        client_state must equal the value the app passed when it started the
        login. A state minted for someone else, or one already used, raises
        Unauthorized before the provider is contacted.
        """
        adapter = self.provider(provider)
        verified = verify_state(state)
        if verified.code_challenge is not None:
            raise Unauthorized("This login must be completed with a code verifier.")
        if not state_matches_client(verified, client_state):
            logger.warning("%s code login rejected: state does not match the client", adapter.name)
            raise Unauthorized("State mismatch.")
        self._spend_state(verified)
        try:
            user = self._resolve_provider_user(adapter, code, state)
        except ProviderError as exc:
            logger.error("%s code login failed: %s", adapter.name, exc.internal)
            raise
        return self._start_session(user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spend_state(self, verified: OAuthState) -> None:
        if not self.store.consume_oauth_state(verified.jti, to_iso(verified.expires_at)):
            logger.warning("OAuth state %s presented again", verified.jti)
            raise Unauthorized("State has already been used.")

    def _resolve_provider_user(self, adapter: ProviderAdapter, code: str, state: str) -> User:
        tokens = adapter.exchange_code(code, state)
        profile = adapter.fetch_profile(tokens.access_token)
        user = self.store.upsert_provider_user(adapter.name, profile, tokens)
        logger.info("%s login resolved to user %s", adapter.name, user.id)
        return user

    def _start_session(self, user: User) -> AuthResult:
        self.store.update_last_login(user.id)
        return AuthResult(
            access_token=create_access_token(user),
            refresh_token=self.refresh_ledger.issue(user.id),
            user=user,
        )
