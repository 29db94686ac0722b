"""
tests/test_ledger.py -- Unit tests for auth/ledger.py.

RefreshLedger:
  - rotate succeeds exactly once and returns a different token
  - replaying a rotated token fails and revokes the successor (session family)
  - expired, unknown and logged-out tokens
  - a lost compare-and-swap race is treated as a replay

AuthorizationCodeLedger:
  - correct verifier redeems exactly once; a replay revokes the family
  - wrong verifier fails without burning the code
  - expired and unknown codes

Concurrency:
  - threads racing on one refresh token or one code against a file-backed
    SQLite database: exactly one wins, every other attempt is Unauthorized
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from auth.errors import Unauthorized
from auth.ledger import AuthorizationCodeLedger, RefreshLedger
from auth.models import User
from auth.pkce import derive_code_challenge
from auth.store import UserStore, to_iso
from auth.tokens import verify_access_token


def _user(store: UserStore, email: str = "a@x.com") -> User:
    return store.create_user(User(name="A", email=email, hashed_password="hash"))


def _verifier() -> str:
    return secrets.token_urlsafe(32)  # 43 characters


class TestRefreshLedger:
    def test_rotation_scenario(self, store: UserStore) -> None:
        """rotate(r1) -> r2; rotate(r1) again fails and r2 is revoked too."""
        user = _user(store)
        ledger = RefreshLedger(store)
        refresh1 = ledger.issue(user.id)

        pair = ledger.rotate(refresh1)
        assert pair.refresh_token != refresh1
        assert verify_access_token(pair.access_token)["sub"] == str(user.id)
        assert store.get_refresh_token(refresh1).is_revoked is True

        with pytest.raises(Unauthorized) as excinfo:
            ledger.rotate(refresh1)
        assert "revoked" in excinfo.value.message
        assert store.get_refresh_token(pair.refresh_token).is_revoked is True

    def test_replay_revokes_every_session_of_the_user(self, store: UserStore) -> None:
        user = _user(store)
        other = _user(store, "b@x.com")
        ledger = RefreshLedger(store)
        stolen = ledger.issue(user.id)
        second_device = ledger.issue(user.id)
        bystander = ledger.issue(other.id)

        successor = ledger.rotate(stolen).refresh_token
        with pytest.raises(Unauthorized):
            ledger.rotate(stolen)

        assert store.get_refresh_token(second_device).is_revoked is True
        assert store.get_refresh_token(successor).is_revoked is True
        assert store.get_refresh_token(bystander).is_revoked is False

    def test_unknown_token(self, store: UserStore) -> None:
        with pytest.raises(Unauthorized) as excinfo:
            RefreshLedger(store).rotate("no-such-token")
        assert excinfo.value.message == "Invalid refresh token."

    def test_expired_token(self, store: UserStore) -> None:
        user = _user(store)
        expired = to_iso(datetime.now(timezone.utc) - timedelta(seconds=1))
        store.create_refresh_token(user.id, "old", expired)
        with pytest.raises(Unauthorized) as excinfo:
            RefreshLedger(store).rotate("old")
        assert "expired" in excinfo.value.message

    def test_default_lifetime_is_thirty_days(self, store: UserStore) -> None:
        user = _user(store)
        token = RefreshLedger(store).issue(user.id)
        expires_at = datetime.fromisoformat(store.get_refresh_token(token).expires_at)
        remaining = expires_at - datetime.now(timezone.utc)
        assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)

    def test_logged_out_token_cannot_rotate(self, store: UserStore) -> None:
        user = _user(store)
        ledger = RefreshLedger(store)
        token = ledger.issue(user.id)
        ledger.revoke(token)
        with pytest.raises(Unauthorized):
            ledger.rotate(token)

    def test_revoke_all(self, store: UserStore) -> None:
        user = _user(store)
        ledger = RefreshLedger(store)
        tokens = [ledger.issue(user.id) for _ in range(3)]
        assert ledger.revoke_all(user.id) == 3
        assert all(store.get_refresh_token(t).is_revoked for t in tokens)

    def test_lost_race_is_treated_as_replay(self, store: UserStore) -> None:
        """A rotation whose compare-and-swap finds the record already revoked fails and revokes the family."""
        user = _user(store)
        ledger = RefreshLedger(store)
        token = ledger.issue(user.id)
        sibling = ledger.issue(user.id)
        with patch.object(store, "rotate_refresh_token", return_value=None):
            with pytest.raises(Unauthorized):
                ledger.rotate(token)
        assert store.get_refresh_token(sibling).is_revoked is True

    def test_custom_access_token_factory(self, store: UserStore) -> None:
        user = _user(store)
        ledger = RefreshLedger(store, access_token_factory=lambda u: f"access-for-{u.id}")
        pair = ledger.rotate(ledger.issue(user.id))
        assert pair.access_token == f"access-for-{user.id}"


class TestAuthorizationCodeLedger:
    def test_pkce_scenario(self, store: UserStore) -> None:
        """exchange(code, V) succeeds once; exchange(code, V) again fails."""
        user = _user(store)
        verifier = _verifier()
        assert len(verifier) == 43
        codes = AuthorizationCodeLedger(store)
        code = codes.issue(user.id, derive_code_challenge(verifier))

        assert codes.redeem(code, verifier) == user.id
        with pytest.raises(Unauthorized):
            codes.redeem(code, verifier)

    def test_replay_revokes_refresh_tokens(self, store: UserStore) -> None:
        user = _user(store)
        verifier = _verifier()
        codes = AuthorizationCodeLedger(store)
        session = RefreshLedger(store).issue(user.id)
        code = codes.issue(user.id, derive_code_challenge(verifier))
        codes.redeem(code, verifier)

        with pytest.raises(Unauthorized) as excinfo:
            codes.redeem(code, verifier)
        assert "already been used" in excinfo.value.message
        assert store.get_refresh_token(session).is_revoked is True

    def test_wrong_verifier_fails_without_consuming(self, store: UserStore) -> None:
        user = _user(store)
        verifier = _verifier()
        codes = AuthorizationCodeLedger(store)
        code = codes.issue(user.id, derive_code_challenge(verifier))

        with pytest.raises(Unauthorized) as excinfo:
            codes.redeem(code, _verifier())
        assert excinfo.value.message == "Invalid code verifier."
        assert store.get_authorization_code(code).is_used is False
        assert codes.redeem(code, verifier) == user.id

    def test_malformed_verifier_fails(self, store: UserStore) -> None:
        user = _user(store)
        verifier = _verifier()
        codes = AuthorizationCodeLedger(store)
        code = codes.issue(user.id, derive_code_challenge(verifier))
        for bad in ("short", verifier + "!", "é" * 50):
            with pytest.raises(Unauthorized):
                codes.redeem(code, bad)

    def test_expired_code(self, store: UserStore) -> None:
        user = _user(store)
        verifier = _verifier()
        expired = to_iso(datetime.now(timezone.utc) - timedelta(seconds=1))
        store.create_authorization_code(user.id, "stale", derive_code_challenge(verifier), expired)
        with pytest.raises(Unauthorized) as excinfo:
            AuthorizationCodeLedger(store).redeem("stale", verifier)
        assert "expired" in excinfo.value.message

    def test_unknown_code(self, store: UserStore) -> None:
        with pytest.raises(Unauthorized):
            AuthorizationCodeLedger(store).redeem("no-such-code", _verifier())

    def test_lost_race_is_treated_as_replay(self, store: UserStore) -> None:
        user = _user(store)
        verifier = _verifier()
        codes = AuthorizationCodeLedger(store)
        session = RefreshLedger(store).issue(user.id)
        code = codes.issue(user.id, derive_code_challenge(verifier))
        with patch.object(store, "consume_authorization_code", return_value=False):
            with pytest.raises(Unauthorized):
                codes.redeem(code, verifier)
        assert store.get_refresh_token(session).is_revoked is True

    def test_code_lifetime_is_five_minutes(self, store: UserStore) -> None:
        user = _user(store)
        code = AuthorizationCodeLedger(store).issue(user.id, derive_code_challenge(_verifier()))
        expires_at = datetime.fromisoformat(store.get_authorization_code(code).expires_at)
        remaining = expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=4) < remaining <= timedelta(minutes=5)


THREADS = 8


def _race(attempt, rounds: int) -> list[str]:
    """Run attempt() from THREADS threads released together, once per round.

    Returns one outcome per call: "ok", "unauthorized", or the repr of any
    other exception.
    """
    outcomes: list[str] = []
    lock = threading.Lock()

    for round_no in range(rounds):
        barrier = threading.Barrier(THREADS)

        def worker() -> None:
            barrier.wait()
            try:
                attempt(round_no)
                outcome = "ok"
            except Unauthorized:
                outcome = "unauthorized"
            except Exception as exc:  # noqa: BLE001 -- reported in the assertion below
                outcome = repr(exc)
            with lock:
                outcomes.append(outcome)

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            for future in [pool.submit(worker) for _ in range(THREADS)]:
                future.result()
    return outcomes


@pytest.fixture()
def file_store(tmp_path) -> Generator[UserStore, None, None]:
    user_store = UserStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield user_store
    user_store.close()


class TestConcurrentConsumption:
    def test_one_rotation_wins_per_token(self, file_store: UserStore) -> None:
        rounds = 5
        ledger = RefreshLedger(file_store)
        tokens = [ledger.issue(_user(file_store, f"u{i}@x.com").id) for i in range(rounds)]

        outcomes = _race(lambda i: ledger.rotate(tokens[i]), rounds)

        assert set(outcomes) <= {"ok", "unauthorized"}, outcomes
        assert outcomes.count("ok") == rounds
        assert outcomes.count("unauthorized") == rounds * (THREADS - 1)

    def test_one_redemption_wins_per_code(self, file_store: UserStore) -> None:
        rounds = 5
        codes = AuthorizationCodeLedger(file_store)
        verifier = _verifier()
        challenge = derive_code_challenge(verifier)
        issued = [codes.issue(_user(file_store, f"u{i}@x.com").id, challenge) for i in range(rounds)]

        outcomes = _race(lambda i: codes.redeem(issued[i], verifier), rounds)

        assert set(outcomes) <= {"ok", "unauthorized"}, outcomes
        assert outcomes.count("ok") == rounds
        assert outcomes.count("unauthorized") == rounds * (THREADS - 1)
