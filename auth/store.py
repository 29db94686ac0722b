"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository for users,
refresh tokens and authorization codes; the _row_to_* functions are the
mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Provider tokens pass through SecretCipher on the way in and out. Raw
  provider tokens never reach the users table.

  Consuming a refresh token or authorization code is a conditional UPDATE
  (WHERE is_revoked = 0 / is_used = 0) checked by rowcount. Two racing
  requests cannot both see rowcount == 1, so at most one consumption
  succeeds per record even without row locks.
  Spending an OAuth state is an INSERT into oauth_states under a unique
  jti; the second insert fails, which gives the same guarantee.

  UNIQUE(provider, provider_id) is declared in SQL. Local accounts have a
  NULL provider_id, and SQLite treats NULLs as distinct, so any number of
  local accounts coexist under the constraint.

DB path: auth/keygate_auth.db by default (Settings.database_url).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.cipher import SecretCipher
from auth.models import AuthorizationCode, ProviderProfile, ProviderTokens, RefreshToken, User

logger = logging.getLogger("keygate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True),  # NULL for provider-only accounts without email
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for provider-only accounts
    Column("provider", String(30), nullable=False, server_default="local"),
    Column("provider_id", String(255)),  # provider's stable user ID
    Column("provider_access_token", Text),  # SecretCipher envelope
    Column("provider_refresh_token", Text),  # SecretCipher envelope
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    UniqueConstraint("provider", "provider_id", name="uq_users_provider_identity"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_authorization_codes = Table(
    "authorization_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("code", String(64), nullable=False, unique=True),
    Column("code_challenge", String(128), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Spent OAuth state ids. A row exists once a state has been used; the
# unique index turns a second use into an IntegrityError.
_oauth_states = Table(
    "oauth_states",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Serialize a UTC datetime with fixed precision so stored values sort lexically."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, RefreshToken and AuthorizationCode entities.

    Usage:
        store = UserStore(get_settings().database_url, cipher=SecretCipher.from_settings(get_settings()))
        user = store.create_user(User(name="A", email="a@x.com", hashed_password=hash_password("Passw0rd1")))
        store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str, cipher: SecretCipher | None = None) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.cipher = cipher or SecretCipher()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps set.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        Callers translate that into Conflict; the unique index is the final
        word when two registrations race past the pre-check.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    provider=user.provider,
                    provider_id=user.provider_id,
                    provider_access_token=user.provider_access_token,
                    provider_refresh_token=user.provider_refresh_token,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return replace(user, id=result.inserted_primary_key[0], created_at=now, updated_at=now)

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_provider(self, provider: str, provider_id: str) -> User | None:
        """Look up a user by (provider, provider_id). Returns None if not linked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.provider == provider) & (_users.c.provider_id == provider_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def upsert_provider_user(self, provider: str, profile: ProviderProfile, tokens: ProviderTokens) -> User:
        """Create or refresh the account linked to (provider, profile.id).

        Provider tokens are encrypted on every pass. Email and name are only
        overwritten when the provider supplied a non-empty value. Emails are
        stored lower-cased. An email
        already held by a different account is not copied over -- accounts are
        never linked by email alone.
        """
        access_envelope = self.cipher.encrypt(tokens.access_token)
        refresh_envelope = self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        profile_email = profile.email.strip().lower() if profile.email else None

        existing = self.get_by_provider(provider, profile.id)
        if existing is None:
            with self.engine.connect() as conn:
                email = profile_email if self._email_available(conn, profile_email, None) else None
            try:
                return self.create_user(
                    User(
                        name=profile.display_name,
                        email=email,
                        provider=provider,
                        provider_id=profile.id,
                        provider_access_token=access_envelope,
                        provider_refresh_token=refresh_envelope,
                    )
                )
            except IntegrityError:
                # A concurrent first login inserted the same identity first.
                existing = self.get_by_provider(provider, profile.id)
                if existing is None:
                    raise

        values: dict = {
            "provider_access_token": access_envelope,
            "updated_at": _now_iso(),
        }
        if refresh_envelope is not None:
            values["provider_refresh_token"] = refresh_envelope
        if profile.display_name:
            values["name"] = profile.display_name
        with self.engine.connect() as conn:
            if profile_email and self._email_available(conn, profile_email, existing.id):
                values["email"] = profile_email
            conn.execute(_users.update().where(_users.c.id == existing.id).values(**values))
            conn.commit()
        return self.get_by_id(existing.id) or existing

    def get_provider_tokens(self, user_id: int) -> ProviderTokens | None:
        """Return the user's decrypted provider tokens, or None if none are stored.

        Rows flagged by SecretCipher.needs_reencryption() are rewritten under
        the active key on the way out (lazy migration).
        """
        user = self.get_by_id(user_id)
        if user is None or not user.provider_access_token:
            return None
        self.reencrypt_provider_tokens(user)
        refresh = user.provider_refresh_token
        return ProviderTokens(
            access_token=self.cipher.decrypt(user.provider_access_token),
            refresh_token=self.cipher.decrypt(refresh) if refresh else None,
        )

    def reencrypt_provider_tokens(self, user: User) -> bool:
        """Rewrite the user's provider token envelopes under the active key if needed.

        Returns True if the row was updated.
        """
        values: dict = {}
        for field in ("provider_access_token", "provider_refresh_token"):
            value = getattr(user, field)
            if value and self.cipher.needs_reencryption(value):
                values[field] = self.cipher.reencrypt(value)
        if not values:
            return False
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user.id).values(**values))
            conn.commit()
        logger.info("Re-encrypted provider tokens for user %s", user.id)
        return True

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    @staticmethod
    def _email_available(conn: Connection, email: str | None, owner_id: int | None) -> bool:
        if not email:
            return False
        row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return row is None or row.id == owner_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: int, token: str, expires_at: str) -> RefreshToken:
        """Insert a new non-revoked refresh token record."""
        with self.engine.connect() as conn:
            record = self._insert_refresh_token(conn, user_id, token, expires_at)
            conn.commit()
        return record

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Look up a refresh token record by its opaque value."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, record_id: int, new_token: str, expires_at: str) -> RefreshToken | None:
        """Revoke record_id and insert its successor in one transaction.

        Returns the new record, or None when record_id was already revoked
        (a concurrent rotation or logout won the race). Nothing is written in
        that case.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            if result.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.id == record_id)
            ).fetchone()
            record = self._insert_refresh_token(conn, row.user_id, new_token, expires_at)
            conn.commit()
        return record

    def revoke_refresh_token(self, token: str) -> bool:
        """Revoke a single refresh token by value. Returns True if a live token was revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        """Revoke every refresh token owned by user_id. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount

    @staticmethod
    def _insert_refresh_token(conn: Connection, user_id: int, token: str, expires_at: str) -> RefreshToken:
        now = _now_iso()
        result = conn.execute(
            _refresh_tokens.insert().values(
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                is_revoked=0,
                created_at=now,
            )
        )
        return RefreshToken(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            is_revoked=False,
            created_at=now,
        )

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_authorization_code(
        self, user_id: int, code: str, code_challenge: str, expires_at: str
    ) -> AuthorizationCode:
        """Insert a new unused authorization code bound to code_challenge."""
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _authorization_codes.insert().values(
                    user_id=user_id,
                    code=code,
                    code_challenge=code_challenge,
                    is_used=0,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            conn.commit()
        return AuthorizationCode(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            code=code,
            code_challenge=code_challenge,
            expires_at=expires_at,
            is_used=False,
            created_at=now,
        )

    def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        """Look up an authorization code record by its opaque value."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _authorization_codes.select().where(_authorization_codes.c.code == code)
            ).fetchone()
        return _row_to_authorization_code(row) if row is not None else None

    def consume_authorization_code(self, code_id: int) -> bool:
        """Mark an authorization code used. Returns False if it was already used."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _authorization_codes.update()
                .where((_authorization_codes.c.id == code_id) & (_authorization_codes.c.is_used == 0))
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # OAuth state
    # ------------------------------------------------------------------

    def consume_oauth_state(self, jti: str, expires_at: str) -> bool:
        """Record a state id as spent. Returns False if it was already spent.

        The row is kept until expires_at so a replay within the state's
        lifetime is still caught; purge_expired() removes it afterwards.
        """
        with self.engine.connect() as conn:
            try:
                conn.execute(_oauth_states.insert().values(jti=jti, expires_at=expires_at, created_at=_now_iso()))
                conn.commit()
            except IntegrityError:
                conn.rollback()
                return False
        return True

    # ------------------------------------------------------------------
    # Offline cleanup
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete expired refresh tokens, authorization codes and spent OAuth states.

        Revoked tokens that have not expired yet are kept: replaying one must
        still be recognised as reuse. Returns the number of rows removed.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            tokens = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < now))
            codes = conn.execute(_authorization_codes.delete().where(_authorization_codes.c.expires_at < now))
            states = conn.execute(_oauth_states.delete().where(_oauth_states.c.expires_at < now))
            conn.commit()
        return tokens.rowcount + codes.rowcount + states.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        provider=row.provider,
        provider_id=row.provider_id,
        provider_access_token=row.provider_access_token,
        provider_refresh_token=row.provider_refresh_token,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        is_revoked=bool(row.is_revoked),
        created_at=row.created_at,
    )


def _row_to_authorization_code(row) -> AuthorizationCode:
    return AuthorizationCode(
        id=row.id,
        user_id=row.user_id,
        code=row.code,
        code_challenge=row.code_challenge,
        is_used=bool(row.is_used),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
