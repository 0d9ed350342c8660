"""
auth/store.py -- SQLAlchemy Core persistence layer for account entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_user / _row_to_api_key / _row_to_token
are the mappers. Service and route code never touches SQL directly.

Concurrency:
  The store is the only shared mutable resource. No in-process locks: every
  uniqueness rule (users.email, api_keys.api_key_hash, tokens.jti) is a
  database constraint, and an IntegrityError on insert is translated into
  Conflict. Conflicts are never retried here -- a silent retry could hand out
  a second API key for one request.

Ownership:
  api_keys.user_id and tokens.user_id reference users.id with ON DELETE
  CASCADE. SQLite only honours that with PRAGMA foreign_keys=ON, which is set
  per connection in _set_sqlite_pragmas().

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision, so lexical comparison in SQL matches chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import ApiKey, Token, User
from core.config import get_settings

logger = logging.getLogger("flowforge.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text),  # NULL for password-less users
    Column("confirmed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("api_key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("jti", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("purpose", String(30), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Without foreign_keys=ON the ON DELETE CASCADE
    clauses above are ignored.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for User, ApiKey and Token records.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@example.com", hashed_password=hash_password("secret")))
        key = store.get_api_key_by_hash(digest)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and created_at filled in.

        Raises Conflict if the (case-insensitive) email is already taken.
        """
        user_id = user.id or str(uuid.uuid4())
        created_at = _now()
        email = normalize_email(user.email)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=email,
                        hashed_password=user.hashed_password,
                        confirmed_at=_to_iso(user.confirmed_at) if user.confirmed_at else None,
                        created_at=_to_iso(created_at),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("A user with that email already exists.") from exc
        return User(
            id=user_id,
            email=email,
            hashed_password=user.hashed_password,
            confirmed_at=user.confirmed_at,
            created_at=created_at,
        )

    def get_user_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email, ignoring case. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def confirm_user(self, user_id: str, confirmed_at: datetime | None = None) -> bool:
        """Stamp confirmed_at. Returns False if the user does not exist."""
        stamp = _to_iso(confirmed_at or _now())
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(confirmed_at=stamp))
        return result.rowcount > 0

    def update_password(self, user_id: str, hashed_password: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password)
            )
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Delete a user. Their API keys and token records go with them (FK cascade)."""
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        """Insert an API key record.

        Raises Conflict if api_key_hash is already present, or if the owning
        user vanished between the caller's existence check and this insert.
        """
        key_id = api_key.id or str(uuid.uuid4())
        created_at = _now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _api_keys.insert().values(
                        id=key_id,
                        user_id=api_key.user_id,
                        api_key_hash=api_key.api_key_hash,
                        expires_at=_to_iso(api_key.expires_at),
                        created_at=_to_iso(created_at),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("API key could not be stored.") from exc
        return ApiKey(
            id=key_id,
            user_id=api_key.user_id,
            api_key_hash=api_key.api_key_hash,
            expires_at=api_key.expires_at,
            created_at=created_at,
        )

    def get_api_key(self, key_id: str) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key_by_hash(self, api_key_hash: str) -> ApiKey | None:
        """Look up a key by digest. O(1) via the UNIQUE index. Expired keys are returned too."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.api_key_hash == api_key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, user_id: str) -> list[ApiKey]:
        """Return every key of a user, newest first, expired ones included."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select().where(_api_keys.c.user_id == user_id).order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def count_valid_api_keys(self, user_id: str, now: datetime | None = None) -> int:
        cutoff = _to_iso(now or _now())
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_keys)
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.expires_at > cutoff))
            ).scalar()
        return result or 0

    def delete_api_key(self, key_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_api_keys.delete().where(_api_keys.c.id == key_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Token records
    # ------------------------------------------------------------------

    def create_token(self, token: Token) -> Token:
        created_at = _now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _tokens.insert().values(
                        jti=token.jti,
                        user_id=token.user_id,
                        purpose=token.purpose,
                        expires_at=_to_iso(token.expires_at),
                        created_at=_to_iso(created_at),
                    )
                )
        except IntegrityError as exc:
            raise Conflict("Token could not be stored.") from exc
        return Token(
            jti=token.jti,
            user_id=token.user_id,
            purpose=token.purpose,
            expires_at=token.expires_at,
            created_at=created_at,
        )

    def get_token(self, jti: str) -> Token | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.jti == jti)).fetchone()
        return _row_to_token(row) if row is not None else None

    def delete_token(self, jti: str) -> bool:
        """Delete a token record. Returns False if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.jti == jti))
        return result.rowcount > 0

    def delete_tokens_for_user(self, user_id: str, purpose: str | None = None) -> int:
        """Delete a user's token records, optionally only those of one purpose."""
        condition = _tokens.c.user_id == user_id
        if purpose is not None:
            condition = condition & (_tokens.c.purpose == purpose)
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(condition))
        return result.rowcount

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete token records whose expiry has passed. Returns rows removed."""
        cutoff = _to_iso(now or _now())
        with self.engine.begin() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= cutoff))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        confirmed_at=_from_iso(row.confirmed_at),
        created_at=_from_iso(row.created_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        api_key_hash=row.api_key_hash,
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
    )


def _row_to_token(row) -> Token:
    return Token(
        jti=row.jti,
        user_id=row.user_id,
        purpose=row.purpose,
        expires_at=_from_iso(row.expires_at),
        created_at=_from_iso(row.created_at),
    )
