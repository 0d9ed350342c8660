"""
auth/models.py -- Domain dataclasses for account entities.

Pattern: Data class (pure data containers). Stores map rows into these;
services and routes do the work. The only logic here is ApiKey.is_valid(),
which is computed on read and never stored.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

# Token purposes. Sessions use TOKEN_PURPOSE_USER; the others are single-use.
TOKEN_PURPOSE_USER = "user"
TOKEN_PURPOSE_CONFIRM = "confirm"
TOKEN_PURPOSE_PASSWORD_RESET = "password_reset"  # noqa: S105 # nosec B105 -- purpose label, not a password
TOKEN_PURPOSE_MAGIC_LINK = "magic_link"

TOKEN_PURPOSES = frozenset(
    {TOKEN_PURPOSE_USER, TOKEN_PURPOSE_CONFIRM, TOKEN_PURPOSE_PASSWORD_RESET, TOKEN_PURPOSE_MAGIC_LINK}
)


@dataclass
class User:
    """An account identity.

    email is stored lower-cased; the store normalizes on every read and write
    so uniqueness is case-insensitive.

    hashed_password is None for users provisioned without a password (they
    sign in via magic link or API key only).
    """

    email: str
    id: str | None = None  # UUID, assigned by the store
    hashed_password: str | None = None
    confirmed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None


@dataclass
class ApiKey:
    """A long-lived credential owned by exactly one User.

    api_key_hash is HMAC-SHA256(SECRET_KEY, raw_key). The raw key is returned
    once at issuance and never persisted. Records are immutable: the only
    mutations are insert and delete.
    """

    user_id: str
    api_key_hash: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        """True while expires_at lies in the future."""
        now = now or datetime.now(timezone.utc)
        return self.expires_at > now

    @property
    def valid(self) -> bool:
        return self.is_valid()


@dataclass
class Token:
    """Server-side record of an issued signed token.

    The JWT carries jti; a token verifies only while this record exists, so
    deleting the row revokes it.
    """

    jti: str
    user_id: str
    purpose: str
    expires_at: datetime
    created_at: datetime | None = None
