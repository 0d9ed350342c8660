"""
auth/api_keys.py -- Issue and validate expiring API keys.

issue() is the only mutating operation besides destroy(); validate() is a
pure read and may run in parallel without limit.

Failure signalling: validate() raises ApiKeyNotFound or Expired. Both are
Unauthenticated subclasses, and the HTTP layer renders every Unauthenticated
the same way, so a caller cannot probe which keys exist.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone

from auth.errors import ApiKeyNotFound, Expired, NotFound, ValidationError
from auth.models import ApiKey
from auth.store import AccountStore
from auth.tokens import digests_match, generate_api_key, hash_api_key

logger = logging.getLogger("flowforge.auth.api_keys")


def _expiry(ttl: int | float | timedelta, now: datetime) -> datetime:
    """Turn a positive ttl into an absolute expiry, or raise ValidationError."""
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float, timedelta)):
        raise ValidationError("ttl must be a number of seconds or a timedelta.")
    if isinstance(ttl, float) and not math.isfinite(ttl):
        raise ValidationError("ttl must be finite.")
    try:
        lifetime = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        if lifetime <= timedelta(0):
            raise ValidationError("ttl must be positive.")
        return now + lifetime
    except (OverflowError, ValueError) as exc:
        raise ValidationError("ttl is too large.") from exc


class ApiKeyManager:
    """Issues, validates and destroys API keys backed by an AccountStore."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def issue(self, user_id: str, ttl: int | float | timedelta) -> tuple[str, ApiKey]:
        """Create a key for user_id valid for ttl. Returns (plaintext, record).

        The plaintext is not stored anywhere and cannot be recovered later.

        Raises:
            ValidationError: ttl is not positive or the user does not exist.
            Conflict: the digest collided with an existing key. Not retried.
        """
        expires_at = _expiry(ttl, datetime.now(timezone.utc))
        if self.store.get_user_by_id(user_id) is None:
            raise ValidationError("User does not exist.")

        raw_key = generate_api_key()
        record = self.store.create_api_key(
            ApiKey(
                user_id=user_id,
                api_key_hash=hash_api_key(raw_key),
                expires_at=expires_at,
            )
        )
        logger.info("API key %s issued for user %s (expires %s)", record.id, user_id, record.expires_at.isoformat())
        return raw_key, record

    def validate(self, presented_key: str) -> str:
        """Return the owning user id of a presented key.

        Raises:
            ApiKeyNotFound: no key has this digest.
            Expired: the key exists but expires_at has passed.
        """
        presented_hash = hash_api_key(presented_key)
        record = self.store.get_api_key_by_hash(presented_hash)
        if record is None or not digests_match(presented_hash, record.api_key_hash):
            raise ApiKeyNotFound()
        if not record.is_valid():
            logger.debug("Rejected expired API key %s", record.id)
            raise Expired("API key has expired.")
        return record.user_id

    def get(self, key_id: str) -> ApiKey:
        record = self.store.get_api_key(key_id)
        if record is None:
            raise NotFound("API key not found.")
        return record

    def list_for_user(self, user_id: str) -> list[ApiKey]:
        return self.store.list_api_keys(user_id)

    def count_valid(self, user_id: str) -> int:
        return self.store.count_valid_api_keys(user_id)

    def destroy(self, key_id: str) -> None:
        """Delete a key. Raises NotFound if it does not exist."""
        if not self.store.delete_api_key(key_id):
            raise NotFound("API key not found.")
        logger.info("API key %s destroyed", key_id)
