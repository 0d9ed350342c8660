"""
auth/sessions.py -- Session and single-use token service.

Every signed token has a row in the tokens table keyed by its jti. verify()
checks, in order: signature, expiry, purpose, and that the row still exists.
Deleting the row is how a token is revoked, which is what sign_out() does.

Single-use tokens (confirmation, password reset, magic link) go through
_consume(): the row is deleted before the action runs, and if another request
deleted it first the token counts as revoked. The database delete is the only
coordination point -- no in-process locks.

Account lifecycle operations that need a password (register, reset) live here
too since they hand out or consume tokens.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone

from auth.errors import NotFound, Revoked, Unauthenticated, ValidationError
from auth.models import (
    TOKEN_PURPOSE_CONFIRM,
    TOKEN_PURPOSE_MAGIC_LINK,
    TOKEN_PURPOSE_PASSWORD_RESET,
    TOKEN_PURPOSE_USER,
    Token,
    User,
)
from auth.senders import LogSender, Sender
from auth.store import AccountStore
from auth.tokens import burn_password_check, decode_token, encode_token, hash_password, verify_password
from core.config import get_settings

logger = logging.getLogger("flowforge.auth.sessions")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255

# One "@", something on both sides, no whitespace. Shared with api/models.py.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


def validate_email(email: str) -> str:
    email = email.strip()
    if not re.fullmatch(EMAIL_PATTERN, email):
        raise ValidationError("Email address is invalid.")
    return email


def validate_password(password: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH} characters."
        )
    return password


class SessionService:
    """Issues, verifies and revokes signed tokens bound to token records."""

    def __init__(self, store: AccountStore, sender: Sender | None = None, session_ttl: int | None = None) -> None:
        settings = get_settings()
        self.store = store
        self.sender: Sender = sender or LogSender()
        self.session_ttl = timedelta(seconds=session_ttl or settings.token_expire_seconds)
        self._purpose_ttls = {
            TOKEN_PURPOSE_CONFIRM: timedelta(seconds=settings.confirm_token_ttl_seconds),
            TOKEN_PURPOSE_PASSWORD_RESET: timedelta(seconds=settings.reset_token_ttl_seconds),
            TOKEN_PURPOSE_MAGIC_LINK: timedelta(seconds=settings.magic_link_ttl_seconds),
        }

    # ------------------------------------------------------------------
    # Token plumbing
    # ------------------------------------------------------------------

    def _issue(self, user: User, purpose: str, ttl: timedelta) -> str:
        record = self.store.create_token(
            Token(
                jti=str(uuid.uuid4()),
                user_id=user.id,
                purpose=purpose,
                expires_at=datetime.now(timezone.utc) + ttl,
            )
        )
        return encode_token(user.id, record.jti, purpose, record.expires_at)

    def _check(self, token: str, purpose: str) -> dict:
        claims = decode_token(token)
        if claims["purpose"] != purpose:
            raise Unauthenticated("Token was issued for a different purpose.")
        record = self.store.get_token(claims["jti"])
        if record is None or record.user_id != claims["sub"]:
            raise Revoked()
        return claims

    def _consume(self, token: str, purpose: str) -> User:
        claims = self._check(token, purpose)
        if not self.store.delete_token(claims["jti"]):
            # Another request used it between the check and the delete.
            raise Revoked()
        user = self.store.get_user_by_id(claims["sub"])
        if user is None:
            raise Revoked()
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def sign_in(self, user: User) -> str:
        """Create a session record for user and return its signed token."""
        token = self._issue(user, TOKEN_PURPOSE_USER, self.session_ttl)
        logger.info("Session started for user %s", user.id)
        return token

    def verify(self, token: str) -> str:
        """Return the user id of a live session token.

        Raises InvalidSignature, Expired or Revoked (all Unauthenticated).
        """
        return self._check(token, TOKEN_PURPOSE_USER)["sub"]

    def session_record(self, token: str) -> Token | None:
        """Return the record behind a session token, expired or not.

        None when the token was issued for another purpose or its record is
        already gone. Tampered tokens raise InvalidSignature because their jti
        is untrusted.
        """
        claims = decode_token(token, verify_exp=False)
        if claims["purpose"] != TOKEN_PURPOSE_USER:
            logger.debug("Sign-out presented a %s token; ignored", claims["purpose"])
            return None
        record = self.store.get_token(claims["jti"])
        if record is None or record.user_id != claims["sub"]:
            return None
        return record

    def revoke(self, record: Token) -> None:
        """Delete a session record. Losing a race with another revoke is fine."""
        if self.store.delete_token(record.jti):
            logger.info("Session ended for user %s", record.user_id)

    def sign_out(self, token: str) -> None:
        """Revoke a session token. Repeated calls succeed silently.

        Expired tokens are accepted so their records can still be cleaned up.
        Confirmation, reset and magic link tokens are left untouched.
        """
        record = self.session_record(token)
        if record is not None:
            self.revoke(record)

    def sign_out_everywhere(self, user_id: str) -> int:
        """Revoke every session of a user. Returns how many were revoked."""
        count = self.store.delete_tokens_for_user(user_id, purpose=TOKEN_PURPOSE_USER)
        logger.info("Revoked %d sessions for user %s", count, user_id)
        return count

    def purge_expired(self) -> int:
        count = self.store.purge_expired_tokens()
        if count:
            logger.info("Purged %d expired token records", count)
        return count

    # ------------------------------------------------------------------
    # Password accounts
    # ------------------------------------------------------------------

    def register(self, email: str, password: str | None) -> User:
        """Create a user and send them a confirmation token.

        password may be None for accounts that only use magic links or API
        keys. Raises ValidationError for malformed input and Conflict when
        the email is taken.
        """
        email = validate_email(email)
        hashed = hash_password(validate_password(password)) if password is not None else None
        user = self.store.create_user(User(email=email, hashed_password=hashed))
        logger.info("Registered user %s", user.id)
        self.send_confirmation(user)
        return user

    def authenticate_password(self, email: str, password: str) -> User:
        """Return the user owning email/password or raise Unauthenticated.

        bcrypt runs on every path so timing does not reveal whether the email
        is registered.
        """
        user = self.store.get_user_by_email(email)
        if user is None or user.hashed_password is None:
            burn_password_check(password)
            raise Unauthenticated("Invalid email or password.")
        if not verify_password(password, user.hashed_password):
            raise Unauthenticated("Invalid email or password.")
        return user

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def send_confirmation(self, user: User) -> None:
        token = self._issue(user, TOKEN_PURPOSE_CONFIRM, self._purpose_ttls[TOKEN_PURPOSE_CONFIRM])
        self.sender.send(user, token, TOKEN_PURPOSE_CONFIRM)

    def confirm(self, token: str) -> User:
        """Consume a confirmation token and stamp confirmed_at."""
        user = self._consume(token, TOKEN_PURPOSE_CONFIRM)
        if not user.is_confirmed:
            self.store.confirm_user(user.id)
            logger.info("Confirmed user %s", user.id)
        return self.store.get_user_by_id(user.id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Send a reset token if the email is registered; do nothing otherwise."""
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.debug("Password reset requested for unknown email")
            return
        token = self._issue(user, TOKEN_PURPOSE_PASSWORD_RESET, self._purpose_ttls[TOKEN_PURPOSE_PASSWORD_RESET])
        self.sender.send(user, token, TOKEN_PURPOSE_PASSWORD_RESET)

    def reset_password(self, token: str, new_password: str) -> User:
        """Consume a reset token, store the new hash and end every session."""
        hashed = hash_password(validate_password(new_password))
        user = self._consume(token, TOKEN_PURPOSE_PASSWORD_RESET)
        self.store.update_password(user.id, hashed)
        self.sign_out_everywhere(user.id)
        logger.info("Password reset for user %s", user.id)
        return self.store.get_user_by_id(user.id)

    # ------------------------------------------------------------------
    # Magic link
    # ------------------------------------------------------------------

    def request_magic_link(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.debug("Magic link requested for unknown email")
            return
        token = self._issue(user, TOKEN_PURPOSE_MAGIC_LINK, self._purpose_ttls[TOKEN_PURPOSE_MAGIC_LINK])
        self.sender.send(user, token, TOKEN_PURPOSE_MAGIC_LINK)

    def redeem_magic_link(self, token: str) -> User:
        """Consume a magic link token and return its user.

        Following the link proves control of the mailbox, so an unconfirmed
        user becomes confirmed.
        """
        user = self._consume(token, TOKEN_PURPOSE_MAGIC_LINK)
        if user.is_confirmed:
            return user
        self.store.confirm_user(user.id)
        return self.store.get_user_by_id(user.id)

    def sign_in_with_magic_link(self, token: str) -> tuple[User, str]:
        user = self.redeem_magic_link(token)
        return user, self.sign_in(user)

    # ------------------------------------------------------------------
    # Account removal
    # ------------------------------------------------------------------

    def delete_account(self, user_id: str) -> None:
        """Delete a user; their keys and token records cascade."""
        if not self.store.delete_user(user_id):
            raise NotFound("User not found.")
        logger.info("Deleted user %s", user_id)
