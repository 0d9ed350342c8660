"""
auth/tokens.py -- JWT, password hashing, and API key primitives.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (user id), jti (token record id), purpose and expiry. decode_token()
       raises InvalidSignature or Expired -- the session service adds the
       revocation check on top.

  Passwords: bcrypt directly (no passlib wrapper). Cost factor comes from
       Settings.bcrypt_rounds. The _DUMMY_HASH constant enables timing
       equalization in the password strategy so response time does not reveal
       whether an email is registered.

  API keys: secrets.token_hex(32) gives 256 bits of entropy behind a
       "flowforge_" prefix. We store HMAC-SHA256(SECRET_KEY, raw_key) so lookup
       is O(1) by digest; bcrypt's slowness is unnecessary for high-entropy
       secrets. Digests are compared with hmac.compare_digest.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import Expired, InvalidSignature
from core.config import get_settings

logger = logging.getLogger("flowforge.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ISSUER = "flowforge"

API_KEY_PREFIX = "flowforge_"
API_KEY_SECRET_BYTES = 32

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    255 characters and the service rejects anything shorter than 8.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB. Treat as a mismatch rather than a 500.
        logger.warning("Stored password hash is malformed")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("flowforge_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called when there is no real hash to compare against, so that unknown
    emails cost the same time as wrong passwords.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_token(user_id: str, jti: str, purpose: str, expires_at: datetime) -> str:
    """Encode a signed JWT bound to a user, a token record and an expiry."""
    payload = {
        "sub": user_id,
        "jti": jti,
        "purpose": purpose,
        "iss": _ISSUER,
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_token(token: str, verify_exp: bool = True) -> dict:
    """Verify a JWT and return its claims.

    Raises Expired when the signature is good but exp has passed, and
    InvalidSignature for every other failure (bad signature, malformed token,
    wrong issuer, missing claims). Pass verify_exp=False to read the claims of
    an expired but authentic token, e.g. to revoke it.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=_ISSUER,
            options={"verify_exp": verify_exp},
        )
    except ExpiredSignatureError as exc:
        raise Expired() from exc
    except JWTError as exc:
        raise InvalidSignature() from exc
    if not all(payload.get(claim) for claim in ("sub", "jti", "purpose")):
        raise InvalidSignature("Token is missing required claims.")
    return payload


def looks_like_jwt(credential: str) -> bool:
    """Cheap shape check: three non-empty dot-separated segments."""
    parts = credential.split(".")
    return len(parts) == 3 and all(parts)


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: flowforge_<64 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(API_KEY_SECRET_BYTES)}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string.

    Keyed with SECRET_KEY so a leaked database alone cannot be used to test
    guesses offline. Deterministic, so the store can look keys up by digest.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


def digests_match(presented: str, stored: str) -> bool:
    return hmac.compare_digest(presented.encode(), stored.encode())


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True keeps it away from scripts; samesite="lax" withholds it
    from cross-site POSTs; secure follows SECURE_COOKIES. max_age matches the
    JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
