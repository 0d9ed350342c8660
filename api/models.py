"""
API request and response models for FlowForge REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Sensitive fields never appear in a response model: no password hash, no API
key digest. The raw API key appears exactly once, in ApiKeyCreatedResponse.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ApiKey, User
from auth.sessions import EMAIL_PATTERN

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# One year. Longer-lived keys should be rotated instead.
MAX_API_KEY_TTL_SECONDS = 365 * 24 * 3600


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    password: str = Field(min_length=8, max_length=255)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class EmailRequest(BaseModel):
    """Body for password reset and magic link requests."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)


class TokenRequest(BaseModel):
    """Body for endpoints that consume a single-use token."""

    token: str = Field(min_length=1, max_length=4096)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    password: str = Field(min_length=8, max_length=255)


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys.

    ttl_seconds is optional; the server default (API_KEY_DEFAULT_TTL_SECONDS)
    applies when omitted. Non-positive values are rejected by the API Key
    Manager as well, not only here.
    """

    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=MAX_API_KEY_TTL_SECONDS)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    confirmed: bool
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            confirmed=user.is_confirmed,
            confirmed_at=user.confirmed_at,
            created_at=user.created_at,
        )


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    user: UserResponse


class ApiKeyResponse(BaseModel):
    """One API key as listed to its owner. The digest is never returned."""

    model_config = ConfigDict(frozen=True)

    id: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    valid: bool

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(id=key.id, expires_at=key.expires_at, created_at=key.created_at, valid=key.valid)


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation. key is the plaintext and cannot be fetched again."""

    key: str


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
