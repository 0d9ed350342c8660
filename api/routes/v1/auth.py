"""
api/routes/v1/auth.py -- Account, session and API key endpoints.

Routes:
  POST   /api/v1/auth/register                 -- create account; sends confirmation token
  POST   /api/v1/auth/login                    -- password login; sets JWT cookie
  POST   /api/v1/auth/logout                   -- revoke session; clears cookie (idempotent)
  GET    /api/v1/auth/me                       -- current user (requires auth)
  DELETE /api/v1/auth/me                       -- delete own account (requires auth)
  POST   /api/v1/auth/sign-out-everywhere      -- revoke every session of the user
  POST   /api/v1/auth/confirm                  -- consume confirmation token
  POST   /api/v1/auth/password-reset/request   -- send reset token (always 202)
  POST   /api/v1/auth/password-reset/confirm   -- consume reset token, set password
  POST   /api/v1/auth/magic-link/request       -- send magic link token (always 202)
  POST   /api/v1/auth/magic-link/sign-in       -- consume magic link token; sets JWT cookie
  POST   /api/v1/auth/api-keys                 -- issue API key (raw key shown once)
  GET    /api/v1/auth/api-keys                 -- list own keys
  GET    /api/v1/auth/api-keys/{id}            -- one key
  DELETE /api/v1/auth/api-keys/{id}            -- destroy key

Every mutation of an existing record passes the Policy Gate first. Routes
raise the auth/errors.py taxonomy; api/main.py turns it into HTTP responses.

Security:
  Login, register and token-sending routes are rate-limited.
  Login, register and magic-link sign-in answer with Cache-Control: no-store.
  Reset and magic-link requests answer 202 whether or not the email exists.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordResetConfirm,
    RegisterRequest,
    TokenRequest,
    UserResponse,
)
from auth.api_keys import ApiKeyManager
from auth.dependencies import get_api_keys, get_current_user, get_gate, get_session_token, get_sessions
from auth.errors import InvalidSignature
from auth.models import User
from auth.policy import PolicyGate
from auth.sessions import SessionService
from auth.strategies import MagicLinkCredential, PasswordCredential
from auth.tokens import set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("flowforge.api.auth")

# Auth policy:
# - register, login, logout, confirm, password-reset/*, magic-link/*: public
# - me, sign-out-everywhere, api-keys: require auth (get_current_user) + Policy Gate
router = APIRouter()


def _session_response(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    """Start a session for user and return the token in body and cookie."""
    sessions: SessionService = request.app.state.sessions
    token = sessions.sign_in(user)
    expires_in = int(sessions.session_ttl.total_seconds())
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            expires_in=expires_in,
            user=UserResponse.from_user(user),
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, token, expires_in)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_RATE_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and sign it in. A confirmation token is sent separately."""
    sessions: SessionService = request.app.state.sessions
    user = sessions.register(body.email, body.password)
    return _session_response(request, user, status_code=201)


@limiter.limit(LOGIN_RATE_LIMIT)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Wrong email and wrong password produce the same 401.
    """
    user = request.app.state.authenticator.authenticate_user(PasswordCredential(body.email, body.password))
    return _session_response(request, user)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    sessions: SessionService = Depends(get_sessions),
    gate: PolicyGate = Depends(get_gate),
) -> JSONResponse:
    """Revoke the presented session and clear the cookie.

    Succeeds without a token, with an already revoked token and with an
    expired one. A forged token cannot revoke anything but the cookie is
    still cleared. Tokens of any other purpose are left alone.

    The signature proves possession, so the token's own subject is the actor
    the gate checks against Token.destroy.
    """
    token = get_session_token(request)
    record = None
    if token:
        try:
            record = sessions.session_record(token)
        except InvalidSignature:
            logger.debug("Logout presented a token with a bad signature")
    if record is not None:
        gate.ensure(sessions.store.get_user_by_id(record.user_id), "destroy", record)
        sessions.revoke(record)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.post("/auth/confirm", response_model=UserResponse)
def confirm(body: TokenRequest, sessions: SessionService = Depends(get_sessions)) -> UserResponse:
    return UserResponse.from_user(sessions.confirm(body.token))


@limiter.limit(LOGIN_RATE_LIMIT)
@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: EmailRequest) -> MessageResponse:
    request.app.state.sessions.request_password_reset(body.email)
    return MessageResponse(message="If the account exists, a reset link has been sent.")


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(
    body: PasswordResetConfirm,
    sessions: SessionService = Depends(get_sessions),
) -> MessageResponse:
    """Set a new password. Every existing session of the user is revoked."""
    sessions.reset_password(body.token, body.password)
    return MessageResponse(message="Password updated.")


@limiter.limit(LOGIN_RATE_LIMIT)
@router.post("/auth/magic-link/request", response_model=MessageResponse, status_code=202)
def request_magic_link(request: Request, body: EmailRequest) -> MessageResponse:
    request.app.state.sessions.request_magic_link(body.email)
    return MessageResponse(message="If the account exists, a sign-in link has been sent.")


@router.post("/auth/magic-link/sign-in", response_model=LoginResponse)
def magic_link_sign_in(request: Request, body: TokenRequest) -> JSONResponse:
    user = request.app.state.authenticator.authenticate_user(MagicLinkCredential(body.token))
    return _session_response(request, user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
) -> UserResponse:
    gate.ensure(current_user, "read", current_user)
    return UserResponse.from_user(current_user)


@router.delete("/auth/me", status_code=204)
def delete_me(
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    sessions: SessionService = Depends(get_sessions),
) -> Response:
    """Delete the current account. API keys and sessions go with it."""
    gate.ensure(current_user, "destroy", current_user)
    sessions.delete_account(current_user.id)
    resp = Response(status_code=204)
    resp.delete_cookie("access_token")
    return resp


@router.post("/auth/sign-out-everywhere", response_model=MessageResponse)
def sign_out_everywhere(
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    sessions: SessionService = Depends(get_sessions),
) -> MessageResponse:
    gate.ensure(current_user, "sign_out_everywhere", current_user)
    count = sessions.sign_out_everywhere(current_user.id)
    return MessageResponse(message=f"Revoked {count} session(s).")


# ---------------------------------------------------------------------------
# API key management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    body: ApiKeyCreate,
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    api_keys: ApiKeyManager = Depends(get_api_keys),
) -> ApiKeyCreatedResponse:
    """Issue a new API key. The raw key is shown ONCE and never stored.

    Capped at API_KEY_MAX_PER_USER unexpired keys per user.
    """
    gate.ensure(current_user, "issue_api_key", current_user)
    settings = get_settings()
    if api_keys.count_valid(current_user.id) >= settings.api_key_max_per_user:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {settings.api_key_max_per_user} API keys per user. "
                "Destroy an existing key first.",
            },
        )
    ttl = body.ttl_seconds if body.ttl_seconds is not None else settings.api_key_default_ttl_seconds
    raw_key, record = api_keys.issue(current_user.id, ttl)
    return ApiKeyCreatedResponse(
        id=record.id,
        expires_at=record.expires_at,
        created_at=record.created_at,
        valid=record.valid,
        key=raw_key,
    )


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    api_keys: ApiKeyManager = Depends(get_api_keys),
) -> list[ApiKeyResponse]:
    """List the current user's keys, expired ones included."""
    keys = api_keys.list_for_user(current_user.id)
    return [ApiKeyResponse.from_api_key(k) for k in keys if gate.authorize(current_user, "read", k)]


@router.get("/auth/api-keys/{key_id}", response_model=ApiKeyResponse)
def get_api_key(
    key_id: str,
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    api_keys: ApiKeyManager = Depends(get_api_keys),
) -> ApiKeyResponse:
    key = api_keys.get(key_id)
    gate.ensure(current_user, "read", key)
    return ApiKeyResponse.from_api_key(key)


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def destroy_api_key(
    key_id: str,
    current_user: User = Depends(get_current_user),
    gate: PolicyGate = Depends(get_gate),
    api_keys: ApiKeyManager = Depends(get_api_keys),
) -> Response:
    """Destroy a key. The Policy Gate rejects keys owned by someone else."""
    key = api_keys.get(key_id)
    gate.ensure(current_user, "destroy", key)
    api_keys.destroy(key_id)
    return Response(status_code=204)
