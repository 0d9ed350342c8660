"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Three credential sources are checked in priority order:
  1. "access_token" cookie            -- set by POST /auth/login (browser).
  2. Authorization: Bearer <value>    -- a session JWT or an API key.
  3. X-API-Key header                 -- an API key.

Each raw credential goes to the Authenticator, which picks the strategy by
credential shape. A source that fails falls through to the next one.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthenticated, which api/main.py
renders as a generic 401.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.api_keys import ApiKeyManager
from auth.errors import Unauthenticated
from auth.models import User
from auth.policy import PolicyGate
from auth.sessions import SessionService
from auth.store import AccountStore
from auth.strategies import Authenticator


def _bearer(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_session_token(request: Request) -> str | None:
    """Return the raw session credential of the request, if any.

    Used by logout, which needs the token itself rather than the user.
    """
    return request.cookies.get("access_token") or _bearer(request)


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie, Bearer or X-API-Key.

    Returns the User on success, None on any failure. Never raises.
    """
    authenticator: Authenticator = request.app.state.authenticator
    candidates = (
        request.cookies.get("access_token"),
        _bearer(request),
        request.headers.get("X-API-Key"),
    )
    for credential in candidates:
        if not credential:
            continue
        try:
            return authenticator.authenticate_user(credential)
        except Unauthenticated:
            continue
    return None


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthenticated()
    return user


def get_store(request: Request) -> AccountStore:
    return request.app.state.store


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def get_api_keys(request: Request) -> ApiKeyManager:
    return request.app.state.api_keys


def get_gate(request: Request) -> PolicyGate:
    return request.app.state.gate
