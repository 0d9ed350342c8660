"""
auth/strategies.py -- Authentication strategies behind one interface.

Every strategy answers two questions:
  accepts(credential)      -- is this credential the shape I handle?
  authenticate(credential) -- which user id does it belong to?

Authenticator picks the first strategy that accepts a credential and runs it.
Whatever goes wrong inside (unknown key, expired token, wrong password, user
deleted since the credential was issued) leaves the Authenticator as a plain
Unauthenticated, so the outer boundary learns nothing about the cause.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from auth.api_keys import ApiKeyManager
from auth.errors import Unauthenticated
from auth.models import User
from auth.sessions import SessionService
from auth.tokens import API_KEY_PREFIX, looks_like_jwt

logger = logging.getLogger("flowforge.auth.strategies")


@dataclass(frozen=True)
class PasswordCredential:
    email: str
    password: str


@dataclass(frozen=True)
class MagicLinkCredential:
    token: str


class Strategy(Protocol):
    name: str

    def accepts(self, credential: Any) -> bool: ...

    def authenticate(self, credential: Any) -> str: ...


class PasswordStrategy:
    name = "password"

    def __init__(self, sessions: SessionService) -> None:
        self.sessions = sessions

    def accepts(self, credential: Any) -> bool:
        return isinstance(credential, PasswordCredential)

    def authenticate(self, credential: PasswordCredential) -> str:
        return self.sessions.authenticate_password(credential.email, credential.password).id


class ApiKeyStrategy:
    name = "api_key"

    def __init__(self, api_keys: ApiKeyManager) -> None:
        self.api_keys = api_keys

    def accepts(self, credential: Any) -> bool:
        return isinstance(credential, str) and credential.startswith(API_KEY_PREFIX)

    def authenticate(self, credential: str) -> str:
        return self.api_keys.validate(credential)


class BearerTokenStrategy:
    name = "bearer"

    def __init__(self, sessions: SessionService) -> None:
        self.sessions = sessions

    def accepts(self, credential: Any) -> bool:
        return isinstance(credential, str) and looks_like_jwt(credential)

    def authenticate(self, credential: str) -> str:
        return self.sessions.verify(credential)


class MagicLinkStrategy:
    """Redeems a magic link token. Single use: a second call fails."""

    name = "magic_link"

    def __init__(self, sessions: SessionService) -> None:
        self.sessions = sessions

    def accepts(self, credential: Any) -> bool:
        return isinstance(credential, MagicLinkCredential)

    def authenticate(self, credential: MagicLinkCredential) -> str:
        return self.sessions.redeem_magic_link(credential.token).id


class Authenticator:
    """Selects a strategy by credential shape and resolves the user."""

    def __init__(self, strategies: list[Strategy], sessions: SessionService) -> None:
        self.strategies = strategies
        self.store = sessions.store

    @classmethod
    def default(cls, sessions: SessionService, api_keys: ApiKeyManager) -> Authenticator:
        return cls(
            [
                PasswordStrategy(sessions),
                MagicLinkStrategy(sessions),
                ApiKeyStrategy(api_keys),
                BearerTokenStrategy(sessions),
            ],
            sessions,
        )

    def select(self, credential: Any) -> Strategy | None:
        for strategy in self.strategies:
            if strategy.accepts(credential):
                return strategy
        return None

    def authenticate(self, credential: Any) -> str:
        """Return the user id behind credential or raise a generic Unauthenticated."""
        return self.authenticate_user(credential).id

    def authenticate_user(self, credential: Any) -> User:
        strategy = self.select(credential)
        if strategy is None:
            raise Unauthenticated()
        try:
            user_id = strategy.authenticate(credential)
        except Unauthenticated as exc:
            logger.debug("%s strategy rejected credential: %s", strategy.name, exc.code)
            raise Unauthenticated() from None
        user = self.store.get_user_by_id(user_id)
        if user is None:
            logger.debug("%s strategy resolved a deleted user", strategy.name)
            raise Unauthenticated()
        return user
