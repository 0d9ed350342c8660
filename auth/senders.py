"""
auth/senders.py -- Delivery hook for single-use tokens.

The session service hands confirmation, password reset and magic link tokens
to a Sender. Mail delivery lives outside this package; LogSender only records
that a token went out, never the token itself.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import User

logger = logging.getLogger("flowforge.auth.senders")


class Sender(Protocol):
    def send(self, user: User, token: str, purpose: str) -> None: ...


class LogSender:
    """Default sender: logs the event and drops the token."""

    def send(self, user: User, token: str, purpose: str) -> None:
        logger.info("Issued %s token for user %s", purpose, user.id)
