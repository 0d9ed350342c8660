"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and by the auth routes (to
apply per-route limits with @limiter.limit()). One shared instance means all
routes share the same in-memory counter store; separate instances would each
count on their own and never trip.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Applied to every endpoint that accepts a password or sends a token.
LOGIN_RATE_LIMIT = get_settings().login_rate_limit
