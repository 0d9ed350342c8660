"""
auth/errors.py -- Error taxonomy for the accounts backend.

Every error carries a stable machine-readable code and the HTTP status the API
layer renders it with. Services raise these; api/main.py turns them into the
shared error envelope.

All Unauthenticated subclasses are rendered identically at the HTTP boundary
so a client cannot tell which credential property failed. The subclass only
matters to code and to debug logs.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base error for everything the accounts services raise."""

    code: str = "internal_error"
    message: str = "An internal error occurred."
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Bad input, e.g. a non-positive ttl or an unknown user id."""

    code = "validation_error"
    message = "Invalid input."
    status_code = 422


class Unauthenticated(AuthError):
    """No credential, or a credential that does not identify a user."""

    code = "unauthorized"
    message = "Authentication required."
    status_code = 401


class InvalidSignature(Unauthenticated):
    code = "invalid_signature"
    message = "Token signature is invalid."


class Expired(Unauthenticated):
    code = "expired"
    message = "Credential has expired."


class Revoked(Unauthenticated):
    code = "revoked"
    message = "Token has been revoked."


class ApiKeyNotFound(Unauthenticated):
    code = "api_key_not_found"
    message = "API key not found."


class Denied(AuthError):
    """The Policy Gate refused the action. reason names the failing policy."""

    code = "forbidden"
    message = "Access denied."
    status_code = 403

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Access denied: {reason}.")


class Conflict(AuthError):
    """A uniqueness constraint rejected the write (email, api_key_hash, jti)."""

    code = "conflict"
    message = "Resource already exists."
    status_code = 409


class NotFound(AuthError):
    code = "not_found"
    message = "Resource not found."
    status_code = 404
