"""
auth/errors.py -- Typed failures raised by the auth core.

Every use-case failure is an AuthError subclass carrying its HTTP status and a
client-safe message. api/main.py translates them into the response envelope
{success: false, status: "fail"|"error", message}; nothing in auth/ builds
HTTP responses itself.

Messages that must not leak information are fixed class attributes:
InvalidCredentials is identical for "no such user" and "wrong password", and
ResetLinkInvalid covers expired, unknown and already-used tokens alike.

TokenError subclasses are internal to the token issuer's callers and are
never surfaced to clients directly.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all client-facing auth failures."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


class ValidationError(AuthError):
    status_code = 400
    default_message = "Invalid input"


class Conflict(AuthError):
    status_code = 409
    default_message = "An account with this email already exists"


class InvalidCredentials(AuthError):
    status_code = 401
    default_message = "Invalid email or password"


class EmailNotVerified(AuthError):
    status_code = 403
    default_message = "Please verify your email address before signing in"


class Unauthorized(AuthError):
    status_code = 401
    default_message = "Unauthorized - Please sign in to continue"


class Forbidden(AuthError):
    status_code = 403
    default_message = "Please verify your email address to access this resource"


class CurrentPasswordIncorrect(AuthError):
    status_code = 400
    default_message = "Current password is incorrect"


class ResetLinkInvalid(AuthError):
    status_code = 400
    default_message = "Password reset link has expired or is invalid. Please request a new one."


class NotFound(AuthError):
    status_code = 404
    default_message = "Resource not found"


class Internal(AuthError):
    status_code = 500
    default_message = "Internal server error"


# ---------------------------------------------------------------------------
# Token lifecycle failures (TokenIssuer.validate_and_consume)
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base for purpose-token failures. Callers map these to a client error."""


class TokenInvalid(TokenError):
    """Unknown token, or a token issued for a different purpose."""


class TokenExpired(TokenError):
    """Token exists and is unconsumed but past its expiry."""


class TokenAlreadyUsed(TokenError):
    """Token was consumed before. Single-use, regardless of expiry."""
