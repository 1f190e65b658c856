"""
core/errors.py -- Exception taxonomy for the authentication core.

Every failure the core reports to a caller is one of these classes. The
service layer raises them; the HTTP adapter (api/main.py) maps the base
classes to status codes in a single exception handler, so no core module
ever mentions HTTP.

  AuthenticationFailure -- wrong credentials, locked account, missing or bad
                           second factor. Never retried automatically.
  TokenFailure          -- expired, malformed, or revoked tokens. The caller
                           must re-authenticate.
  PolicyViolation       -- weak/same password, duplicate identity, invalid
                           state transition. Carries structured detail.
  NotFound / Forbidden  -- subject absent / role insufficient.
  SystemFailure         -- storage or configuration broken. Fatal to the
                           operation, surfaces as an internal error.

Collaborator failures (email, geolocation) are absent: they are
logged where they happen and never raised.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class VaultPassError(Exception):
    """Base class. `code` is stable and machine-readable; `message` is for humans."""

    code = "error"
    message = "Request failed."

    def __init__(self, message: str | None = None, *, detail: Any = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationFailure(VaultPassError):
    code = "authentication_failed"
    message = "Authentication failed."


class InvalidCredential(AuthenticationFailure):
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountLocked(AuthenticationFailure):
    code = "account_locked"
    message = "Account is locked. Please try again later or reset your password."

    def __init__(self, locked_until: datetime | None = None) -> None:
        super().__init__(detail=locked_until.isoformat() if locked_until else None)
        self.locked_until = locked_until


class TwoFactorRequired(AuthenticationFailure):
    code = "two_factor_required"
    message = "Two-factor authentication required."


class InvalidTwoFactorCode(AuthenticationFailure):
    code = "invalid_two_factor_code"
    message = "Invalid two-factor authentication code."


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenFailure(VaultPassError):
    code = "invalid_token"
    message = "Invalid token."


class TokenExpired(TokenFailure):
    code = "token_expired"
    message = "Token expired. Please refresh your token."


class TokenMalformed(TokenFailure):
    code = "token_invalid"
    message = "Invalid token. Please authenticate."


class SessionRevoked(TokenFailure):
    code = "session_revoked"
    message = "Session expired or revoked."


class ActionTokenInvalid(TokenFailure):
    """Email-verification or password-reset token unknown or expired."""

    code = "invalid_action_token"
    message = "Invalid or expired token."


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyViolation(VaultPassError):
    code = "policy_violation"
    message = "Request violates account policy."


class WeakPassword(PolicyViolation):
    code = "weak_password"
    message = "Password is too weak."

    def __init__(self, strength: Any) -> None:
        super().__init__(detail=strength)
        self.strength = strength


class SamePassword(PolicyViolation):
    code = "same_password"
    message = "New password must be different from the current password."


class DuplicateIdentity(PolicyViolation):
    code = "duplicate_identity"

    def __init__(self, field: str) -> None:
        message = "Email already registered." if field == "email" else "Username already taken."
        super().__init__(message, detail=field)
        self.field = field


class InvalidTransition(PolicyViolation):
    code = "invalid_state"
    message = "Operation not allowed in the current state."


# ---------------------------------------------------------------------------
# Lookup / authorization / system
# ---------------------------------------------------------------------------


class NotFound(VaultPassError):
    code = "not_found"
    message = "Not found."


class Forbidden(VaultPassError):
    code = "forbidden"
    message = "Insufficient permissions. Access denied."


class SystemFailure(VaultPassError):
    code = "internal_error"
    message = "An unexpected error occurred."
