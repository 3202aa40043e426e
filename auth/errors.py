"""
auth/errors.py -- Outcome taxonomy for the authentication and authorization gate.

Every failure the gate can report is a GateError subclass carrying:
  code         -- stable machine-readable kind ("rate_limited", "forbidden", ...)
  status_code  -- HTTP status the API layer responds with
  message      -- human-readable text, safe to return to clients

None of these trigger retries. They are raised once, at the stage that
detected them, and the API layer turns them into the standard error envelope
(see api/main.py gate_error_handler).

Layer rule: no imports from api/ or fastapi. Status codes are plain ints so
this module stays transport-agnostic.
"""

from __future__ import annotations


class GateError(Exception):
    """Base class for all recoverable-by-caller gate outcomes."""

    code: str = "gate_error"
    status_code: int = 400
    default_message: str = "Request rejected."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        # Set by RequestPipeline to the last state reached before rejection.
        self.stage = None
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenMalformed(GateError):
    code = "token_malformed"
    status_code = 401
    default_message = "Token could not be parsed or its signature is invalid."


class TokenExpired(GateError):
    code = "token_expired"
    status_code = 401
    default_message = "Token has expired."


class Unauthenticated(GateError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Authentication required."


class InvalidCredentials(GateError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password."


class EmailNotVerified(GateError):
    code = "email_not_verified"
    status_code = 403
    default_message = "Email address has not been verified."


# ---------------------------------------------------------------------------
# Identity / RBAC
# ---------------------------------------------------------------------------


class IdentityNotFound(GateError):
    code = "identity_not_found"
    status_code = 404
    default_message = "User not found."


class RoleNotFound(GateError):
    code = "role_not_found"
    status_code = 404
    default_message = "Role not found."


class PermissionNotFound(GateError):
    code = "permission_not_found"
    status_code = 404
    default_message = "Permission not found."


class AlreadyHasRole(GateError):
    code = "already_has_role"
    status_code = 409
    default_message = "User already has this role."


class DuplicateName(GateError):
    code = "duplicate_name"
    status_code = 409
    default_message = "A record with that name already exists."


class Forbidden(GateError):
    code = "forbidden"
    status_code = 403
    default_message = "Insufficient role or permission."


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------


class RateLimited(GateError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests."

    def __init__(self, message: str | None = None, retry_after: float = 1.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


class TwoFARequired(GateError):
    code = "two_fa_required"
    status_code = 401
    default_message = "Two-factor code required."


class TwoFAInvalid(GateError):
    code = "two_fa_invalid"
    status_code = 401
    default_message = "Invalid two-factor code."


class TwoFANotSetup(GateError):
    code = "two_fa_not_setup"
    status_code = 400
    default_message = "Two-factor authentication has not been set up."


class TwoFAAlreadyEnabled(GateError):
    code = "two_fa_already_enabled"
    status_code = 409
    default_message = "Two-factor authentication is already enabled."
