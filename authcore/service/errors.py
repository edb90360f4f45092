from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on. Generic codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Authentication flow errors below refine these with their own codes.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


# Authentication flow outcomes


class DuplicateAccount(ValidationError):
    error_code = "duplicate_account"
    default_message = "email already registered"


class InvalidCredentials(AuthenticationError):
    # One message for unknown email and wrong password alike
    error_code = "invalid_credentials"
    default_message = "invalid email or password"


class AccountNotActivated(ForbiddenError):
    error_code = "account_not_activated"
    default_message = "account not activated"


class FederatedAccountConflict(ForbiddenError):
    error_code = "federated_account_conflict"
    default_message = "account uses federated sign-in"


class InvalidActivationToken(NotFoundError):
    error_code = "invalid_activation_token"
    default_message = "invalid activation token"


class InvalidResetToken(ValidationError):
    error_code = "invalid_reset_token"
    default_message = "invalid or expired reset token"


class InvalidRefreshToken(ForbiddenError):
    error_code = "invalid_refresh_token"
    default_message = "invalid refresh token"


class UnknownAccount(NotFoundError):
    """Only raised where account enumeration is explicitly allowed."""
    error_code = "unknown_account"
    default_message = "account not found"


class FederatedLoginFailed(AuthenticationError):
    error_code = "federated_login_failed"
    default_message = "federated login failed"


class NotificationFailure(ServerError):
    """Email dispatch failed after account state was committed."""
    error_code = "notification_failure"
    default_message = "failed to send email"


class PersistenceFailure(ServerError):
    """A backing store was unreachable; the caller may retry."""
    status_code = 503
    error_code = "persistence_failure"
    default_message = "storage unavailable"


class SigningFailure(ServerError):
    """Credential signing is misconfigured."""
    error_code = "signing_failure"
    default_message = "credential signing unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DuplicateAccount",
    "InvalidCredentials",
    "AccountNotActivated",
    "FederatedAccountConflict",
    "InvalidActivationToken",
    "InvalidResetToken",
    "InvalidRefreshToken",
    "UnknownAccount",
    "FederatedLoginFailed",
    "NotificationFailure",
    "PersistenceFailure",
    "SigningFailure",
]
