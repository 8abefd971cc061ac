from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Messages are human readable and never
    include internal identifiers.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
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
    error_code = "VALIDATION_ERROR"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the strength policy (400)."""
    error_code = "WEAK_PASSWORD"


class InvalidCurrentPasswordError(ValidationError):
    """Current password supplied to a password change is wrong (400)."""
    error_code = "INVALID_CURRENT_PASSWORD"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "AUTHENTICATION_REQUIRED"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password or closed account (401)."""
    error_code = "INVALID_CREDENTIALS"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is invalid, expired, rotated or reused (401)."""
    error_code = "INVALID_REFRESH_TOKEN"


class MfaVerificationFailedError(AuthenticationError):
    error_code = "MFA_VERIFICATION_FAILED"


class MfaChallengeExpiredError(AuthenticationError):
    error_code = "MFA_CHALLENGE_EXPIRED"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class AccountNotVerifiedError(ForbiddenError):
    """Email address has not been verified yet (403)."""
    error_code = "ACCOUNT_NOT_VERIFIED"


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class UserAlreadyExistsError(ConflictError):
    error_code = "USER_ALREADY_EXISTS"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self, message: str, *, retry_after: int, limit: Optional[int] = None, **kwargs
    ) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after
        self.limit = limit

    def headers(self) -> dict:
        headers = {"Retry-After": str(self.retry_after)}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
            headers["X-RateLimit-Remaining"] = "0"
            headers["X-RateLimit-Reset"] = str(self.retry_after)
        return headers


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidCurrentPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "MfaVerificationFailedError",
    "MfaChallengeExpiredError",
    "ForbiddenError",
    "AccountNotVerifiedError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "UserAlreadyExistsError",
    "RateLimitedError",
    "ServerError",
]
