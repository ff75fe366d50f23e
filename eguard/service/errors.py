from __future__ import annotations

from typing import Optional

from eguard.storage.models import AccountStatus


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries the HTTP ``status_code`` and the stable ``error_code``
    rendered in the error envelope; the mapping is only applied at the API
    boundary.
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    """Missing, malformed, expired or blacklisted token. Carries no detail."""

    def __init__(self, message: str = "authentication required") -> None:
        super().__init__(message)


class BadCredentialsError(AuthenticationError):
    """Wrong password, wrong code, or unknown identity; all read the same."""

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class TwoFactorRequiredError(AuthenticationError):
    error_code = "two_factor_required"

    def __init__(self, message: str = "two-factor code required") -> None:
        super().__init__(message)


# (status, error_code, message) per blocking account status
_BLOCKED_RESPONSES = {
    AccountStatus.LOCKED: (423, "account_locked", "account locked; reset the password to continue"),
    AccountStatus.PASSWORD_RESET: (
        409,
        "password_reset_required",
        "password was reset; change it before logging in",
    ),
    AccountStatus.INACTIVE: (403, "account_inactive", "account is not active; contact an administrator"),
    AccountStatus.SUSPENDED: (403, "account_inactive", "account is not active; contact an administrator"),
    AccountStatus.DELETED: (403, "account_inactive", "account is not active; contact an administrator"),
    AccountStatus.WITHDRAWN: (403, "account_withdrawn", "account has been withdrawn"),
}


class AccountBlockedError(ServiceError):
    """Account status forbids the operation; the code tells the client how to recover."""

    status_code = 403
    error_code = "account_inactive"

    def __init__(self, account_status: AccountStatus) -> None:
        status_code, error_code, message = _BLOCKED_RESPONSES.get(
            account_status,
            (403, "account_inactive", "account is not active; contact an administrator"),
        )
        super().__init__(
            message,
            status_code=status_code,
            error_code=error_code,
            detail={"status": account_status.value},
        )
        self.account_status = account_status


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccessDeniedError(NotFoundError):
    """Tenant check failed. Rendered exactly like a missing resource."""

    def __init__(self, message: str = "resource not found") -> None:
        super().__init__(message)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthenticatedError",
    "BadCredentialsError",
    "TwoFactorRequiredError",
    "AccountBlockedError",
    "ForbiddenError",
    "NotFoundError",
    "AccessDeniedError",
    "RateLimitedError",
    "ServerError",
]
