from __future__ import annotations

import functools
from datetime import datetime
from typing import Optional

from keyward.storage.errors import StorageUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    The mapping is one-to-one: no two outcomes share a code, and the codes
    never change between releases because clients branch on them.
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


class InvalidCredentials(ServiceError):
    """Wrong identifier or password; also used when the principal is unknown."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(ServiceError):
    """Malformed, expired or forged token, or a dead session (401)."""
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeactivated(ServiceError):
    status_code = 403
    error_code = "account_deactivated"

    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountSuspended(ServiceError):
    status_code = 403
    error_code = "account_suspended"

    def __init__(
        self, message: str = "account is suspended", *, until: Optional[datetime] = None
    ) -> None:
        super().__init__(
            message, detail={"suspended_until": until.isoformat() if until else None}
        )
        self.until = until


class AccountLocked(ServiceError):
    """Too many failed logins; refused until the lock expires (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, until: datetime, message: str = "account is temporarily locked") -> None:
        super().__init__(message, detail={"locked_until": until.isoformat()})
        self.until = until


class EmailNotVerified(ServiceError):
    status_code = 403
    error_code = "email_not_verified"

    def __init__(self, message: str = "email address is not verified") -> None:
        super().__init__(message, detail={"needs_verification": True})


class DuplicateIdentity(ServiceError):
    status_code = 409
    error_code = "duplicate_identity"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is already registered", detail={"field": field})
        self.field = field


class WeakPassword(ServiceError):
    status_code = 400
    error_code = "weak_password"

    def __init__(self, requirements: list[str], message: str = "password does not meet policy") -> None:
        super().__init__(message, detail={"requirements": list(requirements)})
        self.requirements = list(requirements)


class SignupDisabled(ServiceError):
    status_code = 403
    error_code = "signup_disabled"

    def __init__(self, message: str = "signup is disabled") -> None:
        super().__init__(message)


class ProjectNotFound(ServiceError):
    status_code = 404
    error_code = "project_not_found"

    def __init__(self, message: str = "project not found") -> None:
        super().__init__(message)


class ProjectInactive(ServiceError):
    status_code = 403
    error_code = "project_inactive"

    def __init__(self, message: str = "project is inactive") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TransientError(ServiceError):
    """Storage or network failure; safe to retry, never an auth outcome (503)."""
    status_code = 503
    error_code = "transient"


ERROR_CODES = frozenset(
    {
        cls.error_code
        for cls in (
            ValidationError,
            InvalidCredentials,
            InvalidToken,
            AccountDeactivated,
            AccountSuspended,
            AccountLocked,
            EmailNotVerified,
            DuplicateIdentity,
            WeakPassword,
            SignupDisabled,
            ProjectNotFound,
            ProjectInactive,
            NotFoundError,
            ForbiddenError,
            RateLimitedError,
            TransientError,
        )
    }
    | {"server_error"}
)


def surface_transient(func):
    """Re-raise storage outages from a coroutine as ``TransientError``.

    Keeps a timeout from ever reaching the caller as an auth failure.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StorageUnavailable as exc:
            raise TransientError(
                "storage temporarily unavailable", detail={"retryable": True}
            ) from exc

    return wrapper


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "InvalidToken",
    "AccountDeactivated",
    "AccountSuspended",
    "AccountLocked",
    "EmailNotVerified",
    "DuplicateIdentity",
    "WeakPassword",
    "SignupDisabled",
    "ProjectNotFound",
    "ProjectInactive",
    "NotFoundError",
    "ForbiddenError",
    "RateLimitedError",
    "TransientError",
    "ERROR_CODES",
    "surface_transient",
]
