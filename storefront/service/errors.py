from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that ends up in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - password_expired (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
    - upstream_error (502)

    Machine-readable flags for clients (``locked``, ``require2FA``,
    ``sessionExpired`` ...) travel in ``detail``.
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        detail = {"sessionExpired": True, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PasswordExpiredError(ForbiddenError):
    """Password is past its maximum age and must be changed (403)."""
    error_code = "password_expired"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"


class UpstreamError(ServiceError):
    """Payment gateway or other upstream dependency failed (502)."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "PasswordExpiredError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "UpstreamError",
]
