from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and the stable
    ``error_code`` used in the error envelope:
    - validation_error (400)
    - invariant_violation (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
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
    """Malformed or out-of-policy input (400)."""
    status_code = 400
    error_code = "validation_error"


class InvariantViolation(ServiceError):
    """Admin safety rule would be broken, e.g. demoting the last admin (400)."""
    status_code = 400
    error_code = "invariant_violation"


class AuthenticationError(ServiceError):
    """Missing, invalid or expired session, or bad credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but lacking admin privilege (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Unique constraint hit, e.g. email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Store or hashing failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvariantViolation",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
