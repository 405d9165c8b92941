from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Failure raised by a service and rendered for the client.

    Over HTTP the class decides the status and envelope ``code``; inside the
    hub the same ``error_code`` and message travel in an ``error`` event to the
    offending connection only. ``detail`` must be safe to show to the caller.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Malformed input, an unknown event, or a stale one-time token (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Token or credentials missing, invalid or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Valid identity without rights to the room or resource (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """A limiter denied the action; ``retry_after`` is whole seconds (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
