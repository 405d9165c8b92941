from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from relaychat.api.schemas import Envelope, ErrorBody
from relaychat.logging import get_logger, sanitize_error_message
from relaychat.service.errors import RateLimitedError, ServiceError
from relaychat.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    413: "payload_too_large",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    """Map an HTTP status to its stable error code."""
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build an error envelope response."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _log_client_error(request: Request, status_code: int, event: str, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Reduce pydantic errors to location and message; raw input is never echoed."""
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "message": error.get("msg", "")}
        for error in exc.errors()
    ]


def _envelope_parts(exc: HTTPException) -> tuple[str, Optional[str], Any]:
    """Pull message, code and details out of an ``HTTPException`` detail."""
    detail = exc.detail
    # Envelope-shaped detail produced by routes._http_error()
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error_obj = detail["error"]
        return error_obj.get("message", "http error"), error_obj.get("code"), error_obj.get("details")
    # Plain HTTPException (e.g. Starlette 404/405)
    if isinstance(detail, dict):
        return str(detail.get("detail", "http error")), None, None
    return str(detail), None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves the API as an error envelope."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(details),
        )
        return _error_response(400, "Request validation failed", details)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_client_error(request, 409, "constraint_violation", message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_client_error(
            request,
            exc.status_code,
            "service_error",
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _envelope_parts(exc)
        if exc.status_code >= 400:
            _log_client_error(
                request, exc.status_code, "http_error", error_code=code, message=message
            )
        return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
