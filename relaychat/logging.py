from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation id of the HTTP request or websocket session being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Keys whose values are credentials or personal data
_PII_KEYS = ("password", "secret", "token", "authorization", "email")

# Addresses also show up inside composite values such as "ip:email" limiter keys
_EMAIL_IN_TEXT = re.compile(r"[\w.!#$%&'*+/=?^`{|}~-]+@[\w-]+(?:\.[\w-]+)+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_connection_context(connection_id: str, user_id: str) -> None:
    """Tag every log line of a websocket session with its connection and user."""
    set_correlation_id(connection_id)
    structlog.contextvars.bind_contextvars(connection_id=connection_id, user_id=user_id)


def clear_connection_context() -> None:
    structlog.contextvars.unbind_contextvars("connection_id", "user_id")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    # Keep first/last 2 chars for debugging
    return value[:2] + "***" + value[-2:] if len(value) > 4 else "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and address fields, and scrub addresses embedded in other values."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
        elif key != "event" and "@" in value:
            event_dict[key] = _EMAIL_IN_TEXT.sub("[email]", value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Logging is configured on import; settings are not loaded yet at this point
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Fragments of exception text that must not reach clients or log sinks verbatim
_SENSITIVE_PATTERNS_COMPILED = [
    re.compile(pattern)
    for pattern in (
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
        _EMAIL_IN_TEXT.pattern,
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials, addresses and stack fragments from exception text.

    Returns a generic message for empty input and truncates anything longer
    than 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
