from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from relaychat.api.error_handling import _error_response, register_exception_handlers
from relaychat.api.routes import router
from relaychat.config import Settings
from relaychat.logging import get_logger, set_correlation_id
from relaychat.service.runtime import get_runtime
from relaychat.service.security import SecurityEventType, client_ip

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

_INSPECTED_METHODS = {"POST", "PUT", "PATCH"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic sweeps on startup and cancel them on shutdown."""
    runtime = get_runtime()
    runtime.start_background_tasks()
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="relaychat", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def validate_input(request: Request, call_next):
    """Reject oversized bodies and JSON bodies carrying SQL injection or XSS patterns.

    A detected pattern is recorded as a security event, which blocks the
    client address for a day.
    """
    if request.method.upper() not in _INSPECTED_METHODS:
        return await call_next(request)
    runtime = get_runtime()
    limit = runtime.settings.max_request_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        return _error_response(413, "Request too large")
    body = await request.body()
    if len(body) > limit:
        return _error_response(413, "Request too large")
    if not body or "json" not in request.headers.get("content-type", ""):
        return await call_next(request)
    try:
        payload = json.loads(body)
    except ValueError:
        # Malformed JSON is reported by request validation downstream
        return await call_next(request)
    finding = runtime.security.inspect_payload(payload)
    if finding is not None:
        runtime.security.log_event(
            finding,
            client_ip(request.headers, request.client.host if request.client else None),
            user_agent=request.headers.get("user-agent"),
            details={"path": request.url.path, "method": request.method},
        )
        return _error_response(400, "Invalid request")
    return await call_next(request)


@app.middleware("http")
async def reject_blocked_ips(request: Request, call_next):
    runtime = get_runtime()
    ip = client_ip(request.headers, request.client.host if request.client else None)
    if runtime.security.is_ip_blocked(ip):
        runtime.security.log_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            ip,
            user_agent=request.headers.get("user-agent"),
            details={"path": request.url.path, "reason": "blocked_ip"},
        )
        return _error_response(403, "Access denied")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the request's X-Request-ID (or a fresh UUID) to every log line and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a snapshot of the in-process state."""
    runtime = get_runtime()
    hub = runtime.hub
    return {
        "status": "healthy",
        "checks": {
            "store": {"status": "healthy", "type": "memory"},
            "hub": {
                "status": "healthy",
                "connections": len(hub.connections),
                "online_users": len(hub.user_connections),
            },
        },
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
