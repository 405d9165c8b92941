from __future__ import annotations

import re
import threading
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from relaychat.config import Settings
from relaychat.logging import get_logger
from relaychat.storage.models import utcnow

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    FAILED_LOGIN = "failed_login"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    FILE_UPLOAD_BLOCKED = "file_upload_blocked"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    XSS_ATTEMPT = "xss_attempt"


# Events that count towards the suspicious-activity threshold
_TRACKED_EVENTS = frozenset({
    SecurityEventType.FAILED_LOGIN,
    SecurityEventType.INVALID_TOKEN,
    SecurityEventType.UNAUTHORIZED_ACCESS,
})
# Events that block the source immediately
_INJECTION_EVENTS = frozenset({
    SecurityEventType.SQL_INJECTION_ATTEMPT,
    SecurityEventType.XSS_ATTEMPT,
})

_SCRIPT_TAG = r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>"

_SQL_PATTERNS = [
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b", re.IGNORECASE),
    re.compile(r"\b(OR|AND)\s+\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"(--|/\*|\*/)"),
    re.compile(r"\b(SCRIPT|JAVASCRIPT|VBSCRIPT)\b", re.IGNORECASE),
]

_XSS_PATTERNS = [
    re.compile(_SCRIPT_TAG, re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe\b[^>]*>", re.IGNORECASE),
    re.compile(r"<object\b[^>]*>", re.IGNORECASE),
    re.compile(r"<embed\b[^>]*>", re.IGNORECASE),
]

# Opaque secrets are never matched against injection patterns
_UNINSPECTED_KEYS = ("password", "token")


@dataclass
class SecurityEvent:
    id: str
    type: SecurityEventType
    ip: str
    user_agent: str
    timestamp: datetime
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BlockedIP:
    ip: str
    reason: str
    blocked_at: datetime
    expires_at: datetime
    attempts: int = 0


@dataclass
class _Suspicion:
    attempts: int
    last_attempt: datetime


@dataclass(frozen=True)
class SecurityStats:
    total_events: int
    events_by_type: Dict[str, int]
    blocked_ips: List[BlockedIP]
    suspicious_ips: int


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the client address: X-Forwarded-For first hop, X-Real-IP, then the peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"


class SecurityMonitor:
    """Records security events and blocks abusive client addresses."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.block_threshold = settings.security_block_threshold
        self.block_duration = timedelta(minutes=settings.security_block_minutes)
        self.injection_block_duration = timedelta(hours=settings.security_injection_block_hours)
        self.suspicion_reset = timedelta(hours=1)
        self.event_retention = timedelta(days=7)
        self.suspicion_retention = timedelta(hours=24)
        self._clock = clock
        self._events: Deque[SecurityEvent] = deque()
        self._blocked: Dict[str, BlockedIP] = {}
        self._suspicious: Dict[str, _Suspicion] = {}
        self._lock = threading.RLock()

    def log_event(
        self,
        event_type: SecurityEventType,
        ip: str,
        *,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event_type = SecurityEventType(event_type)
        event = SecurityEvent(
            id=uuid.uuid4().hex,
            type=event_type,
            ip=ip,
            user_agent=user_agent or "unknown",
            user_id=user_id,
            details=details or {},
            timestamp=self._clock(),
        )
        with self._lock:
            self._events.append(event)
            if event_type in _TRACKED_EVENTS:
                self._track_suspicious(ip)
            elif event_type in _INJECTION_EVENTS:
                self.block_ip(ip, f"{event_type.value} detected", self.injection_block_duration)
        logger.warning(
            "security_event",
            event_type=event_type.value,
            ip=ip,
            user_id=user_id,
            details=event.details,
        )
        return event

    def _track_suspicious(self, ip: str) -> None:
        now = self._clock()
        entry = self._suspicious.get(ip)
        if entry is None or now - entry.last_attempt > self.suspicion_reset:
            entry = _Suspicion(attempts=0, last_attempt=now)
        entry.attempts += 1
        entry.last_attempt = now
        self._suspicious[ip] = entry
        if entry.attempts >= self.block_threshold:
            self.block_ip(ip, "Multiple suspicious attempts", self.block_duration)

    def block_ip(self, ip: str, reason: str, duration: timedelta) -> BlockedIP:
        now = self._clock()
        with self._lock:
            suspicion = self._suspicious.get(ip)
            blocked = BlockedIP(
                ip=ip,
                reason=reason,
                blocked_at=now,
                expires_at=now + duration,
                attempts=suspicion.attempts if suspicion else 0,
            )
            self._blocked[ip] = blocked
        logger.warning("ip_blocked", ip=ip, reason=reason, expires_at=blocked.expires_at.isoformat())
        return blocked

    def unblock_ip(self, ip: str) -> bool:
        with self._lock:
            return self._blocked.pop(ip, None) is not None

    def is_ip_blocked(self, ip: str) -> bool:
        with self._lock:
            blocked = self._blocked.get(ip)
            if blocked is None:
                return False
            if blocked.expires_at < self._clock():
                del self._blocked[ip]
                return False
            return True

    # -- payload inspection ------------------------------------------------

    @staticmethod
    def sanitize_input(value: str) -> str:
        """Strip script tags, javascript: URLs and inline event handlers."""
        cleaned = re.sub(_SCRIPT_TAG, "", value, flags=re.IGNORECASE)
        cleaned = re.sub(r"javascript:", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"on\w+\s*=", "", cleaned, flags=re.IGNORECASE)
        return cleaned.strip()

    @staticmethod
    def detect_sql_injection(value: str) -> bool:
        return any(pattern.search(value) for pattern in _SQL_PATTERNS)

    @staticmethod
    def detect_xss(value: str) -> bool:
        return any(pattern.search(value) for pattern in _XSS_PATTERNS)

    def inspect_payload(self, payload: Any, *, _depth: int = 0) -> Optional[SecurityEventType]:
        """Walk a decoded JSON body and report the first injection pattern found."""
        if _depth > 20:
            return None
        if isinstance(payload, str):
            if self.detect_xss(payload):
                return SecurityEventType.XSS_ATTEMPT
            if self.detect_sql_injection(payload):
                return SecurityEventType.SQL_INJECTION_ATTEMPT
            return None
        if isinstance(payload, dict):
            for key, value in payload.items():
                if any(marker in str(key).lower() for marker in _UNINSPECTED_KEYS):
                    continue
                found = self.inspect_payload(value, _depth=_depth + 1)
                if found:
                    return found
        elif isinstance(payload, list):
            for item in payload:
                found = self.inspect_payload(item, _depth=_depth + 1)
                if found:
                    return found
        return None

    # -- reporting & maintenance -------------------------------------------

    def stats(self) -> SecurityStats:
        now = self._clock()
        since = now - timedelta(hours=24)
        with self._lock:
            recent = [event for event in self._events if event.timestamp >= since]
            blocked = [b for b in self._blocked.values() if b.expires_at > now]
            suspicious = len(self._suspicious)
        by_type = Counter(event.type.value for event in recent)
        return SecurityStats(
            total_events=len(recent),
            events_by_type=dict(by_type),
            blocked_ips=blocked,
            suspicious_ips=suspicious,
        )

    def cleanup(self) -> int:
        """Expire blocks, drop week-old events and day-old suspicion counters."""
        now = self._clock()
        removed = 0
        with self._lock:
            for ip in [ip for ip, b in self._blocked.items() if b.expires_at < now]:
                del self._blocked[ip]
                removed += 1
            cutoff = now - self.event_retention
            while self._events and self._events[0].timestamp < cutoff:
                self._events.popleft()
                removed += 1
            stale = now - self.suspicion_retention
            for ip in [ip for ip, s in self._suspicious.items() if s.last_attempt < stale]:
                del self._suspicious[ip]
                removed += 1
        if removed:
            logger.info("security_cleanup", removed=removed)
        return removed
