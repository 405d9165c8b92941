from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Tuple

from relaychat.config import Settings
from relaychat.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _WindowEntry:
    count: int
    reset_at: float
    # (timestamp, success) for request pattern analysis
    requests: List[Tuple[float, bool]] = field(default_factory=list)


@dataclass(frozen=True)
class RequestPattern:
    total_requests: int
    successful_requests: int
    failed_requests: int
    requests_per_minute: float


class RateLimiter:
    """Fixed-window request counter keyed by client identity.

    The first request of a window (or the first after it expired) opens a new
    window with count 1, or 0 when the outcome is skipped. Later requests are
    counted until ``max_requests`` is reached; the next one is denied until the
    window resets. Bursts of up to twice the cap across a window edge are
    possible and expected.
    """

    def __init__(
        self,
        name: str,
        window_seconds: float,
        max_requests: int,
        *,
        skip_successful_requests: bool = False,
        skip_failed_requests: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.name = name
        self.window_seconds = float(window_seconds)
        self.max_requests = max_requests
        self.skip_successful_requests = skip_successful_requests
        self.skip_failed_requests = skip_failed_requests
        self._clock = clock
        self._entries: Dict[str, _WindowEntry] = {}
        self._lock = threading.Lock()

    def is_allowed(self, identity: str, success: bool = True) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            skipped = (self.skip_successful_requests and success) or (
                self.skip_failed_requests and not success
            )
            if entry is None or now > entry.reset_at:
                self._entries[identity] = _WindowEntry(
                    count=0 if skipped else 1,
                    reset_at=now + self.window_seconds,
                    requests=[(now, success)],
                )
                return True
            if skipped:
                return True
            if entry.count >= self.max_requests:
                allowed = False
            else:
                entry.count += 1
                entry.requests.append((now, success))
                allowed = True
        if not allowed:
            logger.info("rate_limit_denied", limiter=self.name, identity=identity)
        return allowed

    def get_remaining_requests(self, identity: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None or now > entry.reset_at:
                return self.max_requests
            return max(0, self.max_requests - entry.count)

    def get_reset_time(self, identity: str) -> float:
        """Epoch seconds at which the identity's current window ends."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None or now > entry.reset_at:
                return now + self.window_seconds
            return entry.reset_at

    def retry_after(self, identity: str) -> int:
        """Whole seconds until the identity's window resets, at least 1."""
        return max(1, math.ceil(self.get_reset_time(identity) - self._clock()))

    def get_request_pattern(self, identity: str) -> RequestPattern:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity)
            recent = [
                (ts, ok) for ts, ok in (entry.requests if entry else [])
                if now - ts < self.window_seconds
            ]
        successful = sum(1 for _, ok in recent if ok)
        per_minute = len(recent) / (self.window_seconds / 60.0)
        return RequestPattern(
            total_requests=len(recent),
            successful_requests=successful,
            failed_requests=len(recent) - successful,
            requests_per_minute=round(per_minute, 2),
        )

    def reset(self, identity: str) -> None:
        with self._lock:
            self._entries.pop(identity, None)

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.reset_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiters:
    """Distinct limiter instances per concern; counters are never shared."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.auth = RateLimiter(
            "auth",
            settings.auth_rate_limit_window_seconds,
            settings.auth_rate_limit_max_requests,
            clock=clock,
        )
        self.strict_auth = RateLimiter(
            "strict_auth",
            settings.strict_auth_rate_limit_window_seconds,
            settings.strict_auth_rate_limit_max_requests,
            skip_successful_requests=True,
            clock=clock,
        )
        self.general = RateLimiter(
            "general",
            settings.general_rate_limit_window_seconds,
            settings.general_rate_limit_max_requests,
            clock=clock,
        )
        self.api = RateLimiter(
            "api",
            settings.api_rate_limit_window_seconds,
            settings.api_rate_limit_max_requests,
            clock=clock,
        )
        self.chat = RateLimiter(
            "chat",
            settings.chat_rate_limit_window_seconds,
            settings.chat_rate_limit_max_requests,
            clock=clock,
        )
        self.upload = RateLimiter(
            "upload",
            settings.upload_rate_limit_window_seconds,
            settings.upload_rate_limit_max_requests,
            clock=clock,
        )

    def __iter__(self) -> Iterator[RateLimiter]:
        return iter(
            (self.auth, self.strict_auth, self.general, self.api, self.chat, self.upload)
        )

    def cleanup(self) -> int:
        removed = sum(limiter.cleanup() for limiter in self)
        if removed:
            logger.info("rate_limit_entries_expired", count=removed)
        return removed


def chat_key(user_id: str, room_id: str) -> str:
    return f"{user_id}:{room_id}"
