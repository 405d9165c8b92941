from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Callable, List, Optional

from relaychat.config import Settings, get_settings, reset_settings_cache
from relaychat.logging import get_logger
from relaychat.service.auth import AuthService
from relaychat.service.hub import PresenceHub
from relaychat.service.rate_limit import RateLimiters
from relaychat.service.security import SecurityMonitor
from relaychat.service.tokens import TokenService
from relaychat.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Builds each service once and hands the same instances to every consumer."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)
        self.store = MemoryStore()
        self.tokens = TokenService(self.settings)
        self.limiters = RateLimiters(self.settings)
        self.security = SecurityMonitor(self.settings)
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self.hub = PresenceHub(self.store, self.tokens, self.limiters.chat)
        self._background_tasks: List[asyncio.Task] = []
        logger.info("runtime_init_complete")

    def start_background_tasks(self) -> None:
        """Schedule the periodic sweeps on the running event loop."""
        if self._background_tasks:
            return
        sweeps = [
            ("rate_limit", self.limiters.cleanup, self.settings.rate_limit_sweep_seconds),
            (
                "refresh_tokens",
                self.store.cleanup_expired_refresh_tokens,
                self.settings.refresh_token_sweep_seconds,
            ),
            ("security", self.security.cleanup, self.settings.security_sweep_seconds),
        ]
        for name, func, interval in sweeps:
            self._background_tasks.append(
                asyncio.create_task(_run_periodic(name, func, interval), name=f"sweep:{name}")
            )
        logger.info("background_sweeps_started", count=len(sweeps))

    async def close(self) -> None:
        tasks, self._background_tasks = self._background_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def _run_periodic(name: str, func: Callable[[], int], interval_seconds: int) -> None:
    """Call ``func`` every ``interval_seconds`` without blocking request handling."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = func()
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("sweep_failed", sweep=name, error=str(exc))
                continue
            logger.debug("sweep_completed", sweep=name, removed=removed)
    except asyncio.CancelledError:
        logger.info("sweep_cancelled", sweep=name)
        raise


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime with fresh services for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
