from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Dict, Optional, Tuple, Union

from taskboard.config import get_settings, reset_settings_cache
from taskboard.logging import get_logger
from taskboard.service.auth import AuthService
from taskboard.service.tasks import TaskService
from taskboard.service.tokens import TokenIssuer
from taskboard.storage.memory import MemoryStore
from taskboard.storage.models import utcnow

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.started_at = time.monotonic()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            persistent=bool(self.settings.data_dir),
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = MemoryStore(fs_root=self.settings.data_dir)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.tokens = TokenIssuer(self.settings)
        self.auth = AuthService(self.store, self.settings, tokens=self.tokens)
        self.tasks = TaskService(self.store, self.settings)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        # Plain thread lock: the critical section never awaits and TestClient
        # may drive requests from more than one event loop
        self._local_rate_limit_lock = threading.Lock()
        logger.info("runtime_init_completed")

    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """In-process token bucket.

    Args:
        runtime: Runtime instance holding the bucket state
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((1.0 - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = [
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "check_rate_limit",
]
