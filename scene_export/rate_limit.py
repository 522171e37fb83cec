"""Admission control using a per-client tumbling window."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from fastapi import Request

from scene_export.errors import RateLimited
from scene_export.settings import RateLimitSettings

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


def client_key_for(request: Request) -> str:
    """Extract the rate limit key from the caller's network identity."""

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


@dataclass
class RateLimitWindow:
    """Counter for one client within the current window.

    The window is anchored at the first request after a reset, so a client can
    squeeze up to twice the limit through around a boundary.
    """

    count: int  # Requests observed in this window
    window_reset_at: float  # Timestamp when the count resets


class RateLimiter:
    """In-memory fixed-window limiter keyed by client identity.

    State is owned by the instance so the application (or a test) decides its
    lifetime; restarting the process resets every counter.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_ms: int,
        clock: Clock | None = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Admissions allowed per client per window (must be positive)
            window_ms: Window length in milliseconds (must be positive)
            clock: Monotonic time source in seconds, injectable for tests

        Raises:
            ValueError: If either limit is not positive
        """
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")

        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000.0
        self._clock = clock or time.monotonic
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()
        self._next_sweep_at = self._clock() + self.window_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> RateLimiter:
        return cls(max_requests=settings.max_requests, window_ms=settings.window_ms)

    def admit(self, key: str) -> tuple[bool, Dict[str, int]]:
        """Count one request against ``key`` and decide whether it is admitted.

        Returns:
            (allowed, stats) tuple where stats contains:
                - limit: Maximum requests per window
                - remaining: Admissions left in the current window
                - reset: Unix timestamp when the window resets
                - retry_after: (if not allowed) Seconds until the window resets
        """
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep_at:
                self._drop_expired(now)
            window = self._windows.get(key)
            if window is None or now >= window.window_reset_at:
                window = RateLimitWindow(count=0, window_reset_at=now + self.window_seconds)
                self._windows[key] = window
            window.count += 1
            allowed = window.count <= self.max_requests
            seconds_left = max(0.0, window.window_reset_at - now)
            remaining = max(0, self.max_requests - window.count)

        stats = {
            "limit": self.max_requests,
            "remaining": remaining,
            "reset": int(time.time() + seconds_left),
        }
        if not allowed:
            stats["retry_after"] = int(seconds_left) + 1
        return allowed, stats

    def enforce(self, key: str) -> Dict[str, int]:
        """Admit ``key`` or raise :class:`RateLimited`."""

        allowed, stats = self.admit(key)
        if not allowed:
            LOGGER.info("Rejected export request from %s (limit %d)", key, self.max_requests)
            raise RateLimited(key, stats)
        return stats

    def prune(self) -> int:
        """Remove windows that have already expired.

        Returns:
            Number of windows removed
        """
        with self._lock:
            return self._drop_expired(self._clock())

    def _drop_expired(self, now: float) -> int:
        # Caller holds the lock.
        stale_keys = [key for key, window in self._windows.items() if now >= window.window_reset_at]
        for key in stale_keys:
            del self._windows[key]
        self._next_sweep_at = now + self.window_seconds
        if stale_keys:
            LOGGER.debug("Dropped %d expired rate limit windows", len(stale_keys))
        return len(stale_keys)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
