"""Sliding-window request limiter per provider."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float
    min_delay_seconds: float = 0.0


DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "fal": RateLimitConfig(max_requests=10, window_seconds=60.0, min_delay_seconds=0.1),
    "openai": RateLimitConfig(max_requests=5, window_seconds=60.0, min_delay_seconds=0.2),
    "google": RateLimitConfig(max_requests=15, window_seconds=60.0, min_delay_seconds=0.1),
}
FALLBACK_RATE_LIMIT = RateLimitConfig(max_requests=10, window_seconds=60.0, min_delay_seconds=0.1)


class RateLimitTimeoutError(TimeoutError):
    """Raised when a slot does not free up within the acquire timeout."""


@dataclass(slots=True)
class _ProviderWindow:
    config: RateLimitConfig
    timestamps: deque[float]
    last_request_at: float | None = None


class SlidingWindowRateLimiter:
    """Thread-safe limiter: at most N requests per window plus a minimum spacing."""

    def __init__(
        self,
        *,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._windows: dict[str, _ProviderWindow] = {}

    def configure(self, provider_id: str, config: RateLimitConfig) -> None:
        with self._lock:
            self._limits[provider_id] = config
            window = self._windows.get(provider_id)
            if window is not None:
                window.config = config

    def try_acquire(self, provider_id: str) -> bool:
        with self._lock:
            window = self._window(provider_id)
            now = self._clock()
            if self._wait_seconds(window, now) > 0:
                return False
            window.timestamps.append(now)
            window.last_request_at = now
            return True

    def acquire(self, provider_id: str, *, timeout_seconds: float = 30.0) -> None:
        started = self._clock()
        while True:
            if self.try_acquire(provider_id):
                return
            wait = self.wait_time(provider_id)
            elapsed = self._clock() - started
            if elapsed + wait > timeout_seconds:
                raise RateLimitTimeoutError(
                    f"Rate limit timeout for provider {provider_id}: "
                    f"waited {elapsed:.2f}s, need {wait:.2f}s more",
                )
            self._sleep(min(wait, 1.0))

    def wait_time(self, provider_id: str) -> float:
        """Seconds until the next request would be admitted."""

        with self._lock:
            return self._wait_seconds(self._window(provider_id), self._clock())

    def reset(self, provider_id: str) -> None:
        with self._lock:
            self._windows.pop(provider_id, None)

    def _window(self, provider_id: str) -> _ProviderWindow:
        window = self._windows.get(provider_id)
        if window is None:
            window = _ProviderWindow(
                config=self._limits.get(provider_id, FALLBACK_RATE_LIMIT),
                timestamps=deque(),
            )
            self._windows[provider_id] = window
        return window

    def _wait_seconds(self, window: _ProviderWindow, now: float) -> float:
        config = window.config
        while window.timestamps and window.timestamps[0] <= now - config.window_seconds:
            window.timestamps.popleft()

        wait = 0.0
        if window.last_request_at is not None and config.min_delay_seconds > 0:
            since_last = now - window.last_request_at
            if since_last < config.min_delay_seconds:
                wait = config.min_delay_seconds - since_last
        if len(window.timestamps) >= config.max_requests:
            wait = max(wait, window.timestamps[0] + config.window_seconds - now)
        return max(0.0, wait)
