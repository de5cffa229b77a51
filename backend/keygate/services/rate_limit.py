"""Fixed-window in-memory rate limiter for credential endpoints.

Buckets are keyed by client IP. State is process-local and not shared with
the engine.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class RateConfig:
    window_seconds: int
    max_requests: int


class RateLimiter:
    def __init__(self, config: RateConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        # client -> (window_reset, count)
        self._buckets: dict[str, tuple[float, int]] = {}

    @property
    def config(self) -> RateConfig:
        return self._config

    def allow(self, client: str) -> bool:
        now = self._clock()
        window = float(max(1, self._config.window_seconds))
        limit = max(1, self._config.max_requests)
        reset, count = self._buckets.get(client, (now + window, 0))
        if now >= reset:
            reset, count = now + window, 0
        if count >= limit:
            self._buckets[client] = (reset, count)
            return False
        self._buckets[client] = (reset, count + 1)
        return True

    def retry_after(self, client: str) -> int:
        reset, _ = self._buckets.get(client, (self._clock(), 0))
        return max(0, int(reset - self._clock()) + 1)
