"""Per-client sliding-window rate limiting for the fleet API."""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from fastapi import HTTPException


class RateLimiter:
    """Allows ``requests_per_minute`` calls per key over a rolling 60s window."""

    def __init__(self, requests_per_minute: int = 120, clock: Callable[[], float] = time.monotonic):
        self.rpm = requests_per_minute
        self._clock = clock
        self._windows: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> None:
        """Raise 429 once ``key`` is over its budget."""
        now = self._clock()
        recent = [t for t in self._windows[key] if now - t < 60]

        if len(recent) >= self.rpm:
            self._windows[key] = recent
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "60"},
            )
        recent.append(now)
        self._windows[key] = recent

    def reset(self) -> None:
        self._windows.clear()


limiter = RateLimiter()
