"""
Fixed-window rate limiter per tenant.

Счётчики сбрасываются целиком на границе окна (не скользящее окно),
поэтому на стыке двух окон возможен всплеск до 2x лимита.
"""

import math
import time
import logging
from typing import Callable, Dict
from dataclasses import dataclass


logger = logging.getLogger(__name__)


@dataclass
class RateLimitInfo:
    """Rate limit information"""
    allowed: bool
    remaining_requests: int
    reset_time: float
    current_requests: int
    limit: int

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets, rounded up"""
        return max(1, math.ceil(self.reset_time)) if not self.allowed else 0


class FixedWindowRateLimiter:
    """In-memory fixed-window rate limiter keyed by tenant"""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

        self._request_counts: Dict[str, int] = {}
        self._window_starts: Dict[str, float] = {}
        logger.info(f"FixedWindowRateLimiter initialized - limit: {self.max_requests}/{self.window_seconds}s")

    async def check_rate_limit(self, key: str) -> RateLimitInfo:
        """Count a request for key and return the resulting limit state"""
        now = self._clock()

        # Initialize or reset window if needed
        if key not in self._window_starts or (now - self._window_starts[key]) >= self.window_seconds:
            self._window_starts[key] = now
            self._request_counts[key] = 0

        current_count = self._request_counts.get(key, 0)
        window_start = self._window_starts[key]
        reset_time = max(0.0, (window_start + self.window_seconds) - now)

        if current_count >= self.max_requests:
            logger.warning(f"Rate limit exceeded for {key}: {current_count}/{self.max_requests}")
            return RateLimitInfo(
                allowed=False,
                remaining_requests=0,
                reset_time=reset_time,
                current_requests=current_count,
                limit=self.max_requests
            )

        self._request_counts[key] = current_count + 1
        return RateLimitInfo(
            allowed=True,
            remaining_requests=self.max_requests - (current_count + 1),
            reset_time=reset_time,
            current_requests=current_count + 1,
            limit=self.max_requests
        )

    async def reset(self, key: str) -> None:
        """Clear rate limit for key"""
        self._request_counts.pop(key, None)
        self._window_starts.pop(key, None)

    async def clear(self) -> None:
        self._request_counts.clear()
        self._window_starts.clear()
