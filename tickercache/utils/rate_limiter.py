"""
Request quota for the upstream provider.

One limiter is shared by every worker thread of an EODHDSource, so the
per-chunk thread pool stays inside the account's calls-per-minute quota.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from loguru import logger


class RateLimiter:
    """
    Token bucket: ``max_calls`` per ``period`` seconds on average, bursts up
    to ``max_calls`` from a full bucket.

    The clock and sleep function are injectable so throttling can be tested
    without waiting.
    """

    def __init__(
        self,
        max_calls: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_calls <= 0 or period <= 0:
            raise ValueError("max_calls and period must be positive")

        self.max_calls = max_calls
        self.period = period
        self.calls_made = 0
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(max_calls)
        self._stamp = clock()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, api_config) -> "RateLimiter":
        return cls(max_calls=api_config.rate_limit_calls, period=api_config.rate_limit_period)

    @property
    def refill_rate(self) -> float:
        """Tokens regained per second."""
        return self.max_calls / self.period

    def _take(self) -> float:
        """Take one token if available. Returns 0.0 on success, else seconds until one refills."""
        with self._lock:
            now = self._clock()
            self._tokens = min(self.max_calls, self._tokens + (now - self._stamp) * self.refill_rate)
            self._stamp = now
            if self._tokens >= 1:
                self._tokens -= 1
                self.calls_made += 1
                return 0.0
            return (1 - self._tokens) / self.refill_rate

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        return self._take() == 0.0

    def acquire(self, timeout: float | None = None) -> bool:
        """
        Take a token, sleeping until the bucket refills.

        Args:
            timeout: Maximum seconds to wait (None = wait as long as needed)

        Returns:
            True once a token was taken, False if the timeout ran out first
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            wait = self._take()
            if wait == 0.0:
                return True
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            logger.debug(f"Upstream quota exhausted, waiting {wait:.2f}s")
            self._sleep(wait)

    @property
    def available(self) -> float:
        """Tokens currently in the bucket."""
        with self._lock:
            elapsed = self._clock() - self._stamp
            return min(self.max_calls, self._tokens + elapsed * self.refill_rate)

    def reset(self) -> None:
        """Refill the bucket."""
        with self._lock:
            self._tokens = float(self.max_calls)
            self._stamp = self._clock()

    def __repr__(self) -> str:
        return f"RateLimiter(max_calls={self.max_calls}, period={self.period})"
