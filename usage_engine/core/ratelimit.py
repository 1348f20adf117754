"""
Per-provider request throttling.

Each provider gets one token bucket shared by every thread collecting from
it. Buckets are sized from the collector's declared rate limits, optionally
overridden by configuration.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from usage_engine.collectors.base import RateLimits

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket with hard rolling-window caps.

    Tokens refill continuously at ``rate_per_minute / 60`` per second up to
    ``burst``. On top of that, grants are logged so that no rolling 60 s
    window (and, when ``rate_per_hour`` is set, no rolling hour) ever sees
    more than the declared number of requests, bursts included.
    """

    def __init__(
        self,
        rate_per_minute: int,
        burst: int,
        rate_per_hour: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_per_minute < 1:
            raise ValueError("rate_per_minute must be >= 1")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.rate_per_minute = rate_per_minute
        self.burst = min(burst, rate_per_minute)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(self.burst)
        self._updated = clock()
        self._windows: List[Tuple[int, float]] = [(rate_per_minute, 60.0)]
        if rate_per_hour:
            self._windows.append((rate_per_hour, 3600.0))
        self._grants: Deque[float] = deque()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate_per_minute / 60.0)
        self._updated = now

    def _wait_time(self, now: float) -> float:
        """Seconds until a request may be granted; 0 when it can go now."""
        longest = max(period for _, period in self._windows)
        while self._grants and self._grants[0] <= now - longest:
            self._grants.popleft()

        wait = 0.0
        if self._tokens < 1:
            wait = (1 - self._tokens) * 60.0 / self.rate_per_minute
        for limit, period in self._windows:
            recent = [granted for granted in self._grants if granted > now - period]
            if len(recent) >= limit:
                wait = max(wait, recent[len(recent) - limit] + period - now)
        return wait

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            now = self._clock()
            self._refill(now)
            if self._wait_time(now) > 0:
                return False
            self._tokens -= 1
            self._grants.append(now)
            return True

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Block until a token is granted.

        Args:
            timeout: Maximum seconds to wait; None waits indefinitely

        Returns:
            True if a token was taken, False if the timeout elapsed first
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                now = self._clock()
                self._refill(now)
                wait = self._wait_time(now)
                if wait <= 0:
                    self._tokens -= 1
                    self._grants.append(now)
                    return True
            if deadline is not None:
                remaining = deadline - now
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(wait)


class RateLimiterPool:
    """One token bucket per provider."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._buckets: Dict[str, TokenBucket] = {}

    def configure(
        self,
        provider: str,
        limits: RateLimits,
        requests_per_minute: Optional[int] = None,
        burst_capacity: Optional[int] = None,
    ) -> TokenBucket:
        """Create (or replace) the bucket for a provider.

        Args:
            provider: Provider identifier
            limits: Limits the collector declares
            requests_per_minute: Optional override, from configuration
            burst_capacity: Optional override, from configuration

        Returns:
            The provider's bucket
        """
        bucket = TokenBucket(
            rate_per_minute=requests_per_minute or limits.requests_per_minute,
            burst=burst_capacity or limits.burst_capacity,
            rate_per_hour=limits.requests_per_hour,
            clock=self._clock,
            sleep=self._sleep,
        )
        with self._lock:
            self._buckets[provider] = bucket
        logger.debug(
            "Rate limiter for %s: %d/min, burst %d", provider, bucket.rate_per_minute, bucket.burst
        )
        return bucket

    def limiter_for(self, provider: str) -> TokenBucket:
        """Get the bucket for a provider.

        Raises:
            KeyError: If the provider was never configured
        """
        with self._lock:
            if provider not in self._buckets:
                raise KeyError(f"No rate limiter configured for provider '{provider}'")
            return self._buckets[provider]

    def throttle(self, provider: str) -> Callable[[], bool]:
        """Callable that blocks on the provider's bucket, resolved at call time."""
        return lambda: self.limiter_for(provider).acquire()
