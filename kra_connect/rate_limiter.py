"""
Token Bucket Rate Limiter
=========================

Proactive client-side throttling so a client never exceeds its configured
requests per second.

Key Features:
- Bucket starts full; capacity equals the per-second rate
- Raising (acquire), suspending (wait_and_acquire) and boolean
  (try_acquire) entry points
- Exact wait estimate with a small safety margin

All bucket mutation goes through _take(), the single critical section.
It computes the wait time inline from state it already holds, so no
locked method ever calls another locked method on the same bucket. The
lock is never held across an await.
"""

import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict

import structlog
from prometheus_client import Counter, Gauge, Histogram

from .exceptions import RateLimitError

logger = structlog.get_logger(__name__)

# Prometheus metrics
rate_limit_requests = Counter(
    'kra_connect_rate_limit_requests_total',
    'Token requests by outcome',
    ['limiter', 'status']
)
rate_limit_tokens = Gauge(
    'kra_connect_rate_limit_tokens',
    'Available tokens in bucket',
    ['limiter']
)
rate_limit_wait_time = Histogram(
    'kra_connect_rate_limit_wait_seconds',
    'Time waited for a rate limit token',
    ['limiter'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Added to every wait so the token has certainly refilled when we wake up
SAFETY_MARGIN_SECONDS = 0.010


class RateLimiter:
    """
    Token bucket limiter for one client.

    Usage:
        limiter = RateLimiter(max_requests_per_second=10)
        await limiter.wait_and_acquire()  # Suspends until a token is free
        response = await transport.send(...)
    """

    def __init__(
        self,
        max_requests_per_second: int = 10,
        enabled: bool = True,
        name: str = 'default',
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize token bucket.

        Args:
            max_requests_per_second: Refill rate and bucket capacity
            enabled: When False every request is granted immediately
            name: Label for metrics and logs
            clock: Monotonic time source (injectable for tests)
            sleep: Coroutine used to suspend while waiting for a token
        """
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be greater than 0")

        self.capacity = int(max_requests_per_second)
        self.enabled = enabled
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

        logger.debug("Rate limiter initialized", limiter=name, rate=self.capacity, enabled=enabled)

    @property
    def max_requests_per_second(self) -> int:
        return self.capacity

    def _refill(self, now: float) -> None:
        """Add tokens for elapsed time. Caller must hold the lock."""
        tokens_to_add = (now - self._last_refill) * self.capacity
        if tokens_to_add > 0:
            self._tokens = min(float(self.capacity), self._tokens + tokens_to_add)
            self._last_refill = now

    def _take(self, consume: bool = True) -> float:
        """
        Refill, then take one token if available.

        Returns 0.0 when a token was taken (or, with consume=False, is
        available); otherwise the seconds to wait for the next token.
        """
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                if consume:
                    self._tokens -= 1.0
                rate_limit_tokens.labels(limiter=self.name).set(self._tokens)
                return 0.0
            return (1.0 - self._tokens) / self.capacity + SAFETY_MARGIN_SECONDS

    def acquire(self) -> None:
        """
        Take a token or fail immediately.

        Raises:
            RateLimitError: If the bucket is empty; wait_seconds tells the
                caller how long until a token is available
        """
        if not self.enabled:
            return

        wait_seconds = self._take()
        if wait_seconds == 0.0:
            rate_limit_requests.labels(limiter=self.name, status='immediate').inc()
            return

        rate_limit_requests.labels(limiter=self.name, status='rejected').inc()
        raise RateLimitError(
            f"Rate limit exceeded. Retry after {wait_seconds:.3f}s",
            wait_seconds,
            limit=self.capacity
        )

    def try_acquire(self) -> bool:
        """Take a token if one is available. Never raises."""
        if not self.enabled:
            return True

        acquired = self._take() == 0.0
        rate_limit_requests.labels(
            limiter=self.name,
            status='immediate' if acquired else 'rejected'
        ).inc()
        return acquired

    async def wait_and_acquire(self) -> float:
        """
        Take a token, suspending until one is available.

        Returns:
            Seconds spent waiting (0.0 when a token was free)
        """
        if not self.enabled:
            return 0.0

        waited = 0.0
        wait_seconds = self._take()
        while wait_seconds > 0:
            logger.debug("Rate limit waiting", limiter=self.name, wait_time=round(wait_seconds, 3))
            await self._sleep(wait_seconds)
            waited += wait_seconds
            # Concurrent waiters may have taken the refilled token first
            wait_seconds = self._take()

        if waited:
            rate_limit_wait_time.labels(limiter=self.name).observe(waited)
            rate_limit_requests.labels(limiter=self.name, status='delayed').inc()
        else:
            rate_limit_requests.labels(limiter=self.name, status='immediate').inc()
        return waited

    def estimate_wait_time(self) -> float:
        """Seconds until a token is available (0.0 if one is available now)."""
        if not self.enabled:
            return 0.0
        return self._take(consume=False)

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    @property
    def has_available_token(self) -> bool:
        return self.available_tokens >= 1.0

    def get_stats(self) -> Dict[str, Any]:
        """Get current rate limit statistics."""
        with self._lock:
            self._refill(self._clock())
            tokens = self._tokens

        wait = 0.0 if (tokens >= 1.0 or not self.enabled) else (1.0 - tokens) / self.capacity + SAFETY_MARGIN_SECONDS
        return {
            'enabled': self.enabled,
            'max_requests_per_second': self.capacity,
            'available_tokens': round(tokens, 2),
            'utilization': round((1 - tokens / self.capacity) * 100, 2),
            'has_available_token': tokens >= 1.0,
            'estimated_wait_ms': int(round(wait * 1000)),
        }

    def reset(self) -> None:
        """Refill the bucket completely."""
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self._clock()
            rate_limit_tokens.labels(limiter=self.name).set(self._tokens)

        logger.info("Rate limit bucket reset", limiter=self.name, capacity=self.capacity)
