"""
Exponential Backoff Retry Handler
=================================

Runs one request attempt at a time with:
- Exponential backoff capped at max_delay, plus 0-10% jitter
- A per-attempt deadline that turns into a retryable RequestTimeoutError
- Pluggable error classification (authentication and validation errors
  never retry; timeouts, network failures and retryable statuses do)
- Upstream Retry-After hints honored in full in place of the computed
  backoff (optionally bounded by max_retry_after)

When the attempt budget is exhausted the last underlying error is
re-raised unchanged.
"""

import asyncio
import dataclasses
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, TypeVar

import structlog
from prometheus_client import Counter, Histogram

from .exceptions import (
    DEFAULT_RETRY_STATUS_CODES,
    ErrorClassification,
    RequestTimeoutError,
    classify as default_classify,
)

logger = structlog.get_logger(__name__)

T = TypeVar('T')

# Prometheus metrics
retry_attempts = Counter(
    'kra_connect_retry_attempts_total',
    'Retries scheduled after a retryable failure',
    ['operation', 'error_type']
)
retry_success = Counter(
    'kra_connect_retry_success_total',
    'Operations that succeeded after at least one retry',
    ['operation']
)
retry_failures = Counter(
    'kra_connect_retry_failures_total',
    'Operations that failed after exhausting retries',
    ['operation']
)
retry_delay_seconds = Histogram(
    'kra_connect_retry_delay_seconds',
    'Backoff delay before a retry',
    ['operation']
)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry strategy."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    retry_status_codes: FrozenSet[int] = field(default=DEFAULT_RETRY_STATUS_CODES)
    enable_jitter: bool = True
    jitter_ratio: float = 0.1
    # Upper bound on upstream Retry-After waits; None honors the full hint
    max_retry_after: Optional[float] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays cannot be negative")
        if self.max_retry_after is not None and self.max_retry_after < 0:
            raise ValueError("max_retry_after cannot be negative")
        object.__setattr__(self, 'retry_status_codes', frozenset(self.retry_status_codes))

    def with_overrides(self, **changes: Any) -> 'RetryConfig':
        """Copy of this config with some fields replaced."""
        return dataclasses.replace(self, **changes)


@dataclass
class RetryContext:
    """State of one execute() call; discarded when it returns."""
    attempt: int = 0
    last_error: Optional[BaseException] = None
    next_delay: Optional[float] = None


Classifier = Callable[[BaseException], ErrorClassification]


class RetryHandler:
    """
    Exponential backoff with jitter for API retries.

    Delay before attempt n (n >= 2) is min(max_delay, initial_delay * 2**(n-2)),
    i.e. 1s, 2s, 4s... by default, plus up to 10% jitter.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._random = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    def classify(self, error: BaseException) -> ErrorClassification:
        """Default classifier honoring this handler's retry status codes."""
        return default_classify(error, self.config.retry_status_codes)

    def base_delay(self, attempt: int) -> float:
        """
        Backoff before the given attempt, without jitter.

        Args:
            attempt: 1-based attempt number about to run (>= 2)
        """
        if attempt < 2:
            return 0.0
        # Cap the exponent; 2**1000 would overflow a float
        exponent = min(attempt - 2, 64)
        return min(self.config.max_delay, self.config.initial_delay * (2 ** exponent))

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Calculate retry delay with exponential backoff and jitter.

        Args:
            attempt: 1-based attempt number about to run
            retry_after: Upstream Retry-After hint in seconds

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            delay = max(retry_after, 0.0)
            if self.config.max_retry_after is not None:
                delay = min(delay, self.config.max_retry_after)
            return delay

        delay = self.base_delay(attempt)
        if self.config.enable_jitter and delay > 0:
            delay += self._random.uniform(0, delay * self.config.jitter_ratio)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Optional[Classifier] = None,
        *,
        operation_name: str = 'operation',
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        before_attempt: Optional[Callable[[int], Awaitable[Any]]] = None
    ) -> T:
        """
        Execute an async operation with retry logic.

        Args:
            operation: Zero-argument coroutine function performing one attempt
            classify: Error classifier (defaults to self.classify)
            operation_name: Name used in logs and metrics
            endpoint: Endpoint reported by timeout errors (defaults to
                operation_name)
            timeout: Per-attempt deadline in seconds (None = no deadline)
            before_attempt: Awaited before every attempt with the attempt
                number, outside the deadline (e.g. to take a rate-limit token)

        Returns:
            Result of the first successful attempt

        Raises:
            The last error once it is non-retryable or retries are exhausted
        """
        classify = classify or self.classify
        context = RetryContext()

        while True:
            context.attempt += 1

            if before_attempt is not None:
                await before_attempt(context.attempt)

            try:
                if timeout is None:
                    result = await operation()
                else:
                    result = await self._run_with_deadline(operation, endpoint or operation_name, timeout, context.attempt)
            except Exception as e:
                if isinstance(e, RequestTimeoutError):
                    e.for_attempt(context.attempt)
                context.last_error = e
                verdict = classify(e)

                if not verdict.retryable:
                    logger.debug(
                        "Non-retryable error",
                        operation=operation_name,
                        attempt=context.attempt,
                        error=type(e).__name__
                    )
                    raise

                if context.attempt >= self.max_attempts:
                    retry_failures.labels(operation=operation_name).inc()
                    logger.error(
                        "All retries exhausted",
                        operation=operation_name,
                        attempts=context.attempt,
                        last_error=str(e)
                    )
                    raise

                context.next_delay = self.calculate_delay(context.attempt + 1, verdict.retry_after)
                retry_attempts.labels(operation=operation_name, error_type=verdict.kind).inc()
                retry_delay_seconds.labels(operation=operation_name).observe(context.next_delay)

                logger.warning(
                    "Request failed, retrying",
                    operation=operation_name,
                    attempt=context.attempt,
                    max_retries=self.config.max_retries,
                    delay=round(context.next_delay, 3),
                    error=str(e)
                )

                await self._sleep(context.next_delay)
                continue

            if context.attempt > 1:
                retry_success.labels(operation=operation_name).inc()
                logger.info("Retry succeeded", operation=operation_name, attempt=context.attempt)
            return result

    async def _run_with_deadline(
        self,
        operation: Callable[[], Awaitable[T]],
        endpoint: str,
        timeout: float,
        attempt: int
    ) -> T:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(endpoint, timeout, attempt) from None

    def get_retry_stats(self, attempt: int) -> Dict[str, Any]:
        """
        Describe the retry budget after the given attempt.

        Args:
            attempt: Number of attempts made so far
        """
        next_delay = self.calculate_delay(attempt + 1) if attempt <= self.config.max_retries else None
        return {
            'max_retries': self.config.max_retries,
            'current_attempt': attempt,
            'attempts_remaining': max(0, self.config.max_retries - attempt + 1),
            'next_delay_seconds': next_delay,
            'enable_jitter': self.config.enable_jitter,
        }
