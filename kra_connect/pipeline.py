"""
Request Pipeline
================

Composes validation, caching, rate limiting and retries into one execute()
call per logical request:

    VALIDATING -> CACHE_CHECK -> HIT -> DONE
                              -> MISS -> RATE_LIMIT_WAIT -> ATTEMPTING
                                   -> SUCCESS -> CACHE_STORE -> DONE
                                   -> RETRY -> (RATE_LIMIT_WAIT) -> ATTEMPTING
                                   -> FAILED -> DONE

Exactly one rate-limit token is taken per external attempt. A cache entry
is written only after overall success. Concurrent misses for the same
fingerprint share one in-flight request.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import pydantic
import structlog
from prometheus_client import Counter, Histogram

from .cache_manager import CacheManager, request_fingerprint
from .exceptions import UpstreamError, ValidationError
from .models import VerificationResult
from .operations import OperationSpec, get_operation
from .rate_limiter import RateLimiter
from .retry_handler import RetryHandler
from .transport import Envelope, HttpTransport, interpret_response

logger = structlog.get_logger(__name__)

# Prometheus metrics
requests_total = Counter(
    'kra_connect_requests_total',
    'Logical requests by outcome',
    ['operation', 'status']
)
request_duration_seconds = Histogram(
    'kra_connect_request_duration_seconds',
    'Logical request duration including retries',
    ['operation'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)


class PipelineState(str, Enum):
    VALIDATING = 'validating'
    CACHE_CHECK = 'cache_check'
    HIT = 'hit'
    MISS = 'miss'
    RATE_LIMIT_WAIT = 'rate_limit_wait'
    ATTEMPTING = 'attempting'
    RETRY = 'retry'
    SUCCESS = 'success'
    CACHE_STORE = 'cache_store'
    FAILED = 'failed'
    DONE = 'done'


class RequestPipeline:
    """
    Orchestrates one logical call end to end.

    The cache, limiter and retry handler are owned by (or injected into)
    the pipeline; two pipelines never share state unless given the same
    objects.

    Usage:
        pipeline = RequestPipeline(transport, CacheManager(), RateLimiter(10), RetryHandler())
        result = await pipeline.execute('verify_pin', 'P051234567A')
    """

    def __init__(
        self,
        transport: HttpTransport,
        cache_manager: Optional[CacheManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_handler: Optional[RetryHandler] = None,
        *,
        cache_ttl: Optional[float] = None,
        attempt_timeout: Optional[float] = 30.0,
        block_on_rate_limit: bool = True,
        single_flight: bool = True
    ):
        """
        Args:
            transport: Remote endpoint collaborator
            cache_manager: Response cache (None disables caching)
            rate_limiter: Token bucket (None disables throttling)
            retry_handler: Retry policy (defaults to RetryHandler())
            cache_ttl: TTL for stored results (None = cache default)
            attempt_timeout: Deadline for each attempt in seconds
            block_on_rate_limit: Wait for a token when True; raise
                RateLimitError when False
            single_flight: Share one in-flight request per fingerprint
        """
        self.transport = transport
        self.cache_manager = cache_manager
        self.rate_limiter = rate_limiter
        self.retry_handler = retry_handler or RetryHandler()
        self.cache_ttl = cache_ttl
        self.attempt_timeout = attempt_timeout
        self.block_on_rate_limit = block_on_rate_limit
        self.single_flight = single_flight

        self._in_flight: Dict[str, asyncio.Future] = {}
        self.stats = {
            'requests_total': 0,
            'requests_successful': 0,
            'requests_failed': 0,
            'validation_failures': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'attempts': 0,
            'shared_in_flight': 0,
        }

    def _transition(self, state: PipelineState, spec: OperationSpec, **context: Any) -> None:
        logger.debug("Pipeline state", operation=spec.name, state=state.value, **context)

    async def execute(self, operation, raw_input: Any, *, use_cache: bool = True) -> VerificationResult:
        """
        Run one logical request.

        Args:
            operation: OperationSpec or operation name (e.g. 'verify_pin')
            raw_input: Identifier or request record as supplied by the caller
            use_cache: Set False to bypass cache read and write for this call

        Returns:
            Immutable VerificationResult

        Raises:
            ValidationError: Input is malformed (nothing else happened)
            AuthenticationError, RateLimitError, RequestTimeoutError,
            TransportError, UpstreamError: Last error of the final attempt
        """
        spec = get_operation(operation)
        start_time = time.monotonic()
        status = 'unknown'
        self.stats['requests_total'] += 1

        try:
            # Step 1: Validate before touching cache or limiter
            self._transition(PipelineState.VALIDATING, spec)
            try:
                normalized = spec.normalize(raw_input)
            except ValidationError:
                self.stats['validation_failures'] += 1
                status = 'invalid'
                raise

            fingerprint = request_fingerprint(spec.name, *spec.cache_identifiers(normalized))
            caching = use_cache and spec.cacheable and self.cache_manager is not None

            # Step 2: Check cache
            if caching:
                self._transition(PipelineState.CACHE_CHECK, spec, fingerprint=fingerprint)
                cached = self.cache_manager.get(fingerprint)
                if cached is not None:
                    self.stats['cache_hits'] += 1
                    self.stats['requests_successful'] += 1
                    status = 'cache_hit'
                    self._transition(PipelineState.HIT, spec, fingerprint=fingerprint)
                    return cached.model_copy(update={'from_cache': True})
                self.stats['cache_misses'] += 1
                self._transition(PipelineState.MISS, spec, fingerprint=fingerprint)

            # Step 3: Go to the network, sharing any identical in-flight request
            if self.single_flight and caching:
                result = await self._execute_shared(spec, normalized, fingerprint)
            else:
                result = await self._fetch(spec, normalized, fingerprint, store=caching)

            self.stats['requests_successful'] += 1
            status = 'success'
            return result

        except asyncio.CancelledError:
            status = 'cancelled'
            raise

        except Exception as e:
            if status == 'unknown':
                self.stats['requests_failed'] += 1
                status = 'error'
                logger.error(
                    "Request failed",
                    operation=spec.name,
                    error_type=type(e).__name__,
                    error=str(e)
                )
            raise

        finally:
            requests_total.labels(operation=spec.name, status=status).inc()
            request_duration_seconds.labels(operation=spec.name).observe(time.monotonic() - start_time)
            self._transition(PipelineState.DONE, spec, status=status)

    async def _execute_shared(self, spec: OperationSpec, normalized: Any, fingerprint: str) -> VerificationResult:
        while True:
            shared = self._in_flight.get(fingerprint)
            if shared is None:
                break
            self.stats['shared_in_flight'] += 1
            try:
                return await asyncio.shield(shared)
            except asyncio.CancelledError:
                if not shared.cancelled():
                    raise
                # The leading request was cancelled; take over
                logger.debug("In-flight leader cancelled, retrying", operation=spec.name)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._in_flight[fingerprint] = future
        try:
            result = await self._fetch(spec, normalized, fingerprint, store=True)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._in_flight.get(fingerprint) is future:
                del self._in_flight[fingerprint]

    async def _fetch(self, spec: OperationSpec, normalized: Any, fingerprint: str, *, store: bool) -> VerificationResult:
        attempts = 0

        async def before_attempt(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt
            if attempt > 1:
                self._transition(PipelineState.RETRY, spec, attempt=attempt)
            if self.rate_limiter is not None:
                self._transition(PipelineState.RATE_LIMIT_WAIT, spec, attempt=attempt)
                if self.block_on_rate_limit:
                    await self.rate_limiter.wait_and_acquire()
                else:
                    self.rate_limiter.acquire()
            self.stats['attempts'] += 1
            self._transition(PipelineState.ATTEMPTING, spec, attempt=attempt)

        async def attempt_once():
            response = await self.transport.send(spec.method, spec.endpoint, **spec.request_args(normalized))
            envelope = interpret_response(response, spec.endpoint, self.attempt_timeout or self.transport.timeout)
            return envelope, self._parse(spec, envelope, normalized, response.status_code)

        try:
            envelope, data = await self.retry_handler.execute(
                attempt_once,
                operation_name=spec.name,
                endpoint=spec.endpoint,
                timeout=self.attempt_timeout,
                before_attempt=before_attempt
            )
        except Exception:
            self._transition(PipelineState.FAILED, spec, attempts=attempts)
            raise

        self._transition(PipelineState.SUCCESS, spec, attempts=attempts)
        result = VerificationResult(
            operation=spec.name,
            fingerprint=fingerprint,
            data=data,
            response_code=envelope.response_code,
            response_desc=envelope.response_desc,
            status=envelope.status,
            attempts=attempts,
        )

        if store:
            self._transition(PipelineState.CACHE_STORE, spec, fingerprint=fingerprint)
            self.cache_manager.set(fingerprint, result, ttl=self.cache_ttl)
        return result

    @staticmethod
    def _parse(spec: OperationSpec, envelope: Envelope, normalized: Any, status_code: int):
        try:
            return spec.parse(envelope.data, normalized)
        except pydantic.ValidationError as e:
            raise UpstreamError(
                f"Unexpected response shape from {spec.endpoint}: {e.error_count()} invalid field(s)",
                status_code,
                spec.endpoint
            ) from e

    async def execute_batch(
        self,
        operation,
        raw_inputs: Iterable[Any],
        *,
        use_cache: bool = True,
        return_exceptions: bool = False
    ) -> List[Any]:
        """
        Run many single-item requests concurrently.

        Every input is validated before any request starts. Results are in
        input order; each item uses the same cache entry a single call would.

        Args:
            operation: OperationSpec or operation name
            raw_inputs: Identifiers to process
            use_cache: Forwarded to execute()
            return_exceptions: Return failures in place instead of raising
        """
        spec = get_operation(operation)
        items = list(raw_inputs)
        for item in items:
            spec.normalize(item)

        logger.debug("Executing batch", operation=spec.name, size=len(items))
        return await asyncio.gather(
            *(self.execute(spec, item, use_cache=use_cache) for item in items),
            return_exceptions=return_exceptions
        )

    def invalidate(self, operation) -> int:
        """Drop every cached result of one operation."""
        if self.cache_manager is None:
            return 0
        prefix = f"{get_operation(operation).name}:"
        return self.cache_manager.remove_pattern(lambda key: key.startswith(prefix))

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats['cache_hits'] + self.stats['cache_misses']
        return {
            **self.stats,
            'in_flight': len(self._in_flight),
            'cache_hit_ratio': self.stats['cache_hits'] / lookups if lookups else 0.0,
        }


def _consume_exception(future: asyncio.Future) -> None:
    # Mark the shared exception as retrieved when no follower awaited it
    if not future.cancelled():
        future.exception()
