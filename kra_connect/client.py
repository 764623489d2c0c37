"""
KRA Connect Client
==================

Public entry point. Each operation validates its input, then runs through a
RequestPipeline that owns this client's cache, rate limiter and retry
policy. Two clients never share state unless the same components are
injected into both.

Usage:
    async with KraClient(api_key='your-api-key') as client:
        result = await client.verify_pin('P051234567A')
        if result.is_active:
            print(result.taxpayer_name)
"""

from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog

from .cache_manager import CacheManager
from .config import KraConnectSettings, configure_logging
from .models import (
    EslipValidationResult,
    NilReturnResult,
    PinVerificationResult,
    TaxpayerDetails,
    TccVerificationResult,
    VerificationResult,
)
from .operations import (
    FILE_NIL_RETURN,
    GET_TAXPAYER_DETAILS,
    VALIDATE_ESLIP,
    VERIFY_PIN,
    VERIFY_TCC,
)
from .pipeline import RequestPipeline
from .rate_limiter import RateLimiter
from .retry_handler import RetryHandler
from .transport import HttpTransport

logger = structlog.get_logger(__name__)


class KraClient:
    """
    Async client for the KRA GavaConnect API.

    Operations return the typed payload model. Use execute() for the full
    VerificationResult, including attempt count and cache provenance.
    """

    def __init__(
        self,
        settings: Optional[KraConnectSettings] = None,
        *,
        cache_manager: Optional[CacheManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_handler: Optional[RetryHandler] = None,
        transport: Optional[HttpTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        configure_logs: bool = False,
        **overrides: Any
    ):
        """
        Args:
            settings: Validated settings; built from overrides and KRA_*
                environment variables when omitted
            cache_manager: Response cache to use instead of a new one
            rate_limiter: Token bucket to use instead of a new one
            retry_handler: Retry policy to use instead of one built from settings
            transport: HTTP transport to use instead of a new one
            http_client: httpx.AsyncClient handed to the new transport
            configure_logs: Configure structlog from settings.log_level and
                settings.json_logs
            **overrides: Settings fields (e.g. api_key='...') when settings is omitted
        """
        if settings is None:
            settings = KraConnectSettings(**overrides)
        elif overrides:
            raise TypeError("Pass either settings or keyword overrides, not both")
        self.settings = settings

        if configure_logs:
            configure_logging(settings.log_level, settings.json_logs)

        if cache_manager is None:
            cache_manager = CacheManager(
                max_size=settings.max_cache_size,
                default_ttl=settings.cache_ttl,
                name='kra_client'
            )
        self.cache_manager = cache_manager
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests_per_second=settings.max_requests_per_second,
            enabled=settings.enable_rate_limit,
            name='kra_client'
        )
        self.retry_handler = retry_handler or RetryHandler(settings.retry_config())
        self.transport = transport or HttpTransport(
            settings.base_url,
            settings.api_key.get_secret_value(),
            timeout=settings.timeout,
            user_agent=settings.user_agent,
            custom_headers=settings.custom_headers,
            client=http_client
        )

        self.pipeline = RequestPipeline(
            self.transport,
            self.cache_manager if settings.enable_cache else None,
            self.rate_limiter,
            self.retry_handler,
            cache_ttl=settings.cache_ttl,
            attempt_timeout=settings.timeout,
            single_flight=settings.single_flight
        )
        self._closed = False

        logger.info(
            "KRA client initialized",
            base_url=settings.base_url,
            cache=settings.enable_cache,
            rate_limit=settings.max_requests_per_second if settings.enable_rate_limit else None,
            max_retries=settings.max_retries
        )

    async def __aenter__(self) -> 'KraClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Client has been closed")

    async def execute(self, operation, raw_input: Any, *, use_cache: bool = True) -> VerificationResult:
        """Run an operation by name and return the full VerificationResult."""
        self._ensure_open()
        return await self.pipeline.execute(operation, raw_input, use_cache=use_cache)

    async def _batch(self, operation, raw_inputs: Iterable[Any], use_cache: bool) -> List[Any]:
        self._ensure_open()
        results = await self.pipeline.execute_batch(operation, raw_inputs, use_cache=use_cache)
        return [result.data for result in results]

    # PIN

    async def verify_pin(self, pin_number: str, *, use_cache: bool = True) -> PinVerificationResult:
        """
        Verify a KRA PIN.

        Raises:
            ValidationError: If the PIN format is invalid
            AuthenticationError: If the API key is rejected
            KraConnectError: On any other failure after retries
        """
        result = await self.execute(VERIFY_PIN, pin_number, use_cache=use_cache)
        return result.data

    async def verify_pin_batch(self, pin_numbers: Iterable[str], *, use_cache: bool = True) -> List[PinVerificationResult]:
        """Verify several PINs concurrently; results follow input order."""
        return await self._batch(VERIFY_PIN, pin_numbers, use_cache)

    # TCC

    async def verify_tcc(self, tcc_number: str, *, use_cache: bool = True) -> TccVerificationResult:
        result = await self.execute(VERIFY_TCC, tcc_number, use_cache=use_cache)
        return result.data

    async def verify_tcc_batch(self, tcc_numbers: Iterable[str], *, use_cache: bool = True) -> List[TccVerificationResult]:
        return await self._batch(VERIFY_TCC, tcc_numbers, use_cache)

    # E-slip

    async def validate_eslip(self, eslip_number: str, *, use_cache: bool = True) -> EslipValidationResult:
        result = await self.execute(VALIDATE_ESLIP, eslip_number, use_cache=use_cache)
        return result.data

    async def validate_eslip_batch(self, eslip_numbers: Iterable[str], *, use_cache: bool = True) -> List[EslipValidationResult]:
        return await self._batch(VALIDATE_ESLIP, eslip_numbers, use_cache)

    # NIL return

    async def file_nil_return(self, request) -> NilReturnResult:
        """
        File a NIL return. Never cached.

        Args:
            request: NilReturnRequest or mapping with pin_number,
                obligation_type, tax_period and declaration=True
        """
        result = await self.execute(FILE_NIL_RETURN, request, use_cache=False)
        return result.data

    # Taxpayer

    async def get_taxpayer_details(self, pin_number: str, *, use_cache: bool = True) -> TaxpayerDetails:
        result = await self.execute(GET_TAXPAYER_DETAILS, pin_number, use_cache=use_cache)
        return result.data

    # Cache and limiter management

    def clear_cache(self) -> None:
        self.cache_manager.clear()

    def invalidate(self, operation) -> int:
        """Drop cached results of one operation (e.g. 'verify_pin')."""
        return self.pipeline.invalidate(operation)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache_manager.get_stats()

    def get_rate_limiter_stats(self) -> Dict[str, Any]:
        return self.rate_limiter.get_stats()

    def reset_rate_limiter(self) -> None:
        self.rate_limiter.reset()

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            **self.pipeline.get_stats(),
            'cache': self.get_cache_stats(),
            'rate_limiter': self.get_rate_limiter_stats(),
            'retry': {
                'max_retries': self.retry_handler.config.max_retries,
                'initial_delay': self.retry_handler.config.initial_delay,
                'max_delay': self.retry_handler.config.max_delay,
            },
        }

    async def aclose(self) -> None:
        """Close the transport and drop cached results."""
        if self._closed:
            return
        self._closed = True
        await self.transport.aclose()
        self.cache_manager.clear()
        logger.info("KRA client closed")
