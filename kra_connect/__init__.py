"""
KRA Connect - client library for the Kenya Revenue Authority GavaConnect API

Validation, caching, rate limiting and retries for PIN, TCC, e-slip,
NIL return and taxpayer lookups.
"""

from .cache_manager import CacheManager, request_fingerprint
from .client import KraClient
from .config import KraConnectSettings, configure_logging
from .exceptions import (
    AuthenticationError,
    KraConnectError,
    RateLimitError,
    RequestTimeoutError,
    TransportError,
    UpstreamError,
    ValidationError,
    classify,
)
from .models import (
    EslipValidationResult,
    NilReturnRequest,
    NilReturnResult,
    PinVerificationResult,
    TaxObligation,
    TaxpayerDetails,
    TccVerificationResult,
    VerificationResult,
)
from .pipeline import PipelineState, RequestPipeline
from .rate_limiter import RateLimiter
from .retry_handler import RetryConfig, RetryHandler
from .validators import IdentifierKind, validate

__version__ = '1.0.0'

__all__ = [
    'AuthenticationError',
    'CacheManager',
    'EslipValidationResult',
    'IdentifierKind',
    'KraClient',
    'KraConnectError',
    'KraConnectSettings',
    'NilReturnRequest',
    'NilReturnResult',
    'PinVerificationResult',
    'PipelineState',
    'RateLimitError',
    'RateLimiter',
    'RequestPipeline',
    'RequestTimeoutError',
    'RetryConfig',
    'RetryHandler',
    'TaxObligation',
    'TaxpayerDetails',
    'TccVerificationResult',
    'TransportError',
    'UpstreamError',
    'ValidationError',
    'VerificationResult',
    'classify',
    'configure_logging',
    'request_fingerprint',
    'validate',
]
