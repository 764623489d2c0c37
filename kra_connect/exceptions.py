"""
Error Taxonomy for KRA Connect
==============================

Every failure surfaced by the client is a subclass of KraConnectError and
carries structured detail so bindings can map it to a typed error:

- ValidationError: malformed input, rejected before any cache or network use
- AuthenticationError: credential rejected (401/403), never retried
- RateLimitError: local token bucket empty, or upstream 429
- RequestTimeoutError: one attempt exceeded its deadline (or upstream 408)
- TransportError: connectivity failure before a response arrived
- UpstreamError: structured error envelope returned by the API

classify() decides which of these the retry loop may recover from.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

# HTTP status codes retried when the API answers with an error envelope
DEFAULT_RETRY_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class KraConnectError(Exception):
    """Base class for all KRA Connect errors."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view of the error for bindings and logs."""
        data = {
            'error': type(self).__name__,
            'message': self.message,
        }
        if self.status_code is not None:
            data['status_code'] = self.status_code
        if self.details:
            data['details'] = dict(self.details)
        return data

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ValidationError(KraConnectError):
    """Raised when an identifier or request record is malformed."""

    def __init__(self, field: str, reason: str, *, provided: Any = None):
        details = {'provided': provided} if provided is not None else None
        super().__init__(reason, details=details)
        self.field = field
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['field'] = self.field
        return data


class AuthenticationError(KraConnectError):
    """Raised when the API rejects the bearer credential."""

    def __init__(self, message: str, status_code: int, endpoint: str):
        super().__init__(message, status_code=status_code, details={'endpoint': endpoint})
        self.endpoint = endpoint


class RateLimitError(KraConnectError):
    """
    Raised when no request may be sent yet.

    Local errors come from the client's own token bucket; upstream errors
    come from an HTTP 429 and are retryable.
    """

    def __init__(
        self,
        message: str,
        wait_seconds: float,
        *,
        limit: Optional[int] = None,
        upstream: bool = False,
        endpoint: Optional[str] = None
    ):
        details: Dict[str, Any] = {'wait_seconds': round(wait_seconds, 3)}
        if limit is not None:
            details['limit'] = limit
        if endpoint:
            details['endpoint'] = endpoint
        super().__init__(message, status_code=429, details=details)
        self.wait_seconds = wait_seconds
        self.limit = limit
        self.upstream = upstream
        self.endpoint = endpoint


class RequestTimeoutError(KraConnectError):
    """Raised when a single attempt exceeds its deadline."""

    def __init__(self, endpoint: str, timeout: float, attempt_number: int, *, status_code: Optional[int] = None):
        super().__init__(
            _timeout_message(endpoint, timeout, attempt_number),
            status_code=status_code,
            details={'endpoint': endpoint, 'timeout': timeout, 'attempt_number': attempt_number}
        )
        self.endpoint = endpoint
        self.timeout = timeout
        self.attempt_number = attempt_number

    def for_attempt(self, attempt_number: int) -> 'RequestTimeoutError':
        """Record which attempt of a retried call timed out."""
        self.attempt_number = attempt_number
        self.details['attempt_number'] = attempt_number
        self.message = _timeout_message(self.endpoint, self.timeout, attempt_number)
        self.args = (self.message,)
        return self


def _timeout_message(endpoint: str, timeout: float, attempt_number: int) -> str:
    return f"Request to {endpoint} timed out after {timeout:g}s (attempt {attempt_number})"


class TransportError(KraConnectError):
    """Raised when the request could not reach the API."""

    def __init__(self, endpoint: str, cause: BaseException):
        super().__init__(
            f"Network error calling {endpoint}: {type(cause).__name__}: {cause}",
            details={'endpoint': endpoint}
        )
        self.endpoint = endpoint
        self.cause = cause


class UpstreamError(KraConnectError):
    """Raised when the API answers with an error envelope."""

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: str,
        *,
        error_code: Optional[str] = None,
        request_id: Optional[str] = None,
        response_body: Optional[str] = None
    ):
        details: Dict[str, Any] = {'endpoint': endpoint}
        if error_code:
            details['error_code'] = error_code
        if request_id:
            details['request_id'] = request_id
        super().__init__(message, status_code=status_code, details=details)
        self.endpoint = endpoint
        self.error_code = error_code
        self.request_id = request_id
        self.response_body = response_body

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying a failed attempt."""
    retryable: bool
    kind: str
    retry_after: Optional[float] = None


def classify(
    error: BaseException,
    retry_status_codes: Iterable[int] = DEFAULT_RETRY_STATUS_CODES
) -> ErrorClassification:
    """
    Decide whether a failed attempt may be retried.

    Authentication and validation failures are never retried. Timeouts and
    network failures always are. Upstream errors retry when their status is
    a server error or appears in retry_status_codes.
    """
    codes = frozenset(retry_status_codes)

    if isinstance(error, (ValidationError, AuthenticationError)):
        return ErrorClassification(retryable=False, kind=type(error).__name__)

    if isinstance(error, RateLimitError):
        if error.upstream:
            return ErrorClassification(
                retryable=429 in codes,
                kind='rate_limited',
                retry_after=error.wait_seconds
            )
        return ErrorClassification(retryable=False, kind='local_rate_limit')

    if isinstance(error, RequestTimeoutError):
        return ErrorClassification(retryable=True, kind='timeout')

    if isinstance(error, TransportError):
        return ErrorClassification(retryable=True, kind='network')

    if isinstance(error, UpstreamError):
        retryable = error.is_server_error or error.status_code in codes
        return ErrorClassification(retryable=retryable, kind=f'status_{error.status_code}')

    return ErrorClassification(retryable=False, kind=type(error).__name__)
