"""
HTTP Transport
==============

The remote verification endpoint collaborator: one JSON request/response
exchange per call, authenticated with a bearer credential, over a shared
httpx.AsyncClient with connection pooling.

interpret_response() maps the HTTP status taxonomy onto the error classes:
- 2xx: success envelope, unwrapped into an Envelope
- 401/403: AuthenticationError
- 408: RequestTimeoutError
- 429: RateLimitError (upstream), honoring Retry-After
- other 4xx / 5xx: UpstreamError built from the error envelope
- 1xx / 3xx: UpstreamError (not retried)
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from .exceptions import (
    AuthenticationError,
    RateLimitError,
    RequestTimeoutError,
    TransportError,
    UpstreamError,
)

logger = structlog.get_logger(__name__)

# Used when a 429 carries no usable Retry-After header
DEFAULT_RETRY_AFTER_SECONDS = 60.0


@dataclass(frozen=True)
class Envelope:
    """Unwrapped success envelope."""
    data: Dict[str, Any]
    response_code: Optional[str] = None
    response_desc: Optional[str] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class HttpTransport:
    """
    Sends one request to the API and returns the raw httpx response.

    Usage:
        transport = HttpTransport(base_url, api_key, timeout=30)
        response = await transport.send('GET', '/verify-pin', params={'pin': pin})
        envelope = interpret_response(response, '/verify-pin', timeout=30)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        user_agent: str = 'kra-connect-python',
        custom_headers: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            base_url: API root (e.g. https://api.kra.go.ke/gavaconnect)
            api_key: Bearer credential
            timeout: Socket-level timeout in seconds
            user_agent: User-Agent header value
            custom_headers: Extra headers sent with every request
            client: Pre-built AsyncClient (tests pass one with a MockTransport)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'Authorization': f'Bearer {api_key}',
            'User-Agent': user_agent,
            **(custom_headers or {}),
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    def build_url(self, endpoint: str) -> str:
        path = endpoint if endpoint.startswith('/') else f'/{endpoint}'
        return f"{self.base_url}{path}"

    async def send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Perform one HTTP exchange.

        Raises:
            RequestTimeoutError: If the socket-level timeout fires
            TransportError: If the request could not be delivered
        """
        url = self.build_url(endpoint)
        logger.debug("Sending request", method=method, endpoint=endpoint)

        try:
            return await self._client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers,
            )
        except httpx.TimeoutException:
            raise RequestTimeoutError(endpoint, self.timeout, 1) from None
        except httpx.TransportError as e:
            raise TransportError(endpoint, e) from e

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
            logger.debug("HTTP client closed")


def parse_retry_after(headers: Mapping[str, str], default: float = DEFAULT_RETRY_AFTER_SECONDS) -> float:
    """
    Parse a Retry-After header given in seconds or as an HTTP date.

    Returns default when the header is absent or unparseable.
    """
    value = headers.get('Retry-After') or headers.get('retry-after')
    if not value:
        return default

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, (moment - datetime.now(timezone.utc)).total_seconds())


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    return json.loads(response.content)


def _error_fields(response: httpx.Response) -> Dict[str, Optional[str]]:
    """Pull errorCode/errorMessage/requestId out of an error envelope, if any."""
    try:
        body = _decode(response)
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}

    message = (
        body.get('errorMessage')
        or body.get('message')
        or body.get('error')
        or body.get('detail')
    )
    error_code = body.get('errorCode')
    request_id = body.get('requestId')
    return {
        'message': str(message) if message is not None else None,
        'error_code': str(error_code) if error_code is not None else None,
        'request_id': str(request_id) if request_id is not None else None,
    }


def interpret_response(response: httpx.Response, endpoint: str, timeout: float) -> Envelope:
    """
    Turn an HTTP response into an Envelope or raise the matching error.

    Args:
        response: Response returned by HttpTransport.send
        endpoint: Endpoint path (for error detail)
        timeout: Per-attempt timeout (reported by 408 errors)
    """
    status = response.status_code

    if status in (401, 403):
        raise AuthenticationError(
            'Invalid API key or authentication failed' if status == 401 else 'Access forbidden',
            status,
            endpoint
        )

    if status == 408:
        raise RequestTimeoutError(endpoint, timeout, 1, status_code=408)

    if status == 429:
        wait = parse_retry_after(response.headers)
        raise RateLimitError(
            f"Upstream rate limit exceeded. Retry after {wait:g}s",
            wait,
            upstream=True,
            endpoint=endpoint
        )

    if status >= 400:
        fields = _error_fields(response)
        default_message = 'Server error' if status >= 500 else 'Client error'
        raise UpstreamError(
            fields.get('message') or default_message,
            status,
            endpoint,
            error_code=fields.get('error_code'),
            request_id=fields.get('request_id'),
            response_body=response.text
        )

    if not 200 <= status < 300:
        raise UpstreamError(
            f'Unexpected HTTP status {status}',
            status,
            endpoint,
            response_body=response.text
        )

    try:
        body = _decode(response)
    except ValueError as e:
        raise UpstreamError(
            f'Failed to parse response JSON: {e}',
            status,
            endpoint,
            response_body=response.text
        ) from e

    if not isinstance(body, dict):
        return Envelope(data={'data': body}, raw={'data': body})

    data = body.get('responseData')
    if not isinstance(data, dict):
        data = body

    def _text(key: str) -> Optional[str]:
        value = body.get(key)
        return str(value) if value is not None else None

    return Envelope(
        data=dict(data),
        response_code=_text('responseCode'),
        response_desc=_text('responseDesc'),
        status=_text('status'),
        raw=body,
    )
