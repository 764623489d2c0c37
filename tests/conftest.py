"""
Pytest configuration and shared fixtures for KRA Connect testing.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from kra_connect.cache_manager import CacheManager
from kra_connect.pipeline import RequestPipeline
from kra_connect.rate_limiter import RateLimiter
from kra_connect.retry_handler import RetryConfig, RetryHandler
from kra_connect.transport import HttpTransport

API_KEY = 'test-api-key-0123456789'
BASE_URL = 'https://api.test.kra.go.ke/gavaconnect'
VALID_PIN = 'P051234567A'


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records each delay and advances the fake clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


class ApiStub:
    """
    Scripted stand-in for the remote API, served through httpx.MockTransport.

    Queued responders are used once each, in order; the default responder
    answers everything after the queue runs dry.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._queue: List[Callable[[httpx.Request], httpx.Response]] = []
        self.default: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self.delay = 0.0

    def queue(self, *responders: Callable[[httpx.Request], httpx.Response]) -> None:
        self._queue.extend(responders)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._queue:
            responder = self._queue.pop(0)
        elif self.default is not None:
            responder = self.default
        else:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        return responder(request)


def ok(data: Dict[str, Any]) -> Callable[[httpx.Request], httpx.Response]:
    """Responder returning a success envelope around data."""
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            'responseCode': '00000',
            'responseDesc': 'Success',
            'status': 'OK',
            'responseData': data,
        })
    return respond


def error(status: int, message: str = 'Request failed', headers: Optional[Dict[str, str]] = None):
    """Responder returning an error envelope with the given status."""
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status,
            json={'errorCode': f'E{status}', 'errorMessage': message, 'requestId': 'req-1'},
            headers=headers or {},
        )
    return respond


def pin_payload(pin: str = VALID_PIN, **overrides: Any) -> Dict[str, Any]:
    return {
        'pinNumber': pin,
        'isValid': True,
        'taxpayerName': 'Wanjiku Trading Ltd',
        'status': 'active',
        'taxpayerType': 'company',
        **overrides,
    }


def echo_pin(request: httpx.Request) -> httpx.Response:
    """Responder that verifies whichever PIN was asked for."""
    return ok(pin_payload(request.url.params['pin']))(request)


def make_pin(index: int) -> str:
    return f"A{index:09d}Z"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def api():
    return ApiStub()


@pytest_asyncio.fixture
async def http_client(api):
    """AsyncClient whose requests are answered by the ApiStub."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(api.handle))
    yield client
    await client.aclose()


@pytest.fixture
def transport(http_client):
    return HttpTransport(BASE_URL, API_KEY, timeout=5.0, client=http_client)


@pytest.fixture
def cache_manager(clock):
    return CacheManager(max_size=100, default_ttl=3600.0, name='test', clock=clock)


@pytest.fixture
def rate_limiter(clock, sleep):
    return RateLimiter(max_requests_per_second=10, name='test', clock=clock, sleep=sleep)


@pytest.fixture
def retry_handler(sleep):
    return RetryHandler(RetryConfig(enable_jitter=False), sleep=sleep)


@pytest.fixture
def pipeline(transport, cache_manager, rate_limiter, retry_handler):
    return RequestPipeline(
        transport,
        cache_manager,
        rate_limiter,
        retry_handler,
        attempt_timeout=5.0
    )
