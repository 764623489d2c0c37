"""
Unit tests for KraClient.
"""

import pytest
import pytest_asyncio

from kra_connect.client import KraClient
from kra_connect.config import DEFAULT_USER_AGENT, KraConnectSettings
from kra_connect.exceptions import ValidationError
from kra_connect.models import NilReturnRequest, PinVerificationResult
from kra_connect.rate_limiter import RateLimiter
from kra_connect.retry_handler import RetryHandler
from tests.conftest import API_KEY, BASE_URL, VALID_PIN, echo_pin, make_pin, ok, pin_payload


@pytest.fixture
def settings():
    return KraConnectSettings(_env_file=None, api_key=API_KEY, base_url=BASE_URL, enable_jitter=False)


@pytest_asyncio.fixture
async def client(settings, http_client, clock, sleep):
    kra_client = KraClient(
        settings,
        http_client=http_client,
        rate_limiter=RateLimiter(settings.max_requests_per_second, clock=clock, sleep=sleep),
        retry_handler=RetryHandler(settings.retry_config(), sleep=sleep),
    )
    yield kra_client
    await kra_client.aclose()


class TestLookups:
    """Test cases for the lookup operations."""

    @pytest.mark.asyncio
    async def test_verify_pin(self, api, client):
        api.queue(ok(pin_payload()))

        result = await client.verify_pin('p051234567a')

        assert isinstance(result, PinVerificationResult)
        assert result.pin_number == VALID_PIN
        assert result.taxpayer_name == 'Wanjiku Trading Ltd'
        assert result.is_active

        request = api.requests[0]
        assert request.url.path == '/gavaconnect/verify-pin'
        assert request.url.params['pin'] == VALID_PIN
        assert request.headers['Authorization'] == f'Bearer {API_KEY}'
        assert request.headers['User-Agent'] == DEFAULT_USER_AGENT

    @pytest.mark.asyncio
    async def test_verify_pin_cached(self, api, client):
        api.default = echo_pin

        await client.verify_pin(VALID_PIN)
        await client.verify_pin(VALID_PIN)
        await client.verify_pin(VALID_PIN, use_cache=False)

        assert api.call_count == 2

    @pytest.mark.asyncio
    async def test_verify_pin_batch_keeps_order(self, api, client):
        api.default = echo_pin
        pins = [make_pin(3), make_pin(1), make_pin(2)]

        results = await client.verify_pin_batch(pins)

        assert [result.pin_number for result in results] == pins

    @pytest.mark.asyncio
    async def test_invalid_pin_never_sent(self, api, client):
        with pytest.raises(ValidationError):
            await client.verify_pin('12345')
        assert api.call_count == 0

    @pytest.mark.asyncio
    async def test_verify_tcc(self, api, client):
        api.queue(ok({
            'tccNumber': 'TCC123456',
            'isValid': True,
            'pinNumber': VALID_PIN,
            'expiryDate': '2099-12-31',
            'isExpired': False,
        }))

        result = await client.verify_tcc('tcc123456')

        assert result.tcc_number == 'TCC123456'
        assert result.is_currently_valid
        assert not result.is_expiring_soon
        assert result.days_until_expiry > 0
        assert api.requests[0].url.params['tcc'] == 'TCC123456'

    @pytest.mark.asyncio
    async def test_validate_eslip(self, api, client):
        api.queue(ok({'isValid': True, 'amount': 15000.0, 'currency': 'KES', 'status': 'PAID'}))

        result = await client.validate_eslip('1234567890')

        assert result.eslip_number == '1234567890'
        assert result.is_paid
        assert result.amount == 15000.0

    @pytest.mark.asyncio
    async def test_verify_tcc_batch(self, api, client):
        api.default = lambda request: ok({
            'tccNumber': request.url.params['tcc'],
            'isValid': True,
        })(request)

        results = await client.verify_tcc_batch(['TCC123456', 'TCC654321'])

        assert [result.tcc_number for result in results] == ['TCC123456', 'TCC654321']

    @pytest.mark.asyncio
    async def test_validate_eslip_batch(self, api, client):
        api.default = lambda request: ok({'isValid': True, 'status': 'pending'})(request)

        results = await client.validate_eslip_batch(['ESLIP00001', 'ESLIP00002'])

        assert [result.eslip_number for result in results] == ['ESLIP00001', 'ESLIP00002']
        assert all(result.is_pending for result in results)

    @pytest.mark.asyncio
    async def test_get_taxpayer_details(self, api, client):
        api.queue(ok({
            'pinNumber': VALID_PIN,
            'taxpayerName': 'Wanjiku Trading Ltd',
            'taxpayerType': 'Company',
            'isActive': True,
            'complianceStatus': 'compliant',
            'obligations': [
                {'obligationType': 'VAT', 'taxPeriod': '2024-01', 'balance': 2500.0},
            ],
        }))

        details = await client.get_taxpayer_details(VALID_PIN)

        assert details.is_company
        assert details.is_compliant
        assert details.obligation_count == 1
        assert details.obligations[0].has_balance
        assert api.requests[0].url.path.endswith('/taxpayer-details')

    @pytest.mark.asyncio
    async def test_file_nil_return(self, api, client):
        api.default = ok({'isAccepted': True, 'status': 'accepted', 'acknowledgementNumber': 'ACK-1'})
        request = NilReturnRequest(
            pin_number=VALID_PIN,
            obligation_type='PAYE',
            tax_period='2024-03',
            declaration=True,
        )

        first = await client.file_nil_return(request)
        await client.file_nil_return(request)

        assert first.acknowledgement_number == 'ACK-1'
        assert first.tax_period == '2024-03'
        assert api.call_count == 2

    @pytest.mark.asyncio
    async def test_file_nil_return_rejects_non_mapping(self, api, client):
        with pytest.raises(ValidationError) as exc_info:
            await client.file_nil_return(None)

        assert exc_info.value.field == 'request'
        assert client.get_stats()['validation_failures'] == 1
        assert api.call_count == 0


class TestManagement:
    """Test cases for cache, limiter and lifecycle management."""

    @pytest.mark.asyncio
    async def test_cache_stats_and_clear(self, api, client):
        api.default = echo_pin
        await client.verify_pin(VALID_PIN)

        assert client.get_cache_stats()['size'] == 1
        client.clear_cache()
        assert client.get_cache_stats()['size'] == 0

    @pytest.mark.asyncio
    async def test_invalidate(self, api, client):
        api.default = echo_pin
        await client.verify_pin(VALID_PIN)

        assert client.invalidate('verify_pin') == 1
        await client.verify_pin(VALID_PIN)
        assert api.call_count == 2

    @pytest.mark.asyncio
    async def test_rate_limiter_stats_and_reset(self, api, client):
        api.default = echo_pin
        await client.verify_pin(VALID_PIN)

        assert client.get_rate_limiter_stats()['available_tokens'] == 9.0
        client.reset_rate_limiter()
        assert client.get_rate_limiter_stats()['available_tokens'] == 10.0

    @pytest.mark.asyncio
    async def test_get_stats(self, api, client):
        api.default = echo_pin
        await client.verify_pin(VALID_PIN)
        await client.verify_pin(VALID_PIN)

        stats = client.get_stats()

        assert stats['requests_total'] == 2
        assert stats['cache_hits'] == 1
        assert stats['cache']['size'] == 1
        assert stats['rate_limiter']['max_requests_per_second'] == 10
        assert stats['retry']['max_retries'] == 3

    @pytest.mark.asyncio
    async def test_closed_client_rejects_calls(self, api, client):
        await client.aclose()
        await client.aclose()

        with pytest.raises(RuntimeError):
            await client.verify_pin(VALID_PIN)
        assert api.call_count == 0

    @pytest.mark.asyncio
    async def test_context_manager(self, api, http_client):
        api.default = echo_pin

        async with KraClient(api_key=API_KEY, base_url=BASE_URL, http_client=http_client, _env_file=None) as kra:
            await kra.verify_pin(VALID_PIN)

        assert kra.get_cache_stats()['size'] == 0
        with pytest.raises(RuntimeError):
            await kra.verify_pin(VALID_PIN)

    def test_settings_and_overrides_are_exclusive(self, settings):
        with pytest.raises(TypeError):
            KraClient(settings, timeout=5)

    @pytest.mark.asyncio
    async def test_cache_disabled(self, api, settings, http_client):
        kra = KraClient(settings.model_copy(update={'enable_cache': False}), http_client=http_client)
        api.default = echo_pin

        await kra.verify_pin(VALID_PIN)
        await kra.verify_pin(VALID_PIN)

        assert api.call_count == 2
        await kra.aclose()

    @pytest.mark.asyncio
    async def test_clients_do_not_share_cache(self, api, settings, http_client):
        first = KraClient(settings, http_client=http_client)
        second = KraClient(settings, http_client=http_client)
        api.default = echo_pin

        await first.verify_pin(VALID_PIN)
        await second.verify_pin(VALID_PIN)

        assert api.call_count == 2
        await first.aclose()
        await second.aclose()


class TestLogging:
    """Test cases for opt-in logging configuration."""

    @pytest.mark.asyncio
    async def test_configure_logs_uses_settings(self, settings, http_client, monkeypatch):
        calls = []
        monkeypatch.setattr('kra_connect.client.configure_logging', lambda *args: calls.append(args))

        KraClient(
            settings.model_copy(update={'log_level': 'DEBUG', 'json_logs': True}),
            http_client=http_client,
            configure_logs=True
        )

        assert calls == [('DEBUG', True)]

    @pytest.mark.asyncio
    async def test_logging_left_alone_by_default(self, settings, http_client, monkeypatch):
        calls = []
        monkeypatch.setattr('kra_connect.client.configure_logging', lambda *args: calls.append(args))

        KraClient(settings, http_client=http_client)

        assert calls == []
