"""
환율 제공자 체인 테스트.

조회 순서: 캐시 → 유효한 수동 환율 → 외부 제공자 → 마지막 저장값 → 기본값.
"""
import asyncio

import httpx
import pytest

from stocksync.models import ExchangeRate
from stocksync.providers.exchange_rates import (
    CurrencyPair,
    ExchangeRateApiProvider,
    FrankfurterProvider,
    OpenExchangeRatesProvider,
)
from stocksync.repositories import ExchangeRateRepository
from stocksync.services import events as ev
from stocksync.services.cache import MemoryCache
from stocksync.services.events import EventBus
from stocksync.services.exceptions import ValidationError
from stocksync.services.exchange_rate import ExchangeRateService
from stocksync.timeutils import utcnow


@pytest.fixture
def repository(session_factory):
    return ExchangeRateRepository(session_factory)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_service(repository, config, bus):
    def _make(*providers):
        return ExchangeRateService(repository, MemoryCache(), list(providers), config, bus)
    return _make


@pytest.mark.unit
class TestRateChain:
    @pytest.mark.asyncio
    async def test_falls_through_to_next_provider(self, rate_provider, make_service, repository):
        first = rate_provider("first", 1, error=asyncio.TimeoutError())
        second = rate_provider("second", 2, rate=0.00080)
        service = make_service(second, first)

        quote = await service.get_quote()

        assert quote.rate == 0.00080
        assert quote.source == "api"
        assert quote.provider == "second"
        assert first.calls == 1

        stored = repository.latest("KRW", "USD")
        assert stored.rate == 0.00080
        assert stored.source == "api"

    @pytest.mark.asyncio
    async def test_default_when_nothing_is_available(self, rate_provider, make_service, bus):
        fallbacks = []
        bus.subscribe(ev.EXCHANGE_RATE_FALLBACK, lambda event_type, data: fallbacks.append(data))
        service = make_service(rate_provider("down", 1, error=httpx.ConnectError("refused")))

        quote = await service.get_quote()

        assert quote.rate == 0.00075
        assert quote.source == "default"
        assert quote.is_default
        assert fallbacks == [{"pair": "KRW/USD", "rate": 0.00075, "source": "default"}]

    @pytest.mark.asyncio
    async def test_last_persisted_rate_before_default(self, rate_provider, make_service, repository):
        now = utcnow()
        repository.add(ExchangeRate(
            base_currency="KRW",
            target_currency="USD",
            rate=0.00072,
            source="api",
            provider="old",
            valid_from=now,
            valid_until=now,
        ))
        service = make_service(rate_provider("down", 1, error=RuntimeError("boom")))

        quote = await service.get_quote()

        assert quote.rate == 0.00072
        assert quote.source == "fallback"

    @pytest.mark.asyncio
    async def test_cached_rate_skips_providers(self, rate_provider, make_service):
        provider = rate_provider("p", 1, rate=0.00077)
        service = make_service(provider)

        await service.get_quote()
        quote = await service.get_quote()

        assert quote.source == "cache"
        assert quote.rate == 0.00077
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_implausible_rates_are_rejected(self, rate_provider, make_service):
        service = make_service(
            rate_provider("zero", 1, rate=0.0),
            rate_provider("huge", 2, rate=1e9),
            rate_provider("text", 3, rate="0.1"),
            rate_provider("ok", 4, rate=0.00079),
        )
        quote = await service.get_quote()
        assert quote.provider == "ok"

    @pytest.mark.asyncio
    async def test_unconfigured_credential_provider_is_skipped(self, rate_provider, make_service):
        keyed = rate_provider("keyed", 1, rate=0.0009, requires_credential=True, configured=False)
        free = rate_provider("free", 2, rate=0.00076)
        service = make_service(keyed, free)

        quote = await service.get_quote()

        assert keyed.calls == 0
        assert quote.provider == "free"

    @pytest.mark.asyncio
    async def test_get_current_rate_returns_number(self, make_service):
        assert await make_service().get_current_rate() == 0.00075


@pytest.mark.unit
class TestManualRate:
    @pytest.mark.asyncio
    async def test_manual_rate_overrides_providers(self, rate_provider, make_service):
        provider = rate_provider("p", 1, rate=0.00077)
        service = make_service(provider)
        await service.get_quote()

        await service.set_manual_rate(0.0009, valid_hours=2, reason="bank rate")
        quote = await service.get_quote()

        assert quote.rate == 0.0009
        assert quote.provider == "manual"

    @pytest.mark.asyncio
    async def test_manual_rate_is_read_from_db_when_cache_is_cold(self, make_service, repository, config, bus):
        await make_service().set_manual_rate(0.00081)

        fresh = ExchangeRateService(repository, MemoryCache(), [], config, bus)
        quote = await fresh.get_quote()

        assert quote.source == "manual"
        assert quote.rate == 0.00081

    @pytest.mark.asyncio
    async def test_only_one_manual_rate_is_valid(self, make_service, repository):
        service = make_service()
        await service.set_manual_rate(0.0008)
        await service.set_manual_rate(0.0009)

        assert repository.valid_manual("KRW", "USD").rate == 0.0009

    @pytest.mark.asyncio
    async def test_clear_manual_rate(self, rate_provider, make_service, repository):
        provider = rate_provider("p", 1, rate=0.00077)
        service = make_service(provider)
        await service.set_manual_rate(0.0009)

        assert await service.clear_manual_rate() == 1
        assert repository.valid_manual("KRW", "USD") is None
        assert (await service.get_quote()).rate == 0.00077

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rate,hours", [(0, 1), (-1, 1), (20000, 1), (0.0008, 0)])
    async def test_invalid_manual_rate(self, make_service, rate, hours):
        with pytest.raises(ValidationError):
            await make_service().set_manual_rate(rate, valid_hours=hours)


@pytest.mark.unit
class TestUpdateExchangeRate:
    @pytest.mark.asyncio
    async def test_updated_then_unchanged(self, rate_provider, make_service, repository):
        service = make_service(rate_provider("p", 1, rate=0.00075))

        first = await service.update_exchange_rate()
        second = await service.update_exchange_rate()

        assert first["status"] == "updated"
        assert second["status"] == "unchanged"
        assert len(service.get_rate_history()) == 1

    @pytest.mark.asyncio
    async def test_significant_change_is_persisted(self, rate_provider, make_service):
        provider = rate_provider("p", 1, rate=0.00075)
        service = make_service(provider)
        await service.update_exchange_rate()

        provider.rate = 0.00080
        result = await service.update_exchange_rate()

        assert result["status"] == "updated"
        assert result["change"] > 0.001
        assert len(service.get_rate_history()) == 2

    @pytest.mark.asyncio
    async def test_manual_override_skips_update(self, rate_provider, make_service):
        provider = rate_provider("p", 1, rate=0.00075)
        service = make_service(provider)
        await service.set_manual_rate(0.0009)

        result = await service.update_exchange_rate()

        assert result == {"status": "manual_override", "rate": 0.0009}
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_failure_does_not_raise(self, rate_provider, make_service):
        service = make_service(rate_provider("p", 1, error=httpx.ConnectError("refused")))
        result = await service.update_exchange_rate()
        assert result["status"] == "failed"
        assert "p" in result["failures"]


@pytest.mark.unit
class TestHttpProviders:
    PAIR = CurrencyPair("KRW", "USD")

    @staticmethod
    def _client(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_exchangerate_api(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v4/latest/KRW"
            return httpx.Response(200, json={"base": "KRW", "rates": {"USD": 0.00074}})

        async with self._client(handler) as client:
            provider = ExchangeRateApiProvider("https://api.example.com/v4/latest", client=client)
            assert await provider.fetch(self.PAIR) == 0.00074

    @pytest.mark.asyncio
    async def test_frankfurter(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["from"] == "KRW"
            assert request.url.params["to"] == "USD"
            return httpx.Response(200, json={"amount": 1.0, "base": "KRW", "rates": {"USD": 0.00073}})

        async with self._client(handler) as client:
            provider = FrankfurterProvider("https://api.frankfurter.example", client=client)
            assert await provider.fetch(self.PAIR) == 0.00073

    @pytest.mark.asyncio
    async def test_open_exchange_rates_cross_rate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["app_id"] == "secret"
            return httpx.Response(200, json={"base": "USD", "rates": {"KRW": 1250.0, "USD": 1.0}})

        async with self._client(handler) as client:
            provider = OpenExchangeRatesProvider("https://oxr.example/api", app_id="secret", client=client)
            assert provider.is_configured()
            assert await provider.fetch(self.PAIR) == pytest.approx(0.0008)

        assert OpenExchangeRatesProvider("https://oxr.example/api", app_id="").is_configured() is False

    @pytest.mark.asyncio
    async def test_missing_currency(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"rates": {"EUR": 0.0007}})

        async with self._client(handler) as client:
            provider = ExchangeRateApiProvider("https://api.example.com/v4/latest", client=client)
            with pytest.raises(ValidationError):
                await provider.fetch(self.PAIR)

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with self._client(handler) as client:
            provider = FrankfurterProvider("https://api.frankfurter.example", client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await provider.fetch(self.PAIR)
