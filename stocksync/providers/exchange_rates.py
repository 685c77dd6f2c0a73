import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from stocksync.services.exceptions import ValidationError
from stocksync.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrencyPair:
    base: str
    target: str

    def __str__(self) -> str:
        return f"{self.base}/{self.target}"

    @property
    def cache_key(self) -> str:
        return f"exchange:rate:{self.base}:{self.target}"


class ExchangeRateProvider(ABC):
    """
    환율 제공자. priority 가 낮을수록 먼저 호출된다.
    requires_credential 인 제공자는 자격 증명이 없으면 건너뛴다.
    """
    name: str = "provider"
    priority: int = 100
    requires_credential: bool = False

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def fetch(self, pair: CurrencyPair) -> float:
        """
        Returns target units per one base unit.
        """
        pass


class HttpRateProvider(ExchangeRateProvider):
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        if self._client is not None:
            resp = await self._client.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(url, params=params)
            resp.raise_for_status()
            return resp.json()

    @staticmethod
    def _pick(rates: Any, currency: str) -> float:
        if not isinstance(rates, dict) or currency not in rates:
            raise ValidationError(f"Currency {currency} missing in provider response", field="rates")
        value = rates[currency]
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValidationError("Non-numeric rate in provider response", field="rates", actual_value=value)
        return float(value)


class ExchangeRateApiProvider(HttpRateProvider):
    """exchangerate-api.com v4 (무료, 키 불필요)"""
    name = "exchangerate-api"
    priority = 1

    async def fetch(self, pair: CurrencyPair) -> float:
        data = await self._get_json(f"{self.base_url}/{pair.base}")
        return self._pick(data.get("rates"), pair.target)


class FrankfurterProvider(HttpRateProvider):
    """frankfurter.app (ECB 기준 환율, 키 불필요)"""
    name = "frankfurter"
    priority = 2

    async def fetch(self, pair: CurrencyPair) -> float:
        data = await self._get_json(f"{self.base_url}/latest", params={"from": pair.base, "to": pair.target})
        return self._pick(data.get("rates"), pair.target)


class OpenExchangeRatesProvider(HttpRateProvider):
    """
    openexchangerates.org. 무료 플랜은 USD 기준만 제공하므로
    base/target 교차 환율을 계산한다.
    """
    name = "openexchangerates"
    priority = 3
    requires_credential = True

    def __init__(self, base_url: str, app_id: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url, timeout=timeout, client=client)
        self.app_id = app_id

    def is_configured(self) -> bool:
        return bool(self.app_id)

    async def fetch(self, pair: CurrencyPair) -> float:
        data = await self._get_json(f"{self.base_url}/latest.json", params={"app_id": self.app_id})
        rates = data.get("rates")
        usd_base = data.get("base", "USD")
        base_rate = 1.0 if pair.base == usd_base else self._pick(rates, pair.base)
        target_rate = 1.0 if pair.target == usd_base else self._pick(rates, pair.target)
        if base_rate == 0:
            raise ValidationError("Zero base rate in provider response", field="rates")
        return target_rate / base_rate


def build_default_providers(config: Settings, client: Optional[httpx.AsyncClient] = None) -> List[ExchangeRateProvider]:
    timeout = config.exchange_rate_provider_timeout
    return [
        ExchangeRateApiProvider(config.exchange_rate_api_url, timeout=timeout, client=client),
        FrankfurterProvider(config.frankfurter_api_url, timeout=timeout, client=client),
        OpenExchangeRatesProvider(
            config.open_exchange_rates_url,
            app_id=config.open_exchange_rates_app_id,
            timeout=timeout,
            client=client,
        ),
    ]
