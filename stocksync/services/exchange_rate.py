"""
Exchange-Rate Provider Chain

조회 순서: 캐시 → 유효한 수동 환율 → 외부 제공자(우선순위 순) → 마지막 저장 환율 → 기본값.
조회는 항상 숫자를 돌려주며 예외를 던지지 않는다.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from stocksync.models import ExchangeRate
from stocksync.providers.exchange_rates import CurrencyPair, ExchangeRateProvider
from stocksync.repositories import ExchangeRateRepository
from stocksync.services import events as ev
from stocksync.services.cache import BaseCache
from stocksync.services.events import EventBus
from stocksync.services.exceptions import AllProvidersFailedError, ValidationError
from stocksync.settings import Settings
from stocksync.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateQuote:
    rate: float
    source: str  # cache, manual, api, fallback, default
    provider: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.source == "default"


class ExchangeRateService:
    def __init__(
        self,
        repository: ExchangeRateRepository,
        cache: BaseCache,
        providers: Sequence[ExchangeRateProvider],
        config: Settings,
        events: Optional[EventBus] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.providers = sorted(providers, key=lambda p: p.priority)
        self.config = config
        self.events = events
        self.default_pair = CurrencyPair(config.platform_a_currency, config.platform_b_currency)

    def is_plausible(self, rate: Any) -> bool:
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            return False
        return math.isfinite(rate) and 0 < rate <= self.config.exchange_rate_max_plausible

    async def get_current_rate(self, pair: Optional[CurrencyPair] = None) -> float:
        return (await self.get_quote(pair)).rate

    async def get_quote(self, pair: Optional[CurrencyPair] = None) -> RateQuote:
        pair = pair or self.default_pair

        cached = await self.cache.get(pair.cache_key)
        if cached and self.is_plausible(cached.get("rate")):
            return RateQuote(float(cached["rate"]), "cache", cached.get("provider"))

        manual = self.repository.valid_manual(pair.base, pair.target)
        if manual is not None:
            remaining = (ensure_utc(manual.valid_until) - utcnow()).total_seconds()
            ttl = min(self.config.exchange_rate_cache_ttl, max(1, int(remaining)))
            await self._cache_rate(pair, manual.rate, "manual", ttl=ttl)
            return RateQuote(manual.rate, "manual", "manual")

        try:
            rate, provider = await self._query_providers(pair)
        except AllProvidersFailedError as e:
            logger.warning(f"[RATE] {e.message}: {e.failures}")
        else:
            self._persist_api_rate(pair, rate, provider)
            await self._cache_rate(pair, rate, provider)
            return RateQuote(rate, "api", provider)

        last = self.repository.latest(pair.base, pair.target)
        if last is not None:
            logger.warning(f"[RATE] Using last persisted {pair} rate {last.rate} ({last.source}, {last.created_at})")
            await self._notify_fallback(pair, last.rate, "fallback")
            return RateQuote(last.rate, "fallback", last.provider)

        rate = self.config.exchange_rate_default
        logger.warning(f"[RATE] No {pair} rate available. Using configured default {rate}")
        await self._notify_fallback(pair, rate, "default")
        return RateQuote(rate, "default", None)

    async def _query_providers(self, pair: CurrencyPair) -> tuple[float, str]:
        failures: Dict[str, str] = {}
        for provider in self.providers:
            if provider.requires_credential and not provider.is_configured():
                logger.debug(f"[RATE] Skipping {provider.name}: no credential")
                continue
            try:
                rate = await asyncio.wait_for(provider.fetch(pair), timeout=self.config.exchange_rate_provider_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures[provider.name] = str(e) or type(e).__name__
                logger.warning(f"[RATE] Provider {provider.name} failed for {pair}: {e!r}")
                continue
            if not self.is_plausible(rate):
                failures[provider.name] = f"implausible rate {rate!r}"
                logger.warning(f"[RATE] Provider {provider.name} returned implausible rate {rate!r}")
                continue
            logger.info(f"[RATE] {pair} = {rate} from {provider.name}")
            return float(rate), provider.name
        raise AllProvidersFailedError(str(pair), failures)

    def _persist_api_rate(self, pair: CurrencyPair, rate: float, provider: str) -> ExchangeRate:
        now = utcnow()
        return self.repository.add(ExchangeRate(
            base_currency=pair.base,
            target_currency=pair.target,
            rate=rate,
            source="api",
            provider=provider,
            valid_from=now,
            valid_until=now + timedelta(hours=self.config.exchange_rate_api_validity_hours),
        ))

    async def _cache_rate(self, pair: CurrencyPair, rate: float, provider: Optional[str], ttl: Optional[int] = None) -> None:
        await self.cache.set(
            pair.cache_key,
            {"rate": rate, "provider": provider},
            ttl=ttl or self.config.exchange_rate_cache_ttl,
            tags=["exchange_rate"],
        )

    async def _notify_fallback(self, pair: CurrencyPair, rate: float, source: str) -> None:
        if self.events:
            await self.events.publish(ev.EXCHANGE_RATE_FALLBACK, {"pair": str(pair), "rate": rate, "source": source})

    async def set_manual_rate(
        self,
        rate: float,
        valid_hours: Optional[float] = None,
        reason: Optional[str] = None,
        pair: Optional[CurrencyPair] = None,
        set_by: str = "manual",
    ) -> ExchangeRate:
        """수동 환율 등록. 기존 수동 환율은 즉시 종료되고 캐시도 바로 갱신된다."""
        pair = pair or self.default_pair
        if not self.is_plausible(rate):
            raise ValidationError("Exchange rate out of plausible range", field="rate", actual_value=rate)
        hours = valid_hours if valid_hours is not None else self.config.exchange_rate_manual_validity_hours
        if hours <= 0:
            raise ValidationError("Validity must be positive", field="valid_hours", actual_value=hours)

        now = utcnow()
        entry = self.repository.replace_manual(ExchangeRate(
            base_currency=pair.base,
            target_currency=pair.target,
            rate=float(rate),
            source="manual",
            provider="manual",
            valid_from=now,
            valid_until=now + timedelta(hours=hours),
            reason=reason,
            meta={"set_by": set_by},
        ), now=now)
        ttl = min(self.config.exchange_rate_cache_ttl, max(1, int(hours * 3600)))
        await self._cache_rate(pair, float(rate), "manual", ttl=ttl)
        logger.info(f"[RATE] Manual {pair} rate set to {rate} for {hours}h ({reason})")
        return entry

    async def clear_manual_rate(self, pair: Optional[CurrencyPair] = None) -> int:
        pair = pair or self.default_pair
        ended = self.repository.end_manual(pair.base, pair.target)
        await self.cache.delete(pair.cache_key)
        logger.info(f"[RATE] Cleared {ended} manual {pair} rate(s)")
        return ended

    async def update_exchange_rate(self, pair: Optional[CurrencyPair] = None) -> Dict[str, Any]:
        """
        스케줄러용 갱신. 제공자 실패 시에도 예외를 던지지 않는다.

        Returns:
            {"status": "manual_override" | "unchanged" | "updated" | "failed", "rate": ...}
        """
        pair = pair or self.default_pair
        manual = self.repository.valid_manual(pair.base, pair.target)
        if manual is not None:
            logger.info(f"[RATE] Manual {pair} override active until {manual.valid_until}. Skipping update")
            return {"status": "manual_override", "rate": manual.rate}

        try:
            rate, provider = await self._query_providers(pair)
        except AllProvidersFailedError as e:
            logger.error(f"[RATE] Update failed: {e.message} {e.failures}")
            return {"status": "failed", "rate": None, "failures": e.failures}

        await self._cache_rate(pair, rate, provider)

        last = self.repository.latest(pair.base, pair.target, source="api")
        if last is not None and last.rate > 0:
            change = abs(rate - last.rate) / last.rate
            if change < self.config.exchange_rate_change_threshold:
                logger.info(f"[RATE] {pair} change {change:.4%} below threshold. Not persisted")
                return {"status": "unchanged", "rate": rate, "provider": provider, "change": change}
        else:
            change = None

        self._persist_api_rate(pair, rate, provider)
        return {"status": "updated", "rate": rate, "provider": provider, "change": change}

    def get_rate_history(self, pair: Optional[CurrencyPair] = None, days: int = 30) -> List[ExchangeRate]:
        pair = pair or self.default_pair
        return self.repository.history(pair.base, pair.target, days=days)
