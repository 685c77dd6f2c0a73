"""
구성 요소 조립.
각 서비스는 생성자로 의존성을 받으며, 프로세스 전역 싱글톤은 두지 않는다.
"""
import importlib
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

from redis.asyncio import Redis
from sqlalchemy.orm import sessionmaker

from stocksync.platforms.base import PlatformConnection
from stocksync.providers.exchange_rates import ExchangeRateProvider, build_default_providers
from stocksync.repositories import (
    ConflictLogRepository,
    ExchangeRateRepository,
    MappingRepository,
    PriceHistoryRepository,
    PriceRuleRepository,
    SyncJobRepository,
)
from stocksync.services.admin import SyncAdminService
from stocksync.services.cache import BaseCache, MemoryCache, RedisCache
from stocksync.services.conflict_resolver import ConflictResolver
from stocksync.services.events import EventBus
from stocksync.services.exceptions import ConfigurationError
from stocksync.services.exchange_rate import ExchangeRateService
from stocksync.services.inventory_sync import InventoryReconciler
from stocksync.services.ledger import InventoryLedger
from stocksync.services.locks import LockStore, ProductLock, RedisLockStore, SqlLockStore
from stocksync.services.orchestrator import SyncOrchestrator
from stocksync.services.price_sync import PriceSynchronizer
from stocksync.services.pricing import PriceCalculationEngine
from stocksync.services.scheduler import Scheduler
from stocksync.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    config: Settings
    session_factory: sessionmaker
    events: EventBus
    cache: BaseCache
    locks: ProductLock
    ledger: InventoryLedger
    mappings: MappingRepository
    jobs: SyncJobRepository
    price_history: PriceHistoryRepository
    price_rules: PriceRuleRepository
    conflict_logs: ConflictLogRepository
    rates: ExchangeRateService
    resolver: ConflictResolver
    pricing: PriceCalculationEngine
    inventory: InventoryReconciler
    prices: PriceSynchronizer
    orchestrator: SyncOrchestrator
    admin: SyncAdminService
    scheduler: Scheduler
    redis: Optional[Redis] = field(default=None, repr=False)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.stop()
        if self.redis is not None:
            await self.redis.aclose()


def load_platforms(factory_path: str) -> Tuple[PlatformConnection, PlatformConnection]:
    """'module.path:callable' 형식의 팩토리로 (platform_a, platform_b) 를 만든다."""
    if not factory_path or ":" not in factory_path:
        raise ConfigurationError(
            "PLATFORM_ADAPTER_FACTORY must look like 'package.module:factory'",
            platform_adapter_factory=factory_path,
        )
    module_name, attr = factory_path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    platform_a, platform_b = factory()
    return platform_a, platform_b


def build_context(
    config: Settings,
    session_factory: sessionmaker,
    platform_a: PlatformConnection,
    platform_b: PlatformConnection,
    providers: Optional[Sequence[ExchangeRateProvider]] = None,
    redis_client: Optional[Redis] = None,
    cache: Optional[BaseCache] = None,
    lock_store: Optional[LockStore] = None,
) -> SyncContext:
    if redis_client is None and config.redis_url:
        redis_client = Redis.from_url(config.redis_url)

    if cache is None:
        cache = RedisCache(redis_client) if redis_client is not None else MemoryCache()
    if lock_store is None:
        lock_store = RedisLockStore(redis_client) if redis_client is not None else SqlLockStore(session_factory)
    if providers is None:
        providers = build_default_providers(config)

    logger.info(
        f"[CONTEXT] cache={type(cache).__name__} locks={type(lock_store).__name__} "
        f"providers={[p.name for p in providers]} platforms={platform_a.name}/{platform_b.name} "
        f"price_sync={'on' if platform_b.price_writer is not None else 'off'}"
    )

    events = EventBus()
    locks = ProductLock(lock_store, default_ttl=config.lock_ttl_seconds)
    ledger = InventoryLedger(session_factory)
    mappings = MappingRepository(session_factory)
    jobs = SyncJobRepository(session_factory)
    price_history = PriceHistoryRepository(session_factory)
    price_rules = PriceRuleRepository(session_factory)
    conflict_logs = ConflictLogRepository(session_factory)

    rates = ExchangeRateService(ExchangeRateRepository(session_factory), cache, providers, config, events)
    resolver = ConflictResolver(
        ledger,
        price_history,
        conflict_logs,
        price_tolerance=config.price_conflict_tolerance,
        history_window=config.price_history_window,
        history_tolerance=config.price_history_tolerance,
    )
    pricing = PriceCalculationEngine(
        rule_loader=price_rules.list_enabled,
        default_margin_rate=config.pricing_default_margin_rate,
        default_rounding=config.pricing_default_rounding,
        warning_floor=config.price_warning_floor,
        swing_ratio=config.price_swing_warning_ratio,
    )
    inventory = InventoryReconciler(
        platform_a, platform_b, ledger, mappings, resolver, locks, cache, config, events
    )
    prices = PriceSynchronizer(platform_a, platform_b, pricing, resolver, price_history, mappings, config, events)
    orchestrator = SyncOrchestrator(jobs, mappings, locks, inventory, prices, rates, config, events, cache)
    admin = SyncAdminService(orchestrator, inventory, rates, resolver, price_history)
    scheduler = Scheduler(state_path=config.scheduler_state_path)

    return SyncContext(
        config=config,
        session_factory=session_factory,
        events=events,
        cache=cache,
        locks=locks,
        ledger=ledger,
        mappings=mappings,
        jobs=jobs,
        price_history=price_history,
        price_rules=price_rules,
        conflict_logs=conflict_logs,
        rates=rates,
        resolver=resolver,
        pricing=pricing,
        inventory=inventory,
        prices=prices,
        orchestrator=orchestrator,
        admin=admin,
        scheduler=scheduler,
        redis=redis_client,
    )


def register_default_schedule(ctx: SyncContext) -> Scheduler:
    """재고/가격 동기화 잡 제출과 환율 갱신을 주기 작업으로 등록"""
    config = ctx.config

    async def submit_inventory():
        return ctx.orchestrator.submit(type="inventory", triggered_by="scheduler")

    async def submit_price():
        return ctx.orchestrator.submit(type="price", triggered_by="scheduler")

    async def refresh_rate():
        return await ctx.rates.update_exchange_rate()

    ctx.scheduler.every("exchange_rate", config.scheduler_exchange_rate_interval, refresh_rate, run_on_start=True)
    ctx.scheduler.every("inventory_sync", config.scheduler_inventory_interval, submit_inventory)
    if ctx.prices.platform_b.price_writer is not None:
        ctx.scheduler.every("price_sync", config.scheduler_price_interval, submit_price)
    return ctx.scheduler
