import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from stocksync.models import PriceHistory, ProductMapping
from stocksync.platforms.base import PlatformConnection, ref_for_a, ref_for_b
from stocksync.repositories import MappingRepository, PriceHistoryRepository
from stocksync.services import events as ev
from stocksync.services.conflict_resolver import STRATEGY_TOLERANCE, ConflictResolver
from stocksync.services.events import EventBus
from stocksync.services.exceptions import BatchDependencyError, SyncError
from stocksync.services.pricing import PriceCalculationEngine, PriceQuote, parse_price
from stocksync.services.retry import call_with_retry, retry_options
from stocksync.settings import Settings
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PriceSyncResult:
    sku: str
    status: str  # updated, unchanged, within_tolerance, dry_run
    price: Decimal
    previous_price: Optional[Decimal] = None
    strategy: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.status == "updated"


class PriceSynchronizer:
    """플랫폼 A 의 원가를 환율/마진으로 환산해 플랫폼 B 가격에 반영한다."""

    def __init__(
        self,
        platform_a: PlatformConnection,
        platform_b: PlatformConnection,
        engine: PriceCalculationEngine,
        resolver: ConflictResolver,
        price_history: PriceHistoryRepository,
        mappings: MappingRepository,
        config: Settings,
        events: Optional[EventBus] = None,
    ):
        self.platform_a = platform_a
        self.platform_b = platform_b
        self.engine = engine
        self.resolver = resolver
        self.price_history = price_history
        self.mappings = mappings
        self.config = config
        self.events = events

    def ensure_capabilities(self) -> None:
        if self.platform_a.price_reader is None:
            raise BatchDependencyError(
                f"{self.platform_a.name} cannot read prices", dependency="price_reader", recoverable=False
            )
        if self.platform_b.price_reader is None or self.platform_b.price_writer is None:
            raise BatchDependencyError(
                f"{self.platform_b.name} cannot read/write prices", dependency="price_writer", recoverable=False
            )

    async def sync_price(self, mapping: ProductMapping, rate: float, dry_run: bool = False) -> PriceSyncResult:
        self.ensure_capabilities()
        opts = retry_options(self.config)
        ref_a, ref_b = ref_for_a(mapping), ref_for_b(mapping)

        source = parse_price(await call_with_retry(
            self.platform_a.price_reader.get_price, ref_a, operation=f"{self.platform_a.name}.get_price", **opts
        ))
        current = parse_price(await call_with_retry(
            self.platform_b.price_reader.get_price, ref_b, operation=f"{self.platform_b.name}.get_price", **opts
        ))

        quote = self.engine.quote(mapping, source, rate, last_price=mapping.last_price or current)

        if current == quote.price:
            if not dry_run:
                self._record(mapping, quote, current, status="skipped")
                self.mappings.update_fields(mapping.sku, last_price=current)
            return PriceSyncResult(mapping.sku, "unchanged", current, current, warnings=quote.warnings)

        resolution = self.resolver.resolve_price_conflict(mapping.sku, source, current, quote.price)
        if resolution.strategy == STRATEGY_TOLERANCE:
            if not dry_run:
                self._record(mapping, quote, current, status="skipped")
            return PriceSyncResult(
                mapping.sku, "within_tolerance", current, current, strategy=resolution.strategy, warnings=quote.warnings
            )

        final_price = Decimal(str(resolution.resolution))
        if dry_run:
            return PriceSyncResult(
                mapping.sku, "dry_run", final_price, current, strategy=resolution.strategy, warnings=quote.warnings
            )

        try:
            await call_with_retry(
                self.platform_b.price_writer.set_price,
                ref_b,
                final_price,
                operation=f"{self.platform_b.name}.set_price",
                **opts,
            )
        except SyncError as e:
            self._record(mapping, quote, current, status="failed", price=final_price, error=e.message)
            self.mappings.update_fields(mapping.sku, sync_status="error", sync_error=e.message)
            raise

        self._record(mapping, quote, current, status="completed", price=final_price)
        self.mappings.update_fields(mapping.sku, last_price=final_price, last_price_synced_at=utcnow())
        logger.info(f"[PRICE] {mapping.sku}: {current} -> {final_price} ({resolution.strategy}, rate={rate})")

        if quote.warnings and self.events:
            await self.events.publish(ev.PRICE_WARNING, {
                "sku": mapping.sku,
                "price": str(final_price),
                "previous_price": str(current),
                "warnings": quote.warnings,
            })
        return PriceSyncResult(
            mapping.sku, "updated", final_price, current, strategy=resolution.strategy, warnings=quote.warnings
        )

    def _record(
        self,
        mapping: ProductMapping,
        quote: PriceQuote,
        previous: Decimal,
        status: str,
        price: Optional[Decimal] = None,
        error: Optional[str] = None,
    ) -> PriceHistory:
        return self.price_history.add(PriceHistory(
            sku=mapping.sku,
            source_price=quote.source_price,
            exchange_rate=quote.rate,
            margin_rate=quote.margin_rate,
            calculated_price=price if price is not None else quote.price,
            previous_price=previous,
            applied_rule=quote.applied_rule,
            status=status,
            warnings=quote.warnings or None,
            error_message=error,
        ))
