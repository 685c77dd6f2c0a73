"""
Inventory Reconciliation Engine

두 플랫폼의 재고를 읽어 비교하고, 매핑의 동기화 방향에 따라
기준 수량을 정해 뒤처진 쪽에 기록한다. 모든 쓰기는 원장에 남는다.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from stocksync.models import ProductMapping
from stocksync.platforms.base import PlatformConnection, ProductRef, ref_for_a, ref_for_b
from stocksync.repositories import MappingRepository
from stocksync.services import events as ev
from stocksync.services.cache import BaseCache
from stocksync.services.conflict_resolver import ConflictResolver
from stocksync.services.events import EventBus
from stocksync.services.exceptions import (
    DuplicateTransactionError,
    NotFoundError,
    SyncError,
    ValidationError,
)
from stocksync.services.ledger import InventoryLedger, LedgerEntry
from stocksync.services.locks import ProductLock
from stocksync.services.retry import call_with_retry, retry_options
from stocksync.settings import Settings
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)

DIRECTIONS = ("a_to_b", "b_to_a", "bidirectional")
STRATEGY_BIDIRECTIONAL_MAX = "bidirectional_maximum"

REPORT_CACHE_KEY = "reports:discrepancy"


@dataclass
class ReconcileResult:
    sku: str
    status: str  # synced, corrected, dry_run
    quantity_a: int
    quantity_b: int
    final_quantity: int
    strategy: Optional[str] = None
    writes: List[str] = field(default_factory=list)
    discrepancy: int = 0
    critical: bool = False
    previous: Optional[Dict[str, Any]] = None

    @property
    def corrected(self) -> bool:
        return bool(self.writes)


class InventoryReconciler:
    def __init__(
        self,
        platform_a: PlatformConnection,
        platform_b: PlatformConnection,
        ledger: InventoryLedger,
        mappings: MappingRepository,
        resolver: ConflictResolver,
        locks: ProductLock,
        cache: BaseCache,
        config: Settings,
        events: Optional[EventBus] = None,
    ):
        self.platform_a = platform_a
        self.platform_b = platform_b
        self.ledger = ledger
        self.mappings = mappings
        self.resolver = resolver
        self.locks = locks
        self.cache = cache
        self.config = config
        self.events = events

    async def _read(self, platform: PlatformConnection, ref: ProductRef) -> int:
        quantity = await call_with_retry(
            platform.inventory_reader.get_quantity,
            ref,
            operation=f"{platform.name}.get_quantity",
            **retry_options(self.config),
        )
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(
                f"Invalid quantity from {platform.name}", field="quantity", actual_value=quantity, sku=ref.sku
            )
        return quantity

    async def _write(self, platform: PlatformConnection, ref: ProductRef, quantity: int) -> None:
        await call_with_retry(
            platform.inventory_writer.set_quantity,
            ref,
            quantity,
            operation=f"{platform.name}.set_quantity",
            **retry_options(self.config),
        )

    def _authoritative(self, mapping: ProductMapping, quantity_a: int, quantity_b: int) -> Tuple[int, str]:
        direction = mapping.sync_direction
        if direction == "a_to_b":
            return quantity_a, "a_to_b"
        if direction == "b_to_a":
            return quantity_b, "b_to_a"
        if direction != "bidirectional":
            raise ValidationError(f"Unknown sync direction {direction}", field="sync_direction", actual_value=direction)

        # 마지막 동기화 이후 실제 판매/조정이 있었다면 그 기록을 따른다
        if mapping.last_synced_at is not None and self.ledger.transactions_since(mapping.sku, mapping.last_synced_at):
            resolution = self.resolver.resolve_inventory_conflict(
                mapping.sku, quantity_a, quantity_b, mapping.last_synced_at
            )
            return int(resolution.resolution), resolution.strategy
        return max(quantity_a, quantity_b), STRATEGY_BIDIRECTIONAL_MAX

    async def reconcile(self, mapping: ProductMapping, dry_run: bool = False, job_id: Optional[str] = None) -> ReconcileResult:
        """
        상품 하나의 재고 정합.
        호출자가 상품 락을 보유하고 있어야 한다.
        """
        sku = mapping.sku
        ref_a, ref_b = ref_for_a(mapping), ref_for_b(mapping)
        quantity_a = await self._read(self.platform_a, ref_a)
        quantity_b = await self._read(self.platform_b, ref_b)
        previous = await self.cache.get(f"inventory:{sku}")
        discrepancy = abs(quantity_a - quantity_b)
        now = utcnow()

        if discrepancy == 0:
            if not dry_run:
                self.mappings.update_fields(
                    sku,
                    sync_status="synced",
                    sync_error=None,
                    last_synced_at=now,
                    inventory_discrepancy=0,
                    platform_a_quantity=quantity_a,
                    platform_b_quantity=quantity_b,
                )
                await self._snapshot(sku, quantity_a, quantity_b, quantity_a)
            return ReconcileResult(sku, "synced", quantity_a, quantity_b, quantity_a, previous=previous)

        target, strategy = self._authoritative(mapping, quantity_a, quantity_b)
        critical = discrepancy >= self.config.inventory_critical_threshold
        if critical:
            logger.warning(f"[INVENTORY] Critical discrepancy for {sku}: A={quantity_a} B={quantity_b}")
            if self.events:
                await self.events.publish(ev.INVENTORY_DISCREPANCY, {
                    "sku": sku,
                    "a": quantity_a,
                    "b": quantity_b,
                    "magnitude": discrepancy,
                })

        result = ReconcileResult(
            sku,
            "dry_run" if dry_run else "corrected",
            quantity_a,
            quantity_b,
            target,
            strategy=strategy,
            discrepancy=discrepancy,
            critical=critical,
            previous=previous,
        )
        if dry_run:
            # 관측값만 남긴다. 동기화 상태와 시각은 그대로
            self.mappings.update_fields(
                sku, inventory_discrepancy=discrepancy, platform_a_quantity=quantity_a, platform_b_quantity=quantity_b
            )
            await self.cache.invalidate_tag("reports")
            return result

        for platform, ref, current in ((self.platform_a, ref_a, quantity_a), (self.platform_b, ref_b, quantity_b)):
            if current == target:
                continue
            try:
                await self._write(platform, ref, target)
            except SyncError as e:
                self._record_failure(sku, platform.name, current, target, strategy, e, job_id)
                self.mappings.update_fields(sku, sync_status="error", sync_error=e.message, inventory_discrepancy=discrepancy)
                await self.cache.invalidate_tag("reports")
                raise
            self.ledger.record(LedgerEntry(
                sku=sku,
                platform=platform.name,
                transaction_type="sync",
                previous_quantity=current,
                new_quantity=target,
                reason=strategy,
                meta={"job_id": job_id, "quantity_a": quantity_a, "quantity_b": quantity_b, "discrepancy": discrepancy},
            ))
            result.writes.append(platform.name)

        self.mappings.update_fields(
            sku,
            sync_status="synced",
            sync_error=None,
            last_synced_at=utcnow(),
            inventory_discrepancy=0,
            platform_a_quantity=target,
            platform_b_quantity=target,
        )
        await self._snapshot(sku, quantity_a, quantity_b, target)
        logger.info(f"[INVENTORY] {sku}: A={quantity_a} B={quantity_b} -> {target} ({strategy}, wrote {result.writes})")
        return result

    def _record_failure(self, sku, platform, current, target, strategy, error: SyncError, job_id) -> None:
        try:
            self.ledger.record(LedgerEntry(
                sku=sku,
                platform=platform,
                transaction_type="sync",
                previous_quantity=current,
                new_quantity=target,
                reason=strategy,
                status="failed",
                error_message=error.message,
                meta={"job_id": job_id, "error_code": error.error_code},
            ))
        except SyncError as e:
            logger.error(f"[INVENTORY] Failed to record failed write for {sku}: {e}")

    async def _snapshot(self, sku: str, quantity_a: int, quantity_b: int, final: int) -> None:
        await self.cache.set(
            f"inventory:{sku}",
            {"a": quantity_a, "b": quantity_b, "final": final, "at": utcnow().isoformat()},
            ttl=self.config.inventory_cache_ttl,
            tags=["inventory"],
        )

    def _platform_pair(self, platform: str) -> Tuple[PlatformConnection, PlatformConnection]:
        if platform == self.platform_a.name:
            return self.platform_a, self.platform_b
        if platform == self.platform_b.name:
            return self.platform_b, self.platform_a
        raise ValidationError(f"Unknown platform {platform}", field="platform", actual_value=platform)

    def _ref(self, mapping: ProductMapping, platform: PlatformConnection) -> ProductRef:
        return ref_for_a(mapping) if platform is self.platform_a else ref_for_b(mapping)

    def _get_mapping(self, sku: str) -> ProductMapping:
        mapping = self.mappings.get_by_sku(sku)
        if mapping is None or not mapping.is_active:
            raise NotFoundError(f"No active mapping for {sku}", resource="product_mapping", key=sku)
        return mapping

    async def apply_sale(
        self,
        sku: str,
        platform: str,
        quantity: int,
        order_id: str,
        line_item_id: str,
        performed_by: str = "webhook",
    ) -> bool:
        """
        한 플랫폼에서 판매된 수량을 다른 플랫폼 재고에서 차감한다.
        같은 (order_id, line_item_id) 는 한 번만 반영하며, 중복이면 False.

        원장 항목을 pending 으로 먼저 기록해 주문 라인을 선점하고, 쓰기 결과에 따라
        completed / failed 로 확정한다. 실패한 판매는 다음 정합 작업이 원장 기준으로 반영한다.
        """
        if quantity <= 0:
            raise ValidationError("Sold quantity must be positive", field="quantity", actual_value=quantity)
        if not order_id or not line_item_id:
            raise ValidationError("Sale events need order_id and line_item_id", field="order_id")
        mapping = self._get_mapping(sku)
        sold_on, other = self._platform_pair(platform)

        if self.ledger.exists(order_id, line_item_id, "sale"):
            logger.info(f"[INVENTORY] Sale {order_id}/{line_item_id} already applied. Skipping")
            return False

        async with self.locks.hold(mapping.sku):
            ref = self._ref(mapping, other)
            current = await self._read(other, ref)
            new_quantity = max(0, current - quantity)
            try:
                tx = self.ledger.record(LedgerEntry(
                    sku=mapping.sku,
                    platform=other.name,
                    transaction_type="sale",
                    previous_quantity=current,
                    new_quantity=new_quantity,
                    order_id=order_id,
                    line_item_id=line_item_id,
                    reason=f"sold on {sold_on.name}",
                    performed_by=performed_by,
                    status="pending",
                    meta={"sold_quantity": quantity, "sold_on": sold_on.name},
                ))
            except DuplicateTransactionError:
                logger.info(f"[INVENTORY] Sale {order_id}/{line_item_id} recorded concurrently. Skipping")
                return False

            try:
                await self._write(other, ref, new_quantity)
            except SyncError as e:
                self.ledger.settle(tx.id, "failed", error_message=e.message)
                self.mappings.update_fields(mapping.sku, sync_status="error", sync_error=e.message)
                await self.cache.invalidate_tag("reports")
                raise
            self.ledger.settle(tx.id, "completed")

        await self.cache.delete(f"inventory:{mapping.sku}")
        await self.cache.invalidate_tag("reports")
        logger.info(f"[INVENTORY] Sale {order_id}/{line_item_id}: {other.name} {mapping.sku} {current} -> {new_quantity}")
        return True

    async def apply_adjustment(
        self,
        sku: str,
        platform: str,
        delta: int,
        reason: str,
        performed_by: str = "manual",
    ) -> int:
        """수동 재고 조정. 조정한 플랫폼의 결과 수량을 다른 플랫폼에도 반영한다."""
        if delta == 0:
            raise ValidationError("Adjustment delta must not be zero", field="delta", actual_value=delta)
        mapping = self._get_mapping(sku)
        primary, mirror = self._platform_pair(platform)

        async with self.locks.hold(mapping.sku):
            primary_ref = self._ref(mapping, primary)
            current = await self._read(primary, primary_ref)
            new_quantity = current + delta
            if new_quantity < 0:
                raise ValidationError(
                    "Adjustment would make stock negative", field="delta", actual_value=delta, current=current
                )
            await self._write(primary, primary_ref, new_quantity)
            self.ledger.record(LedgerEntry(
                sku=mapping.sku,
                platform=primary.name,
                transaction_type="adjustment",
                previous_quantity=current,
                new_quantity=new_quantity,
                reason=reason,
                performed_by=performed_by,
            ))

            mirror_ref = self._ref(mapping, mirror)
            mirror_current = await self._read(mirror, mirror_ref)
            if mirror_current != new_quantity:
                await self._write(mirror, mirror_ref, new_quantity)
                self.ledger.record(LedgerEntry(
                    sku=mapping.sku,
                    platform=mirror.name,
                    transaction_type="adjustment",
                    previous_quantity=mirror_current,
                    new_quantity=new_quantity,
                    reason=f"mirror of {primary.name}: {reason}",
                    performed_by=performed_by,
                ))

            self.mappings.update_fields(
                mapping.sku,
                platform_a_quantity=new_quantity,
                platform_b_quantity=new_quantity,
                inventory_discrepancy=0,
                sync_status="synced",
                last_synced_at=utcnow(),
            )

        await self.cache.delete(f"inventory:{mapping.sku}")
        await self.cache.invalidate_tag("reports")
        return new_quantity

    async def generate_discrepancy_report(self) -> Dict[str, Any]:
        async def _build() -> Dict[str, Any]:
            threshold = self.config.inventory_critical_threshold
            items = []
            for m in self.mappings.list_discrepancies(min_discrepancy=1):
                items.append({
                    "sku": m.sku,
                    "product_name": m.product_name,
                    "platform_a_quantity": m.platform_a_quantity,
                    "platform_b_quantity": m.platform_b_quantity,
                    "discrepancy": m.inventory_discrepancy,
                    "critical": m.inventory_discrepancy >= threshold,
                    "sync_status": m.sync_status,
                    "last_synced_at": m.last_synced_at.isoformat() if m.last_synced_at else None,
                })
            return {
                "generated_at": utcnow().isoformat(),
                "total": len(items),
                "critical": sum(1 for i in items if i["critical"]),
                "total_discrepancy": sum(i["discrepancy"] for i in items),
                "items": items,
            }

        return await self.cache.get_or_set(REPORT_CACHE_KEY, _build, ttl=self.config.report_cache_ttl, tags=["reports"])

    def get_inventory_history(self, sku: str, limit: int = 100):
        return self.ledger.history(sku, limit=limit)
