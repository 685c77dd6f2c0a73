import logging
from typing import Any, Dict, List, Optional

from stocksync.models import ConflictLog, ExchangeRate, InventoryTransaction, PriceHistory
from stocksync.repositories import PriceHistoryRepository
from stocksync.services.conflict_resolver import ConflictResolution, ConflictResolver
from stocksync.services.exceptions import NotFoundError
from stocksync.services.exchange_rate import ExchangeRateService
from stocksync.services.inventory_sync import InventoryReconciler
from stocksync.services.orchestrator import JobStatusView, SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncAdminService:
    """상위 API 계층(관리 화면, CLI)이 호출하는 운영 기능 모음."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        inventory: InventoryReconciler,
        rates: ExchangeRateService,
        resolver: ConflictResolver,
        price_history: PriceHistoryRepository,
    ):
        self.orchestrator = orchestrator
        self.inventory = inventory
        self.rates = rates
        self.resolver = resolver
        self.price_history = price_history

    def trigger_manual_sync(self, sku: Optional[str] = None, job_type: str = "inventory", dry_run: bool = False) -> str:
        return self.orchestrator.trigger_manual_sync(sku=sku, job_type=job_type, dry_run=dry_run)

    def get_job_status(self, job_id: str) -> JobStatusView:
        return self.orchestrator.get_status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.orchestrator.cancel(job_id)

    async def get_discrepancy_report(self) -> Dict[str, Any]:
        return await self.inventory.generate_discrepancy_report()

    async def set_manual_exchange_rate(self, rate: float, valid_hours: Optional[float] = None, reason: Optional[str] = None) -> ExchangeRate:
        return await self.rates.set_manual_rate(rate, valid_hours=valid_hours, reason=reason)

    def list_conflicts(self, conflict_type: Optional[str] = None, unresolved_only: bool = False, limit: int = 100) -> List[ConflictLog]:
        if unresolved_only:
            return self.resolver.list_unresolved(conflict_type, limit=limit)
        return self.resolver.list_conflicts(conflict_type, limit=limit)

    def replay_conflict(self, conflict_id: int) -> ConflictResolution:
        return self.resolver.replay(conflict_id)

    def mark_conflict_resolved(self, conflict_id: int, resolved_by: str, resolution: Optional[Dict[str, Any]] = None) -> ConflictLog:
        return self.resolver.mark_resolved(conflict_id, resolved_by, resolution)

    def get_conflict_stats(self, days: int = 7) -> Dict[str, Any]:
        return self.resolver.get_conflict_stats(days)

    def get_inventory_history(self, sku: str, limit: int = 100) -> List[InventoryTransaction]:
        return self.inventory.get_inventory_history(sku, limit=limit)

    def get_price_history(self, sku: str, limit: int = 20) -> List[PriceHistory]:
        return self.price_history.recent(sku, limit=limit, status=None)

    async def deactivate_mapping(self, sku: str) -> None:
        """매핑 비활성화. 행은 지우지 않고 이후 잡과 불일치 리포트에서만 빠진다."""
        if not self.inventory.mappings.deactivate(sku):
            raise NotFoundError(f"Mapping {sku} not found", resource="product_mapping", key=sku)
        await self.inventory.cache.delete(f"inventory:{sku.strip().upper()}")
        await self.inventory.cache.invalidate_tag("reports")
        logger.info(f"[ADMIN] Mapping {sku} deactivated")
