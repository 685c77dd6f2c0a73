"""
Conflict Resolver

두 플랫폼의 값이 어긋났을 때 어떤 값을 채택할지 결정한다.
결정 규칙은 모듈 수준의 순수 함수이고, ConflictResolver 는 입력 조회와
ConflictLog 기록만 담당한다.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stocksync.models import ConflictLog
from stocksync.repositories import ConflictLogRepository, PriceHistoryRepository
from stocksync.services.exceptions import NotFoundError, ValidationError
from stocksync.services.ledger import InventoryLedger
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)

STRATEGY_LATEST_TRANSACTION = "latest_transaction"
STRATEGY_CONSERVATIVE_MINIMUM = "conservative_minimum"
STRATEGY_TOLERANCE = "tolerance_5_percent"
STRATEGY_HISTORICAL_AVERAGE = "historical_average"
STRATEGY_RECALCULATION = "source_based_recalculation"
STRATEGY_STATUS_PRIORITY = "status_priority"

# 뒤 단계일수록 높은 우선순위
ORDER_STATUS_PRIORITY: Dict[str, int] = {
    "CANCELED": 10,
    "CANCELLED": 10,
    "RETURNED": 9,
    "EXCHANGED": 8,
    "DELIVERED": 7,
    "SHIPPING": 6,
    "PAYED": 5,
    "PAID": 5,
    "PENDING": 4,
}

CENT = Decimal("0.01")


def _to_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def decide_inventory(quantity_a: int, quantity_b: int, latest_quantity: Optional[int] = None) -> Tuple[int, str]:
    if latest_quantity is not None:
        return latest_quantity, STRATEGY_LATEST_TRANSACTION
    return min(quantity_a, quantity_b), STRATEGY_CONSERVATIVE_MINIMUM


def decide_price(
    target_price: Decimal,
    expected_price: Decimal,
    recent_prices: Sequence[Decimal],
    tolerance: float = 0.05,
    history_tolerance: float = 0.10,
) -> Tuple[Decimal, str]:
    target_price = _to_decimal(target_price)
    expected_price = _to_decimal(expected_price)

    if expected_price > 0:
        if abs(target_price - expected_price) / expected_price <= Decimal(str(tolerance)):
            return target_price, STRATEGY_TOLERANCE

        if recent_prices:
            mean = sum((_to_decimal(p) for p in recent_prices), Decimal("0")) / len(recent_prices)
            if abs(mean - expected_price) / expected_price <= Decimal(str(history_tolerance)):
                return mean.quantize(CENT, rounding=ROUND_HALF_UP), STRATEGY_HISTORICAL_AVERAGE

    return expected_price, STRATEGY_RECALCULATION


def order_status_priority(status: str) -> int:
    return ORDER_STATUS_PRIORITY.get((status or "").strip().upper(), 0)


def decide_order_status(status_a: str, status_b: str) -> Tuple[str, str]:
    """(채택 상태, 채택 플랫폼) 반환. 동순위는 플랫폼 B 를 따른다."""
    if order_status_priority(status_a) > order_status_priority(status_b):
        return status_a, "a"
    return status_b, "b"


@dataclass
class ConflictResolution:
    conflict_type: str
    sku: str
    resolution: Any
    strategy: str
    conflict: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    log_id: Optional[int] = None


class ConflictResolver:
    def __init__(
        self,
        ledger: InventoryLedger,
        price_history: PriceHistoryRepository,
        conflict_logs: ConflictLogRepository,
        price_tolerance: float = 0.05,
        history_window: int = 5,
        history_tolerance: float = 0.10,
    ):
        self.ledger = ledger
        self.price_history = price_history
        self.conflict_logs = conflict_logs
        self.price_tolerance = price_tolerance
        self.history_window = history_window
        self.history_tolerance = history_tolerance

    def resolve_inventory_conflict(
        self,
        sku: str,
        quantity_a: int,
        quantity_b: int,
        last_sync_time: Optional[datetime] = None,
    ) -> ConflictResolution:
        latest_quantity = None
        latest_tx = None
        if last_sync_time is not None:
            recent = self.ledger.transactions_since(sku, last_sync_time)
            if recent:
                latest_tx = recent[0]
                latest_quantity = latest_tx.new_quantity

        value, strategy = decide_inventory(quantity_a, quantity_b, latest_quantity)
        details: Dict[str, Any] = {}
        if latest_tx is not None:
            details = {
                "transaction_id": latest_tx.id,
                "transaction_type": latest_tx.transaction_type,
                "platform": latest_tx.platform,
            }

        resolution = ConflictResolution(
            conflict_type="inventory",
            sku=sku,
            resolution=value,
            strategy=strategy,
            conflict={
                "quantity_a": quantity_a,
                "quantity_b": quantity_b,
                "last_sync_time": last_sync_time.isoformat() if last_sync_time else None,
            },
            details=details,
        )
        self._log(resolution)
        logger.info(f"[CONFLICT] Inventory {sku}: A={quantity_a} B={quantity_b} -> {value} ({strategy})")
        return resolution

    def resolve_price_conflict(
        self,
        sku: str,
        source_price: Decimal,
        target_price: Decimal,
        expected_target_price: Decimal,
    ) -> ConflictResolution:
        recent = []
        if _to_decimal(expected_target_price) > 0:
            recent = self.price_history.recent_prices(sku, limit=self.history_window)
        value, strategy = decide_price(
            target_price,
            expected_target_price,
            recent,
            tolerance=self.price_tolerance,
            history_tolerance=self.history_tolerance,
        )
        resolution = ConflictResolution(
            conflict_type="price",
            sku=sku,
            resolution=value,
            strategy=strategy,
            conflict={
                "source_price": str(source_price),
                "target_price": str(target_price),
                "expected_target_price": str(expected_target_price),
            },
            details={"history_size": len(recent)},
        )
        self._log(resolution)
        logger.info(
            f"[CONFLICT] Price {sku}: target={target_price} expected={expected_target_price} -> {value} ({strategy})"
        )
        return resolution

    def resolve_order_conflict(self, order_id: str, status_a: str, status_b: str) -> ConflictResolution:
        value, winner = decide_order_status(status_a, status_b)
        resolution = ConflictResolution(
            conflict_type="order",
            sku=order_id,
            resolution=value,
            strategy=STRATEGY_STATUS_PRIORITY,
            conflict={"status_a": status_a, "status_b": status_b},
            details={
                "winner": winner,
                "priority_a": order_status_priority(status_a),
                "priority_b": order_status_priority(status_b),
            },
        )
        self._log(resolution)
        return resolution

    def _log(self, resolution: ConflictResolution) -> None:
        value = resolution.resolution
        entry = ConflictLog(
            conflict_type=resolution.conflict_type,
            sku=resolution.sku,
            conflict=resolution.conflict,
            resolution={"value": str(value) if isinstance(value, Decimal) else value, **resolution.details},
            strategy=resolution.strategy,
            resolved=True,
            resolved_at=utcnow(),
            resolved_by="system",
        )
        try:
            resolution.log_id = self.write_log(entry).id
        except Exception as e:
            # 로그 기록 실패가 결정 자체를 막지는 않는다
            logger.error(f"[CONFLICT] Failed to write conflict log for {resolution.sku}: {e}")

    def write_log(self, entry: ConflictLog) -> ConflictLog:
        if entry.resolved and (not entry.conflict or not entry.resolution):
            raise ValidationError("Resolved conflict log needs both conflict and resolution", field="resolution")
        return self.conflict_logs.add(entry)

    def list_unresolved(self, conflict_type: Optional[str] = None, limit: int = 100) -> List[ConflictLog]:
        return self.conflict_logs.find(conflict_type=conflict_type, resolved=False, limit=limit)

    def list_conflicts(self, conflict_type: Optional[str] = None, limit: int = 100) -> List[ConflictLog]:
        return self.conflict_logs.find(conflict_type=conflict_type, limit=limit)

    def mark_resolved(
        self,
        conflict_id: int,
        resolved_by: str,
        resolution: Optional[Dict[str, Any]] = None,
    ) -> ConflictLog:
        existing = self.conflict_logs.get(conflict_id)
        if existing is None:
            raise NotFoundError(f"Conflict {conflict_id} not found", resource="conflict_log", key=str(conflict_id))
        if not existing.conflict or not (resolution or existing.resolution):
            raise ValidationError("Resolved conflict log needs both conflict and resolution", field="resolution")
        entry = self.conflict_logs.mark_resolved(conflict_id, resolved_by, resolution)
        logger.info(f"[CONFLICT] Conflict {conflict_id} marked resolved by {resolved_by}")
        return entry

    def replay(self, conflict_id: int) -> ConflictResolution:
        """저장된 입력으로 결정을 다시 수행하고 새 로그를 남긴다."""
        entry = self.conflict_logs.get(conflict_id)
        if entry is None:
            raise NotFoundError(f"Conflict {conflict_id} not found", resource="conflict_log", key=str(conflict_id))
        data = entry.conflict or {}

        if entry.conflict_type == "inventory":
            last_sync = data.get("last_sync_time")
            return self.resolve_inventory_conflict(
                entry.sku,
                int(data["quantity_a"]),
                int(data["quantity_b"]),
                datetime.fromisoformat(last_sync) if last_sync else None,
            )
        if entry.conflict_type == "price":
            return self.resolve_price_conflict(
                entry.sku,
                Decimal(data["source_price"]),
                Decimal(data["target_price"]),
                Decimal(data["expected_target_price"]),
            )
        if entry.conflict_type == "order":
            return self.resolve_order_conflict(entry.sku, data["status_a"], data["status_b"])
        raise ValidationError(f"Unknown conflict type {entry.conflict_type}", field="conflict_type")

    def get_conflict_stats(self, days: int = 7) -> Dict[str, Any]:
        rows = self.conflict_logs.counts_since(utcnow() - timedelta(days=days))
        stats: Dict[str, Any] = {"days": days, "total": 0, "resolved": 0, "unresolved": 0, "by_type": {}, "by_strategy": {}}
        for conflict_type, strategy, resolved, count in rows:
            stats["total"] += count
            stats["resolved" if resolved else "unresolved"] += count
            stats["by_type"][conflict_type] = stats["by_type"].get(conflict_type, 0) + count
            stats["by_strategy"][strategy] = stats["by_strategy"].get(strategy, 0) + count
        return stats
