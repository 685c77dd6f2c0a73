import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from stocksync.models import InventoryTransaction
from stocksync.services.exceptions import DuplicateTransactionError, ValidationError

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("sale", "restock", "adjustment", "sync")
PERFORMERS = ("system", "manual", "webhook")
STATUSES = ("pending", "completed", "failed")


@dataclass
class LedgerEntry:
    sku: str
    platform: str
    transaction_type: str
    previous_quantity: int
    new_quantity: int
    order_id: Optional[str] = None
    line_item_id: Optional[str] = None
    reason: Optional[str] = None
    performed_by: str = "system"
    status: str = "completed"
    error_message: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def quantity(self) -> int:
        return self.new_quantity - self.previous_quantity

    @property
    def has_order_context(self) -> bool:
        return bool(self.order_id) and bool(self.line_item_id)


class InventoryLedger:
    """
    재고 변동 원장.
    (order_id, line_item_id, transaction_type) 조합은 최대 한 번만 기록된다.
    주문 정보가 없는 항목은 중복 검사 없이 항상 기록한다.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _validate(self, entry: LedgerEntry) -> None:
        if entry.transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(
                f"Unknown transaction type: {entry.transaction_type}",
                field="transaction_type",
                actual_value=entry.transaction_type,
            )
        if entry.status not in STATUSES:
            raise ValidationError("Unknown ledger status", field="status", actual_value=entry.status)
        if entry.performed_by not in PERFORMERS:
            raise ValidationError("Unknown performer", field="performed_by", actual_value=entry.performed_by)
        if entry.previous_quantity < 0 or entry.new_quantity < 0:
            raise ValidationError("Quantities must not be negative", field="new_quantity", actual_value=entry.new_quantity)
        if bool(entry.order_id) != bool(entry.line_item_id):
            raise ValidationError("order_id and line_item_id must be given together", field="line_item_id")

    def exists(self, order_id: str, line_item_id: str, transaction_type: str) -> bool:
        with self.session_factory() as session:
            stmt = select(InventoryTransaction.id).where(
                InventoryTransaction.order_id == order_id,
                InventoryTransaction.line_item_id == line_item_id,
                InventoryTransaction.transaction_type == transaction_type,
            )
            return session.execute(stmt.limit(1)).first() is not None

    def record(self, entry: LedgerEntry) -> InventoryTransaction:
        """
        원장 항목 기록.

        Raises:
            DuplicateTransactionError: 같은 주문 라인/유형이 이미 기록된 경우
        """
        self._validate(entry)
        sku = entry.sku.strip().upper()

        if entry.has_order_context and self.exists(entry.order_id, entry.line_item_id, entry.transaction_type):
            raise DuplicateTransactionError(entry.order_id, entry.line_item_id, entry.transaction_type)

        tx = InventoryTransaction(
            sku=sku,
            platform=entry.platform,
            transaction_type=entry.transaction_type,
            quantity=entry.quantity,
            previous_quantity=entry.previous_quantity,
            new_quantity=entry.new_quantity,
            order_id=entry.order_id,
            line_item_id=entry.line_item_id,
            reason=entry.reason,
            performed_by=entry.performed_by,
            status=entry.status,
            error_message=entry.error_message,
            meta=entry.meta or None,
        )
        try:
            with self.session_factory() as session, session.begin():
                session.add(tx)
        except IntegrityError:
            # 사전 검사와 INSERT 사이에 다른 워커가 먼저 기록한 경우
            raise DuplicateTransactionError(entry.order_id, entry.line_item_id, entry.transaction_type)

        logger.info(
            f"[LEDGER] {sku} {entry.transaction_type} on {entry.platform}: "
            f"{entry.previous_quantity} -> {entry.new_quantity}"
        )
        return tx

    def settle(self, tx_id: int, status: str, error_message: Optional[str] = None) -> bool:
        """
        pending 항목의 결과 확정 (completed 또는 failed).
        수량 필드는 바꾸지 않으며, 이미 확정된 항목은 건드리지 않는다.
        """
        if status not in ("completed", "failed"):
            raise ValidationError("Ledger entries settle as completed or failed", field="status", actual_value=status)
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(InventoryTransaction)
                .where(InventoryTransaction.id == tx_id, InventoryTransaction.status == "pending")
                .values(status=status, error_message=error_message)
            )
            settled = result.rowcount > 0
        if settled and status == "failed":
            logger.warning(f"[LEDGER] Transaction {tx_id} failed: {error_message}")
        return settled

    def history(self, sku: str, limit: int = 100) -> List[InventoryTransaction]:
        """최신순 이력"""
        with self.session_factory() as session:
            stmt = (
                select(InventoryTransaction)
                .where(InventoryTransaction.sku == sku.strip().upper())
                .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def transactions_since(self, sku: str, since: datetime) -> List[InventoryTransaction]:
        """
        since 이후의 유효한 변동, 최신순.
        반영되지 못한 판매(pending/failed)도 실제 주문이므로 포함한다. 실패한 sync 쓰기는 제외.
        """
        with self.session_factory() as session:
            stmt = (
                select(InventoryTransaction)
                .where(
                    InventoryTransaction.sku == sku.strip().upper(),
                    InventoryTransaction.created_at > since,
                    or_(
                        InventoryTransaction.status == "completed",
                        and_(
                            InventoryTransaction.transaction_type == "sale",
                            InventoryTransaction.status.in_(("pending", "failed")),
                        ),
                    ),
                )
                .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
            )
            return list(session.scalars(stmt))

    def latest(self, sku: str) -> Optional[InventoryTransaction]:
        rows = self.history(sku, limit=1)
        return rows[0] if rows else None
