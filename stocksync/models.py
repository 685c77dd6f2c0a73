from datetime import datetime
from decimal import Decimal
from typing import Any
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from stocksync.timeutils import utcnow


JSONType = JSON().with_variant(JSONB(), "postgresql")


class SyncBase(DeclarativeBase):
    pass


class ProductMapping(SyncBase):
    """
    두 플랫폼 간 상품 매핑.
    삭제하지 않고 is_active=False 로 비활성화만 한다.
    """
    __tablename__ = "product_mappings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sku: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    platform_a_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    platform_a_variant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_b_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    platform_b_variant_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    product_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    brand: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 마진 규칙
    margin_rate: Mapped[float] = mapped_column(Float, nullable=False, default=1.15)
    rounding_strategy: Mapped[str] = mapped_column(Text, nullable=False, default="nearest")
    min_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    max_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    sync_direction: Mapped[str] = mapped_column(Text, nullable=False, default="bidirectional")  # a_to_b, b_to_a, bidirectional
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")  # pending, synced, error
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # 가격 동기화 시각. last_synced_at 은 재고 정합 전용 (원장 조회 기준)
    last_price_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    inventory_discrepancy: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_a_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    platform_b_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @validates("sku")
    def _normalize_sku(self, key: str, value: str) -> str:
        return value.strip().upper()


class InventoryTransaction(SyncBase):
    """재고 변동 원장. 한 번 기록되면 수정하지 않는다."""
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "line_item_id", "transaction_type", name="uq_inventory_tx_order_line_type"),
        Index("ix_inventory_tx_sku_created", "sku", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_type: Mapped[str] = mapped_column(Text, nullable=False)  # sale, restock, adjustment, sync
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    line_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")  # system, manual, webhook
    status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")  # pending, completed, failed
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PriceHistory(SyncBase):
    __tablename__ = "price_history"
    __table_args__ = (Index("ix_price_history_sku_created", "sku", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    source_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    exchange_rate: Mapped[float] = mapped_column(Float, nullable=False)
    margin_rate: Mapped[float] = mapped_column(Float, nullable=False)
    calculated_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    previous_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    applied_rule: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="completed")  # completed, failed, skipped
    warnings: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExchangeRate(SyncBase):
    """
    환율 이력.
    source=manual 은 통화쌍마다 동시에 하나만 유효하다.
    """
    __tablename__ = "exchange_rates"
    __table_args__ = (Index("ix_exchange_rates_pair_valid", "base_currency", "target_currency", "valid_until"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_currency: Mapped[str] = mapped_column(Text, nullable=False)
    target_currency: Mapped[str] = mapped_column(Text, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)  # api, manual
    provider: Mapped[str | None] = mapped_column(Text, nullable=True)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SyncJob(SyncBase):
    __tablename__ = "sync_jobs"
    __table_args__ = (Index("ix_sync_jobs_status_priority", "status", "priority", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(Text, nullable=False)  # inventory, price, full
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="normal")
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=2)  # 정렬용 (urgent=4 ... low=1)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    warnings: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    params: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    results: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # 재시도 이어받기용. 처리 끝난 SKU 목록과 그 시점의 카운터
    checkpoint: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ConflictLog(SyncBase):
    __tablename__ = "conflict_logs"
    __table_args__ = (Index("ix_conflict_logs_type_created", "conflict_type", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conflict_type: Mapped[str] = mapped_column(Text, nullable=False)  # inventory, price, order
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    conflict: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    resolution: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    strategy: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SyncLock(SyncBase):
    """상품 단위 분산 락 (SQL 백엔드)."""
    __tablename__ = "sync_locks"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PriceSyncRule(SyncBase):
    """
    마진 덮어쓰기 규칙.
    rule_type: sku, category, brand, price_range
    """
    __tablename__ = "price_sync_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    rule_type: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    margin_rate: Mapped[float] = mapped_column(Float, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    min_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    max_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
