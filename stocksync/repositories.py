"""
영속성 계층.
비즈니스 규칙 없이 조회/저장만 담당하며, 각 메서드는 짧은 세션 하나를 연다.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from stocksync.models import (
    ConflictLog,
    ExchangeRate,
    PriceHistory,
    PriceSyncRule,
    ProductMapping,
    SyncJob,
)
from stocksync.timeutils import utcnow


def _as_uuid(job_id: str | uuid.UUID) -> uuid.UUID:
    return job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))


class MappingRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, mapping: ProductMapping) -> ProductMapping:
        with self.session_factory() as session, session.begin():
            session.add(mapping)
        return mapping

    def get_by_sku(self, sku: str) -> Optional[ProductMapping]:
        with self.session_factory() as session:
            return session.scalars(select(ProductMapping).where(ProductMapping.sku == sku.strip().upper())).first()

    def list_active(self, skus: Optional[Iterable[str]] = None, limit: int = 1000) -> List[ProductMapping]:
        with self.session_factory() as session:
            stmt = select(ProductMapping).where(ProductMapping.is_active.is_(True))
            if skus is not None:
                stmt = stmt.where(ProductMapping.sku.in_([s.strip().upper() for s in skus]))
            stmt = stmt.order_by(ProductMapping.sku).limit(limit)
            return list(session.scalars(stmt))

    def list_discrepancies(self, min_discrepancy: int = 1) -> List[ProductMapping]:
        with self.session_factory() as session:
            stmt = (
                select(ProductMapping)
                .where(
                    ProductMapping.is_active.is_(True),
                    ProductMapping.inventory_discrepancy >= min_discrepancy,
                )
                .order_by(ProductMapping.inventory_discrepancy.desc(), ProductMapping.sku)
            )
            return list(session.scalars(stmt))

    def update_fields(self, sku: str, **values: Any) -> bool:
        values.setdefault("updated_at", utcnow())
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(ProductMapping).where(ProductMapping.sku == sku.strip().upper()).values(**values)
            )
            return result.rowcount > 0

    def deactivate(self, sku: str) -> bool:
        return self.update_fields(sku, is_active=False)


class SyncJobRepository:
    """
    sync_jobs 테이블이 곧 작업 큐다.
    상태 전이는 현재 상태를 조건으로 한 UPDATE 로만 수행한다.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, job: SyncJob) -> SyncJob:
        with self.session_factory() as session, session.begin():
            session.add(job)
        return job

    def get(self, job_id: str | uuid.UUID) -> Optional[SyncJob]:
        with self.session_factory() as session:
            return session.get(SyncJob, _as_uuid(job_id))

    def transition(
        self,
        job_id: str | uuid.UUID,
        from_statuses: Iterable[str],
        to_status: str,
        **values: Any,
    ) -> bool:
        values["status"] = to_status
        values.setdefault("updated_at", utcnow())
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(SyncJob)
                .where(SyncJob.id == _as_uuid(job_id), SyncJob.status.in_(list(from_statuses)))
                .values(**values)
            )
            return result.rowcount > 0

    def next_claimable(self, now: Optional[datetime] = None) -> Optional[SyncJob]:
        now = now or utcnow()
        with self.session_factory() as session:
            stmt = (
                select(SyncJob)
                .where(
                    SyncJob.status == "pending",
                    (SyncJob.next_retry_at.is_(None)) | (SyncJob.next_retry_at <= now),
                )
                .order_by(SyncJob.priority_rank.desc(), SyncJob.created_at, SyncJob.id)
                .limit(1)
            )
            return session.scalars(stmt).first()

    def update_fields(self, job_id: str | uuid.UUID, status: str = "processing", **values: Any) -> bool:
        """현재 상태가 status 일 때만 필드를 갱신"""
        values.setdefault("updated_at", utcnow())
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(SyncJob).where(SyncJob.id == _as_uuid(job_id), SyncJob.status == status).values(**values)
            )
            return result.rowcount > 0

    def list_by_status(self, statuses: Iterable[str], limit: int = 100) -> List[SyncJob]:
        with self.session_factory() as session:
            stmt = (
                select(SyncJob)
                .where(SyncJob.status.in_(list(statuses)))
                .order_by(SyncJob.priority_rank.desc(), SyncJob.created_at)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def update_progress(
        self,
        job_id: str | uuid.UUID,
        processed: int,
        success: int,
        failed: int,
        skipped: int,
        progress: int,
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """processed_items 는 감소하지 않는다. 처리 중이 아닌 잡은 갱신하지 않는다.

        checkpoint 는 카운터와 같은 UPDATE 로 기록되어 재시도 시 둘이 어긋나지 않는다.
        """
        values: Dict[str, Any] = {}
        if checkpoint is not None:
            values["checkpoint"] = checkpoint
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == _as_uuid(job_id),
                    SyncJob.status == "processing",
                    SyncJob.processed_items <= processed,
                )
                .values(
                    processed_items=processed,
                    success_items=success,
                    failed_items=failed,
                    skipped_items=skipped,
                    progress=progress,
                    updated_at=utcnow(),
                    **values,
                )
            )
            return result.rowcount > 0

    def append_errors(self, job_id: str | uuid.UUID, errors: List[Dict[str, Any]], cap: int = 1000) -> None:
        if not errors:
            return
        with self.session_factory() as session, session.begin():
            job = session.get(SyncJob, _as_uuid(job_id), with_for_update=True)
            if job is None or job.status != "processing":
                return
            job.errors = (list(job.errors or []) + errors)[-cap:]


class ExchangeRateRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, rate: ExchangeRate) -> ExchangeRate:
        with self.session_factory() as session, session.begin():
            session.add(rate)
        return rate

    def valid_manual(self, base: str, target: str, now: Optional[datetime] = None) -> Optional[ExchangeRate]:
        now = now or utcnow()
        with self.session_factory() as session:
            stmt = (
                select(ExchangeRate)
                .where(
                    ExchangeRate.base_currency == base,
                    ExchangeRate.target_currency == target,
                    ExchangeRate.source == "manual",
                    ExchangeRate.valid_from <= now,
                    ExchangeRate.valid_until > now,
                )
                .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def replace_manual(self, rate: ExchangeRate, now: Optional[datetime] = None) -> ExchangeRate:
        """유효한 수동 환율을 종료시키고 새 수동 환율을 같은 트랜잭션에서 등록"""
        now = now or utcnow()
        with self.session_factory() as session, session.begin():
            session.execute(
                update(ExchangeRate)
                .where(
                    ExchangeRate.base_currency == rate.base_currency,
                    ExchangeRate.target_currency == rate.target_currency,
                    ExchangeRate.source == "manual",
                    ExchangeRate.valid_until > now,
                )
                .values(valid_until=now)
            )
            session.add(rate)
        return rate

    def end_manual(self, base: str, target: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(ExchangeRate)
                .where(
                    ExchangeRate.base_currency == base,
                    ExchangeRate.target_currency == target,
                    ExchangeRate.source == "manual",
                    ExchangeRate.valid_until > now,
                )
                .values(valid_until=now)
            )
            return result.rowcount

    def latest(self, base: str, target: str, source: Optional[str] = None) -> Optional[ExchangeRate]:
        with self.session_factory() as session:
            stmt = select(ExchangeRate).where(
                ExchangeRate.base_currency == base,
                ExchangeRate.target_currency == target,
            )
            if source:
                stmt = stmt.where(ExchangeRate.source == source)
            stmt = stmt.order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc()).limit(1)
            return session.scalars(stmt).first()

    def history(self, base: str, target: str, days: int = 30) -> List[ExchangeRate]:
        since = utcnow() - timedelta(days=days)
        with self.session_factory() as session:
            stmt = (
                select(ExchangeRate)
                .where(
                    ExchangeRate.base_currency == base,
                    ExchangeRate.target_currency == target,
                    ExchangeRate.created_at >= since,
                )
                .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
            )
            return list(session.scalars(stmt))


class PriceHistoryRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, entry: PriceHistory) -> PriceHistory:
        with self.session_factory() as session, session.begin():
            session.add(entry)
        return entry

    def recent(self, sku: str, limit: int = 5, status: Optional[str] = "completed") -> List[PriceHistory]:
        with self.session_factory() as session:
            stmt = select(PriceHistory).where(PriceHistory.sku == sku.strip().upper())
            if status:
                stmt = stmt.where(PriceHistory.status == status)
            stmt = stmt.order_by(PriceHistory.created_at.desc(), PriceHistory.id.desc()).limit(limit)
            return list(session.scalars(stmt))

    def recent_prices(self, sku: str, limit: int = 5) -> List[Decimal]:
        return [Decimal(str(row.calculated_price)) for row in self.recent(sku, limit=limit)]


class ConflictLogRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, entry: ConflictLog) -> ConflictLog:
        with self.session_factory() as session, session.begin():
            session.add(entry)
        return entry

    def get(self, conflict_id: int) -> Optional[ConflictLog]:
        with self.session_factory() as session:
            return session.get(ConflictLog, conflict_id)

    def find(
        self,
        conflict_type: Optional[str] = None,
        resolved: Optional[bool] = None,
        limit: int = 100,
    ) -> List[ConflictLog]:
        with self.session_factory() as session:
            stmt = select(ConflictLog)
            if conflict_type:
                stmt = stmt.where(ConflictLog.conflict_type == conflict_type)
            if resolved is not None:
                stmt = stmt.where(ConflictLog.resolved.is_(resolved))
            stmt = stmt.order_by(ConflictLog.created_at.desc(), ConflictLog.id.desc()).limit(limit)
            return list(session.scalars(stmt))

    def mark_resolved(
        self,
        conflict_id: int,
        resolved_by: str,
        resolution: Optional[Dict[str, Any]] = None,
    ) -> Optional[ConflictLog]:
        with self.session_factory() as session, session.begin():
            entry = session.get(ConflictLog, conflict_id)
            if entry is None:
                return None
            if resolution is not None:
                entry.resolution = resolution
            entry.resolved = True
            entry.resolved_at = utcnow()
            entry.resolved_by = resolved_by
            return entry

    def counts_since(self, since: datetime) -> List[tuple]:
        """(conflict_type, strategy, resolved, count) 집계"""
        with self.session_factory() as session:
            stmt = (
                select(ConflictLog.conflict_type, ConflictLog.strategy, ConflictLog.resolved, func.count(ConflictLog.id))
                .where(ConflictLog.created_at >= since)
                .group_by(ConflictLog.conflict_type, ConflictLog.strategy, ConflictLog.resolved)
            )
            return [tuple(row) for row in session.execute(stmt)]


class PriceRuleRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, rule: PriceSyncRule) -> PriceSyncRule:
        with self.session_factory() as session, session.begin():
            session.add(rule)
        return rule

    def list_enabled(self) -> List[PriceSyncRule]:
        with self.session_factory() as session:
            stmt = (
                select(PriceSyncRule)
                .where(PriceSyncRule.enabled.is_(True))
                .order_by(PriceSyncRule.priority.desc(), PriceSyncRule.id)
            )
            return list(session.scalars(stmt))
