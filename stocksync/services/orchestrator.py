"""
Sync Orchestrator

sync_jobs 테이블을 큐로 사용해 우선순위 순으로 잡을 꺼내고,
잡 하나의 상품들은 Semaphore 로 동시성을 제한한 워커 풀에서 처리한다.

상태 전이:
    pending -> processing -> completed | failed | cancelled
    pending -> cancelled
    failed  -> pending (재시도 가능 횟수가 남은 경우)
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stocksync.models import ProductMapping, SyncJob
from stocksync.repositories import MappingRepository, SyncJobRepository
from stocksync.services import events as ev
from stocksync.services.cache import BaseCache
from stocksync.services.events import EventBus
from stocksync.services.exceptions import (
    BatchDependencyError,
    InvalidTransitionError,
    NotFoundError,
    SyncError,
    SyncTimeoutError,
    ValidationError,
    wrap_exception,
)
from stocksync.services.exchange_rate import ExchangeRateService
from stocksync.services.inventory_sync import InventoryReconciler
from stocksync.services.locks import ProductLock
from stocksync.services.price_sync import PriceSynchronizer
from stocksync.settings import Settings
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)


class SyncJobType(str, Enum):
    INVENTORY = "inventory"
    PRICE = "price"
    FULL = "full"


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PRIORITY_RANKS = {"low": 1, "normal": 2, "high": 3, "urgent": 4}

TRANSITIONS: Dict[str, set] = {
    "pending": {"processing", "cancelled"},
    "processing": {"completed", "failed", "cancelled"},
    "failed": {"pending"},
    "completed": set(),
    "cancelled": set(),
}

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def retry_delay(attempts: int, base: float = 1.0, multiplier: float = 2.0, cap: float = 300.0) -> float:
    """attempts 번째 재시도까지의 대기 시간(초)"""
    return min(base * (multiplier ** attempts), cap)


def compute_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return max(0, min(100, round(processed / total * 100)))


class SyncOptions(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    type: SyncJobType = SyncJobType.INVENTORY
    skus: Optional[List[str]] = None
    force: bool = False
    dry_run: bool = False
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    triggered_by: str = "system"
    max_attempts: Optional[int] = Field(default=None, ge=0, le=10)

    @field_validator("skus")
    @classmethod
    def normalize_skus(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        normalized = []
        for sku in v:
            code = (sku or "").strip().upper()
            if not code:
                raise ValueError("SKU는 비어 있을 수 없습니다.")
            if code not in normalized:
                normalized.append(code)
        return normalized


class JobStatusView(BaseModel):
    """외부에 노출하는 잡 상태. 내부 예외 객체는 포함하지 않는다."""
    id: str
    type: str
    status: str
    priority: str
    progress: int
    total_items: int
    processed_items: int
    success_items: int
    failed_items: int
    skipped_items: int
    errors: List[Dict[str, Any]] = []
    warnings: List[str] = []
    results: Optional[Dict[str, Any]] = None
    retry_attempts: int = 0
    max_attempts: int = 0
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "JobStatusView":
        return cls(
            id=str(job.id),
            type=job.job_type,
            status=job.status,
            priority=job.priority,
            progress=job.progress,
            total_items=job.total_items,
            processed_items=job.processed_items,
            success_items=job.success_items,
            failed_items=job.failed_items,
            skipped_items=job.skipped_items,
            errors=list(job.errors or []),
            warnings=list(job.warnings or []),
            results=job.results,
            retry_attempts=job.retry_attempts,
            max_attempts=job.max_attempts,
            next_retry_at=job.next_retry_at,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class ItemOutcome:
    sku: str
    status: str  # success, failed, skipped
    corrected: bool = False
    price_updated: bool = False
    critical: bool = False
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class JobTracker:
    """잡 처리 카운터. 이벤트 루프 안에서만 갱신된다.

    재시도 회차는 이전 회차의 checkpoint 에서 이어받으므로 카운터는 잡 전체 누계다.
    """
    total: int
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    corrected: int = 0
    price_updated: int = 0
    critical: int = 0
    last_progress: int = -1
    warnings: List[str] = field(default_factory=list)
    done: List[str] = field(default_factory=list)

    @classmethod
    def resume(cls, total: int, checkpoint: Optional[Dict[str, Any]]) -> "JobTracker":
        tracker = cls(total=total)
        if not checkpoint:
            return tracker
        tracker.done = list(checkpoint.get("done") or [])
        tracker.processed = len(tracker.done)
        for name in ("success", "failed", "skipped", "corrected", "price_updated", "critical"):
            setattr(tracker, name, int(checkpoint.get(name, 0)))
        return tracker

    def checkpoint(self) -> Dict[str, Any]:
        return {
            "done": list(self.done),
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "corrected": self.corrected,
            "price_updated": self.price_updated,
            "critical": self.critical,
        }

    def record(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        self.done.append(outcome.sku)
        if outcome.status == "success":
            self.success += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.corrected += int(outcome.corrected)
        self.price_updated += int(outcome.price_updated)
        self.critical += int(outcome.critical)
        self.warnings.extend(outcome.warnings)

    @property
    def progress(self) -> int:
        return compute_progress(self.processed, self.total)

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "synced": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "corrected": self.corrected,
            "unchanged": self.success - self.corrected,
            "price_updated": self.price_updated,
            "critical_discrepancies": self.critical,
        }


@dataclass
class JobContext:
    rate: Optional[float] = None
    rate_source: Optional[str] = None


def _error_entry(sku: Optional[str], error: SyncError) -> Dict[str, Any]:
    return {
        "sku": sku,
        "code": error.error_code,
        "message": error.message,
        "retryable": error.recoverable,
        "timestamp": utcnow().isoformat(),
    }


class SyncOrchestrator:
    def __init__(
        self,
        jobs: SyncJobRepository,
        mappings: MappingRepository,
        locks: ProductLock,
        inventory: InventoryReconciler,
        prices: PriceSynchronizer,
        rates: ExchangeRateService,
        config: Settings,
        events: Optional[EventBus] = None,
        cache: Optional[BaseCache] = None,
    ):
        self.jobs = jobs
        self.mappings = mappings
        self.locks = locks
        self.inventory = inventory
        self.prices = prices
        self.rates = rates
        self.config = config
        self.events = events
        self.cache = cache

        # 현재 프로세스에서 실행 중인 잡 (상태의 기준은 DB)
        self._running: Dict[uuid.UUID, asyncio.Task] = {}
        self._cancel_flags: Dict[uuid.UUID, asyncio.Event] = {}
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    async def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.events:
            await self.events.publish(event_type, data)

    # ------------------------------------------------------------------
    # 상위 API
    # ------------------------------------------------------------------

    def _validate_options(self, options: Optional[SyncOptions], overrides: Dict[str, Any]) -> SyncOptions:
        try:
            if options is None:
                options = SyncOptions(**overrides)
            elif overrides:
                options = SyncOptions(**{**options.model_dump(), **overrides})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid sync options: {e.errors()[0]['msg']}", field="options")

        if options.skus is not None and len(options.skus) > self.config.sync_max_batch_size:
            raise ValidationError(
                f"Too many SKUs: {len(options.skus)} > {self.config.sync_max_batch_size}",
                field="skus",
                actual_value=len(options.skus),
            )
        return options

    def submit(self, options: Optional[SyncOptions] = None, **overrides: Any) -> str:
        opts = self._validate_options(options, overrides)
        max_attempts = opts.max_attempts if opts.max_attempts is not None else self.config.sync_retry_max_attempts
        job = self.jobs.add(SyncJob(
            job_type=opts.type,
            status=SyncJobStatus.PENDING.value,
            priority=opts.priority,
            priority_rank=PRIORITY_RANKS[opts.priority],
            params={
                "skus": opts.skus,
                "force": opts.force,
                "dry_run": opts.dry_run,
                "triggered_by": opts.triggered_by,
            },
            errors=[],
            warnings=[],
            max_attempts=max_attempts,
        ))
        logger.info(f"[SYNC] Job {job.id} submitted ({opts.type}, priority={opts.priority}, by={opts.triggered_by})")
        self._wakeup.set()
        return str(job.id)

    def trigger_manual_sync(self, sku: Optional[str] = None, job_type: str = "inventory", dry_run: bool = False) -> str:
        return self.submit(
            type=job_type,
            skus=[sku] if sku else None,
            priority="high",
            triggered_by="manual",
            dry_run=dry_run,
        )

    def get_status(self, job_id: str) -> JobStatusView:
        job = self._get_job(job_id)
        return JobStatusView.from_job(job)

    def _get_job(self, job_id: str) -> SyncJob:
        try:
            job = self.jobs.get(job_id)
        except ValueError:
            job = None
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found", resource="sync_job", key=str(job_id))
        return job

    async def cancel(self, job_id: str) -> bool:
        """
        대기/처리 중인 잡을 취소한다.
        이미 시작된 상품 작업은 끝까지 진행되지만 결과는 잡에 반영되지 않는다.
        """
        job = self._get_job(job_id)
        if not can_transition(job.status, SyncJobStatus.CANCELLED.value):
            logger.info(f"[SYNC] Job {job_id} is {job.status}. Nothing to cancel")
            return False
        cancelled = self.jobs.transition(
            job.id,
            ["pending", "processing"],
            SyncJobStatus.CANCELLED.value,
            completed_at=utcnow(),
        )
        if not cancelled:
            return False
        flag = self._cancel_flags.get(job.id)
        if flag is not None:
            flag.set()
        logger.info(f"[SYNC] Job {job_id} cancelled")
        await self._publish(ev.SYNC_CANCELLED, {"jobId": str(job.id)})
        return True

    async def wait_for_completion(self, job_id: str, timeout: Optional[float] = None) -> JobStatusView:
        timeout = timeout if timeout is not None else self.config.sync_job_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            view = self.get_status(job_id)
            if view.is_terminal:
                return view
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SyncTimeoutError(
                    f"Sync job {job_id} did not finish within {timeout}s",
                    operation="wait_for_completion",
                    timeout_seconds=timeout,
                )
            await asyncio.sleep(min(self.config.sync_poll_interval, remaining))

    async def run_sync(self, options: Optional[SyncOptions] = None, **overrides: Any) -> JobStatusView:
        """제출 후 완료까지 대기. 디스패치 루프가 없으면 직접 큐를 비운다."""
        job_id = self.submit(options, **overrides)
        if self._loop_task is not None:
            return await self.wait_for_completion(job_id)

        async def _drain() -> JobStatusView:
            # 재시도로 pending 에 돌아온 잡도 다시 꺼내 처리한다
            while True:
                await self.run_pending()
                view = self.get_status(job_id)
                if view.is_terminal:
                    return view
                await asyncio.sleep(self.config.sync_poll_interval)

        timeout = self.config.sync_job_timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except asyncio.TimeoutError:
            raise SyncTimeoutError(
                f"Sync job {job_id} did not finish within {timeout}s",
                operation="run_sync",
                timeout_seconds=timeout,
            )

    # ------------------------------------------------------------------
    # 디스패치
    # ------------------------------------------------------------------

    def _claim_next(self) -> Optional[SyncJob]:
        for _ in range(5):
            job = self.jobs.next_claimable()
            if job is None:
                return None
            claimed = self.jobs.transition(
                job.id,
                ["pending"],
                SyncJobStatus.PROCESSING.value,
                started_at=utcnow(),
                next_retry_at=None,
            )
            if claimed:
                return self.jobs.get(job.id)
            # 다른 워커가 먼저 가져감
        return None

    async def run_pending(self) -> List[str]:
        """지금 처리 가능한 잡을 모두 실행하고 실행한 잡 id 목록을 돌려준다."""
        done: List[str] = []
        while True:
            batch = []
            while len(batch) < self.config.sync_max_concurrent_jobs:
                job = self._claim_next()
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return done
            await asyncio.gather(*(self._run_job(job) for job in batch))
            done.extend(str(job.id) for job in batch)

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        resumed = self.resume_interrupted_jobs()
        if resumed:
            logger.info(f"[SYNC] Resumed {resumed} interrupted job(s)")
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._dispatch_loop(), name="sync-dispatch")

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._loop_task is None:
            return
        self._stopping.set()
        self._wakeup.set()
        await self._loop_task
        self._loop_task = None
        if self._running:
            await asyncio.wait(list(self._running.values()), timeout=timeout)

    async def _dispatch_loop(self) -> None:
        logger.info("[SYNC] Dispatch loop started")
        while not self._stopping.is_set():
            while len(self._running) < self.config.sync_max_concurrent_jobs:
                job = self._claim_next()
                if job is None:
                    break
                task = asyncio.create_task(self._run_job(job), name=f"sync-job-{job.id}")
                self._running[job.id] = task
                task.add_done_callback(lambda _t, job_id=job.id: self._on_job_done(job_id))

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.sync_poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[SYNC] Dispatch loop stopped")

    def _on_job_done(self, job_id: uuid.UUID) -> None:
        self._running.pop(job_id, None)
        self._wakeup.set()

    def resume_interrupted_jobs(self) -> int:
        """
        이전 프로세스가 처리 중에 종료된 잡을 실패 처리 후 재시도 대기열로 돌린다.
        시작 시점, 이 프로세스에 실행 중인 잡이 없을 때만 호출한다.
        """
        count = 0
        for job in self.jobs.list_by_status(["processing"], limit=1000):
            if job.id in self._running:
                continue
            error = SyncError("Interrupted while processing", error_code="JOB_INTERRUPTED", recoverable=True)
            self.jobs.append_errors(job.id, [_error_entry(None, error)], cap=self.config.sync_max_job_errors)
            if self.jobs.transition(job.id, ["processing"], "failed", completed_at=utcnow()):
                self._schedule_retry(job.id, error)
                count += 1
        return count

    # ------------------------------------------------------------------
    # 잡 실행
    # ------------------------------------------------------------------

    async def _prepare(self, job: SyncJob) -> JobContext:
        ctx = JobContext()
        if job.job_type in (SyncJobType.PRICE.value, SyncJobType.FULL.value):
            self.prices.ensure_capabilities()
            quote = await self.rates.get_quote()
            if quote.is_default and self.config.sync_fail_on_default_rate:
                raise BatchDependencyError(
                    "Exchange-rate chain unavailable (only the configured default is left)",
                    dependency="exchange_rate",
                )
            ctx.rate = quote.rate
            ctx.rate_source = quote.source
        elif job.job_type != SyncJobType.INVENTORY.value:
            raise BatchDependencyError(f"Unsupported job type {job.job_type}", dependency="job_type", recoverable=False)
        return ctx

    async def _run_job(self, job: SyncJob) -> None:
        job_id = job.id
        cancel_flag = asyncio.Event()
        self._cancel_flags[job_id] = cancel_flag
        params = job.params or {}
        dry_run = bool(params.get("dry_run"))

        try:
            requested = params.get("skus")
            items = self.mappings.list_active(requested, limit=self.config.sync_max_batch_size)
            found = {m.sku for m in items}
            missing = [sku for sku in requested or [] if sku not in found]
            tracker = JobTracker.resume(len(items) + len(missing), job.checkpoint)
            if tracker.processed:
                logger.info(f"[SYNC] Job {job_id} resuming after {tracker.processed} processed items")
            self.jobs.update_fields(job_id, total_items=tracker.total)
            logger.info(f"[SYNC] Job {job_id} started ({job.job_type}, {tracker.total} items, dry_run={dry_run})")
            await self._publish(ev.SYNC_STARTED, {"jobId": str(job_id), "type": job.job_type, "total": tracker.total})

            ctx = await self._prepare(job)

            done = set(tracker.done)
            missing_errors = []
            for sku in missing:
                if sku in done:
                    continue
                error = NotFoundError(f"No active mapping for {sku}", resource="product_mapping", key=sku)
                entry = _error_entry(sku, error)
                tracker.record(ItemOutcome(sku, "failed", error=entry))
                missing_errors.append(entry)
            if missing_errors:
                logger.warning(f"[SYNC] Job {job_id}: {len(missing_errors)} requested SKUs have no active mapping")
                self.jobs.append_errors(job_id, missing_errors, cap=self.config.sync_max_job_errors)
                await self._report_progress(job_id, tracker)

            items = [m for m in items if m.sku not in done]
            semaphore = asyncio.Semaphore(self.config.sync_concurrency)

            async def worker(mapping: ProductMapping) -> None:
                async with semaphore:
                    if cancel_flag.is_set():
                        return
                    outcome = await self._process_item(job, mapping, ctx, dry_run)
                    if cancel_flag.is_set():
                        return
                    tracker.record(outcome)
                    if outcome.error:
                        self.jobs.append_errors(job_id, [outcome.error], cap=self.config.sync_max_job_errors)
                    await self._report_progress(job_id, tracker)

            await asyncio.gather(*(worker(m) for m in items))

            if cancel_flag.is_set():
                logger.info(f"[SYNC] Job {job_id} was cancelled. Discarding results")
                return

            summary = tracker.summary()
            if ctx.rate is not None:
                summary["exchange_rate"] = ctx.rate
                summary["exchange_rate_source"] = ctx.rate_source
            completed = self.jobs.transition(
                job_id,
                ["processing"],
                SyncJobStatus.COMPLETED.value,
                completed_at=utcnow(),
                progress=100,
                processed_items=max(tracker.processed, job.processed_items or 0),
                success_items=tracker.success,
                failed_items=tracker.failed,
                skipped_items=tracker.skipped,
                warnings=tracker.warnings[-self.config.sync_max_job_errors:],
                results=summary,
            )
            if not completed:
                logger.info(f"[SYNC] Job {job_id} left processing before completion")
                return
            if self.cache is not None:
                await self.cache.invalidate_tag("reports")
            logger.info(f"[SYNC] Job {job_id} completed: {summary}")
            await self._publish(ev.SYNC_COMPLETED, {"jobId": str(job_id), "summary": summary})

        except Exception as e:
            await self._fail_job(job_id, wrap_exception(e, operation=f"sync_job:{job.job_type}"))
        finally:
            self._cancel_flags.pop(job_id, None)

    async def _process_item(self, job: SyncJob, mapping: ProductMapping, ctx: JobContext, dry_run: bool) -> ItemOutcome:
        sku = mapping.sku
        if not await self.locks.try_acquire(sku):
            return ItemOutcome(sku, "skipped", warnings=[f"{sku}: locked by another worker"])

        try:
            fresh = self.mappings.get_by_sku(sku)
            if fresh is None or not fresh.is_active:
                return ItemOutcome(sku, "skipped", warnings=[f"{sku}: mapping inactive"])

            outcome = ItemOutcome(sku, "success")
            if job.job_type in (SyncJobType.INVENTORY.value, SyncJobType.FULL.value):
                result = await self.inventory.reconcile(fresh, dry_run=dry_run, job_id=str(job.id))
                outcome.corrected = result.corrected
                outcome.critical = result.critical
                if result.critical:
                    outcome.warnings.append(f"{sku}: critical discrepancy {result.discrepancy}")
            if job.job_type in (SyncJobType.PRICE.value, SyncJobType.FULL.value):
                price = await self.prices.sync_price(fresh, ctx.rate, dry_run=dry_run)
                outcome.price_updated = price.changed
                outcome.warnings.extend(f"{sku}: {w}" for w in price.warnings)
            return outcome

        except SyncError as e:
            logger.warning(f"[SYNC] {sku} failed in job {job.id}: {e.error_code} {e.message}")
            return ItemOutcome(sku, "failed", error=_error_entry(sku, e))
        except Exception as e:
            logger.exception(f"[SYNC] {sku} crashed in job {job.id}")
            return ItemOutcome(sku, "failed", error=_error_entry(sku, wrap_exception(e, operation="sync_item")))
        finally:
            await self.locks.release(sku)

    async def _report_progress(self, job_id: uuid.UUID, tracker: JobTracker) -> None:
        progress = tracker.progress
        if progress == tracker.last_progress:
            return
        tracker.last_progress = progress
        self.jobs.update_progress(
            job_id,
            processed=tracker.processed,
            success=tracker.success,
            failed=tracker.failed,
            skipped=tracker.skipped,
            progress=progress,
            checkpoint=tracker.checkpoint(),
        )
        await self._publish(ev.SYNC_PROGRESS, {
            "jobId": str(job_id),
            "processed": tracker.processed,
            "total": tracker.total,
            "progress": progress,
        })

    async def _fail_job(self, job_id: uuid.UUID, error: SyncError) -> None:
        logger.error(f"[SYNC] Job {job_id} failed: {error.error_code} {error.message}")
        self.jobs.append_errors(job_id, [_error_entry(None, error)], cap=self.config.sync_max_job_errors)
        if not self.jobs.transition(job_id, ["processing"], SyncJobStatus.FAILED.value, completed_at=utcnow()):
            return
        retry_at = self._schedule_retry(job_id, error)
        await self._publish(ev.SYNC_FAILED, {
            "jobId": str(job_id),
            "error": error.to_dict(),
            "nextRetryAt": retry_at.isoformat() if retry_at else None,
        })

    def _schedule_retry(self, job_id: uuid.UUID, error: SyncError) -> Optional[datetime]:
        job = self.jobs.get(job_id)
        if job is None or not error.recoverable or job.retry_attempts >= job.max_attempts:
            return None
        if not can_transition(job.status, SyncJobStatus.PENDING.value):
            raise InvalidTransitionError(str(job_id), job.status, SyncJobStatus.PENDING.value)

        attempts = job.retry_attempts + 1
        delay = retry_delay(
            attempts,
            base=self.config.sync_retry_base_delay,
            multiplier=self.config.sync_retry_multiplier,
            cap=self.config.sync_retry_max_delay,
        )
        retry_at = utcnow() + timedelta(seconds=delay)
        # 카운터와 checkpoint 는 유지한다. 다음 회차가 이어받는다
        self.jobs.transition(
            job_id,
            ["failed"],
            SyncJobStatus.PENDING.value,
            retry_attempts=attempts,
            next_retry_at=retry_at,
            started_at=None,
            completed_at=None,
        )
        logger.info(f"[SYNC] Job {job_id} retry {attempts}/{job.max_attempts} scheduled in {delay:.1f}s")
        return retry_at
