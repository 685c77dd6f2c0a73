import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from stocksync.services.exceptions import NotFoundError
from stocksync.services.scheduler_state import update_scheduler_state
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]
    run_on_start: bool = False
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    runs: int = 0


class Scheduler:
    """
    주기 작업 실행기.
    stop() 은 취소 토큰(Event)을 세우고, 진행 중인 tick 이 끝나기를 기다린다.
    """

    def __init__(self, state_path: Optional[str] = None):
        self.state_path = Path(state_path) if state_path else None
        self._tasks: Dict[str, ScheduledTask] = {}
        self._runners: List[asyncio.Task] = []
        self._stop = asyncio.Event()

    @property
    def tasks(self) -> Dict[str, ScheduledTask]:
        return dict(self._tasks)

    @property
    def running(self) -> bool:
        return bool(self._runners)

    def every(self, name: str, interval: float, func: Callable[[], Awaitable[Any]], run_on_start: bool = False) -> ScheduledTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = ScheduledTask(name=name, interval=interval, func=func, run_on_start=run_on_start)
        self._tasks[name] = task
        return task

    async def run_now(self, name: str) -> Any:
        task = self._tasks.get(name)
        if task is None:
            raise NotFoundError(f"Scheduled task {name} not found", resource="scheduled_task", key=name)
        return await self._execute(task)

    async def _execute(self, task: ScheduledTask) -> Any:
        task.last_run_at = utcnow()
        task.runs += 1
        try:
            result = await task.func()
        except Exception as e:
            task.last_status = "error"
            self._save_state(task, {"error": str(e)})
            raise
        task.last_status = "ok"
        self._save_state(task, {"result": result} if isinstance(result, (dict, str, int, float)) else None)
        return result

    def _save_state(self, task: ScheduledTask, meta: Optional[Dict[str, Any]]) -> None:
        if self.state_path is None:
            return
        try:
            update_scheduler_state(task.name, task.last_status or "unknown", meta, path=self.state_path)
        except OSError as e:
            logger.warning(f"[SCHEDULER] Failed to write state for {task.name}: {e}")

    async def _loop(self, task: ScheduledTask) -> None:
        if task.run_on_start:
            await self._tick(task)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=task.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self._tick(task)

    async def _tick(self, task: ScheduledTask) -> None:
        try:
            await self._execute(task)
        except Exception as e:
            # 주기 작업 하나의 실패가 스케줄러를 멈추지 않게 한다
            logger.error(f"[SCHEDULER] {task.name} failed: {e}")

    async def start(self) -> None:
        if self._runners:
            return
        self._stop.clear()
        for task in self._tasks.values():
            self._runners.append(asyncio.create_task(self._loop(task), name=f"scheduler-{task.name}"))
        logger.info(f"[SCHEDULER] Started {len(self._runners)} task(s): {', '.join(self._tasks)}")

    async def stop(self) -> None:
        self._stop.set()
        if self._runners:
            await asyncio.gather(*self._runners, return_exceptions=True)
        self._runners = []
        logger.info("[SCHEDULER] Stopped")
