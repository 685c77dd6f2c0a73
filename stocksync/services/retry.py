import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from stocksync.services.exceptions import SyncError, wrap_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SyncError) and error.recoverable


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    operation: str,
    attempts: int = 3,
    timeout: float | None = 10.0,
    backoff: float = 1.0,
    max_wait: float = 30.0,
    **kwargs: Any,
) -> T:
    """
    외부 호출 1건을 제한 시간 + 지수 백오프 재시도로 감싼다.
    비정형 예외는 SyncError 로 변환되며, recoverable 인 경우만 재시도한다.
    """

    async def _attempt() -> T:
        try:
            if timeout:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=timeout)
            return await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_exception(e, operation=operation) from e

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, min=0, max=max_wait),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            f"[RETRY] {operation} 재시도 중... (시도 {rs.attempt_number}/{attempts}): {rs.outcome.exception()}"
        ),
    )
    async for attempt in retrying:
        with attempt:
            return await _attempt()
    raise RuntimeError("unreachable")  # pragma: no cover


def retry_options(config) -> dict:
    """Settings 에서 call_with_retry 인자를 만든다."""
    return {
        "attempts": config.platform_retry_attempts,
        "timeout": config.platform_call_timeout,
        "backoff": config.platform_retry_backoff,
        "max_wait": config.platform_retry_max_wait,
    }
