import asyncio
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

SYNC_STARTED = "sync.started"
SYNC_PROGRESS = "sync.progress"
SYNC_COMPLETED = "sync.completed"
SYNC_FAILED = "sync.failed"
SYNC_CANCELLED = "sync.cancelled"
INVENTORY_DISCREPANCY = "inventory.discrepancy"
PRICE_WARNING = "price.warning"
EXCHANGE_RATE_FALLBACK = "exchange_rate.fallback"

WILDCARD = "*"


class EventBus:
    """
    동기화 진행 상황을 상위 계층(API, 대시보드)에 알리는 경량 이벤트 버스.
    핸들러 예외는 로그만 남기고 발행자에게 전파하지 않는다.
    """
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, handler: Callable):
        """이벤트 구독 등록. '*' 는 모든 이벤트를 받는다."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"[EVENT] Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event_type: str, data: Dict[str, Any]):
        """이벤트 발행. 핸들러는 (event_type, data) 를 받는다."""
        logger.debug(f"[EVENT] Publishing {event_type}")
        handlers = self._handlers.get(event_type, []) + self._handlers.get(WILDCARD, [])
        if not handlers:
            return

        tasks = []
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(event_type, data))
                else:
                    handler(event_type, data)
            except Exception as e:
                logger.error(f"[EVENT] Error in handler for {event_type}: {e}")

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for res in results:
                if isinstance(res, Exception):
                    logger.error(f"[EVENT] Exception in async handler for {event_type}: {res}")
