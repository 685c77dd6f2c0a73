import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from stocksync.models import SyncLock
from stocksync.services.exceptions import LockContentionError
from stocksync.timeutils import utcnow

logger = logging.getLogger(__name__)


class LockStore(ABC):
    """프로세스 간 공유되는 락 저장소"""

    @abstractmethod
    async def try_acquire(self, key: str, owner: str, ttl_seconds: float) -> bool:
        ...

    @abstractmethod
    async def release(self, key: str, owner: str) -> bool:
        ...

    @abstractmethod
    async def is_locked(self, key: str) -> bool:
        ...


class SqlLockStore(LockStore):
    """
    sync_locks 테이블 기반 락.
    만료된 행 삭제 + INSERT 를 한 트랜잭션으로 수행하고,
    PK 충돌(IntegrityError)은 다른 워커가 보유 중이라는 뜻이다.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def try_acquire(self, key: str, owner: str, ttl_seconds: float) -> bool:
        now = utcnow()
        try:
            with self.session_factory() as session, session.begin():
                session.execute(delete(SyncLock).where(SyncLock.key == key, SyncLock.expires_at <= now))
                session.add(SyncLock(
                    key=key,
                    owner=owner,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                ))
        except IntegrityError:
            return False
        return True

    async def release(self, key: str, owner: str) -> bool:
        with self.session_factory() as session, session.begin():
            result = session.execute(delete(SyncLock).where(SyncLock.key == key, SyncLock.owner == owner))
            return result.rowcount > 0

    async def is_locked(self, key: str) -> bool:
        with self.session_factory() as session:
            stmt = select(SyncLock.key).where(SyncLock.key == key, SyncLock.expires_at > utcnow())
            return session.execute(stmt).first() is not None


_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLockStore(LockStore):
    """SET NX PX 기반 락. 해제는 소유자 비교 후 삭제(Lua)로 원자적으로 처리."""

    def __init__(self, client: Redis):
        self._redis = client
        self._release = client.register_script(_RELEASE_SCRIPT)

    async def try_acquire(self, key: str, owner: str, ttl_seconds: float) -> bool:
        acquired = await self._redis.set(key, owner, nx=True, px=max(1, int(ttl_seconds * 1000)))
        return bool(acquired)

    async def release(self, key: str, owner: str) -> bool:
        return bool(await self._release(keys=[key], args=[owner]))

    async def is_locked(self, key: str) -> bool:
        return bool(await self._redis.exists(key))


class ProductLock:
    """
    상품(SKU) 단위 배타 락.
    TTL 이 지나면 보유자가 죽었더라도 다음 획득 시도가 성공한다.
    """

    def __init__(self, store: LockStore, default_ttl: float = 300.0, owner: Optional[str] = None, prefix: str = "sync:lock"):
        self.store = store
        self.default_ttl = default_ttl
        self.owner = owner or uuid.uuid4().hex
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def try_acquire(self, key: str, ttl: Optional[float] = None) -> bool:
        acquired = await self.store.try_acquire(self._key(key), self.owner, ttl if ttl is not None else self.default_ttl)
        if acquired:
            logger.debug(f"[LOCK] Acquired {key}")
        else:
            logger.info(f"[LOCK] {key} is held by another worker")
        return acquired

    async def release(self, key: str) -> None:
        released = await self.store.release(self._key(key), self.owner)
        if not released:
            logger.warning(f"[LOCK] {key} was not held by this owner at release (expired?)")

    async def is_locked(self, key: str) -> bool:
        return await self.store.is_locked(self._key(key))

    @asynccontextmanager
    async def hold(self, key: str, ttl: Optional[float] = None) -> AsyncIterator[None]:
        if not await self.try_acquire(key, ttl):
            raise LockContentionError(key)
        try:
            yield
        finally:
            await self.release(key)
