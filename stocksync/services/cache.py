"""
Cache Layer

재계산 가능한 값(환율, 재고 스냅샷, 리포트)을 위한 TTL 캐시.
캐시는 결코 원본 데이터가 아니며, 백엔드 오류는 캐시 미스로 취급한다.
"""
import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 4) if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
        }


class BaseCache(ABC):
    def __init__(self, default_ttl: int = 300, namespace: str = "stocksync"):
        self.default_ttl = default_ttl
        self.namespace = namespace
        self._stats = CacheStats()

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _tag_key(self, tag: str) -> str:
        return self._key(f"tag:{tag}")

    @abstractmethod
    async def _get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def _set(self, key: str, value: Any, ttl: int, tags: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def _delete(self, keys: List[str]) -> int:
        ...

    @abstractmethod
    async def _keys(self, pattern: str) -> List[str]:
        ...

    @abstractmethod
    async def _tag_members(self, tag: str) -> List[str]:
        ...

    async def get(self, key: str) -> Optional[Any]:
        value = await self._get(self._key(key))
        if value is None:
            self._stats.misses += 1
        else:
            self._stats.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Optional[Iterable[str]] = None) -> None:
        await self._set(self._key(key), value, ttl if ttl is not None else self.default_ttl, tags or ())
        self._stats.sets += 1

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Any:
        """미스일 때 fetcher 결과를 먼저 캐시에 쓴 뒤 반환한다."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fetcher()
        if value is not None:
            await self.set(key, value, ttl=ttl, tags=tags)
        return value

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        removed = await self._delete([self._key(k) for k in keys])
        self._stats.deletes += removed
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """glob 패턴(예: 'inventory:*')에 맞는 키를 모두 삭제"""
        keys = await self._keys(self._key(pattern))
        if not keys:
            return 0
        removed = await self._delete(keys)
        self._stats.deletes += removed
        return removed

    async def invalidate_tag(self, tag: str) -> int:
        members = await self._tag_members(tag)
        removed = await self._delete(members + [self._tag_key(tag)]) if members else 0
        self._stats.deletes += removed
        logger.debug(f"[CACHE] Invalidated tag {tag} ({len(members)} keys)")
        return removed

    def stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()


class MemoryCache(BaseCache):
    """단일 프로세스/테스트용 메모리 백엔드."""

    def __init__(self, default_ttl: int = 300, namespace: str = "stocksync", clock: Callable[[], float] = time.monotonic):
        super().__init__(default_ttl=default_ttl, namespace=namespace)
        self._clock = clock
        self._store: Dict[str, Tuple[Any, float]] = {}
        self._tags: Dict[str, Set[str]] = {}

    def _untag(self, key: str) -> None:
        for tag_key in [t for t, members in self._tags.items() if key in members]:
            members = self._tags[tag_key]
            members.discard(key)
            if not members:
                del self._tags[tag_key]

    def _expired(self, key: str) -> bool:
        entry = self._store.get(key)
        if entry is None or entry[1] > self._clock():
            return False
        del self._store[key]
        self._untag(key)
        return True

    async def _get(self, key: str) -> Optional[Any]:
        if self._expired(key):
            return None
        entry = self._store.get(key)
        return entry[0] if entry is not None else None

    async def _set(self, key: str, value: Any, ttl: int, tags: Iterable[str]) -> None:
        self._untag(key)
        self._store[key] = (value, self._clock() + ttl)
        for tag in tags:
            self._tags.setdefault(self._tag_key(tag), set()).add(key)

    async def _delete(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            if self._tags.pop(key, None) is not None:
                continue
            if self._store.pop(key, None) is not None:
                self._untag(key)
                removed += 1
        return removed

    async def _keys(self, pattern: str) -> List[str]:
        return [k for k in list(self._store) if not self._expired(k) and fnmatch.fnmatchcase(k, pattern)]

    async def _tag_members(self, tag: str) -> List[str]:
        members = self._tags.get(self._tag_key(tag), set())
        return [k for k in list(members) if not self._expired(k)]


class RedisCache(BaseCache):
    """
    redis.asyncio 백엔드. 값은 JSON 으로 직렬화하고,
    태그는 'tag:{name}' 셋에 키를 모아 둔다.
    """

    def __init__(self, client: Redis, default_ttl: int = 300, namespace: str = "stocksync"):
        super().__init__(default_ttl=default_ttl, namespace=namespace)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCache":
        return cls(Redis.from_url(url), **kwargs)

    async def close(self) -> None:
        await self._redis.aclose()

    async def _get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"[CACHE] Redis get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def _set(self, key: str, value: Any, ttl: int, tags: Iterable[str]) -> None:
        payload = json.dumps(value, default=str)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(key, payload, ex=max(1, int(ttl)))
                for tag in tags:
                    tag_key = self._tag_key(tag)
                    pipe.sadd(tag_key, key)
                    pipe.expire(tag_key, max(1, int(ttl)), gt=True)
                    pipe.expire(tag_key, max(1, int(ttl)), nx=True)
                await pipe.execute()
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"[CACHE] Redis set failed for {key}: {e}")

    async def _delete(self, keys: List[str]) -> int:
        try:
            return int(await self._redis.delete(*keys))
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"[CACHE] Redis delete failed: {e}")
            return 0

    async def _keys(self, pattern: str) -> List[str]:
        try:
            return [k.decode() if isinstance(k, bytes) else k async for k in self._redis.scan_iter(match=pattern, count=500)]
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"[CACHE] Redis scan failed for {pattern}: {e}")
            return []

    async def _tag_members(self, tag: str) -> List[str]:
        try:
            members = await self._redis.smembers(self._tag_key(tag))
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"[CACHE] Redis smembers failed for tag {tag}: {e}")
            return []
        return [m.decode() if isinstance(m, bytes) else m for m in members]
