"""
상품 락 테스트.

동시에 여러 워커가 시도해도 한 명만 획득하고, TTL 이 지나면 다시 획득할 수 있어야 한다.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from stocksync.services.exceptions import LockContentionError
from stocksync.services.locks import ProductLock, RedisLockStore, SqlLockStore


@pytest.mark.unit
class TestSqlProductLock:
    @pytest.fixture
    def store(self, session_factory):
        return SqlLockStore(session_factory)

    @pytest.mark.asyncio
    async def test_only_one_worker_acquires(self, store):
        workers = [ProductLock(store, owner=f"worker-{i}") for i in range(10)]

        results = await asyncio.gather(*(w.try_acquire("SKU-1") for w in workers))

        assert sum(results) == 1
        assert await workers[0].is_locked("SKU-1") is True

    @pytest.mark.asyncio
    async def test_lock_expires_after_ttl(self, store):
        first = ProductLock(store, owner="first")
        second = ProductLock(store, owner="second")

        assert await first.try_acquire("SKU-1", ttl=0.05) is True
        assert await second.try_acquire("SKU-1") is False

        await asyncio.sleep(0.1)

        assert await first.is_locked("SKU-1") is False
        assert await second.try_acquire("SKU-1") is True

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, store):
        owner = ProductLock(store, owner="owner")
        other = ProductLock(store, owner="other")
        await owner.try_acquire("SKU-1")

        await other.release("SKU-1")
        assert await owner.is_locked("SKU-1") is True

        await owner.release("SKU-1")
        assert await owner.is_locked("SKU-1") is False
        assert await other.try_acquire("SKU-1") is True

    @pytest.mark.asyncio
    async def test_locks_are_per_key(self, store):
        lock = ProductLock(store, owner="w")
        assert await lock.try_acquire("SKU-1") is True
        assert await lock.try_acquire("SKU-2") is True

    @pytest.mark.asyncio
    async def test_hold_raises_on_contention(self, store):
        holder = ProductLock(store, owner="holder")
        other = ProductLock(store, owner="other")

        async with holder.hold("SKU-1"):
            with pytest.raises(LockContentionError):
                async with other.hold("SKU-1"):
                    pass

        assert await holder.is_locked("SKU-1") is False

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, store):
        lock = ProductLock(store, owner="w")

        with pytest.raises(RuntimeError):
            async with lock.hold("SKU-1"):
                raise RuntimeError("boom")

        assert await lock.is_locked("SKU-1") is False


@pytest.mark.unit
class TestRedisLockStore:
    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.exists = AsyncMock(return_value=1)
        client.register_script.return_value = AsyncMock(return_value=1)
        return client

    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_px(self, client):
        lock = ProductLock(RedisLockStore(client), default_ttl=300, owner="w1")

        assert await lock.try_acquire("SKU-1") is True
        client.set.assert_awaited_once_with("sync:lock:SKU-1", "w1", nx=True, px=300000)

    @pytest.mark.asyncio
    async def test_acquire_fails_when_key_exists(self, client):
        client.set.return_value = None
        lock = ProductLock(RedisLockStore(client), owner="w1")
        assert await lock.try_acquire("SKU-1") is False

    @pytest.mark.asyncio
    async def test_release_compares_owner(self, client):
        store = RedisLockStore(client)
        release_script = client.register_script.return_value

        assert await store.release("sync:lock:SKU-1", "w1") is True
        release_script.assert_awaited_once_with(keys=["sync:lock:SKU-1"], args=["w1"])

        release_script.return_value = 0
        assert await store.release("sync:lock:SKU-1", "w2") is False
