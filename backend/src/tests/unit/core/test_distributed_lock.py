"""
Tests for the DistributedLock protocol and its implementations.

RedisDistributedLock is exercised against a MockRedisClient that models
SET NX PX and the compare-and-delete release script.
"""

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from mobius.core import distributed_lock as lock_module
from mobius.core.distributed_lock import (
    RELEASE_SCRIPT,
    DistributedLock,
    InMemoryDistributedLock,
    RedisDistributedLock,
    get_distributed_lock,
)
from mobius.core.exceptions import LockError


class MockRedisClient:
    """Mock Redis client implementing the calls RedisDistributedLock makes."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self.closed = False

    def _expire_if_needed(self, key: str) -> None:
        if key in self._expiry and time.monotonic() >= self._expiry[key]:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> str | None:
        self._expire_if_needed(key)
        return self._data.get(key)

    async def set(self, key: str, value: str, nx: bool = False, px: int | None = None) -> bool | None:
        self._expire_if_needed(key)
        if nx and key in self._data:
            return None
        self._data[key] = value
        if px is not None:
            self._expiry[key] = time.monotonic() + px / 1000
        return True

    async def eval(self, script: str, numkeys: int, *args: Any) -> int:
        assert script == RELEASE_SCRIPT
        key, token = args[0], args[1]
        self._expire_if_needed(key)
        if self._data.get(key) == token:
            del self._data[key]
            self._expiry.pop(key, None)
            return 1
        return 0

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(params=["inmemory", "redis"])
def lock(request) -> DistributedLock:
    if request.param == "inmemory":
        return InMemoryDistributedLock()
    return RedisDistributedLock(MockRedisClient())


lock_name_strategy = st.text(
    alphabet=st.characters(whitelist_categories=("L", "N"), whitelist_characters=":-_"),
    min_size=1,
    max_size=40,
)


class TestProtocol:
    def test_implementations_satisfy_protocol(self):
        assert isinstance(InMemoryDistributedLock(), DistributedLock)
        assert isinstance(RedisDistributedLock(MockRedisClient()), DistributedLock)


class TestMutualExclusion:
    @pytest.mark.asyncio
    async def test_second_acquire_fails_while_held(self, lock):
        token = await lock.try_acquire("calendar:cron", 60)

        assert token is not None
        assert await lock.try_acquire("calendar:cron", 60) is None

    @pytest.mark.asyncio
    async def test_release_then_reacquire(self, lock):
        token = await lock.try_acquire("calendar:cron", 60)

        assert await lock.release("calendar:cron", token) is True
        assert await lock.try_acquire("calendar:cron", 60) is not None

    @pytest.mark.asyncio
    async def test_only_owner_can_release(self, lock):
        token = await lock.try_acquire("calendar:cron", 60)

        assert await lock.release("calendar:cron", "not-the-owner") is False
        assert await lock.try_acquire("calendar:cron", 60) is None
        assert await lock.release("calendar:cron", token) is True

    @pytest.mark.asyncio
    async def test_lease_expiry_frees_the_lock(self, lock):
        stale = await lock.try_acquire("calendar:cron", 0.05)
        await asyncio.sleep(0.1)

        fresh = await lock.try_acquire("calendar:cron", 60)

        assert fresh is not None
        # The expired owner cannot release the new holder's lock
        assert await lock.release("calendar:cron", stale) is False
        assert await lock.try_acquire("calendar:cron", 60) is None

    @pytest.mark.asyncio
    async def test_names_are_independent(self, lock):
        assert await lock.try_acquire("calendar:cron", 60) is not None
        assert await lock.try_acquire("other:cron", 60) is not None

    @pytest.mark.asyncio
    async def test_concurrent_acquirers_get_one_token(self, lock):
        tokens = await asyncio.gather(*(lock.try_acquire("calendar:cron", 60) for _ in range(20)))

        assert len([t for t in tokens if t is not None]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("name", "lease"), [("", 60), ("calendar:cron", 0), ("calendar:cron", -1)])
    async def test_invalid_arguments(self, lock, name, lease):
        with pytest.raises(ValueError):
            await lock.try_acquire(name, lease)

    @pytest.mark.asyncio
    @settings(max_examples=50, deadline=None)
    @given(name=lock_name_strategy)
    async def test_acquire_release_any_name(self, name: str):
        lock = InMemoryDistributedLock()

        token = await lock.try_acquire(name, 60)

        assert token is not None
        assert lock.is_held(name)
        assert await lock.release(name, token)
        assert not lock.is_held(name)


class TestRedisDistributedLock:
    @pytest.mark.asyncio
    async def test_uses_prefixed_key_and_millisecond_lease(self):
        client = AsyncMock()
        client.set.return_value = True
        lock = RedisDistributedLock(client)

        token = await lock.try_acquire("calendar:cron", 300)

        client.set.assert_awaited_once_with("mobius:lock:calendar:cron", token, nx=True, px=300_000)

    @pytest.mark.asyncio
    async def test_backend_failure_raises_lock_error(self):
        client = AsyncMock()
        client.set.side_effect = ConnectionError("redis down")
        client.eval.side_effect = ConnectionError("redis down")
        lock = RedisDistributedLock(client)

        with pytest.raises(LockError):
            await lock.try_acquire("calendar:cron", 300)
        with pytest.raises(LockError):
            await lock.release("calendar:cron", "token")


class TestGetDistributedLock:
    @pytest.mark.asyncio
    async def test_in_memory_without_redis_url(self, monkeypatch):
        monkeypatch.delenv("MOBIUS_REDIS_URL", raising=False)

        lock = await get_distributed_lock()

        assert isinstance(lock, InMemoryDistributedLock)
        assert await get_distributed_lock() is lock

    @pytest.mark.asyncio
    async def test_redis_when_reachable(self, monkeypatch):
        monkeypatch.setenv("MOBIUS_REDIS_URL", "redis://localhost:6379")
        client = MockRedisClient()

        with patch.object(lock_module.redis, "from_url", return_value=client):
            lock = await get_distributed_lock()

        assert isinstance(lock, RedisDistributedLock)

        await lock_module.close_distributed_lock()
        assert client.closed

    @pytest.mark.asyncio
    async def test_falls_back_when_redis_unreachable(self, monkeypatch):
        monkeypatch.setenv("MOBIUS_REDIS_URL", "redis://localhost:6379")
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")

        with patch.object(lock_module.redis, "from_url", return_value=client):
            lock = await get_distributed_lock()

        assert isinstance(lock, InMemoryDistributedLock)

    @pytest.mark.asyncio
    async def test_required_redis_unreachable_raises(self, monkeypatch):
        monkeypatch.setenv("MOBIUS_REDIS_URL", "redis://localhost:6379")
        monkeypatch.setenv("MOBIUS_REDIS_REQUIRED", "true")
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")

        with patch.object(lock_module.redis, "from_url", return_value=client), pytest.raises(LockError):
            await get_distributed_lock()

    @pytest.mark.asyncio
    async def test_required_redis_without_url_raises(self, monkeypatch):
        monkeypatch.delenv("MOBIUS_REDIS_URL", raising=False)
        monkeypatch.setenv("MOBIUS_REDIS_REQUIRED", "true")

        with pytest.raises(LockError):
            await get_distributed_lock()
