"""Tests for the distributed lock: mutual exclusion and owner-checked release."""

import asyncio

import pytest

from fakes import FailingStore
from flashstock.locks import DistributedLock


class TestAcquire:
    async def test_concurrent_acquire_has_one_winner(self, lock):
        tokens = await asyncio.gather(*(lock.acquire("L", 30) for _ in range(5)))
        winners = [t for t in tokens if t is not None]
        assert len(winners) == 1

    async def test_tokens_are_unique(self, lock):
        first = await lock.acquire("L", 30)
        await lock.release("L", first)
        second = await lock.acquire("L", 30)
        assert first != second

    async def test_lock_key_and_ttl(self, lock, store):
        token = await lock.acquire("checkout", 30)
        assert store.data["lock:checkout"] == token
        assert await store.ttl("lock:checkout") == 30

    async def test_expired_lock_can_be_reacquired(self, lock, clock):
        assert await lock.acquire("L", 30) is not None
        clock.advance(31)
        assert await lock.acquire("L", 30) is not None

    async def test_store_down_fails_closed(self, clock):
        lock = DistributedLock(FailingStore(clock), clock=clock)
        assert await lock.acquire("L", 30) is None

    @pytest.mark.parametrize("name,ttl", [("", 30), ("L", 0), ("L", -5)])
    async def test_rejects_bad_arguments(self, lock, name, ttl):
        with pytest.raises(ValueError):
            await lock.acquire(name, ttl)


class TestRelease:
    async def test_wrong_token_keeps_lock(self, lock):
        token = await lock.acquire("L", 30)
        assert await lock.release("L", "wrong-token") is False
        assert await lock.acquire("L", 30) is None
        assert await lock.release("L", token) is True
        assert await lock.acquire("L", 30) is not None

    async def test_stale_holder_cannot_release_new_holder(self, lock, clock):
        stale = await lock.acquire("L", 30)
        clock.advance(31)
        fresh = await lock.acquire("L", 30)

        assert await lock.release("L", stale) is False
        assert await lock.acquire("L", 30) is None
        assert await lock.release("L", fresh) is True

    async def test_release_twice(self, lock):
        token = await lock.acquire("L", 30)
        assert await lock.release("L", token) is True
        assert await lock.release("L", token) is False

    async def test_store_down_release_returns_false(self, clock):
        lock = DistributedLock(FailingStore(clock), clock=clock)
        assert await lock.release("L", "token") is False


class TestHeld:
    async def test_releases_on_exit(self, lock, store):
        async with lock.held("L", 30) as token:
            assert token is not None
            assert "lock:L" in store.data
        assert "lock:L" not in store.data

    async def test_releases_on_error(self, lock, store):
        with pytest.raises(RuntimeError):
            async with lock.held("L", 30):
                raise RuntimeError("boom")
        assert "lock:L" not in store.data

    async def test_busy_lock_yields_none_and_leaves_holder_alone(self, lock, store):
        holder = await lock.acquire("L", 30)
        async with lock.held("L", 30) as token:
            assert token is None
        assert store.data["lock:L"] == holder
