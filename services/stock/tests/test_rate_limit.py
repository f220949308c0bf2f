"""Tests for the fixed-window rate limiter."""

import asyncio

import pytest

from fakes import FailingStore
from flashstock.rate_limit import RateLimiter


class TestFixedWindow:
    async def test_counts_down_then_denies(self, limiter):
        decisions = [await limiter.try_acquire("k", 3, 60) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    async def test_reports_time_until_reset(self, limiter):
        decision = await limiter.try_acquire("k", 3, 60)
        assert decision.reset_in_seconds == 60

    async def test_window_is_not_extended_by_later_requests(self, limiter, clock):
        await limiter.try_acquire("k", 3, 60)
        clock.advance(40)
        decision = await limiter.try_acquire("k", 3, 60)
        assert decision.reset_in_seconds == 20

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(4):
            await limiter.try_acquire("k", 3, 60)
        clock.advance(61)
        decision = await limiter.try_acquire("k", 3, 60)
        assert decision.allowed is True
        assert decision.remaining == 2

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.try_acquire("user:1", 3, 60)
        assert (await limiter.try_acquire("user:1", 3, 60)).allowed is False
        assert (await limiter.try_acquire("user:2", 3, 60)).allowed is True

    async def test_counter_key_namespace(self, limiter, store):
        await limiter.try_acquire("ip:10.0.0.1", 5, 30)
        assert store.data["ratelimit:ip:10.0.0.1"] == "1"

    async def test_concurrent_first_requests_set_window_once(self, limiter, store):
        calls = []
        original = store.expire

        async def counting_expire(key, ttl):
            calls.append(key)
            return await original(key, ttl)

        store.expire = counting_expire
        results = await asyncio.gather(*(limiter.try_acquire("k", 10, 60) for _ in range(5)))

        assert calls == ["ratelimit:k"]
        assert sorted(r.remaining for r in results) == [5, 6, 7, 8, 9]

    async def test_counter_without_expiry_is_repaired(self, limiter, store):
        # 作成者が EXPIRE の前に落ちたケース
        await store.set("ratelimit:k", "4")
        decision = await limiter.try_acquire("k", 10, 60)
        assert decision.reset_in_seconds == 60
        assert await store.ttl("ratelimit:k") == 60


class TestFailOpen:
    async def test_store_down_allows_with_full_quota(self, clock):
        limiter = RateLimiter(FailingStore(clock))
        decision = await limiter.try_acquire("k", 3, 60)
        assert decision.allowed is True
        assert decision.remaining == 3
        assert decision.reset_in_seconds == 60


class TestValidation:
    @pytest.mark.parametrize("limit,window", [(0, 60), (3, 0), (-1, 60)])
    async def test_rejects_bad_arguments(self, limiter, store, limit, window):
        with pytest.raises(ValueError):
            await limiter.try_acquire("k", limit, window)
        assert store.data == {}

    async def test_rejects_empty_key(self, limiter):
        with pytest.raises(ValueError):
            await limiter.try_acquire("", 3, 60)
