"""Pytest configuration for stock service tests."""

import pytest

from fakes import FakeClock, InMemoryStore
from flashstock.cache import Cache
from flashstock.locks import DistributedLock
from flashstock.rate_limit import RateLimiter
from flashstock.reservations import ReservationEngine
from flashstock.sweeper import ReservationSweeper


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def cache(store):
    return Cache(store)


@pytest.fixture
def limiter(store):
    return RateLimiter(store)


@pytest.fixture
def lock(store, clock):
    return DistributedLock(store, clock=clock)


@pytest.fixture
def engine(store, clock):
    return ReservationEngine(store, clock=clock)


@pytest.fixture
def sweeper(store, lock, clock):
    return ReservationSweeper(store, lock, batch_size=2, clock=clock)
