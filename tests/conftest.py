from datetime import datetime, timedelta

import pytest

from boxsync.services.cache import ListingsCache, MemoryCache
from boxsync.services.connection import ConnectionMonitor
from boxsync.services.mutations import AggregateMutator
from boxsync.services.queries import ListingQueries
from boxsync.services.retry import RetryExecutor
from boxsync.services.subscriptions import SubscriptionManager
from boxsync.stores.memory import InMemoryDocumentStore

from fixtures_seed import T0, seed_listing, seed_many  # noqa: F401


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeTimer:
    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled, "cancelled timer fired"
        self.fired = True
        self.callback()


class FakeScheduler:
    """Stands in for loop.call_later; timers fire only when a test says so."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    @property
    def delays_ms(self) -> list[int]:
        return [round(t.delay * 1000) for t in self.timers]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def store(clock):
    return InMemoryDocumentStore(clock=clock)


@pytest.fixture
def monitor(store):
    return ConnectionMonitor(store=store)


@pytest.fixture
def cache(clock):
    return ListingsCache(MemoryCache(clock=clock))


@pytest.fixture
def executor(monitor, sleeper):
    return RetryExecutor(monitor, jitter_ms=0, sleep=sleeper)


@pytest.fixture
def mutator(store, executor, monitor, clock):
    return AggregateMutator(store, executor, monitor, clock=clock)


@pytest.fixture
def subscriptions(store, cache, monitor, scheduler, clock):
    return SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)


@pytest.fixture
def queries(store, executor, cache):
    return ListingQueries(store, executor, cache)
