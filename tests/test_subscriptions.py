import asyncio
from datetime import timedelta

import pytest

from boxsync.core import errors
from boxsync.schemas.listing import AnnotatedListing, Coordinates, Listing
from boxsync.services.connection import ConnectionStatus
from boxsync.services.subscriptions import (
    SubscriptionManager,
    _Subscription,
    active_listings_query,
    reconnect_delay_ms,
)

from fixtures_seed import T0, listing_doc


class StubListener:
    def __init__(self):
        self.disposed = False

    def dispose(self):
        self.disposed = True


class StubStore:
    """Captures the stream callbacks so a test can drive them by hand."""

    def __init__(self):
        self.on_snapshot = None
        self.on_error = None
        self.listener = None
        self.enable_network_calls = 0

    def listen(self, query, on_snapshot, on_error):
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.listener = StubListener()
        return self.listener

    async def enable_network(self):
        self.enable_network_calls += 1


def _unavailable():
    return errors.RemoteError(errors.UNAVAILABLE, "stream dropped")


class Collector:
    def __init__(self):
        self.calls: list[list[AnnotatedListing]] = []

    def __call__(self, listings):
        self.calls.append(listings)

    @property
    def last_ids(self):
        return [item.id for item in self.calls[-1]]


def test_reconnect_delay_doubles_and_caps():
    assert [reconnect_delay_ms(n) for n in range(1, 8)] == [1000, 2000, 4000, 8000, 16000, 30000, 30000]


def test_snapshot_is_annotated_cached_and_ordered(subscriptions, store, cache, monitor, seed_many, clock):
    monitor.mark_reconnecting()
    got = Collector()
    clock.advance(hours=6)

    subscriptions.subscribe(got, user_location=Coordinates(lat=52.52, lng=13.405))

    assert len(got.calls) == 1
    # newest first, taken listings excluded
    assert got.last_ids == ["lst_4", "lst_3", "lst_2", "lst_1", "lst_0"]
    first = got.calls[0][0]
    assert isinstance(first, AnnotatedListing)
    assert first.distance == "0m"
    assert first.time_posted == "2 hours ago"
    assert [item.id for item in cache.get().data] == got.last_ids
    assert monitor.get() is ConnectionStatus.ONLINE


def test_category_filter_and_limit(store, cache, monitor, scheduler, clock, seed_many):
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock, limit=1)
    got = Collector()
    manager.subscribe(got, "books")
    assert got.last_ids == ["lst_2"]

    query = manager.build_query("all")
    assert [f.field for f in query.filters] == ["status"]
    assert query.order_by == ("createdAt", "desc")
    assert query.limit == 1


def test_each_change_produces_one_callback(subscriptions, store, seed_many):
    got = Collector()
    subscriptions.subscribe(got)
    store.seed("listings", "lst_new", listing_doc(title="Fresh", created_at=T0 + timedelta(days=1)))

    assert len(got.calls) == 2
    assert got.last_ids[0] == "lst_new"


def test_missing_user_location_gives_unknown_distance(subscriptions, seed_many):
    got = Collector()
    subscriptions.subscribe(got)
    assert {item.distance for item in got.calls[0]} == {"Unknown"}


def test_changing_category_tears_down_previous(subscriptions, store, seed_many):
    books, toys = Collector(), Collector()
    subscriptions.subscribe(books, "books")
    subscriptions.subscribe(toys, "toys")

    assert store.listener_count == 1
    store.seed("listings", "lst_b", listing_doc(category="books", created_at=T0 + timedelta(days=2)))
    assert len(books.calls) == 1
    assert toys.last_ids == ["lst_4", "lst_1"]


def test_transient_error_serves_cache_then_reconnects(subscriptions, store, scheduler, monitor, seed_many):
    got = Collector()
    subscriptions.subscribe(got)
    snapshot_ids = got.last_ids

    store.emit_error(_unavailable())

    assert got.last_ids == snapshot_ids
    assert len(scheduler.pending) == 1
    assert scheduler.pending[0].delay == 1.0
    assert monitor.get() is ConnectionStatus.RECONNECTING


@pytest.mark.asyncio
async def test_reconnect_reenables_network_and_resets_attempts(subscriptions, store, scheduler, monitor, seed_many):
    got = Collector()
    subscriptions.subscribe(got)
    store.emit_error(_unavailable())
    assert subscriptions.current.attempts == 1

    scheduler.pending[0].fire()
    await asyncio.sleep(0)

    assert store.enable_network_calls == 1
    assert len(got.calls) == 3  # snapshot, cache, snapshot after reconnect
    assert subscriptions.current.attempts == 0
    assert monitor.get() is ConnectionStatus.ONLINE


@pytest.mark.asyncio
async def test_reconnects_are_bounded(cache, monitor, scheduler, clock):
    store = StubStore()
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)
    cache.put([Listing.from_document("cached_1", listing_doc())])
    got = Collector()
    manager.subscribe(got)

    for _ in range(5):
        store.on_error(_unavailable())
        scheduler.pending[0].fire()
        await asyncio.sleep(0)

    assert scheduler.delays_ms == [1000, 2000, 4000, 8000, 16000]
    assert store.enable_network_calls == 5

    for _ in range(3):
        store.on_error(_unavailable())
    assert scheduler.pending == []
    assert len(scheduler.timers) == 5
    # every error still hands the UI the cached snapshot
    assert len(got.calls) == 8
    assert all([item.id for item in call] == ["cached_1"] for call in got.calls)
    assert monitor.get() is ConnectionStatus.OFFLINE


def test_error_while_reconnect_pending_does_not_stack(cache, monitor, scheduler, clock):
    store = StubStore()
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)
    manager.subscribe(Collector())

    store.on_error(_unavailable())
    store.on_error(_unavailable())

    assert len(scheduler.timers) == 1
    assert manager.current.attempts == 1
    assert manager.current.reconnect_pending


@pytest.mark.parametrize("code", [errors.PERMISSION_DENIED, errors.UNAUTHENTICATED])
def test_fatal_stream_error_serves_cache_without_reconnect(cache, monitor, scheduler, clock, code):
    store = StubStore()
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)
    got = Collector()
    manager.subscribe(got)

    store.on_error(errors.RemoteError(code))

    assert got.calls == [[]]
    assert scheduler.timers == []


def test_snapshot_cancels_pending_reconnect(cache, monitor, scheduler, clock):
    store = StubStore()
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)
    manager.subscribe(Collector())

    store.on_error(_unavailable())
    timer = scheduler.pending[0]
    store.on_snapshot([])

    assert timer.cancelled
    assert manager.current.attempts == 0


def test_unsubscribe_cancels_timer_and_detaches(cache, monitor, scheduler, clock):
    store = StubStore()
    manager = SubscriptionManager(store, cache, monitor, call_later=scheduler, clock=clock)
    got = Collector()
    unsubscribe = manager.subscribe(got)
    store.on_error(_unavailable())
    timer = scheduler.pending[0]

    unsubscribe()
    unsubscribe()

    assert timer.cancelled
    assert store.listener.disposed
    assert manager.current is None
    # late callbacks from the store are ignored
    store.on_snapshot([])
    assert len(got.calls) == 1


@pytest.mark.asyncio
async def test_no_reconnect_fires_after_unsubscribe_on_real_loop(store, cache, monitor, clock, seed_many):
    manager = SubscriptionManager(store, cache, monitor, clock=clock, reconnect_base_delay_ms=10)
    unsubscribe = manager.subscribe(Collector())
    store.emit_error(_unavailable())

    unsubscribe()
    await asyncio.sleep(0.05)

    assert store.enable_network_calls == 0
    assert store.listener_count == 0


def test_old_unsubscribe_does_not_close_newer_subscription(subscriptions, store, seed_many):
    first_unsubscribe = subscriptions.subscribe(Collector(), "books")
    subscriptions.subscribe(Collector(), "toys")

    first_unsubscribe()

    assert subscriptions.current is not None
    assert store.listener_count == 1


@pytest.mark.asyncio
async def test_subscription_runs_on_its_own_collaborators(cache, monitor, scheduler, clock):
    store = StubStore()
    got = Collector()
    sub = _Subscription(
        got,
        active_listings_query("listings"),
        None,
        store=store,
        cache=cache,
        monitor=monitor,
        call_later=scheduler,
        clock=clock,
        base_delay_ms=250,
        max_delay_ms=500,
        max_attempts=1,
    )
    sub.start()

    store.on_error(_unavailable())
    assert scheduler.delays_ms == [250]
    scheduler.pending[0].fire()
    await asyncio.sleep(0)
    assert store.enable_network_calls == 1

    store.on_error(_unavailable())
    assert sub.exhausted
    assert monitor.get() is ConnectionStatus.OFFLINE
    assert len(got.calls) == 2
