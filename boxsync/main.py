from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from boxsync.core.clock import Clock, utcnow
from boxsync.core.config import Settings, settings as default_settings
from boxsync.core.telemetry import setup_telemetry
from boxsync.schemas.listing import Listing
from boxsync.services.cache import LISTINGS_ADAPTER, Cache, FileCache, ListingsCache, MemoryCache
from boxsync.services.connection import ConnectionMonitor, Probe, store_ping
from boxsync.services.mutations import AggregateMutator
from boxsync.services.queries import ListingQueries
from boxsync.services.retry import RetryExecutor, Sleep
from boxsync.services.subscriptions import CallLater, SubscriptionManager
from boxsync.stores.base import DocumentStore
from boxsync.stores.registry import get_store

log = logging.getLogger(__name__)


@dataclass
class ShareClient:
    """Everything the UI layer talks to, wired around one document store."""

    store: DocumentStore
    monitor: ConnectionMonitor
    cache: ListingsCache
    executor: RetryExecutor
    subscriptions: SubscriptionManager
    mutator: AggregateMutator
    queries: ListingQueries

    async def aclose(self) -> None:
        self.subscriptions.close()
        await self.mutator.drain()
        await self.monitor.stop()
        await self.store.aclose()


def build_client(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    probe: Probe | None = None,
    clock: Clock = utcnow,
    sleep: Sleep | None = None,
    call_later: CallLater | None = None,
) -> ShareClient:
    settings = settings or default_settings
    store = store or get_store(settings.store_kind, settings)

    monitor = ConnectionMonitor(
        store=store,
        probe=probe or store_ping(store, settings.listings_collection),
        poll_interval_seconds=settings.connection_poll_interval_seconds,
    )

    backend: Cache[list[Listing]]
    if settings.cache_dir:
        backend = FileCache(settings.cache_dir, LISTINGS_ADAPTER, clock=clock)
    else:
        backend = MemoryCache(clock=clock)
    cache = ListingsCache(backend, ttl_seconds=settings.cache_ttl_seconds)

    retry_kwargs = {"sleep": sleep} if sleep is not None else {}
    executor = RetryExecutor(
        monitor,
        base_delays_ms=settings.retry_base_delays_ms,
        jitter_ms=settings.retry_jitter_ms,
        default_max_attempts=settings.retry_max_attempts,
        **retry_kwargs,
    )

    subscriptions = SubscriptionManager(
        store,
        cache,
        monitor,
        listings_collection=settings.listings_collection,
        limit=settings.subscription_limit,
        reconnect_base_delay_ms=settings.reconnect_base_delay_ms,
        reconnect_max_delay_ms=settings.reconnect_max_delay_ms,
        reconnect_max_attempts=settings.reconnect_max_attempts,
        call_later=call_later,
        clock=clock,
    )
    mutator = AggregateMutator(
        store,
        executor,
        monitor,
        listings_collection=settings.listings_collection,
        users_collection=settings.users_collection,
        listing_lifetime=timedelta(hours=settings.listing_lifetime_hours),
        comment_max_chars=settings.comment_max_chars,
        clock=clock,
    )
    queries = ListingQueries(store, executor, cache, listings_collection=settings.listings_collection)

    return ShareClient(
        store=store,
        monitor=monitor,
        cache=cache,
        executor=executor,
        subscriptions=subscriptions,
        mutator=mutator,
        queries=queries,
    )


async def main(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Watch the active listings and log what arrives until stopped."""
    settings = settings or default_settings
    logging.basicConfig(level=logging.INFO)
    setup_telemetry(settings)

    client = build_client(settings, store=store)
    client.monitor.subscribe(lambda status: log.info("watch: connection %s", status.value))
    client.subscriptions.subscribe(lambda listings: log.info("watch: %d active listings", len(listings)))
    client.monitor.start()
    log.info("watch: started (store=%s)", settings.store_kind if store is None else type(store).__name__)

    stop = stop or asyncio.Event()
    try:
        await stop.wait()
    finally:
        await client.aclose()
        log.info("watch: stopped")


if __name__ == "__main__":
    asyncio.run(main())
