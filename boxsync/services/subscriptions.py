from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from pydantic import ValidationError as ModelValidationError

from boxsync.core.clock import Clock, utcnow
from boxsync.core.errors import error_code, is_subscription_fatal
from boxsync.schemas.listing import AnnotatedListing, Coordinates, Listing
from boxsync.services.annotate import annotate
from boxsync.services.cache import ListingsCache
from boxsync.services.connection import ConnectionMonitor
from boxsync.stores.base import Disposable, Document, DocumentStore, Query

log = logging.getLogger(__name__)

ALL_CATEGORIES = "all"

ListingsCallback = Callable[[list[AnnotatedListing]], None]


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


CallLater = Callable[[float, Callable[[], None]], Cancellable]


def _loop_call_later(delay: float, callback: Callable[[], None]) -> Cancellable:
    return asyncio.get_running_loop().call_later(delay, callback)


def reconnect_delay_ms(attempt: int, *, base_ms: int = 1000, cap_ms: int = 30_000) -> int:
    # attempt is 1-based: 1000, 2000, 4000, ... capped
    return min(base_ms * 2 ** max(0, attempt - 1), cap_ms)


def active_listings_query(collection: str, category: str | None = None, *, limit: int | None = None) -> Query:
    q = Query(collection=collection, order_by=("createdAt", "desc"), limit=limit).where("status", "==", "active")
    if category and category != ALL_CATEGORIES:
        q = q.where("category", "==", category)
    return q


def listings_from_documents(docs: list[Document]) -> list[Listing]:
    listings: list[Listing] = []
    for doc in docs:
        try:
            listings.append(Listing.from_document(doc.id, doc.data))
        except ModelValidationError as e:
            log.warning("Skipping malformed listing %s: %s", doc.id, e)
    return listings


class _Subscription:
    def __init__(
        self,
        on_listings: ListingsCallback,
        query: Query,
        user_location: Coordinates | None,
        *,
        store: DocumentStore,
        cache: ListingsCache,
        monitor: ConnectionMonitor,
        call_later: CallLater,
        clock: Clock,
        base_delay_ms: int,
        max_delay_ms: int,
        max_attempts: int,
    ):
        self._store = store
        self._cache = cache
        self._monitor = monitor
        self._call_later = call_later
        self._clock = clock
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._max_attempts = max_attempts
        self._on_listings = on_listings
        self.query = query
        self._user_location = user_location
        self.attempts = 0
        self.closed = False
        self.exhausted = False
        self._timer: Cancellable | None = None
        self._listener: Disposable | None = None
        self._reconnects: set[asyncio.Task] = set()

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        self._listener = self._store.listen(self.query, self._on_snapshot, self._on_error)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cancel_timer()
        if self._listener is not None:
            self._listener.dispose()
            self._listener = None

    # --- stream callbacks ---
    def _on_snapshot(self, docs: list[Document]) -> None:
        if self.closed:
            return
        self.attempts = 0
        self.exhausted = False
        self._cancel_timer()
        self._monitor.mark_connected()

        listings = listings_from_documents(docs)
        self._cache.put(listings)
        self._emit(listings)

    def _on_error(self, err: Exception) -> None:
        if self.closed:
            return
        code = error_code(err)
        # never leave the UI on a dead stream
        self._emit(self._cache.listings())

        if is_subscription_fatal(err):
            log.warning("Listings subscription stopped: %s (%s)", code, err)
            return
        if self._timer is not None:
            return
        if self.attempts >= self._max_attempts:
            if not self.exhausted:
                self.exhausted = True
                log.warning(
                    "Listings subscription gave up after %d reconnect attempts; serving cache", self.attempts,
                )
                self._monitor.mark_disconnected()
            return

        self.attempts += 1
        delay_ms = reconnect_delay_ms(
            self.attempts, base_ms=self._base_delay_ms, cap_ms=self._max_delay_ms,
        )
        log.info(
            "Listings subscription error %s; reconnect %d/%d in %dms",
            code, self.attempts, self._max_attempts, delay_ms,
        )
        self._monitor.mark_reconnecting()
        self._timer = self._call_later(delay_ms / 1000, self._reconnect)

    # --- reconnect ---
    def _reconnect(self) -> None:
        self._timer = None
        if self.closed:
            return
        task = asyncio.get_running_loop().create_task(self._enable_network())
        self._reconnects.add(task)
        task.add_done_callback(self._reconnects.discard)

    async def _enable_network(self) -> None:
        try:
            await self._store.enable_network()
        except Exception as e:
            log.warning("Reconnect attempt %d failed: %s", self.attempts, e)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self, listings: list[Listing]) -> None:
        now = self._clock()
        self._on_listings([annotate(item, self._user_location, now) for item in listings])


class SubscriptionManager:
    """
    Owns the one live query over active listings.

    Each snapshot refreshes the local cache and is handed to the callback,
    annotated with distance and age. Stream errors hand the callback the cached
    listings right away; transient ones also schedule a capped number of
    reconnects with exponential delay.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: ListingsCache,
        monitor: ConnectionMonitor,
        *,
        listings_collection: str = "listings",
        limit: int = 50,
        reconnect_base_delay_ms: int = 1000,
        reconnect_max_delay_ms: int = 30_000,
        reconnect_max_attempts: int = 5,
        call_later: CallLater | None = None,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._monitor = monitor
        self._collection = listings_collection
        self.limit = limit
        self.reconnect_base_delay_ms = reconnect_base_delay_ms
        self.reconnect_max_delay_ms = reconnect_max_delay_ms
        self.reconnect_max_attempts = reconnect_max_attempts
        self._call_later = call_later or _loop_call_later
        self._clock = clock
        self._current: _Subscription | None = None

    @property
    def current(self) -> _Subscription | None:
        return self._current

    def build_query(self, category: str | None = None) -> Query:
        return active_listings_query(self._collection, category, limit=self.limit)

    def subscribe(
        self,
        on_listings: ListingsCallback,
        category: str | None = None,
        *,
        user_location: Coordinates | None = None,
    ) -> Callable[[], None]:
        # at most one live query per manager
        if self._current is not None:
            self._current.close()
            self._current = None

        sub = _Subscription(
            on_listings,
            self.build_query(category),
            user_location,
            store=self._store,
            cache=self._cache,
            monitor=self._monitor,
            call_later=self._call_later,
            clock=self._clock,
            base_delay_ms=self.reconnect_base_delay_ms,
            max_delay_ms=self.reconnect_max_delay_ms,
            max_attempts=self.reconnect_max_attempts,
        )
        self._current = sub
        sub.start()

        def _unsubscribe() -> None:
            sub.close()
            if self._current is sub:
                self._current = None

        return _unsubscribe

    def close(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None
