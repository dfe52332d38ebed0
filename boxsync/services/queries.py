from __future__ import annotations

import logging
from typing import Callable

from boxsync.core.errors import RemoteError, error_code, is_retryable
from boxsync.schemas.listing import Coordinates, Listing
from boxsync.services.aggregates import require_id
from boxsync.services.annotate import haversine_km
from boxsync.services.cache import ListingsCache
from boxsync.services.retry import RetryExecutor
from boxsync.services.subscriptions import ALL_CATEGORIES, active_listings_query, listings_from_documents
from boxsync.stores.base import DocumentStore, Query

log = logging.getLogger(__name__)

ListingFilter = Callable[[Listing], bool]


def _matches_term(listing: Listing, term: str) -> bool:
    return (
        term in listing.title.lower()
        or term in listing.description.lower()
        or term in listing.category.lower()
    )


class ListingQueries:
    """
    One-shot reads over listings.

    Reads of the active-listings query refresh the local cache. When the store
    stays unreachable the cached listings are returned instead (filtered the
    way the query would have filtered them). Errors that another attempt cannot
    fix (fatal codes, definitive replies) are raised with that cached view
    attached as `err.fallback`.
    """

    def __init__(
        self,
        store: DocumentStore,
        executor: RetryExecutor,
        cache: ListingsCache,
        *,
        listings_collection: str = "listings",
    ):
        self._store = store
        self._executor = executor
        self._cache = cache
        self._collection = listings_collection

    async def _read(
        self,
        query: Query,
        name: str,
        *,
        fallback_filter: ListingFilter,
        cache_result: bool,
    ) -> list[Listing]:
        try:
            docs = await self._executor.run(lambda: self._store.run_query(query), name)
        except Exception as e:
            fallback = [item for item in self._cache.listings() if fallback_filter(item)]
            if not is_retryable(e):
                if isinstance(e, RemoteError):
                    e.fallback = fallback
                raise
            log.warning("%s unavailable (%s); serving %d cached listings", name, error_code(e), len(fallback))
            return fallback

        listings = listings_from_documents(docs)
        if cache_result:
            self._cache.put(listings)
        return listings

    async def get_active_listings(self, category: str | None = None) -> list[Listing]:
        def _in_category(item: Listing) -> bool:
            return not category or category == ALL_CATEGORIES or item.category == category

        return await self._read(
            active_listings_query(self._collection, category),
            "get_active_listings",
            fallback_filter=_in_category,
            cache_result=True,
        )

    async def get_user_listings(self, user_id: str) -> list[Listing]:
        require_id(user_id, "user_id")
        query = Query(
            collection=self._collection,
            order_by=("createdAt", "desc"),
        ).where("owner.userId", "==", user_id)
        return await self._read(
            query,
            "get_user_listings",
            fallback_filter=lambda item: item.owner.user_id == user_id,
            cache_result=False,
        )

    async def search_listings(self, term: str) -> list[Listing]:
        # no full-text index on the store; filter client-side
        needle = (term or "").strip().lower()
        listings = await self.get_active_listings()
        if not needle:
            return listings
        return [item for item in listings if _matches_term(item, needle)]

    async def get_nearby_listings(self, lat: float, lng: float, radius_km: float = 10.0) -> list[tuple[Listing, float]]:
        origin = Coordinates(lat=lat, lng=lng)
        listings = await self.get_active_listings()
        nearby = [(item, haversine_km(origin, item.location.coordinates)) for item in listings]
        nearby = [(item, km) for item, km in nearby if km <= radius_km]
        nearby.sort(key=lambda pair: pair[1])
        return nearby
