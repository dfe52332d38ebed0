from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from pydantic import ValidationError as ModelValidationError

from boxsync.core.clock import Clock, utcnow
from boxsync.core.errors import BusinessRuleError, NotFoundError, OfflineError, ValidationError
from boxsync.schemas.listing import Comment, Listing, ListingInput, ListingPatch
from boxsync.services import aggregates
from boxsync.services.connection import ConnectionMonitor
from boxsync.services.retry import RetryExecutor
from boxsync.stores.base import SERVER_TIMESTAMP, ArrayAppend, DocumentStore, Increment

log = logging.getLogger(__name__)

ITEMS_GIVEN = "itemsGiven"
ITEMS_TAKEN = "itemsTaken"


class AggregateMutator:
    """
    Write protocols for a single listing.

    Every protocol validates synchronously, refuses to run while the
    connection is offline, and lands its fields in one store write. Each
    returns what it wrote; `preview_*` computes the same result against the
    caller's in-memory listing so it can be shown before confirmation.

    Counter increments on the user document are fire-and-forget: retried on
    their own, logged on failure, never reported to the caller.
    """

    def __init__(
        self,
        store: DocumentStore,
        executor: RetryExecutor,
        monitor: ConnectionMonitor,
        *,
        listings_collection: str = "listings",
        users_collection: str = "users",
        listing_lifetime: timedelta = timedelta(hours=48),
        comment_max_chars: int = aggregates.COMMENT_MAX_CHARS,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._executor = executor
        self._monitor = monitor
        self._listings = listings_collection
        self._users = users_collection
        self._lifetime = listing_lifetime
        self._comment_max_chars = comment_max_chars
        self._clock = clock
        self._side_effects: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    async def create_listing(self, data: ListingInput | dict[str, Any]) -> Listing:
        try:
            listing_input = data if isinstance(data, ListingInput) else ListingInput.model_validate(data)
        except ModelValidationError as e:
            raise ValidationError(f"invalid listing: {e}") from e
        self._ensure_online("create_listing")

        t0 = self._clock()
        doc = listing_input.to_document()
        doc.update(
            rating=0.0,
            ratings=[],
            comments=[],
            status="active",
            createdAt=t0,
            updatedAt=SERVER_TIMESTAMP,
        )
        if not listing_input.is_spotted:
            doc["expiresAt"] = t0 + self._lifetime

        listing_id = await self._executor.run(lambda: self._store.add(self._listings, doc), "create_listing")
        log.info("Created listing %s for user %s", listing_id, listing_input.owner.user_id)

        self._bump_counter(listing_input.owner.user_id, ITEMS_GIVEN)
        return Listing.from_document(listing_id, {**doc, "updatedAt": t0})

    async def add_rating(
        self,
        listing_id: str,
        user_id: str,
        value: int,
        comment: str | None = None,
    ) -> ListingPatch:
        """
        Upsert `user_id`'s rating and recompute the aggregate.

        Read-modify-write without a transaction: two concurrent raters can race
        and one of the writes may be lost.
        """
        aggregates.require_id(listing_id, "listing_id")
        aggregates.require_id(user_id, "user_id")
        value = aggregates.validate_rating_value(value)
        self._ensure_online("add_rating")

        listing = await self._read_listing(listing_id)
        patch = aggregates.rating_patch(listing.ratings, user_id, value, comment, self._clock())
        await self._write(listing_id, patch, "add_rating")
        return patch

    async def add_comment(
        self,
        listing_id: str,
        user_id: str,
        username: str,
        text: str,
        avatar: str | None = None,
    ) -> Comment:
        """
        Append one comment with the store's array-append transform.

        The transform appends only elements not already present, so a
        resubmission identical in user, text and `createdAt` (same clock
        tick) is stored once. Comments differing in any field always append.
        """
        aggregates.require_id(listing_id, "listing_id")
        aggregates.require_id(user_id, "user_id")
        trimmed = aggregates.normalize_comment_text(text, self._comment_max_chars)
        self._ensure_online("add_comment")

        comment = Comment(
            user_id=user_id,
            username=username or "",
            avatar=avatar or None,
            text=trimmed,
            created_at=self._clock(),
        )
        # atomic append; no read, so no lost-update window
        fields = {"comments": ArrayAppend((comment.to_document(),)), "updatedAt": SERVER_TIMESTAMP}
        await self._executor.run(lambda: self._store.update(self._listings, listing_id, fields), "add_comment")
        return comment

    async def update_status(self, listing_id: str, status: str) -> ListingPatch:
        # ownership is enforced by the store's access rules, not here
        aggregates.require_id(listing_id, "listing_id")
        status = aggregates.validate_status(status)
        self._ensure_online("update_status")

        patch = aggregates.status_patch(status, self._clock())
        await self._write(listing_id, patch, "update_status")
        return patch

    async def mark_as_found(self, listing_id: str, user_id: str, mark_as_spotted: bool = True) -> ListingPatch:
        aggregates.require_id(listing_id, "listing_id")
        aggregates.require_id(user_id, "user_id")
        self._ensure_online("mark_as_found")

        listing = await self._read_listing(listing_id)
        self._check_not_owner(listing, user_id)

        patch = aggregates.found_patch(user_id, mark_as_spotted, self._clock())
        await self._write(listing_id, patch, "mark_as_found")

        self._bump_counter(user_id, ITEMS_TAKEN)
        return patch

    async def delete_listing(self, listing_id: str) -> None:
        aggregates.require_id(listing_id, "listing_id")
        self._ensure_online("delete_listing")
        await self._executor.run(lambda: self._store.delete(self._listings, listing_id), "delete_listing")
        log.info("Deleted listing %s", listing_id)

    # --- optimistic previews ------------------------------------------
    def preview_rating(self, listing: Listing, user_id: str, value: int, comment: str | None = None) -> Listing:
        value = aggregates.validate_rating_value(value)
        return aggregates.rating_patch(listing.ratings, user_id, value, comment, self._clock()).apply_to(listing)

    def preview_comment(
        self,
        listing: Listing,
        user_id: str,
        username: str,
        text: str,
        avatar: str | None = None,
    ) -> Listing:
        now = self._clock()
        comment = Comment(
            user_id=user_id,
            username=username or "",
            avatar=avatar or None,
            text=aggregates.normalize_comment_text(text, self._comment_max_chars),
            created_at=now,
        )
        return aggregates.comment_patch(listing.comments, comment, now).apply_to(listing)

    def preview_status(self, listing: Listing, status: str) -> Listing:
        return aggregates.status_patch(aggregates.validate_status(status), self._clock()).apply_to(listing)

    def preview_found(self, listing: Listing, user_id: str, mark_as_spotted: bool = True) -> Listing:
        self._check_not_owner(listing, user_id)
        return aggregates.found_patch(user_id, mark_as_spotted, self._clock()).apply_to(listing)

    # --- side effects ---------------------------------------------------
    async def drain(self) -> None:
        """Wait until pending counter increments have finished."""
        while self._side_effects:
            await asyncio.gather(*list(self._side_effects))

    def _bump_counter(self, user_id: str, counter: str) -> None:
        task = asyncio.get_running_loop().create_task(self._increment_counter(user_id, counter))
        self._side_effects.add(task)
        task.add_done_callback(self._side_effects.discard)

    async def _increment_counter(self, user_id: str, counter: str) -> None:
        try:
            await self._executor.run(
                lambda: self._store.update(self._users, user_id, {counter: Increment(1)}),
                f"increment_{counter}",
            )
        except Exception as e:
            log.warning("Best-effort %s increment for user %s failed: %s", counter, user_id, e)

    # --- internals -------------------------------------------------------
    def _ensure_online(self, op: str) -> None:
        if self._monitor.is_offline:
            log.info("Refusing %s while offline", op)
            raise OfflineError(f"{op} not attempted: connection is offline")

    def _check_not_owner(self, listing: Listing, user_id: str) -> None:
        if listing.owner.user_id == user_id:
            raise BusinessRuleError("owners cannot mark their own listing as found", rule="owner_cannot_take")

    async def _read_listing(self, listing_id: str) -> Listing:
        doc = await self._executor.run(lambda: self._store.get(self._listings, listing_id), "get_listing")
        if doc is None:
            raise NotFoundError(f"listing {listing_id} not found")
        return Listing.from_document(doc.id, doc.data)

    async def _write(self, listing_id: str, patch: ListingPatch, name: str) -> None:
        fields = patch.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
        fields["updatedAt"] = SERVER_TIMESTAMP
        await self._executor.run(lambda: self._store.update(self._listings, listing_id, fields), name)
