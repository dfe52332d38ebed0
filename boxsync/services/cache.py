from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from pydantic import TypeAdapter

from boxsync.core.clock import Clock, to_millis, utcnow
from boxsync.schemas.listing import Listing

log = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_LISTINGS_KEY = "active_listings"
DEFAULT_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    timestamp_ms: int


class Cache(Protocol[T]):
    def get(self, key: str) -> CacheEntry[T] | None:
        ...

    def put(self, key: str, value: T, ttl_seconds: float) -> None:
        ...

    def clear(self, key: str) -> None:
        ...


def _expired(timestamp_ms: int, ttl_ms: int, now_ms: int) -> bool:
    return now_ms - timestamp_ms >= ttl_ms


class MemoryCache(Generic[T]):
    def __init__(self, *, clock: Clock = utcnow):
        self._clock = clock
        self._entries: dict[str, tuple[CacheEntry[T], int]] = {}

    def get(self, key: str) -> CacheEntry[T] | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        entry, ttl_ms = hit
        if _expired(entry.timestamp_ms, ttl_ms, to_millis(self._clock())):
            return None
        return entry

    def put(self, key: str, value: T, ttl_seconds: float) -> None:
        entry = CacheEntry(data=value, timestamp_ms=to_millis(self._clock()))
        self._entries[key] = (entry, int(ttl_seconds * 1000))

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)


class FileCache(Generic[T]):
    """
    One JSON file per key under `base_dir`:

        {"data": <value>, "timestampMs": 1700000000000, "ttlMs": 300000}

    Values go through a pydantic TypeAdapter so typed models survive the
    round trip. An unreadable file counts as a miss.
    """

    def __init__(self, base_dir: str | Path, adapter: TypeAdapter[T], *, clock: Clock = utcnow):
        self.base = Path(base_dir)
        self.base.mkdir(parents=True, exist_ok=True)
        self._adapter = adapter
        self._clock = clock

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.base / f"{safe}.json"

    def get(self, key: str) -> CacheEntry[T] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            timestamp_ms = int(raw["timestampMs"])
            ttl_ms = int(raw["ttlMs"])
            if _expired(timestamp_ms, ttl_ms, to_millis(self._clock())):
                return None
            data = self._adapter.validate_python(raw["data"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            # pydantic.ValidationError is a ValueError
            log.warning("Ignoring unreadable cache file %s: %s", path, e)
            return None
        return CacheEntry(data=data, timestamp_ms=timestamp_ms)

    def put(self, key: str, value: T, ttl_seconds: float) -> None:
        payload = {
            "data": self._adapter.dump_python(value, mode="json", by_alias=True),
            "timestampMs": to_millis(self._clock()),
            "ttlMs": int(ttl_seconds * 1000),
        }
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)

    def clear(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


LISTINGS_ADAPTER: TypeAdapter[list[Listing]] = TypeAdapter(list[Listing])


class ListingsCache:
    """
    Single-slot snapshot of the "active listings" query.

    Not partitioned by category: whatever read or snapshot wrote last wins.
    """

    def __init__(
        self,
        backend: Cache[list[Listing]] | None = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        key: str = ACTIVE_LISTINGS_KEY,
    ):
        self._backend: Cache[list[Listing]] = backend if backend is not None else MemoryCache()
        self.ttl_seconds = ttl_seconds
        self.key = key

    def get(self) -> CacheEntry[list[Listing]] | None:
        return self._backend.get(self.key)

    def put(self, listings: list[Listing]) -> None:
        try:
            self._backend.put(self.key, list(listings), self.ttl_seconds)
        except OSError as e:
            # a failed cache write must not break the read that produced the data
            log.warning("Could not write listings cache: %s", e)

    def listings(self) -> list[Listing]:
        entry = self.get()
        return list(entry.data) if entry is not None else []

    def clear(self) -> None:
        self._backend.clear(self.key)
