from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol, runtime_checkable


FilterOp = Literal["=="]
Direction = Literal["asc", "desc"]


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any


@dataclass(frozen=True)
class Query:
    collection: str
    filters: tuple[FieldFilter, ...] = ()
    order_by: tuple[str, Direction] | None = None
    limit: int | None = None

    def where(self, field_path: str, op: FilterOp, value: Any) -> "Query":
        return Query(
            collection=self.collection,
            filters=self.filters + (FieldFilter(field_path, op, value),),
            order_by=self.order_by,
            limit=self.limit,
        )


@dataclass(frozen=True)
class Document:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


# --- write sentinels, resolved by the store at write time ---

class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class ArrayAppend:
    """Atomically append elements not already present in an array field (equal elements are skipped)."""
    values: tuple[Any, ...]


@dataclass(frozen=True)
class Increment:
    amount: int | float = 1


def is_transform(value: Any) -> bool:
    return value is SERVER_TIMESTAMP or isinstance(value, (ArrayAppend, Increment))


SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]


@runtime_checkable
class Disposable(Protocol):
    def dispose(self) -> None:
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """
    The surface this package consumes from the remote document store.

    Failures are raised as `RemoteError` with a canonical code.
    A live query keeps its listener attached across errors: after an error it
    stays quiet until `enable_network()` is called, then resumes pushing
    snapshots.
    """

    async def run_query(self, query: Query) -> list[Document]:
        ...

    def listen(self, query: Query, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Disposable:
        ...

    async def get(self, collection: str, doc_id: str) -> Document | None:
        ...

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a store-assigned id. Returns the id."""
        ...

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """
        Write the given top-level fields of an existing document in one
        atomic operation. Values may be sentinels.
        """
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    async def enable_network(self) -> None:
        ...

    async def aclose(self) -> None:
        ...
