from __future__ import annotations

import copy
from collections import Counter, defaultdict, deque
from typing import Any

from boxsync.core import errors
from boxsync.core.clock import Clock, utcnow
from boxsync.core.ids import gen_id
from boxsync.stores.base import (
    SERVER_TIMESTAMP,
    ArrayAppend,
    Document,
    ErrorCallback,
    Increment,
    Query,
    SnapshotCallback,
)


def get_path(data: dict[str, Any], field_path: str) -> Any:
    cur: Any = data
    for part in field_path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return None
        cur = cur[part]
    return cur


def evaluate_query(docs: dict[str, dict[str, Any]], query: Query) -> list[Document]:
    rows = [
        Document(id=doc_id, data=data)
        for doc_id, data in docs.items()
        if all(get_path(data, f.field) == f.value for f in query.filters)
    ]
    if query.order_by is not None:
        field_path, direction = query.order_by
        # documents without the order field are not part of the result
        rows = [r for r in rows if get_path(r.data, field_path) is not None]
        rows.sort(key=lambda r: get_path(r.data, field_path), reverse=direction == "desc")
    if query.limit is not None:
        rows = rows[: query.limit]
    return [Document(id=r.id, data=copy.deepcopy(r.data)) for r in rows]


class _Listener:
    def __init__(self, store: "InMemoryDocumentStore", query: Query, on_snapshot: SnapshotCallback, on_error: ErrorCallback):
        self.store = store
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.paused = False
        self.disposed = False
        self.last: list[Document] | None = None

    def push(self, *, force: bool = False) -> None:
        if self.disposed or self.paused:
            return
        rows = evaluate_query(self.store._collection(self.query.collection), self.query)
        if not force and rows == self.last:
            return
        self.last = rows
        self.on_snapshot(rows)

    def dispose(self) -> None:
        self.disposed = True
        self.store._listeners.discard(self)


class InMemoryDocumentStore:
    """
    Process-local document store.

    Used by tests and offline demos. Snapshots are delivered synchronously to
    live listeners whenever a write changes their query result. Failures can
    be injected per operation with `fail_next`, and stream errors with
    `emit_error`.
    """

    key = "memory"

    def __init__(self, *, clock: Clock = utcnow):
        self._clock = clock
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: set[_Listener] = set()
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self.calls: Counter[str] = Counter()
        self.enable_network_calls = 0

    # --- test helpers ---
    def seed(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collection(collection)[doc_id] = copy.deepcopy(data)
        self._notify()

    def peek(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        data = self._collection(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    def fail_next(self, op: str, *errs: Exception) -> None:
        self._failures[op].extend(errs)

    def emit_error(self, err: Exception) -> None:
        for listener in list(self._listeners):
            if listener.disposed:
                continue
            listener.paused = True
            listener.on_error(err)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def remote_calls(self) -> int:
        return sum(self.calls.values())

    # --- DocumentStore ---
    async def run_query(self, query: Query) -> list[Document]:
        self._enter("run_query")
        return evaluate_query(self._collection(query.collection), query)

    def listen(self, query: Query, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> _Listener:
        listener = _Listener(self, query, on_snapshot, on_error)
        self._listeners.add(listener)
        listener.push(force=True)
        return listener

    async def get(self, collection: str, doc_id: str) -> Document | None:
        self._enter("get")
        data = self._collection(collection).get(doc_id)
        if data is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(data))

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        self._enter("add")
        doc_id = gen_id()
        self._collection(collection)[doc_id] = self._resolve({}, data)
        self._notify()
        return doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._enter("update")
        docs = self._collection(collection)
        if doc_id not in docs:
            raise errors.RemoteError(errors.NOT_FOUND, f"{collection}/{doc_id} does not exist")
        docs[doc_id] = self._resolve(docs[doc_id], data)
        self._notify()

    async def delete(self, collection: str, doc_id: str) -> None:
        self._enter("delete")
        self._collection(collection).pop(doc_id, None)
        self._notify()

    async def enable_network(self) -> None:
        self.enable_network_calls += 1
        for listener in list(self._listeners):
            if listener.paused:
                listener.paused = False
                listener.push(force=True)

    async def aclose(self) -> None:
        for listener in list(self._listeners):
            listener.dispose()

    # --- internals ---
    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._data.setdefault(name, {})

    def _enter(self, op: str) -> None:
        self.calls[op] += 1
        pending = self._failures.get(op)
        if pending:
            raise pending.popleft()

    def _resolve(self, current: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
        out = copy.deepcopy(current)
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                out[key] = self._clock()
            elif isinstance(value, ArrayAppend):
                existing = list(out.get(key) or [])
                for item in value.values:
                    if item not in existing:
                        existing.append(copy.deepcopy(item))
                out[key] = existing
            elif isinstance(value, Increment):
                out[key] = (out.get(key) or 0) + value.amount
            else:
                out[key] = copy.deepcopy(value)
        return out

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener.push()
