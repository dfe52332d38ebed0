from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Mapping

import httpx

from boxsync.core import errors
from boxsync.core.ids import gen_id
from boxsync.stores.base import (
    SERVER_TIMESTAMP,
    ArrayAppend,
    Document,
    ErrorCallback,
    Increment,
    Query,
    SnapshotCallback,
    is_transform,
)
from boxsync.stores.firestore_codec import decode_document, encode_fields, encode_value

log = logging.getLogger(__name__)


# HTTP status -> canonical code, used when the body carries no status string
_HTTP_STATUS_CODES = {
    400: errors.INVALID_ARGUMENT,
    401: errors.UNAUTHENTICATED,
    403: errors.PERMISSION_DENIED,
    404: errors.NOT_FOUND,
    408: errors.DEADLINE_EXCEEDED,
    409: errors.ABORTED,
    412: errors.FAILED_PRECONDITION,
    429: errors.RESOURCE_EXHAUSTED,
    500: errors.INTERNAL,
    502: errors.UNAVAILABLE,
    503: errors.UNAVAILABLE,
    504: errors.DEADLINE_EXCEEDED,
}

_DIRECTIONS = {"asc": "ASCENDING", "desc": "DESCENDING"}
_OPS = {"==": "EQUAL"}


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_snapshot_fingerprint(docs: list[Document]) -> str:
    raw = stable_json([[d.id, d.data] for d in docs]).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def remote_error_from_response(resp: httpx.Response) -> errors.RemoteError:
    status: str | None = None
    message = f"HTTP {resp.status_code}"
    try:
        body = resp.json()
    except ValueError:
        body = None
    # runQuery may wrap the error in a one-element list
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        status = body["error"].get("status")
        message = body["error"].get("message") or message

    if status:
        code = str(status).lower().replace("_", "-")
    else:
        code = _HTTP_STATUS_CODES.get(resp.status_code, errors.UNKNOWN)
    return errors.RemoteError(code, message, status_code=resp.status_code)


def build_structured_query(query: Query) -> dict[str, Any]:
    sq: dict[str, Any] = {"from": [{"collectionId": query.collection}]}

    filters = [
        {
            "fieldFilter": {
                "field": {"fieldPath": f.field},
                "op": _OPS[f.op],
                "value": encode_value(f.value),
            }
        }
        for f in query.filters
    ]
    if len(filters) == 1:
        sq["where"] = filters[0]
    elif filters:
        sq["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}

    if query.order_by is not None:
        field_path, direction = query.order_by
        sq["orderBy"] = [{"field": {"fieldPath": field_path}, "direction": _DIRECTIONS[direction]}]
    if query.limit is not None:
        sq["limit"] = query.limit
    return sq


def encode_transform(field_path: str, value: Any) -> dict[str, Any]:
    if value is SERVER_TIMESTAMP:
        return {"fieldPath": field_path, "setToServerValue": "REQUEST_TIME"}
    if isinstance(value, ArrayAppend):
        return {"fieldPath": field_path, "appendMissingElements": {"values": [encode_value(v) for v in value.values]}}
    if isinstance(value, Increment):
        return {"fieldPath": field_path, "increment": encode_value(value.amount)}
    raise TypeError(f"Not a field transform: {value!r}")


class _PollingListener:
    """
    Emulates a live query over REST by re-running it on an interval.

    A snapshot is pushed only when the result fingerprint changes. After an
    error the loop waits until `resume()` (the store's enable_network) before
    polling again.
    """

    def __init__(
        self,
        store: "FirestoreRestStore",
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ):
        self._store = store
        self._query = query
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._fingerprint: str | None = None
        self._resume = asyncio.Event()
        self._resume.set()
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    def resume(self) -> None:
        self._resume.set()

    def dispose(self) -> None:
        self._task.cancel()
        self._store._listeners.discard(self)

    async def _run(self) -> None:
        while True:
            await self._resume.wait()
            try:
                docs = await self._store.run_query(self._query)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                self._resume.clear()
                self._fingerprint = None
                self._deliver(self._on_error, err)
                continue

            fp = compute_snapshot_fingerprint(docs)
            if fp != self._fingerprint:
                self._fingerprint = fp
                self._deliver(self._on_snapshot, docs)
            await asyncio.sleep(self._store.poll_interval_seconds)

    def _deliver(self, callback, payload) -> None:
        try:
            callback(payload)
        except Exception:
            log.exception("Listener callback failed for collection=%s", self._query.collection)


class FirestoreRestStore:
    """
    Document store backed by the Firestore REST API.

    - Uses one AsyncClient instance (connection pooling).
    - Does NOT retry; RetryExecutor owns the policy.
    - Raises RemoteError with a canonical code for every failure.
    """

    key = "firestore"

    def __init__(
        self,
        *,
        project_id: str,
        database: str = "(default)",
        base_url: str = "https://firestore.googleapis.com/v1",
        token: str | None = None,
        timeout_seconds: float = 20.0,
        poll_interval_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not project_id:
            raise ValueError("project_id is required for the Firestore REST store")
        self._db_name = f"projects/{project_id}/databases/{database}"
        self._root = f"{base_url.rstrip('/')}/{self._db_name}/documents"
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )
        self.poll_interval_seconds = poll_interval_seconds
        self._listeners: set[_PollingListener] = set()

    def set_token(self, token: str | None) -> None:
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    def _doc_name(self, collection: str, doc_id: str) -> str:
        return f"{self._db_name}/documents/{collection}/{doc_id}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        try:
            resp = await self._client.request(method, url, json=json_body)
        except httpx.TimeoutException as e:
            raise errors.RemoteError(errors.DEADLINE_EXCEEDED, str(e) or "timeout") from e
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            raise errors.RemoteError(errors.UNAVAILABLE, str(e) or type(e).__name__) from e

        if 200 <= resp.status_code < 300:
            return resp
        if allow_not_found and resp.status_code == 404:
            return None
        raise remote_error_from_response(resp)

    async def _commit(self, writes: list[dict[str, Any]]) -> None:
        await self._request("POST", f"{self._root}:commit", json_body={"writes": writes})

    def _build_write(self, collection: str, doc_id: str, data: Mapping[str, Any], *, exists: bool) -> dict[str, Any]:
        plain = {k: v for k, v in data.items() if not is_transform(v)}
        write: dict[str, Any] = {
            "update": {"name": self._doc_name(collection, doc_id), "fields": encode_fields(plain)},
            "currentDocument": {"exists": exists},
        }
        if exists:
            # partial update: only the listed fields are replaced
            write["updateMask"] = {"fieldPaths": list(plain)}
        transforms = [encode_transform(k, v) for k, v in data.items() if is_transform(v)]
        if transforms:
            write["updateTransforms"] = transforms
        return write

    # --- DocumentStore ---
    async def run_query(self, query: Query) -> list[Document]:
        resp = await self._request(
            "POST",
            f"{self._root}:runQuery",
            json_body={"structuredQuery": build_structured_query(query)},
        )
        assert resp is not None
        rows = resp.json()
        return [decode_document(row["document"]) for row in rows if isinstance(row, dict) and row.get("document")]

    def listen(self, query: Query, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> _PollingListener:
        listener = _PollingListener(self, query, on_snapshot, on_error)
        self._listeners.add(listener)
        return listener

    async def get(self, collection: str, doc_id: str) -> Document | None:
        resp = await self._request("GET", f"{self._root}/{collection}/{doc_id}", allow_not_found=True)
        if resp is None:
            return None
        return decode_document(resp.json())

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = gen_id()
        await self._commit([self._build_write(collection, doc_id, data, exists=False)])
        return doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await self._commit([self._build_write(collection, doc_id, data, exists=True)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._request("DELETE", f"{self._root}/{collection}/{doc_id}")

    async def enable_network(self) -> None:
        for listener in list(self._listeners):
            listener.resume()

    async def aclose(self) -> None:
        for listener in list(self._listeners):
            listener.dispose()
        await self._client.aclose()
