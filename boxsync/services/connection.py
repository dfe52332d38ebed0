from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from typing import Awaitable, Callable

from boxsync.core.errors import is_retryable
from boxsync.stores.base import DocumentStore, Query

log = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    RECONNECTING = "reconnecting"


StatusListener = Callable[[ConnectionStatus], None]
Probe = Callable[[], Awaitable[bool]]


def store_ping(store: DocumentStore, collection: str) -> Probe:
    """Connectivity check that runs a one-document query; any answer from the store means reachable."""
    query = Query(collection=collection, limit=1)

    async def _ping() -> bool:
        try:
            await store.run_query(query)
        except Exception as e:
            return not is_retryable(e)
        return True

    return _ping


class ConnectionMonitor:
    """
    Owns the connection status shared by reads, writes and the live query.

    - RetryExecutor / SubscriptionManager report through mark_*().
    - Platform connectivity events force the status; going online also asks
      the store to re-enable its network path.
    - An optional polling task re-derives the status from a probe.

    Advisory only: reads never consult it, writes use it to fail fast.
    """

    def __init__(
        self,
        *,
        store: DocumentStore | None = None,
        probe: Probe | None = None,
        poll_interval_seconds: float = 2.0,
        initial: ConnectionStatus = ConnectionStatus.ONLINE,
    ):
        self._store = store
        self._probe = probe
        self.poll_interval_seconds = poll_interval_seconds
        self._status = initial
        self._listeners: list[StatusListener] = []
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    # --- reads ---
    def get(self) -> ConnectionStatus:
        return self._status

    @property
    def is_offline(self) -> bool:
        return self._status is ConnectionStatus.OFFLINE

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # --- writes ---
    def mark_connected(self) -> None:
        self._set(ConnectionStatus.ONLINE)

    def mark_reconnecting(self) -> None:
        self._set(ConnectionStatus.RECONNECTING)

    def mark_disconnected(self) -> None:
        self._set(ConnectionStatus.OFFLINE)

    def handle_platform_event(self, event: str) -> None:
        if event == "offline":
            self._set(ConnectionStatus.OFFLINE)
            return
        if event != "online":
            raise ValueError(f"Unknown connectivity event: {event!r}")

        was = self._status
        self._set(ConnectionStatus.ONLINE)
        if was is not ConnectionStatus.ONLINE and self._store is not None:
            self._spawn(self._enable_network())

    def _set(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        previous, self._status = self._status, status
        log.info("Connection status %s -> %s", previous.value, status.value)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                log.exception("Connection status listener failed")

    # --- polling ---
    async def check(self) -> ConnectionStatus:
        """One polling tick."""
        if self._probe is None:
            return self._status
        try:
            reachable = await self._probe()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("Connectivity probe failed: %s", e)
            reachable = False

        if not reachable:
            self._set(ConnectionStatus.OFFLINE)
        elif self._status is ConnectionStatus.OFFLINE:
            self._set(ConnectionStatus.ONLINE)
        return self._status

    async def _poll_forever(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.poll_interval_seconds)

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._probe is None:
            log.debug("No connectivity check configured; status follows remote calls only")
            return
        if self.polling:
            return
        self._task = asyncio.get_running_loop().create_task(self._poll_forever())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        for task in list(self._pending):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    # --- internals ---
    async def _enable_network(self) -> None:
        assert self._store is not None
        try:
            await self._store.enable_network()
        except Exception as e:
            log.warning("Re-enabling the store network failed: %s", e)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled network re-enable calls."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
