from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Sequence, TypeVar

from opentelemetry import trace

from boxsync.core.errors import error_code, is_fatal, is_retryable
from boxsync.services.connection import ConnectionMonitor

log = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAYS_MS: tuple[int, ...] = (1000, 2000, 5000)
JITTER_MS = 1000

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff_ms(attempt: int, *, schedule: Sequence[int] = BASE_DELAYS_MS, jitter_ms: int = JITTER_MS) -> int:
    # table lookup, clamped to the last entry, plus jitter
    base = schedule[min(max(0, attempt), len(schedule) - 1)]
    jitter = random.randint(0, jitter_ms) if jitter_ms > 0 else 0
    return base + jitter


class RetryExecutor:
    """
    Runs one remote call with exponential backoff.

    Fatal errors (permission-denied, unauthenticated, invalid-argument) and
    definitive replies (not-found, already-exists, ...) are re-raised after
    the first attempt. Connectivity failures (unavailable, deadline-exceeded,
    unclassified exceptions, ...) are retried until `max_attempts` is used up,
    then the last error is re-raised and the connection is recorded as
    offline.
    """

    def __init__(
        self,
        monitor: ConnectionMonitor,
        *,
        base_delays_ms: Sequence[int] = BASE_DELAYS_MS,
        jitter_ms: int = JITTER_MS,
        default_max_attempts: int = 3,
        sleep: Sleep = asyncio.sleep,
        tracer: trace.Tracer | None = None,
    ):
        if not base_delays_ms:
            raise ValueError("base_delays_ms must not be empty")
        self._monitor = monitor
        self._schedule = tuple(base_delays_ms)
        self._jitter_ms = jitter_ms
        self._default_max_attempts = default_max_attempts
        self._sleep = sleep
        self._tracer = tracer or trace.get_tracer(__name__)
        self.consecutive_failures = 0

    async def run(self, operation: Callable[[], Awaitable[T]], name: str, max_attempts: int | None = None) -> T:
        attempts = self._default_max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {attempts}")

        for attempt in range(attempts):
            with self._tracer.start_as_current_span(f"remote.{name}", record_exception=False) as span:
                span.set_attribute("attempt", attempt + 1)
                try:
                    result = await operation()
                except Exception as e:
                    self.consecutive_failures += 1
                    code = error_code(e)
                    span.set_attribute("error.code", code)
                    span.record_exception(e)

                    if is_fatal(e):
                        log.warning("%s failed with fatal error %s; not retrying", name, code)
                        raise

                    if not is_retryable(e):
                        # the store answered; the connection is fine
                        log.info("%s rejected by the store: %s", name, code)
                        self.consecutive_failures = 0
                        self._monitor.mark_connected()
                        raise

                    if attempt == attempts - 1:
                        log.warning("%s failed after %d attempts: %s", name, attempts, e)
                        self._monitor.mark_disconnected()
                        raise

                    delay_ms = compute_backoff_ms(attempt, schedule=self._schedule, jitter_ms=self._jitter_ms)
                    log.info(
                        "%s attempt %d/%d failed (%s); retrying in %dms",
                        name, attempt + 1, attempts, code, delay_ms,
                    )
                    self._monitor.mark_reconnecting()
                else:
                    self.consecutive_failures = 0
                    self._monitor.mark_connected()
                    return result

            # sleep outside the span so it measures the call only
            await self._sleep(delay_ms / 1000)

        raise AssertionError("unreachable")  # pragma: no cover
