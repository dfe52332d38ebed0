import asyncio

import pytest

from boxsync.core import errors
from boxsync.services.connection import ConnectionMonitor, ConnectionStatus, store_ping


def test_listeners_hear_each_change_once(monitor):
    seen = []
    unsubscribe = monitor.subscribe(seen.append)

    monitor.mark_reconnecting()
    monitor.mark_reconnecting()
    monitor.mark_disconnected()
    monitor.mark_connected()
    unsubscribe()
    monitor.mark_disconnected()

    assert seen == [ConnectionStatus.RECONNECTING, ConnectionStatus.OFFLINE, ConnectionStatus.ONLINE]
    assert monitor.is_offline


def test_failing_listener_does_not_block_others(monitor):
    seen = []

    def broken(_status):
        raise RuntimeError("boom")

    monitor.subscribe(broken)
    monitor.subscribe(seen.append)
    monitor.mark_disconnected()
    assert seen == [ConnectionStatus.OFFLINE]


def test_independent_monitors_do_not_share_state():
    a = ConnectionMonitor()
    b = ConnectionMonitor()
    a.mark_disconnected()
    assert a.get() is ConnectionStatus.OFFLINE
    assert b.get() is ConnectionStatus.ONLINE


@pytest.mark.asyncio
async def test_platform_online_event_reenables_network(monitor, store):
    monitor.handle_platform_event("offline")
    assert monitor.get() is ConnectionStatus.OFFLINE

    monitor.handle_platform_event("online")
    await monitor.drain()
    assert monitor.get() is ConnectionStatus.ONLINE
    assert store.enable_network_calls == 1

    # already online: nothing to re-enable
    monitor.handle_platform_event("online")
    await monitor.drain()
    assert store.enable_network_calls == 1


def test_unknown_platform_event_is_rejected(monitor):
    with pytest.raises(ValueError):
        monitor.handle_platform_event("flaky")


@pytest.mark.asyncio
async def test_probe_drives_status():
    reachable = {"value": False}

    async def probe():
        return reachable["value"]

    monitor = ConnectionMonitor(probe=probe)
    assert await monitor.check() is ConnectionStatus.OFFLINE

    reachable["value"] = True
    assert await monitor.check() is ConnectionStatus.ONLINE


@pytest.mark.asyncio
async def test_probe_success_does_not_hide_reconnecting():
    async def probe():
        return True

    monitor = ConnectionMonitor(probe=probe)
    monitor.mark_reconnecting()
    assert await monitor.check() is ConnectionStatus.RECONNECTING


@pytest.mark.asyncio
async def test_raising_probe_counts_as_offline():
    async def probe():
        raise OSError("no route to host")

    monitor = ConnectionMonitor(probe=probe)
    assert await monitor.check() is ConnectionStatus.OFFLINE


@pytest.mark.asyncio
async def test_polling_task_runs_until_stopped():
    ticks = []

    async def probe():
        ticks.append(1)
        return True

    monitor = ConnectionMonitor(probe=probe, poll_interval_seconds=0.01)
    monitor.start()
    await asyncio.sleep(0.05)
    await monitor.stop()
    count = len(ticks)

    assert count >= 2
    await asyncio.sleep(0.03)
    assert len(ticks) == count


@pytest.mark.asyncio
async def test_start_without_a_check_does_not_poll(monitor):
    monitor.start()
    assert not monitor.polling
    await monitor.stop()


@pytest.mark.asyncio
async def test_store_ping_runs_a_one_document_query(store):
    ping = store_ping(store, "listings")

    assert await ping() is True
    assert store.calls["run_query"] == 1


@pytest.mark.asyncio
async def test_store_ping_reports_connectivity_failures_only(store):
    ping = store_ping(store, "listings")

    store.fail_next("run_query", errors.RemoteError(errors.UNAVAILABLE))
    assert await ping() is False

    # a refusal is still an answer from the store
    store.fail_next("run_query", errors.RemoteError(errors.PERMISSION_DENIED))
    assert await ping() is True


@pytest.mark.asyncio
async def test_store_ping_brings_an_offline_monitor_back(store):
    monitor = ConnectionMonitor(store=store, probe=store_ping(store, "listings"))
    monitor.mark_disconnected()

    assert await monitor.check() is ConnectionStatus.ONLINE
    assert store.calls["run_query"] == 1
