from __future__ import annotations

import logging
import threading

import pytest

from offline_sync.infrastructure.connectivity import ConnectivityMonitor, SocketConnectivityProbe
from offline_sync.infrastructure.scheduler import IntervalScheduler


def test_probe_derives_address_from_url() -> None:
    assert SocketConnectivityProbe("https://central.example.test/api").address == ("central.example.test", 443)
    assert SocketConnectivityProbe("http://10.0.0.5:8080").address == ("10.0.0.5", 8080)


def test_probe_without_host_is_offline() -> None:
    assert SocketConnectivityProbe("").is_online() is False


def test_probe_reports_offline_when_connection_fails(monkeypatch) -> None:
    def _refuse(address, timeout):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr("offline_sync.infrastructure.connectivity.socket.create_connection", _refuse)

    assert SocketConnectivityProbe("https://central.example.test").is_online() is False


def test_monitor_emits_only_transitions() -> None:
    states = iter([True, True, False, False, True])
    changes: list[bool] = []
    monitor = ConnectivityMonitor(lambda: next(states), changes.append, poll_seconds=0.01)

    for _ in range(5):
        monitor.poll_once()

    assert changes == [False, True]


def test_monitor_reports_initial_offline_state() -> None:
    changes: list[bool] = []
    monitor = ConnectivityMonitor(lambda: False, changes.append)

    assert monitor.poll_once() is False
    assert changes == [False]


def test_monitor_thread_survives_probe_failures(caplog) -> None:
    calls: list[int] = []
    probed_twice = threading.Event()

    def _probe() -> bool:
        calls.append(1)
        if len(calls) >= 2:
            probed_twice.set()
        raise OSError("network unreachable")

    monitor = ConnectivityMonitor(_probe, lambda online: None, poll_seconds=0.01)
    with caplog.at_level(logging.ERROR):
        monitor.start()
        assert probed_twice.wait(timeout=2)
        monitor.stop()

    assert "Connectivity probe failed" in caplog.text


def test_scheduler_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        IntervalScheduler(0, lambda: None)


def test_scheduler_tick_logs_callback_failure(caplog) -> None:
    def _boom() -> None:
        raise RuntimeError("cycle crashed")

    scheduler = IntervalScheduler(60, _boom)
    with caplog.at_level(logging.ERROR):
        scheduler.tick()

    assert "Scheduled sync failed" in caplog.text


def test_scheduler_fires_on_interval_until_stopped() -> None:
    fired = threading.Event()
    scheduler = IntervalScheduler(0.01, fired.set)

    scheduler.start()
    try:
        assert fired.wait(timeout=2)
    finally:
        scheduler.stop()

    assert scheduler.interval_seconds == 0.01
