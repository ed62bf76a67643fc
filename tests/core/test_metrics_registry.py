from __future__ import annotations

from threading import Thread
from time import sleep

import pytest

from offline_sync.core import metrics


def test_increment_counter() -> None:
    registry = metrics.MetricsRegistry()

    registry.increment("push_accepted")
    registry.increment("push_accepted", 2)

    assert registry.counter("push_accepted") == 3
    assert registry.counter("never_seen") == 0


def test_snapshot_aggregates_timings() -> None:
    registry = metrics.MetricsRegistry()

    registry.increment("sync_cycles")
    registry.record_timing("sync_cycle_ms", 10)
    registry.record_timing("sync_cycle_ms", 30)

    snapshot = registry.snapshot()

    assert snapshot["counters"]["sync_cycles"] == 1
    assert snapshot["timings_ms"]["sync_cycle_ms"] == {"count": 2, "last": 30, "avg": 20, "max": 30}


def test_timer_records_into_its_own_registry() -> None:
    registry = metrics.MetricsRegistry()

    with registry.timer("pull_ms"):
        sleep(0.01)

    assert registry.snapshot()["timings_ms"]["pull_ms"]["last"] > 0
    assert "pull_ms" not in metrics.metrics_registry.snapshot()["timings_ms"]


def test_timer_records_even_when_the_block_raises() -> None:
    registry = metrics.MetricsRegistry()

    with pytest.raises(RuntimeError):
        with registry.timer("push_ms"):
            raise RuntimeError("remote down")

    assert registry.snapshot()["timings_ms"]["push_ms"]["count"] == 1


def test_concurrent_increments_are_not_lost() -> None:
    registry = metrics.MetricsRegistry()

    def _worker() -> None:
        for _ in range(500):
            registry.increment("local_writes")

    threads = [Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.counter("local_writes") == 2000
    registry.reset()
    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}
