from __future__ import annotations

import json
import threading

import pytest

from offline_sync.application.sync_runtime import (
    CancellationToken,
    RetryPolicy,
    StructuredFileLogger,
    call_with_timeout,
    sleep_with_cancellation,
)
from offline_sync.core.errors import SyncCancelledError
from offline_sync.domain.models import SyncSettings
from offline_sync.domain.sync_errors import TransientNetworkError


def test_backoff_grows_exponentially_up_to_cap() -> None:
    policy = RetryPolicy(initial_backoff_seconds=1.0, max_backoff_seconds=10.0, jitter_ratio=0.0)

    assert [policy.backoff_for(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_jitter_stays_within_ratio() -> None:
    policy = RetryPolicy(initial_backoff_seconds=4.0, jitter_ratio=0.25)

    assert policy.backoff_for(1, rng=lambda low, high: high) == pytest.approx(5.0)
    assert policy.backoff_for(1, rng=lambda low, high: low) == pytest.approx(3.0)


def test_policy_reads_sync_settings() -> None:
    settings = SyncSettings(max_attempts=0, backoff_base_seconds=2.0, backoff_cap_seconds=30.0, backoff_jitter=0.1)

    policy = RetryPolicy.from_settings(settings)

    assert policy.max_attempts == 1
    assert policy.initial_backoff_seconds == 2.0
    assert policy.max_backoff_seconds == 30.0
    assert policy.is_exhausted(1) is True


def test_sleep_is_split_into_cancellable_steps() -> None:
    slept: list[float] = []

    sleep_with_cancellation(0.25, CancellationToken(), slept.append)

    assert sum(slept) == pytest.approx(0.25)
    assert max(slept) <= 0.1


def test_sleep_stops_once_cancelled() -> None:
    token = CancellationToken()
    slept: list[float] = []

    def _sleeper(seconds: float) -> None:
        slept.append(seconds)
        token.cancel()

    with pytest.raises(SyncCancelledError):
        sleep_with_cancellation(5.0, token, _sleeper)

    assert len(slept) == 1


def test_call_with_timeout_returns_result() -> None:
    assert call_with_timeout(lambda: 42, 1.0, operation="ping") == 42


def test_call_with_timeout_turns_overrun_into_transient_error() -> None:
    release = threading.Event()

    with pytest.raises(TransientNetworkError, match="Remote push timed out after 0.05 seconds"):
        call_with_timeout(lambda: release.wait(5), 0.05, operation="push")

    release.set()


def test_call_with_timeout_propagates_call_errors() -> None:
    def _boom() -> None:
        raise ValueError("bad response")

    with pytest.raises(ValueError, match="bad response"):
        call_with_timeout(_boom, 1.0, operation="pull")


def test_structured_file_logger_appends_json_lines(tmp_path) -> None:
    path = tmp_path / "audit" / "sync_events.jsonl"
    audit = StructuredFileLogger(path)

    audit.log("sync_started", trigger="manual")
    audit.log("sync_succeeded", pushed=2)

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["event"] for line in lines] == ["sync_started", "sync_succeeded"]
    assert lines[1]["pushed"] == 2
    assert "ts" in lines[0]
