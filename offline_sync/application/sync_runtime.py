from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import random
import threading
import time
from typing import Callable, TypeVar

from offline_sync.core.errors import SyncCancelledError
from offline_sync.domain.models import SyncSettings
from offline_sync.domain.sync_errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared by the orchestrator and its sleeps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError("Sync cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_ratio: float = 0.25

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.max_attempts),
            initial_backoff_seconds=settings.backoff_base_seconds,
            max_backoff_seconds=settings.backoff_cap_seconds,
            jitter_ratio=settings.backoff_jitter,
        )

    def base_delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.max_backoff_seconds, self.initial_backoff_seconds * (self.backoff_multiplier**exponent))

    def backoff_for(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        delay = self.base_delay(attempt)
        if self.jitter_ratio <= 0:
            return delay
        spread = delay * self.jitter_ratio
        return max(0.0, min(self.max_backoff_seconds, delay + rng(-spread, spread)))

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def sleep_with_cancellation(
    seconds: float,
    token: CancellationToken | None,
    sleeper: Callable[[float], None] = time.sleep,
    step_seconds: float = 0.1,
) -> None:
    remaining = seconds
    while remaining > 0:
        if token is not None:
            token.raise_if_cancelled()
        step = min(step_seconds, remaining)
        sleeper(step)
        remaining -= step
    if token is not None:
        token.raise_if_cancelled()


def call_with_timeout(func: Callable[[], T], timeout_seconds: float, *, operation: str) -> T:
    """Runs a blocking remote call with an upper bound; an overrun counts as a transient network failure.

    The worker thread is abandoned, not joined, so a hung socket never holds the cycle.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sync-{operation}")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise TransientNetworkError(f"Remote {operation} timed out after {timeout_seconds} seconds") from exc
    finally:
        executor.shutdown(wait=False)


class StructuredFileLogger:
    """Append-only JSON Lines audit of sync events."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, event: str, **payload: object) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock, self._path.open("a", encoding="utf-8") as file:
            file.write(line + "\n")
