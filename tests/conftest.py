from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
import sqlite3
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.status_publisher import SyncStatusPublisher
from offline_sync.bootstrap.logging import clear_sync_context
from offline_sync.core.metrics import MetricsRegistry
from offline_sync.infrastructure.change_tracker_sqlite import SQLiteChangeTracker
from offline_sync.infrastructure.db import LocalDatabase
from offline_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from offline_sync.infrastructure.migrations import run_migrations
from offline_sync.infrastructure.sync_log_sqlite import SQLiteSyncLogRepository
from offline_sync.infrastructure.sync_state_sqlite import SQLiteSyncStateRepository
from tests.e2e_sync.fakes import DeviceHarness, FakeClock, FakeRemoteServer, build_device

DEVICE_ID = "device-test"


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def database(connection: sqlite3.Connection) -> LocalDatabase:
    return LocalDatabase(connection)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def tracker(database: LocalDatabase, clock: FakeClock) -> SQLiteChangeTracker:
    return SQLiteChangeTracker(database, clock)


@pytest.fixture
def sync_state(database: LocalDatabase, clock: FakeClock) -> SQLiteSyncStateRepository:
    return SQLiteSyncStateRepository(database, DEVICE_ID, clock)


@pytest.fixture
def sync_log(database: LocalDatabase) -> SQLiteSyncLogRepository:
    return SQLiteSyncLogRepository(database)


@pytest.fixture
def local_store(
    database: LocalDatabase,
    tracker: SQLiteChangeTracker,
    sync_state: SQLiteSyncStateRepository,
    clock: FakeClock,
    metrics: MetricsRegistry,
) -> SQLiteLocalStore:
    return SQLiteLocalStore(database, tracker, sync_state, clock=clock, metrics=metrics)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def conflicts_service(
    database: LocalDatabase,
    local_store: SQLiteLocalStore,
    tracker: SQLiteChangeTracker,
    sync_state: SQLiteSyncStateRepository,
    clock: FakeClock,
    sleeps: list[float],
    metrics: MetricsRegistry,
) -> ConflictsService:
    return ConflictsService(
        database,
        local_store,
        tracker,
        sync_state,
        clock=clock,
        sleeper=sleeps.append,
        metrics=metrics,
    )


@pytest.fixture
def publisher() -> SyncStatusPublisher:
    return SyncStatusPublisher()


@pytest.fixture
def remote_server() -> FakeRemoteServer:
    return FakeRemoteServer()


@pytest.fixture
def make_device(remote_server: FakeRemoteServer) -> Callable[..., DeviceHarness]:
    devices: list[DeviceHarness] = []

    def _factory(device_id: str = "device-a", **overrides: Any) -> DeviceHarness:
        device = build_device(remote_server, device_id=device_id, **overrides)
        devices.append(device)
        return device

    yield _factory
    for device in devices:
        device.close()


@pytest.fixture
def restore_logging():
    root_logger = logging.getLogger()
    level = root_logger.level
    excepthook = sys.excepthook
    thread_excepthook = threading.excepthook
    yield
    clear_sync_context()
    for handler in list(root_logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)
    sys.excepthook = excepthook
    threading.excepthook = thread_excepthook
