from __future__ import annotations

from dataclasses import dataclass, field
import sqlite3
from pathlib import Path
from typing import Callable

from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.status_publisher import SyncStatusPublisher
from offline_sync.application.sync_orchestrator import SyncOrchestrator
from offline_sync.application.sync_runtime import StructuredFileLogger
from offline_sync.core.errors import TransientExternalError
from offline_sync.core.metrics import MetricsRegistry, metrics_registry
from offline_sync.domain.models import SyncSettings
from offline_sync.domain.ports import ConnectivityProbePort, RemoteAdapterPort
from offline_sync.domain.sync_models import SyncTrigger
from offline_sync.domain.time_utils import SystemClock
from offline_sync.infrastructure.change_tracker_sqlite import SQLiteChangeTracker
from offline_sync.infrastructure.connectivity import ConnectivityMonitor, SocketConnectivityProbe
from offline_sync.infrastructure.db import LocalDatabase, get_connection
from offline_sync.infrastructure.local_config import SyncSettingsStore
from offline_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from offline_sync.infrastructure.migrations import run_migrations
from offline_sync.infrastructure.remote_http import HttpRemoteAdapter
from offline_sync.infrastructure.scheduler import IntervalScheduler
from offline_sync.infrastructure.sqlite_lock_error_classifier import SQLiteLockErrorClassifier
from offline_sync.infrastructure.sync_log_sqlite import SQLiteSyncLogRepository
from offline_sync.infrastructure.sync_state_sqlite import SQLiteSyncStateRepository

STRUCTURED_LOG_NAME = "sync_events.jsonl"


@dataclass
class AppContainer:
    settings: SyncSettings
    database: LocalDatabase
    local_store: SQLiteLocalStore
    tracker: SQLiteChangeTracker
    sync_state: SQLiteSyncStateRepository
    sync_log: SQLiteSyncLogRepository
    conflicts_service: ConflictsService
    publisher: SyncStatusPublisher
    orchestrator: SyncOrchestrator
    settings_store: SyncSettingsStore
    remote: RemoteAdapterPort | None = None
    metrics: MetricsRegistry = field(default=metrics_registry)

    def close(self) -> None:
        self.orchestrator.shutdown()
        close_remote = getattr(self.remote, "close", None)
        if callable(close_remote):
            close_remote()
        self.database.close()


ConnectionFactory = Callable[[], sqlite3.Connection]


def _is_transient_error(classifier: SQLiteLockErrorClassifier) -> Callable[[BaseException], bool]:
    def _check(error: BaseException) -> bool:
        return classifier.is_locked_error(error) or isinstance(error, TransientExternalError)

    return _check


def build_container(
    connection_factory: ConnectionFactory = get_connection,
    *,
    settings_store: SyncSettingsStore | None = None,
    remote: RemoteAdapterPort | None = None,
    connectivity: ConnectivityProbePort | None = None,
    log_dir: Path | None = None,
    start_background_services: bool = True,
) -> AppContainer:
    connection = connection_factory()
    run_migrations(connection)
    database = LocalDatabase(connection)

    store = settings_store or SyncSettingsStore()
    settings = store.load()
    clock = SystemClock()

    tracker = SQLiteChangeTracker(database, clock)
    sync_state = SQLiteSyncStateRepository(database, settings.device_id, clock)
    sync_log = SQLiteSyncLogRepository(database)
    local_store = SQLiteLocalStore(database, tracker, sync_state, clock=clock, metrics=metrics_registry)
    conflicts_service = ConflictsService(
        database,
        local_store,
        tracker,
        sync_state,
        clock=clock,
        is_transient_error=_is_transient_error(SQLiteLockErrorClassifier()),
        metrics=metrics_registry,
    )

    if remote is None and settings.remote_configured:
        remote = HttpRemoteAdapter(
            settings.remote_base_url,
            api_token=settings.api_token,
            device_id=settings.device_id,
            timeout_seconds=settings.request_timeout_seconds,
        )
    if connectivity is None and settings.remote_configured:
        connectivity = SocketConnectivityProbe(settings.remote_base_url)

    publisher = SyncStatusPublisher()
    structured_logger = StructuredFileLogger(log_dir / STRUCTURED_LOG_NAME) if log_dir is not None else None
    orchestrator = SyncOrchestrator(
        unit_of_work=database,
        local_store=local_store,
        tracker=tracker,
        sync_state=sync_state,
        sync_log=sync_log,
        remote=remote,
        conflicts=conflicts_service,
        publisher=publisher,
        settings=settings,
        connectivity=connectivity,
        settings_store=store,
        structured_logger=structured_logger,
        clock=clock,
        metrics=metrics_registry,
    )

    if start_background_services and settings.remote_configured:
        orchestrator.attach_service(
            IntervalScheduler(
                settings.sync_interval_minutes * 60,
                lambda: orchestrator.trigger(SyncTrigger.INTERVAL),
            )
        )
        if connectivity is not None:
            orchestrator.attach_service(
                ConnectivityMonitor(
                    connectivity.is_online,
                    orchestrator.on_connectivity_changed,
                    poll_seconds=settings.connectivity_poll_seconds,
                )
            )

    return AppContainer(
        settings=settings,
        database=database,
        local_store=local_store,
        tracker=tracker,
        sync_state=sync_state,
        sync_log=sync_log,
        conflicts_service=conflicts_service,
        publisher=publisher,
        orchestrator=orchestrator,
        settings_store=store,
        remote=remote,
        metrics=metrics_registry,
    )
