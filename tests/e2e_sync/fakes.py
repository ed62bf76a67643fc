from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import sqlite3
import threading
from typing import Any, Iterable

from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.status_publisher import SyncStatusPublisher
from offline_sync.application.sync_orchestrator import SyncOrchestrator
from offline_sync.core.metrics import MetricsRegistry
from offline_sync.domain.models import EntityType, Operation, SyncSettings
from offline_sync.domain.sync_errors import RemoteValidationError, TransientNetworkError
from offline_sync.domain.sync_models import (
    AcceptedChange,
    ErrorKind,
    PullResult,
    PushChange,
    PushResult,
    RejectedChange,
    RemoteRecord,
)
from offline_sync.infrastructure.change_tracker_sqlite import SQLiteChangeTracker
from offline_sync.infrastructure.db import LocalDatabase
from offline_sync.infrastructure.local_store_sqlite import SQLiteLocalStore
from offline_sync.infrastructure.migrations import run_migrations
from offline_sync.infrastructure.sync_log_sqlite import SQLiteSyncLogRepository
from offline_sync.infrastructure.sync_state_sqlite import SQLiteSyncStateRepository

META_FIELDS = {"id", "created_at", "updated_at"}


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class FakeClock:
    """Deterministic clock: every reading is one second after the previous one."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now_iso(self) -> str:
        with self._lock:
            self._now += timedelta(seconds=1)
            return _iso(self._now)


class FakeConnectivity:
    def __init__(self, online: bool = True) -> None:
        self.online = online

    def is_online(self) -> bool:
        return self.online


class FakeSettingsStore:
    def __init__(self, settings: SyncSettings) -> None:
        self.settings = settings
        self.saved: list[SyncSettings] = []

    def load(self) -> SyncSettings:
        return self.settings

    def save(self, settings: SyncSettings) -> SyncSettings:
        self.settings = settings
        self.saved.append(settings)
        return settings


@dataclass
class ServerRecord:
    payload: dict[str, Any]
    updated_at: str
    version: int
    deleted: bool = False


class FakeRemoteServer:
    """In-memory central store with idempotent upserts keyed by entity id.

    A change whose base version is behind the stored one, and whose payload differs
    from it, is rejected as a conflict. Replaying an already-applied change is a no-op.
    """

    def __init__(self) -> None:
        self._now = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.records: dict[tuple[str, str], ServerRecord] = {}
        self.push_calls = 0
        self.pull_calls = 0
        self.snapshot_calls = 0
        self.pushed_batches: list[list[PushChange]] = []
        self.push_errors: list[Exception] = []
        self.pull_errors: list[Exception] = []
        self.always_fail_push: Exception | None = None
        self.always_fail_pull: Exception | None = None
        self.rejections: dict[str, tuple[str, str]] = {}
        self.poison_ids: set[str] = set()
        self.lost_acks = 0
        self.pull_gate: threading.Event | None = None
        self.pull_entered = threading.Event()

    # Test helpers ---------------------------------------------------------

    def tick(self) -> str:
        with self._lock:
            self._now += timedelta(seconds=1)
            return _iso(self._now)

    def edit_remote(self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]) -> ServerRecord:
        """Another device writes straight to the central store."""
        key = (entity_type.value, entity_id)
        current = self.records.get(key)
        updated_at = self.tick()
        stored = dict(current.payload) if current else {"id": entity_id, "created_at": updated_at}
        stored.update(payload)
        stored["updated_at"] = updated_at
        record = ServerRecord(stored, updated_at, (current.version if current else 0) + 1)
        self.records[key] = record
        return record

    def get(self, entity_type: EntityType, entity_id: str) -> ServerRecord | None:
        return self.records.get((entity_type.value, entity_id))

    def business_payload(self, entity_type: EntityType, entity_id: str) -> dict[str, Any]:
        record = self.records[(entity_type.value, entity_id)]
        return {key: value for key, value in record.payload.items() if key not in META_FIELDS}

    # Remote adapter surface ----------------------------------------------

    def push(self, changes: list[PushChange]) -> PushResult:
        self.push_calls += 1
        self.pushed_batches.append(list(changes))
        if self.always_fail_push is not None:
            raise self.always_fail_push
        if self.push_errors:
            raise self.push_errors.pop(0)
        poisoned = [change.entity_id for change in changes if change.entity_id in self.poison_ids]
        if poisoned:
            raise RemoteValidationError(f"Invalid payload for {poisoned[0]}", status_code=400)

        accepted: list[AcceptedChange] = []
        rejected: list[RejectedChange] = []
        for change in changes:
            if change.entity_id in self.rejections:
                code, reason = self.rejections[change.entity_id]
                rejected.append(RejectedChange(change.entity_id, reason, ErrorKind.parse(code)))
                continue
            key = (change.entity_type.value, change.entity_id)
            current = self.records.get(key)
            if current is not None and self._diverged(current, change):
                rejected.append(
                    RejectedChange(
                        change.entity_id,
                        "Record changed on the server",
                        ErrorKind.CONFLICT,
                        server_payload=dict(current.payload),
                        server_updated_at=current.updated_at,
                        server_version=current.version,
                    )
                )
                continue
            stored = self._store(key, change, current)
            accepted.append(AcceptedChange(change.entity_id, stored.updated_at, stored.version))
        result = PushResult(tuple(accepted), tuple(rejected), server_time=self.tick())
        if self.lost_acks:
            self.lost_acks -= 1
            raise TransientNetworkError("Remote push timed out after 15.0 seconds")
        return result

    def pull_since(self, since: str | None, entity_types: Iterable[EntityType]) -> PullResult:
        self.pull_calls += 1
        self.pull_entered.set()
        if self.pull_gate is not None:
            self.pull_gate.wait(timeout=5)
        if self.always_fail_pull is not None:
            raise self.always_fail_pull
        if self.pull_errors:
            raise self.pull_errors.pop(0)
        wanted = {kind.value for kind in entity_types}
        records = [
            self._to_remote(key, record)
            for key, record in sorted(self.records.items(), key=lambda item: item[1].updated_at)
            if key[0] in wanted and (since is None or record.updated_at > since)
        ]
        return PullResult(tuple(records), self.tick())

    def fetch_snapshot(self, entity_types: Iterable[EntityType]) -> PullResult:
        self.snapshot_calls += 1
        wanted = {kind.value for kind in entity_types}
        records = [
            self._to_remote(key, record)
            for key, record in self.records.items()
            if key[0] in wanted and not record.deleted
        ]
        return PullResult(tuple(records), self.tick())

    def ping(self) -> bool:
        return True

    # Internals ------------------------------------------------------------

    @staticmethod
    def _diverged(current: ServerRecord, change: PushChange) -> bool:
        if change.force:
            return False
        if current.payload == change.payload and current.deleted == (change.operation is Operation.DELETE):
            return False
        return current.version > (change.base_version or 0)

    def _store(self, key: tuple[str, str], change: PushChange, current: ServerRecord | None) -> ServerRecord:
        deleted = change.operation is Operation.DELETE
        if current is not None and current.payload == change.payload and current.deleted == deleted:
            return current
        record = ServerRecord(
            payload=dict(change.payload),
            updated_at=self.tick(),
            version=(current.version if current else 0) + 1,
            deleted=deleted,
        )
        self.records[key] = record
        return record

    @staticmethod
    def _to_remote(key: tuple[str, str], record: ServerRecord) -> RemoteRecord:
        return RemoteRecord(
            entity_type=EntityType(key[0]),
            entity_id=key[1],
            payload=dict(record.payload),
            updated_at=record.updated_at,
            version=record.version,
            deleted=record.deleted,
        )


@dataclass
class DeviceHarness:
    connection: sqlite3.Connection
    database: LocalDatabase
    clock: FakeClock
    tracker: SQLiteChangeTracker
    sync_state: SQLiteSyncStateRepository
    sync_log: SQLiteSyncLogRepository
    local_store: SQLiteLocalStore
    conflicts: ConflictsService
    publisher: SyncStatusPublisher
    orchestrator: SyncOrchestrator
    settings_store: FakeSettingsStore
    metrics: MetricsRegistry
    connectivity: FakeConnectivity
    sleeps: list[float] = field(default_factory=list)

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.connection.close()


def build_device(
    remote: Any,
    *,
    device_id: str = "device-a",
    connection: sqlite3.Connection | None = None,
    **overrides: Any,
) -> DeviceHarness:
    if connection is None:
        connection = sqlite3.connect(":memory:", check_same_thread=False)
        connection.row_factory = sqlite3.Row
        run_migrations(connection)
    settings = replace(
        SyncSettings(remote_base_url="https://central.example.test", api_token="secret-token", device_id=device_id),
        **overrides,
    )
    database = LocalDatabase(connection)
    clock = FakeClock()
    metrics = MetricsRegistry()
    sleeps: list[float] = []
    tracker = SQLiteChangeTracker(database, clock)
    sync_state = SQLiteSyncStateRepository(database, device_id, clock)
    sync_log = SQLiteSyncLogRepository(database)
    local_store = SQLiteLocalStore(database, tracker, sync_state, clock=clock, metrics=metrics)
    conflicts = ConflictsService(
        database, local_store, tracker, sync_state, clock=clock, sleeper=sleeps.append, metrics=metrics
    )
    publisher = SyncStatusPublisher()
    settings_store = FakeSettingsStore(settings)
    connectivity = FakeConnectivity()
    orchestrator = SyncOrchestrator(
        unit_of_work=database,
        local_store=local_store,
        tracker=tracker,
        sync_state=sync_state,
        sync_log=sync_log,
        remote=remote,
        conflicts=conflicts,
        publisher=publisher,
        settings=settings,
        connectivity=connectivity,
        settings_store=settings_store,
        sleeper=sleeps.append,
        clock=clock,
        metrics=metrics,
    )
    return DeviceHarness(
        connection=connection,
        database=database,
        clock=clock,
        tracker=tracker,
        sync_state=sync_state,
        sync_log=sync_log,
        local_store=local_store,
        conflicts=conflicts,
        publisher=publisher,
        orchestrator=orchestrator,
        settings_store=settings_store,
        metrics=metrics,
        connectivity=connectivity,
        sleeps=sleeps,
    )
