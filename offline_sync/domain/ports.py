from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Callable, Iterable, Protocol

from offline_sync.domain.models import (
    ChangeQueueEntry,
    EntityRecord,
    EntityType,
    ObservedVersion,
    Operation,
    SyncSettings,
)
from offline_sync.domain.sync_models import PullResult, PushChange, PushResult, RemoteRecord, SyncLogEntry

PendingCountListener = Callable[[int], None]


class UnitOfWork(Protocol):
    def transaction(self) -> AbstractContextManager[None]:
        ...


class LocalStorePort(Protocol):
    def write(
        self,
        entity_type: EntityType | str,
        entity_id: str | None,
        payload: dict[str, Any] | None,
        op: Operation | str,
    ) -> EntityRecord | None:
        ...

    def read(self, entity_type: EntityType | str, entity_id: str) -> EntityRecord | None:
        ...

    def list(self, entity_type: EntityType | str, filters: dict[str, Any] | None = None) -> list[EntityRecord]:
        ...

    def apply_remote(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        payload: dict[str, Any],
        server_timestamp: str | None,
        *,
        deleted: bool = False,
    ) -> None:
        ...

    def mark_synced(self, entity_type: EntityType | str, entity_id: str) -> None:
        ...

    def replace_all(self, records: Iterable[RemoteRecord]) -> int:
        ...

    def count_unsynced(self) -> int:
        ...


class ChangeTrackerPort(Protocol):
    def enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: Operation,
        payload: dict[str, Any],
        *,
        base: ObservedVersion | None = None,
        force: bool = False,
    ) -> ChangeQueueEntry:
        ...

    def drain(
        self,
        batch_size: int,
        *,
        max_entry_id: int | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[ChangeQueueEntry]:
        ...

    def ack(self, entry_id: int, revision: int | None = None) -> bool:
        ...

    def requeue(self, entry_id: int, error: str | None = None) -> ChangeQueueEntry | None:
        ...

    def mark_failed(self, entry_id: int, error: str) -> None:
        ...

    def mark_conflict(self, entry_id: int, error: str | None = None) -> None:
        ...

    def reset_to_pending(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        base: ObservedVersion | None = None,
        force: bool | None = None,
    ) -> None:
        ...

    def discard(self, entity_type: EntityType, entity_id: str) -> bool:
        ...

    def get(self, entity_type: EntityType, entity_id: str) -> ChangeQueueEntry | None:
        ...

    def retry_failed(self) -> int:
        ...

    def clear(self) -> int:
        ...

    def count_live(self) -> int:
        ...

    def max_entry_id(self) -> int:
        ...

    def add_listener(self, listener: PendingCountListener) -> None:
        ...


class RemoteAdapterPort(Protocol):
    def push(self, changes: list[PushChange]) -> PushResult:
        ...

    def pull_since(self, since: str | None, entity_types: Iterable[EntityType]) -> PullResult:
        ...

    def fetch_snapshot(self, entity_types: Iterable[EntityType]) -> PullResult:
        ...

    def ping(self) -> bool:
        ...


class SyncLogPort(Protocol):
    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        ...

    def list_recent(self, limit: int = 50) -> list[SyncLogEntry]:
        ...

    def count_by_status(self, status: str) -> int:
        ...


class SyncStatePort(Protocol):
    def get_watermark(self) -> str | None:
        ...

    def set_watermark(self, server_time: str) -> None:
        ...

    def get_observed(self, entity_type: EntityType, entity_id: str) -> ObservedVersion | None:
        ...

    def set_observed(self, entity_type: EntityType, entity_id: str, observed: ObservedVersion) -> None:
        ...

    def clear_observed(self) -> None:
        ...


class SettingsStorePort(Protocol):
    def load(self) -> SyncSettings:
        ...

    def save(self, settings: SyncSettings) -> SyncSettings:
        ...


class ConnectivityProbePort(Protocol):
    def is_online(self) -> bool:
        ...


class ClockPort(Protocol):
    def now_iso(self) -> str:
        ...
