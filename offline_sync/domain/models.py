from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    BOOKINGS = "bookings"
    CUSTOMERS = "customers"
    INVENTORY = "inventory"
    TRANSACTIONS = "transactions"
    TRANSACTION_ITEMS = "transaction_items"
    STAFF = "staff"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown entity type: {value!r}") from exc


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntryState(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    CONFLICT = "conflict"


# Keys that only make sense on this device and never travel to the remote store.
CLIENT_ONLY_FIELDS = frozenset({"is_synced", "_offline", "_queueId", "_createdAt", "_pendingSync"})


def strip_client_fields(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in CLIENT_ONLY_FIELDS}


@dataclass(frozen=True)
class EntityRecord:
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any]
    created_at: str
    updated_at: str
    is_synced: bool = False

    def as_dict(self) -> dict[str, Any]:
        data = dict(self.payload)
        data["id"] = self.entity_id
        data["created_at"] = self.created_at
        data["updated_at"] = self.updated_at
        data["is_synced"] = self.is_synced
        return data


@dataclass(frozen=True)
class ChangeQueueEntry:
    entry_id: int
    entity_type: EntityType
    entity_id: str
    operation: Operation
    payload: dict[str, Any]
    created_at: str
    updated_at: str
    retry_count: int = 0
    state: EntryState = EntryState.PENDING
    last_error: str | None = None
    revision: int = 1
    base_updated_at: str | None = None
    base_version: int | None = None
    force_overwrite: bool = False

    @property
    def is_pending(self) -> bool:
        return self.state is EntryState.PENDING


@dataclass(frozen=True)
class ObservedVersion:
    """Last server state this device applied or had confirmed for one record."""

    server_updated_at: str | None
    server_version: int | None = None


@dataclass(frozen=True)
class ConflictRecord:
    conflict_id: str
    entity_type: EntityType
    entity_id: str
    local_payload: dict[str, Any]
    server_payload: dict[str, Any]
    detected_at: str
    server_updated_at: str | None = None
    server_version: int | None = None
    local_operation: Operation = Operation.UPDATE
    server_deleted: bool = False


@dataclass(frozen=True)
class SyncSettings:
    remote_base_url: str = ""
    api_token: str = ""
    device_id: str = ""
    auto_sync: bool = True
    sync_interval_minutes: int = 15
    sync_on_startup: bool = True
    sync_when_online: bool = True
    batch_size: int = 50
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    backoff_jitter: float = 0.25
    request_timeout_seconds: float = 15.0
    connectivity_poll_seconds: float = 10.0
    entity_types: tuple[EntityType, ...] = field(default_factory=lambda: tuple(EntityType))

    @property
    def remote_configured(self) -> bool:
        return bool(self.remote_base_url.strip())
