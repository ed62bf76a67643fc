from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from offline_sync.domain.models import EntityType, Operation


class SyncPhase(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    RESETTING = "resetting"
    ERROR = "error"


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    CONNECTIVITY = "connectivity"
    INTERVAL = "interval"
    STARTUP = "startup"

    @property
    def is_automatic(self) -> bool:
        return self is not SyncTrigger.MANUAL


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient-network"
    SCHEMA_MISMATCH = "schema-mismatch"
    AUTH_REQUIRED = "auth-required"
    VALIDATION = "validation"
    CONFLICT = "conflict"

    @classmethod
    def parse(cls, value: str | None) -> "ErrorKind":
        if not value:
            return cls.VALIDATION
        try:
            return cls(str(value).strip().lower().replace("_", "-"))
        except ValueError:
            return cls.VALIDATION


@dataclass(frozen=True)
class PushChange:
    entity_type: EntityType
    entity_id: str
    operation: Operation
    payload: dict[str, Any]
    queued_at: str
    base_updated_at: str | None = None
    base_version: int | None = None
    force: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "base_updated_at": self.base_updated_at,
            "base_version": self.base_version,
            "force": self.force,
            "queued_at": self.queued_at,
        }


@dataclass(frozen=True)
class AcceptedChange:
    entity_id: str
    updated_at: str | None = None
    version: int | None = None


@dataclass(frozen=True)
class RejectedChange:
    entity_id: str
    reason: str
    kind: ErrorKind = ErrorKind.VALIDATION
    server_payload: dict[str, Any] | None = None
    server_updated_at: str | None = None
    server_version: int | None = None


@dataclass(frozen=True)
class PushResult:
    accepted: tuple[AcceptedChange, ...] = ()
    rejected: tuple[RejectedChange, ...] = ()
    server_time: str | None = None


@dataclass(frozen=True)
class RemoteRecord:
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any]
    updated_at: str | None = None
    version: int | None = None
    deleted: bool = False


@dataclass(frozen=True)
class PullResult:
    records: tuple[RemoteRecord, ...]
    server_time: str


@dataclass(frozen=True)
class SyncLogEntry:
    device_id: str
    sync_type: str
    entity_type: str | None
    entity_id: str | None
    operation: str | None
    status: str
    created_at: str
    error_message: str | None = None
    log_id: int | None = None


@dataclass(frozen=True)
class OperationResult:
    success: bool
    count: int = 0
    error: str | None = None
    coalesced: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "count": self.count}
        if self.error:
            data["error"] = self.error
        if self.coalesced:
            data["coalesced"] = True
        return data


@dataclass(frozen=True)
class SyncCycleSummary:
    pushed: int = 0
    push_failed: int = 0
    requeued: int = 0
    pulled: int = 0
    skipped_stale: int = 0
    conflicts_detected: int = 0
    watermark_committed: bool = False
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def total_applied(self) -> int:
        return self.pushed + self.pulled

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
