from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Iterable

from offline_sync.core.errors import ValidationError
from offline_sync.core.metrics import MetricsRegistry, metrics_registry
from offline_sync.domain.models import (
    EntityRecord,
    EntityType,
    ObservedVersion,
    Operation,
    strip_client_fields,
)
from offline_sync.domain.sync_models import RemoteRecord
from offline_sync.infrastructure.change_tracker_sqlite import SQLiteChangeTracker
from offline_sync.domain.time_utils import SystemClock
from offline_sync.infrastructure.db import LocalDatabase
from offline_sync.infrastructure.sync_state_sqlite import SQLiteSyncStateRepository

logger = logging.getLogger(__name__)

_META_FIELDS = frozenset({"id", "created_at", "updated_at"})


def _clean_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    return {key: value for key, value in strip_client_fields(payload or {}).items() if key not in _META_FIELDS}


class SQLiteLocalStore:
    """Durable per-entity record storage that keeps working with no network.

    Application writes go through ``write``; the sync engine is the only caller of
    ``apply_remote``, ``mark_synced`` and ``replace_all``.
    """

    def __init__(
        self,
        database: LocalDatabase,
        tracker: SQLiteChangeTracker,
        sync_state: SQLiteSyncStateRepository,
        *,
        clock: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._db = database
        self._tracker = tracker
        self._sync_state = sync_state
        self._clock = clock or SystemClock()
        self._metrics = metrics or metrics_registry

    def write(
        self,
        entity_type: EntityType | str,
        entity_id: str | None,
        payload: dict[str, Any] | None,
        op: Operation | str,
    ) -> EntityRecord | None:
        kind = EntityType.parse(entity_type)
        operation = Operation(op)
        data = _clean_payload(payload)
        now = self._clock.now_iso()
        with self._db.transaction():
            if operation is Operation.CREATE:
                record = self._create(kind, entity_id or str(uuid.uuid4()), data, now)
                snapshot = _wire_payload(record)
            elif operation is Operation.UPDATE:
                record = self._update(kind, self._require_id(entity_id, operation), data, now)
                snapshot = _wire_payload(record)
            else:
                deleted = self._delete(kind, self._require_id(entity_id, operation))
                record = None
                snapshot = _wire_payload(deleted)
            target_id = snapshot["id"]
            self._tracker.enqueue(
                kind,
                target_id,
                operation,
                snapshot,
                base=self._sync_state.get_observed(kind, target_id),
            )
        self._metrics.increment("local_writes")
        logger.debug("Local %s on %s/%s queued for sync", operation.value, kind.value, target_id)
        return record

    def read(self, entity_type: EntityType | str, entity_id: str) -> EntityRecord | None:
        return self._fetch(EntityType.parse(entity_type), entity_id)

    def list(self, entity_type: EntityType | str, filters: dict[str, Any] | None = None) -> list[EntityRecord]:
        kind = EntityType.parse(entity_type)
        with self._db.reading() as connection:
            rows = connection.execute(
                """
                SELECT entity_type, entity_id, payload_json, created_at, updated_at, is_synced
                FROM entity_records
                WHERE entity_type = ?
                ORDER BY created_at ASC, entity_id ASC
                """,
                (kind.value,),
            ).fetchall()
        records = [_record_from_row(row) for row in rows]
        if not filters:
            return records
        return [record for record in records if all(record.payload.get(key) == value for key, value in filters.items())]

    def apply_remote(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        payload: dict[str, Any],
        server_timestamp: str | None,
        *,
        deleted: bool = False,
        server_version: int | None = None,
    ) -> None:
        kind = EntityType.parse(entity_type)
        now = self._clock.now_iso()
        with self._db.transaction():
            if deleted:
                self._db.connection.execute(
                    "DELETE FROM entity_records WHERE entity_type = ? AND entity_id = ?", (kind.value, entity_id)
                )
            else:
                created_at = str(payload.get("created_at") or now)
                updated_at = server_timestamp or str(payload.get("updated_at") or now)
                self._db.connection.execute(
                    """
                    INSERT INTO entity_records (entity_type, entity_id, payload_json, created_at, updated_at, is_synced)
                    VALUES (?, ?, ?, ?, ?, 1)
                    ON CONFLICT (entity_type, entity_id) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at,
                        is_synced = 1
                    """,
                    (kind.value, entity_id, _dump(_clean_payload(payload)), created_at, updated_at),
                )
            self._sync_state.set_observed(
                kind, entity_id, ObservedVersion(server_updated_at=server_timestamp, server_version=server_version)
            )

    def mark_synced(self, entity_type: EntityType | str, entity_id: str) -> None:
        kind = EntityType.parse(entity_type)
        with self._db.transaction():
            self._db.connection.execute(
                "UPDATE entity_records SET is_synced = 1 WHERE entity_type = ? AND entity_id = ?",
                (kind.value, entity_id),
            )

    def replace_all(self, records: Iterable[RemoteRecord]) -> int:
        count = 0
        with self._db.transaction():
            self._db.connection.execute("DELETE FROM entity_records")
            self._sync_state.clear_observed()
            for record in records:
                if record.deleted:
                    continue
                self.apply_remote(
                    record.entity_type,
                    record.entity_id,
                    record.payload,
                    record.updated_at,
                    server_version=record.version,
                )
                count += 1
        logger.info("Local store replaced with %s remote records", count)
        return count

    def count_unsynced(self) -> int:
        with self._db.reading() as connection:
            return int(connection.execute("SELECT COUNT(*) FROM entity_records WHERE is_synced = 0").fetchone()[0])

    def count_by_type(self) -> dict[str, int]:
        with self._db.reading() as connection:
            rows = connection.execute(
                "SELECT entity_type, COUNT(*) AS total FROM entity_records GROUP BY entity_type"
            ).fetchall()
        return {row["entity_type"]: row["total"] for row in rows}

    def _create(self, kind: EntityType, entity_id: str, data: dict[str, Any], now: str) -> EntityRecord:
        if self._fetch(kind, entity_id) is not None or self._tracker.get(kind, entity_id) is not None:
            raise ValidationError(f"{kind.value} {entity_id} already exists; ids are never reused")
        self._db.connection.execute(
            """
            INSERT INTO entity_records (entity_type, entity_id, payload_json, created_at, updated_at, is_synced)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (kind.value, entity_id, _dump(data), now, now),
        )
        return EntityRecord(kind, entity_id, data, created_at=now, updated_at=now, is_synced=False)

    def _update(self, kind: EntityType, entity_id: str, data: dict[str, Any], now: str) -> EntityRecord:
        existing = self._fetch(kind, entity_id)
        if existing is None:
            raise ValidationError(f"{kind.value} {entity_id} not found")
        merged = {**existing.payload, **data}
        self._db.connection.execute(
            """
            UPDATE entity_records SET payload_json = ?, updated_at = ?, is_synced = 0
            WHERE entity_type = ? AND entity_id = ?
            """,
            (_dump(merged), now, kind.value, entity_id),
        )
        return EntityRecord(kind, entity_id, merged, created_at=existing.created_at, updated_at=now, is_synced=False)

    def _delete(self, kind: EntityType, entity_id: str) -> EntityRecord:
        existing = self._fetch(kind, entity_id)
        if existing is None:
            raise ValidationError(f"{kind.value} {entity_id} not found")
        self._db.connection.execute(
            "DELETE FROM entity_records WHERE entity_type = ? AND entity_id = ?", (kind.value, entity_id)
        )
        return existing

    def _fetch(self, kind: EntityType, entity_id: str) -> EntityRecord | None:
        with self._db.reading() as connection:
            row = connection.execute(
                """
                SELECT entity_type, entity_id, payload_json, created_at, updated_at, is_synced
                FROM entity_records
                WHERE entity_type = ? AND entity_id = ?
                """,
                (kind.value, entity_id),
            ).fetchone()
        return _record_from_row(row) if row else None

    @staticmethod
    def _require_id(entity_id: str | None, operation: Operation) -> str:
        if not entity_id:
            raise ValidationError(f"An id is required to {operation.value} a record")
        return entity_id


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _wire_payload(record: EntityRecord) -> dict[str, Any]:
    data = record.as_dict()
    data.pop("is_synced", None)
    return data


def _record_from_row(row: sqlite3.Row) -> EntityRecord:
    return EntityRecord(
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        payload=json.loads(row["payload_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_synced=bool(row["is_synced"]),
    )
