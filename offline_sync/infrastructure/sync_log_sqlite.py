from __future__ import annotations

import sqlite3

from offline_sync.domain.sync_models import SyncLogEntry
from offline_sync.infrastructure.db import LocalDatabase


class SQLiteSyncLogRepository:
    """Append-only audit trail of every attempted remote operation."""

    def __init__(self, database: LocalDatabase) -> None:
        self._db = database

    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        with self._db.transaction():
            cursor = self._db.connection.execute(
                """
                INSERT INTO sync_log (
                    device_id, sync_type, entity_type, entity_id, operation, status, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.device_id,
                    entry.sync_type,
                    entry.entity_type,
                    entry.entity_id,
                    entry.operation,
                    entry.status,
                    entry.error_message,
                    entry.created_at,
                ),
            )
        return SyncLogEntry(
            device_id=entry.device_id,
            sync_type=entry.sync_type,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            operation=entry.operation,
            status=entry.status,
            created_at=entry.created_at,
            error_message=entry.error_message,
            log_id=cursor.lastrowid,
        )

    def list_recent(self, limit: int = 50) -> list[SyncLogEntry]:
        with self._db.reading() as connection:
            rows = connection.execute("SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_entry_from_row(row) for row in rows]

    def list_for_entity(self, entity_type: str, entity_id: str) -> list[SyncLogEntry]:
        with self._db.reading() as connection:
            rows = connection.execute(
                "SELECT * FROM sync_log WHERE entity_type = ? AND entity_id = ? ORDER BY id ASC",
                (entity_type, entity_id),
            ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def count_by_status(self, status: str) -> int:
        with self._db.reading() as connection:
            return int(connection.execute("SELECT COUNT(*) FROM sync_log WHERE status = ?", (status,)).fetchone()[0])


def _entry_from_row(row: sqlite3.Row) -> SyncLogEntry:
    return SyncLogEntry(
        device_id=row["device_id"],
        sync_type=row["sync_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        operation=row["operation"],
        status=row["status"],
        created_at=row["created_at"],
        error_message=row["error_message"],
        log_id=row["id"],
    )
