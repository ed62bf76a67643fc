from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable

from offline_sync.core.errors import PersistenceError
from offline_sync.domain.models import ChangeQueueEntry, EntityType, EntryState, ObservedVersion, Operation
from offline_sync.domain.ports import PendingCountListener
from offline_sync.domain.time_utils import SystemClock
from offline_sync.infrastructure.db import LocalDatabase

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = """
    entry_id, entity_type, entity_id, operation, payload_json, base_updated_at, base_version,
    created_at, updated_at, retry_count, state, last_error, revision, force_overwrite
"""


def collapse_operation(previous: Operation, incoming: Operation) -> Operation:
    """Operation a live entry keeps after a further local mutation of the same record."""
    if incoming is Operation.DELETE:
        return Operation.DELETE
    if previous is Operation.CREATE:
        return Operation.CREATE
    return incoming


class SQLiteChangeTracker:
    def __init__(self, database: LocalDatabase, clock: Any | None = None) -> None:
        self._db = database
        self._clock = clock or SystemClock()
        self._listeners: list[PendingCountListener] = []

    def add_listener(self, listener: PendingCountListener) -> None:
        self._listeners.append(listener)

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
        now = self._clock.now_iso()
        payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        with self._db.transaction():
            existing = self._select_one(
                "WHERE entity_type = ? AND entity_id = ?", (entity_type.value, entity_id)
            )
            if existing is None:
                self._db.connection.execute(
                    """
                    INSERT INTO change_queue (
                        entity_type, entity_id, operation, payload_json, base_updated_at, base_version,
                        created_at, updated_at, retry_count, state, last_error, revision, force_overwrite
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending', NULL, 1, ?)
                    """,
                    (
                        entity_type.value,
                        entity_id,
                        operation.value,
                        payload_json,
                        base.server_updated_at if base else None,
                        base.server_version if base else None,
                        now,
                        now,
                        int(force),
                    ),
                )
            else:
                collapsed = collapse_operation(existing.operation, operation)
                self._db.connection.execute(
                    """
                    UPDATE change_queue
                    SET operation = ?, payload_json = ?,
                        base_updated_at = ?, base_version = ?,
                        updated_at = ?, retry_count = 0, state = 'pending', last_error = NULL,
                        revision = revision + 1, force_overwrite = MAX(force_overwrite, ?)
                    WHERE entry_id = ?
                    """,
                    (
                        collapsed.value,
                        payload_json,
                        base.server_updated_at if base else existing.base_updated_at,
                        base.server_version if base else existing.base_version,
                        now,
                        int(force),
                        existing.entry_id,
                    ),
                )
                logger.debug(
                    "Collapsed %s/%s into entry %s (%s -> %s)",
                    entity_type.value,
                    entity_id,
                    existing.entry_id,
                    existing.operation.value,
                    collapsed.value,
                )
            entry = self._select_one("WHERE entity_type = ? AND entity_id = ?", (entity_type.value, entity_id))
        self._notify()
        if entry is None:
            raise PersistenceError(f"Change queue entry for {entity_type.value}/{entity_id} vanished after enqueue")
        return entry

    def drain(
        self,
        batch_size: int,
        *,
        max_entry_id: int | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[ChangeQueueEntry]:
        if batch_size <= 0:
            return []
        clause = "WHERE state = 'pending'"
        params: list[object] = []
        if max_entry_id is not None:
            clause += " AND entry_id <= ?"
            params.append(max_entry_id)
        excluded = sorted(set(exclude_ids))
        if excluded:
            clause += f" AND entry_id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        clause += " ORDER BY entry_id ASC LIMIT ?"
        params.append(batch_size)
        return self._select_many(clause, tuple(params))

    def ack(self, entry_id: int, revision: int | None = None) -> bool:
        with self._db.transaction():
            if revision is None:
                cursor = self._db.connection.execute("DELETE FROM change_queue WHERE entry_id = ?", (entry_id,))
            else:
                cursor = self._db.connection.execute(
                    "DELETE FROM change_queue WHERE entry_id = ? AND revision = ?", (entry_id, revision)
                )
        removed = cursor.rowcount > 0
        if not removed:
            logger.info("Entry %s changed while in flight; kept for the next cycle", entry_id)
        self._notify()
        return removed

    def requeue(self, entry_id: int, error: str | None = None) -> ChangeQueueEntry | None:
        with self._db.transaction():
            self._db.connection.execute(
                """
                UPDATE change_queue
                SET retry_count = retry_count + 1, last_error = ?, state = 'pending', updated_at = ?
                WHERE entry_id = ?
                """,
                (error, self._clock.now_iso(), entry_id),
            )
            return self._select_one("WHERE entry_id = ?", (entry_id,))

    def mark_failed(self, entry_id: int, error: str) -> None:
        self._set_state(entry_id, EntryState.FAILED, error)

    def mark_conflict(self, entry_id: int, error: str | None = None) -> None:
        self._set_state(entry_id, EntryState.CONFLICT, error)

    def reset_to_pending(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        base: ObservedVersion | None = None,
        force: bool | None = None,
    ) -> None:
        """Puts the entry back in the push queue; ``force=None`` keeps its overwrite marker."""
        with self._db.transaction():
            self._db.connection.execute(
                """
                UPDATE change_queue
                SET state = 'pending', retry_count = 0, last_error = NULL,
                    base_updated_at = COALESCE(?, base_updated_at),
                    base_version = COALESCE(?, base_version),
                    force_overwrite = COALESCE(?, force_overwrite),
                    updated_at = ?, revision = revision + 1
                WHERE entity_type = ? AND entity_id = ?
                """,
                (
                    base.server_updated_at if base else None,
                    base.server_version if base else None,
                    None if force is None else int(force),
                    self._clock.now_iso(),
                    entity_type.value,
                    entity_id,
                ),
            )

    def discard(self, entity_type: EntityType, entity_id: str) -> bool:
        with self._db.transaction():
            cursor = self._db.connection.execute(
                "DELETE FROM change_queue WHERE entity_type = ? AND entity_id = ?", (entity_type.value, entity_id)
            )
        self._notify()
        return cursor.rowcount > 0

    def get(self, entity_type: EntityType, entity_id: str) -> ChangeQueueEntry | None:
        return self._select_one("WHERE entity_type = ? AND entity_id = ?", (entity_type.value, entity_id))

    def list_entries(self, state: EntryState | None = None) -> list[ChangeQueueEntry]:
        if state is None:
            return self._select_many("ORDER BY entry_id ASC", ())
        return self._select_many("WHERE state = ? ORDER BY entry_id ASC", (state.value,))

    def retry_failed(self) -> int:
        with self._db.transaction():
            cursor = self._db.connection.execute(
                """
                UPDATE change_queue
                SET state = 'pending', retry_count = 0, last_error = NULL, updated_at = ?
                WHERE state = 'failed'
                """,
                (self._clock.now_iso(),),
            )
        return cursor.rowcount

    def clear(self) -> int:
        with self._db.transaction():
            cursor = self._db.connection.execute("DELETE FROM change_queue")
        self._notify()
        return cursor.rowcount

    def count_live(self) -> int:
        with self._db.reading() as connection:
            return int(connection.execute("SELECT COUNT(*) FROM change_queue").fetchone()[0])

    def max_entry_id(self) -> int:
        with self._db.reading() as connection:
            return int(connection.execute("SELECT COALESCE(MAX(entry_id), 0) FROM change_queue").fetchone()[0])

    def _set_state(self, entry_id: int, state: EntryState, error: str | None) -> None:
        with self._db.transaction():
            self._db.connection.execute(
                "UPDATE change_queue SET state = ?, last_error = ?, updated_at = ? WHERE entry_id = ?",
                (state.value, error, self._clock.now_iso(), entry_id),
            )

    def _select_one(self, clause: str, params: tuple[object, ...]) -> ChangeQueueEntry | None:
        with self._db.reading() as connection:
            row = connection.execute(f"SELECT {_SELECT_COLUMNS} FROM change_queue {clause}", params).fetchone()
        return _entry_from_row(row) if row else None

    def _select_many(self, clause: str, params: tuple[object, ...]) -> list[ChangeQueueEntry]:
        with self._db.reading() as connection:
            rows = connection.execute(f"SELECT {_SELECT_COLUMNS} FROM change_queue {clause}", params).fetchall()
        return [_entry_from_row(row) for row in rows]

    def _notify(self) -> None:
        if not self._listeners:
            return
        count = self.count_live()
        for listener in list(self._listeners):
            try:
                listener(count)
            except Exception:
                logger.exception("Pending-count listener failed")


def _entry_from_row(row: sqlite3.Row) -> ChangeQueueEntry:
    return ChangeQueueEntry(
        entry_id=row["entry_id"],
        entity_type=EntityType(row["entity_type"]),
        entity_id=row["entity_id"],
        operation=Operation(row["operation"]),
        payload=json.loads(row["payload_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        retry_count=row["retry_count"],
        state=EntryState(row["state"]),
        last_error=row["last_error"],
        revision=row["revision"],
        base_updated_at=row["base_updated_at"],
        base_version=row["base_version"],
        force_overwrite=bool(row["force_overwrite"]),
    )
