from __future__ import annotations

from typing import Any

from offline_sync.domain.models import EntityType, ObservedVersion
from offline_sync.domain.time_utils import SystemClock
from offline_sync.infrastructure.db import LocalDatabase

WATERMARK_KEY_PREFIX = "last_sync_"


class SQLiteSyncStateRepository:
    """Watermark and per-record observed server versions for one device."""

    def __init__(self, database: LocalDatabase, device_id: str, clock: Any | None = None) -> None:
        self._db = database
        self._device_id = device_id
        self._clock = clock or SystemClock()

    @property
    def watermark_key(self) -> str:
        return f"{WATERMARK_KEY_PREFIX}{self._device_id}"

    def get_watermark(self) -> str | None:
        return self.get_value(self.watermark_key)

    def set_watermark(self, server_time: str) -> None:
        self.set_value(self.watermark_key, server_time)

    def clear_watermark(self) -> None:
        with self._db.transaction():
            self._db.connection.execute("DELETE FROM sync_state WHERE key = ?", (self.watermark_key,))

    def get_value(self, key: str) -> str | None:
        with self._db.reading() as connection:
            row = connection.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_value(self, key: str, value: str | None) -> None:
        with self._db.transaction():
            self._db.connection.execute(
                """
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, self._clock.now_iso()),
            )

    def get_observed(self, entity_type: EntityType, entity_id: str) -> ObservedVersion | None:
        with self._db.reading() as connection:
            row = connection.execute(
                """
                SELECT server_updated_at, server_version FROM observed_versions
                WHERE entity_type = ? AND entity_id = ?
                """,
                (entity_type.value, entity_id),
            ).fetchone()
        if row is None:
            return None
        return ObservedVersion(server_updated_at=row["server_updated_at"], server_version=row["server_version"])

    def set_observed(self, entity_type: EntityType, entity_id: str, observed: ObservedVersion) -> None:
        with self._db.transaction():
            self._db.connection.execute(
                """
                INSERT INTO observed_versions (entity_type, entity_id, server_updated_at, server_version, observed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (entity_type, entity_id) DO UPDATE SET
                    server_updated_at = COALESCE(excluded.server_updated_at, observed_versions.server_updated_at),
                    server_version = COALESCE(excluded.server_version, observed_versions.server_version),
                    observed_at = excluded.observed_at
                """,
                (
                    entity_type.value,
                    entity_id,
                    observed.server_updated_at,
                    observed.server_version,
                    self._clock.now_iso(),
                ),
            )

    def clear_observed(self) -> None:
        with self._db.transaction():
            self._db.connection.execute("DELETE FROM observed_versions")
