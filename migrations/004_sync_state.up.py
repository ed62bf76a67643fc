from __future__ import annotations

import sqlite3
from datetime import datetime, timezone


def run(connection: sqlite3.Connection) -> None:
    """Seeds observed versions for records that were already in sync before tracking existed."""
    now_iso = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    cursor = connection.cursor()
    cursor.execute(
        """
        INSERT OR IGNORE INTO observed_versions (entity_type, entity_id, server_updated_at, server_version, observed_at)
        SELECT entity_type, entity_id, updated_at, NULL, ?
        FROM entity_records
        WHERE is_synced = 1
        """,
        (now_iso,),
    )
