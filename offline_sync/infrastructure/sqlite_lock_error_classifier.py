from __future__ import annotations

import sqlite3


class SQLiteLockErrorClassifier:
    def is_locked_error(self, error: BaseException) -> bool:
        if not isinstance(error, sqlite3.OperationalError):
            return False
        message = str(error).lower()
        return "locked" in message or "busy" in message
