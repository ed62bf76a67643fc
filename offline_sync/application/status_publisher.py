from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import logging
import threading
from typing import Any, Callable

from offline_sync.domain.sync_models import SyncPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool = False
    is_syncing: bool = False
    pending_changes: int = 0
    last_sync_time: str | None = None
    last_error: str | None = None
    phase: SyncPhase = SyncPhase.IDLE
    conflicts_pending: int = 0
    schema_errors: tuple[str, ...] = ()
    auth_required: bool = False
    auto_sync_enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["schema_errors"] = list(self.schema_errors)
        return data


StatusSubscriber = Callable[[SyncStatus], None]


class SyncStatusPublisher:
    """Observable projection of sync state for whichever UI layer is listening."""

    def __init__(self, initial: SyncStatus | None = None) -> None:
        self._lock = threading.Lock()
        self._status = initial or SyncStatus()
        self._subscribers: list[StatusSubscriber] = []

    def snapshot(self) -> SyncStatus:
        with self._lock:
            return self._status

    def subscribe(self, callback: StatusSubscriber, *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
            current = self._status
        if replay:
            self._deliver(callback, current)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: StatusSubscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def update(self, **changes: Any) -> SyncStatus:
        return self._mutate(lambda status: replace(status, **changes))

    def add_schema_error(self, description: str) -> SyncStatus:
        def _append(status: SyncStatus) -> SyncStatus:
            if description in status.schema_errors:
                return status
            return replace(status, schema_errors=status.schema_errors + (description,))

        return self._mutate(_append)

    def _mutate(self, change: Callable[[SyncStatus], SyncStatus]) -> SyncStatus:
        with self._lock:
            updated = change(self._status)
            if updated == self._status:
                return updated
            self._status = updated
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._deliver(callback, updated)
        return updated

    @staticmethod
    def _deliver(callback: StatusSubscriber, status: SyncStatus) -> None:
        try:
            callback(status)
        except Exception:
            logger.exception("Sync status subscriber failed")
