from __future__ import annotations

from collections import OrderedDict
import logging
import threading
import time
import uuid
from typing import Any, Callable, Literal

from offline_sync.application.sync_runtime import RetryPolicy, sleep_with_cancellation
from offline_sync.core.errors import ConflictNotFoundError, TransientExternalError, ValidationError
from offline_sync.core.metrics import MetricsRegistry, metrics_registry
from offline_sync.domain.models import ConflictRecord, EntityType, ObservedVersion, Operation
from offline_sync.domain.ports import ChangeTrackerPort, LocalStorePort, SyncStatePort, UnitOfWork
from offline_sync.domain.time_utils import SystemClock

logger = logging.getLogger(__name__)

KeepSide = Literal["local", "server"]
ConflictCountListener = Callable[[int], None]

_BULK_RETRY = RetryPolicy(max_attempts=3, initial_backoff_seconds=0.2, max_backoff_seconds=2.0, jitter_ratio=0.0)


class ConflictsService:
    """In-memory registry of divergent records and the actions that settle them.

    Conflict records live only for the process lifetime; the change queue keeps the
    affected entries parked in the ``conflict`` state, so a restart re-detects them on
    the next pull.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        local_store: LocalStorePort,
        tracker: ChangeTrackerPort,
        sync_state: SyncStatePort,
        *,
        clock: Any | None = None,
        is_transient_error: Callable[[BaseException], bool] | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._uow = unit_of_work
        self._local_store = local_store
        self._tracker = tracker
        self._sync_state = sync_state
        self._clock = clock or SystemClock()
        self._is_transient_error = is_transient_error or (lambda exc: isinstance(exc, TransientExternalError))
        self._sleeper = sleeper
        self._metrics = metrics or metrics_registry
        self._lock = threading.RLock()
        self._conflicts: OrderedDict[str, ConflictRecord] = OrderedDict()
        self._listeners: list[ConflictCountListener] = []

    def add_listener(self, listener: ConflictCountListener) -> None:
        self._listeners.append(listener)

    def register(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        local_payload: dict[str, Any],
        server_payload: dict[str, Any],
        server_updated_at: str | None = None,
        server_version: int | None = None,
        local_operation: Operation = Operation.UPDATE,
        server_deleted: bool = False,
    ) -> ConflictRecord:
        with self._lock:
            previous = self._find(entity_type, entity_id)
            record = ConflictRecord(
                conflict_id=previous.conflict_id if previous else str(uuid.uuid4()),
                entity_type=entity_type,
                entity_id=entity_id,
                local_payload=dict(local_payload),
                server_payload=dict(server_payload),
                detected_at=previous.detected_at if previous else self._clock.now_iso(),
                server_updated_at=server_updated_at,
                server_version=server_version,
                local_operation=local_operation,
                server_deleted=server_deleted,
            )
            self._conflicts[record.conflict_id] = record
        if previous is None:
            self._metrics.increment("conflicts_detected")
            logger.info("Conflict registered for %s/%s", entity_type.value, entity_id)
        else:
            logger.debug("Conflict %s refreshed with the latest server copy", record.conflict_id)
        self._notify()
        return record

    def list_conflicts(self) -> list[ConflictRecord]:
        with self._lock:
            return list(self._conflicts.values())

    def count_conflicts(self) -> int:
        with self._lock:
            return len(self._conflicts)

    def conflicts_by_entity_type(self) -> dict[EntityType, list[ConflictRecord]]:
        grouped: dict[EntityType, list[ConflictRecord]] = {}
        for conflict in self.list_conflicts():
            grouped.setdefault(conflict.entity_type, []).append(conflict)
        return grouped

    def get(self, conflict_id: str) -> ConflictRecord:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        return conflict

    def keep_local(self, conflict_id: str) -> None:
        conflict = self.get(conflict_id)
        with self._uow.transaction():
            self._apply_keep_local(conflict)
        self._forget([conflict.conflict_id])

    def keep_server(self, conflict_id: str) -> None:
        conflict = self.get(conflict_id)
        with self._uow.transaction():
            self._apply_keep_server(conflict)
        self._forget([conflict.conflict_id])

    def merge(self, conflict_id: str, merged_payload: dict[str, Any]) -> None:
        if not isinstance(merged_payload, dict) or not merged_payload:
            raise ValidationError("A merge needs a non-empty payload")
        conflict = self.get(conflict_id)
        with self._uow.transaction():
            self._apply_merge(conflict, merged_payload)
        self._forget([conflict.conflict_id])

    def resolve(self, conflict_id: str, keep: KeepSide) -> None:
        if keep == "local":
            self.keep_local(conflict_id)
        elif keep == "server":
            self.keep_server(conflict_id)
        else:
            raise ValidationError(f"Unknown resolution side: {keep!r}")

    def resolve_all(self, keep: KeepSide) -> int:
        if keep not in ("local", "server"):
            raise ValidationError(f"Unknown resolution side: {keep!r}")
        apply = self._apply_keep_local if keep == "local" else self._apply_keep_server
        return self._resolve_batch(lambda conflict: apply(conflict))

    def clear(self) -> None:
        with self._lock:
            self._conflicts.clear()
        self._notify()

    def _resolve_batch(self, apply: Callable[[ConflictRecord], None]) -> int:
        conflicts = self.list_conflicts()
        if not conflicts:
            return 0
        attempts = 0
        while True:
            attempts += 1
            try:
                with self._uow.transaction():
                    for conflict in conflicts:
                        apply(conflict)
                break
            except Exception as exc:
                if not self._is_transient_error(exc) or _BULK_RETRY.is_exhausted(attempts):
                    logger.error("Bulk conflict resolution rolled back after %s attempts: %s", attempts, exc)
                    raise
                delay = _BULK_RETRY.backoff_for(attempts)
                logger.warning("Bulk conflict resolution hit a transient error, retrying in %.2fs: %s", delay, exc)
                sleep_with_cancellation(delay, None, self._sleeper)
        self._forget([conflict.conflict_id for conflict in conflicts])
        logger.info("Resolved %s conflicts in one batch", len(conflicts))
        return len(conflicts)

    def _apply_keep_local(self, conflict: ConflictRecord) -> None:
        # The push overwrites the server copy even when the rejection carried no
        # version to rebase on.
        observed = self._observed_from(conflict)
        self._sync_state.set_observed(conflict.entity_type, conflict.entity_id, observed)
        if self._tracker.get(conflict.entity_type, conflict.entity_id) is not None:
            self._tracker.reset_to_pending(conflict.entity_type, conflict.entity_id, base=observed, force=True)
        else:
            self._tracker.enqueue(
                conflict.entity_type,
                conflict.entity_id,
                conflict.local_operation,
                conflict.local_payload,
                base=observed,
                force=True,
            )

    def _apply_keep_server(self, conflict: ConflictRecord) -> None:
        self._tracker.discard(conflict.entity_type, conflict.entity_id)
        if not conflict.server_payload and not conflict.server_deleted:
            logger.warning(
                "No server copy of %s/%s came with the conflict; it will arrive with the next pull",
                conflict.entity_type.value,
                conflict.entity_id,
            )
            return
        observed = self._observed_from(conflict)
        self._local_store.apply_remote(
            conflict.entity_type,
            conflict.entity_id,
            conflict.server_payload,
            observed.server_updated_at,
            deleted=conflict.server_deleted,
            server_version=observed.server_version,
        )

    def _apply_merge(self, conflict: ConflictRecord, merged_payload: dict[str, Any]) -> None:
        self._apply_keep_server(conflict)
        operation = Operation.CREATE if conflict.server_deleted else Operation.UPDATE
        self._local_store.write(conflict.entity_type, conflict.entity_id, merged_payload, operation)
        self._tracker.reset_to_pending(conflict.entity_type, conflict.entity_id, force=True)

    def _forget(self, conflict_ids: list[str]) -> None:
        with self._lock:
            for conflict_id in conflict_ids:
                self._conflicts.pop(conflict_id, None)
        self._notify()

    def _find(self, entity_type: EntityType, entity_id: str) -> ConflictRecord | None:
        for conflict in self._conflicts.values():
            if conflict.entity_type is entity_type and conflict.entity_id == entity_id:
                return conflict
        return None

    @staticmethod
    def _observed_from(conflict: ConflictRecord) -> ObservedVersion:
        updated_at = conflict.server_updated_at or conflict.server_payload.get("updated_at")
        version = conflict.server_version
        if version is None and isinstance(conflict.server_payload.get("version"), int):
            version = conflict.server_payload["version"]
        return ObservedVersion(server_updated_at=updated_at, server_version=version)

    def _notify(self) -> None:
        count = self.count_conflicts()
        for listener in list(self._listeners):
            try:
                listener(count)
            except Exception:
                logger.exception("Conflict-count listener failed")
