from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable

from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.status_publisher import SyncStatusPublisher
from offline_sync.application.sync_runtime import (
    CancellationToken,
    RetryPolicy,
    call_with_timeout,
    sleep_with_cancellation,
)
from offline_sync.core.metrics import MetricsRegistry, metrics_registry
from offline_sync.domain.models import ChangeQueueEntry, ObservedVersion, Operation
from offline_sync.domain.ports import (
    ChangeTrackerPort,
    LocalStorePort,
    RemoteAdapterPort,
    SyncLogPort,
    SyncStatePort,
    UnitOfWork,
)
from offline_sync.domain.record_rules import clean_outbound_payload
from offline_sync.domain.schema_errors import describe_schema_error
from offline_sync.domain.sync_errors import (
    AuthRequiredError,
    RemoteConflictError,
    RemoteSyncError,
    RemoteUnavailableError,
)
from offline_sync.domain.sync_models import (
    AcceptedChange,
    ErrorKind,
    PushChange,
    RejectedChange,
    SyncLogEntry,
)
from offline_sync.domain.time_utils import SystemClock

logger = logging.getLogger(__name__)

SYNC_TYPE_PUSH = "push"


@dataclass(frozen=True)
class PushPhaseResult:
    pushed: int = 0
    failed: int = 0
    requeued: int = 0
    conflicts: int = 0
    server_time: str | None = None


@dataclass
class _Tally:
    pushed: int = 0
    failed: int = 0
    requeued: int = 0
    conflicts: int = 0
    server_time: str | None = None

    def freeze(self) -> PushPhaseResult:
        return PushPhaseResult(self.pushed, self.failed, self.requeued, self.conflicts, self.server_time)


class PushRunner:
    """Drains the change queue through the remote adapter for one Pushing phase.

    Only entries queued before the phase started are sent. Transient failures are
    retried inside the phase with backoff until the per-entry attempt budget runs
    out; every other rejection is settled per record so one bad record never holds
    the rest of the batch.
    """

    def __init__(
        self,
        *,
        unit_of_work: UnitOfWork,
        tracker: ChangeTrackerPort,
        local_store: LocalStorePort,
        sync_state: SyncStatePort,
        sync_log: SyncLogPort,
        remote: RemoteAdapterPort,
        conflicts: ConflictsService,
        publisher: SyncStatusPublisher,
        retry_policy: RetryPolicy,
        device_id: str,
        batch_size: int = 50,
        timeout_seconds: float = 15.0,
        token: CancellationToken | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._uow = unit_of_work
        self._tracker = tracker
        self._local_store = local_store
        self._sync_state = sync_state
        self._sync_log = sync_log
        self._remote = remote
        self._conflicts = conflicts
        self._publisher = publisher
        self._retry = retry_policy
        self._device_id = device_id
        self._batch_size = max(1, batch_size)
        self._timeout_seconds = timeout_seconds
        self._token = token or CancellationToken()
        self._sleeper = sleeper
        self._clock = clock or SystemClock()
        self._metrics = metrics or metrics_registry

    def run(self) -> PushPhaseResult:
        tally = _Tally()
        cutoff = self._tracker.max_entry_id()
        deferred: set[int] = set()
        while True:
            self._token.raise_if_cancelled()
            batch = self._tracker.drain(self._batch_size, max_entry_id=cutoff, exclude_ids=deferred)
            if not batch:
                break
            retry_attempt = self._push_batch(batch, tally, deferred)
            if retry_attempt:
                delay = self._retry.backoff_for(retry_attempt)
                logger.info("sync_event=push_retry_scheduled payload=%s", {"attempt": retry_attempt, "delay": delay})
                sleep_with_cancellation(delay, self._token, self._sleeper)
        return tally.freeze()

    def _push_batch(self, batch: list[ChangeQueueEntry], tally: _Tally, deferred: set[int]) -> int:
        """Returns the highest attempt number among requeued entries, 0 when nothing needs a retry."""
        changes = [self._to_change(entry) for entry in batch]
        try:
            result = call_with_timeout(lambda: self._remote.push(changes), self._timeout_seconds, operation="push")
        except (AuthRequiredError, RemoteUnavailableError):
            raise
        except RemoteSyncError as exc:
            return self._handle_batch_error(batch, exc, tally, deferred)

        if result.server_time:
            tally.server_time = result.server_time
        accepted = {item.entity_id: item for item in result.accepted}
        rejected = {item.entity_id: item for item in result.rejected}
        retry_attempt = 0
        auth_error: AuthRequiredError | None = None
        for entry in batch:
            if entry.entity_id in accepted:
                self._handle_accepted(entry, accepted[entry.entity_id], result.server_time, tally, deferred)
            elif entry.entity_id in rejected:
                rejection = rejected[entry.entity_id]
                if rejection.kind is ErrorKind.AUTH_REQUIRED:
                    auth_error = AuthRequiredError(rejection.reason)
                    continue
                retry_attempt = max(retry_attempt, self._handle_rejected(entry, rejection, tally))
            else:
                retry_attempt = max(
                    retry_attempt, self._handle_transient(entry, "No acknowledgement in push response", tally)
                )
        if auth_error is not None:
            raise auth_error
        return retry_attempt

    def _handle_batch_error(
        self,
        batch: list[ChangeQueueEntry],
        exc: RemoteSyncError,
        tally: _Tally,
        deferred: set[int],
    ) -> int:
        if exc.kind is ErrorKind.TRANSIENT_NETWORK:
            return max(self._handle_transient(entry, str(exc), tally) for entry in batch)
        if len(batch) > 1:
            # The remote refused the batch as a whole; resend one by one to find the offending records.
            logger.info("Batch of %s rejected (%s); isolating records", len(batch), exc.kind.value)
            retry_attempt = 0
            for entry in batch:
                retry_attempt = max(retry_attempt, self._push_batch([entry], tally, deferred))
            return retry_attempt
        entry = batch[0]
        server_payload = exc.server_payload if isinstance(exc, RemoteConflictError) else None
        rejection = RejectedChange(
            entity_id=entry.entity_id,
            reason=str(exc),
            kind=exc.kind,
            server_payload=server_payload,
        )
        return self._handle_rejected(entry, rejection, tally)

    def _handle_accepted(
        self,
        entry: ChangeQueueEntry,
        accepted: AcceptedChange,
        server_time: str | None,
        tally: _Tally,
        deferred: set[int],
    ) -> None:
        observed = ObservedVersion(
            server_updated_at=accepted.updated_at or server_time,
            server_version=accepted.version,
        )
        with self._uow.transaction():
            removed = self._tracker.ack(entry.entry_id, entry.revision)
            self._sync_state.set_observed(entry.entity_type, entry.entity_id, observed)
            if removed and entry.operation is not Operation.DELETE:
                self._local_store.mark_synced(entry.entity_type, entry.entity_id)
            if not removed:
                self._tracker.reset_to_pending(entry.entity_type, entry.entity_id, base=observed, force=False)
            self._append_log(entry, "success")
        if not removed:
            deferred.add(entry.entry_id)
        tally.pushed += 1
        self._metrics.increment("push_accepted")

    def _handle_rejected(self, entry: ChangeQueueEntry, rejection: RejectedChange, tally: _Tally) -> int:
        self._metrics.increment("push_rejected")
        if rejection.kind is ErrorKind.TRANSIENT_NETWORK:
            return self._handle_transient(entry, rejection.reason, tally)
        if rejection.kind is ErrorKind.CONFLICT:
            with self._uow.transaction():
                self._tracker.mark_conflict(entry.entry_id, rejection.reason)
                self._append_log(entry, "failed", f"conflict: {rejection.reason}")
            self._conflicts.register(
                entry.entity_type,
                entry.entity_id,
                local_payload=entry.payload,
                server_payload=rejection.server_payload or {},
                server_updated_at=rejection.server_updated_at,
                server_version=rejection.server_version,
                local_operation=entry.operation,
            )
            tally.conflicts += 1
            return 0
        if rejection.kind is ErrorKind.SCHEMA_MISMATCH:
            description = describe_schema_error(rejection.reason) or rejection.reason
            self._publisher.add_schema_error(description)
        self._publisher.update(last_error=f"{entry.entity_type.value} {entry.entity_id}: {rejection.reason}")
        with self._uow.transaction():
            self._tracker.mark_failed(entry.entry_id, rejection.reason)
            self._append_log(entry, "failed", f"{rejection.kind.value}: {rejection.reason}")
        logger.warning(
            "Push of %s/%s rejected kind=%s: %s",
            entry.entity_type.value,
            entry.entity_id,
            rejection.kind.value,
            rejection.reason,
        )
        tally.failed += 1
        return 0

    def _handle_transient(self, entry: ChangeQueueEntry, message: str, tally: _Tally) -> int:
        with self._uow.transaction():
            updated = self._tracker.requeue(entry.entry_id, message)
            attempts = updated.retry_count if updated else entry.retry_count + 1
            if self._retry.is_exhausted(attempts):
                final_message = f"Gave up after {attempts} attempts: {message}"
                self._tracker.mark_failed(entry.entry_id, final_message)
                self._append_log(entry, "failed", final_message)
            else:
                self._append_log(entry, "failed", f"Attempt {attempts}/{self._retry.max_attempts}: {message}")
        if self._retry.is_exhausted(attempts):
            logger.warning(
                "Push of %s/%s failed permanently after %s attempts",
                entry.entity_type.value,
                entry.entity_id,
                attempts,
            )
            self._publisher.update(last_error=f"{entry.entity_type.value} {entry.entity_id}: {message}")
            tally.failed += 1
            return 0
        tally.requeued += 1
        return attempts

    def _to_change(self, entry: ChangeQueueEntry) -> PushChange:
        payload = entry.payload
        if entry.operation is not Operation.DELETE:
            payload = clean_outbound_payload(entry.entity_type, payload)
        return PushChange(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            operation=entry.operation,
            payload=payload,
            queued_at=entry.created_at,
            base_updated_at=entry.base_updated_at,
            base_version=entry.base_version,
            force=entry.force_overwrite,
        )

    def _append_log(self, entry: ChangeQueueEntry, status: str, error_message: str | None = None) -> None:
        self._sync_log.append(
            SyncLogEntry(
                device_id=self._device_id,
                sync_type=SYNC_TYPE_PUSH,
                entity_type=entry.entity_type.value,
                entity_id=entry.entity_id,
                operation=entry.operation.value,
                status=status,
                created_at=self._clock.now_iso(),
                error_message=error_message,
            )
        )
