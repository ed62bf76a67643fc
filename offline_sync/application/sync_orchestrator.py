from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import contextlib
from dataclasses import replace
import logging
import threading
import time
from typing import Any, Callable, Iterator, Protocol

from offline_sync.application.conflicts_service import ConflictsService, KeepSide
from offline_sync.application.pull_planner import plan_pull_action
from offline_sync.application.push_runner import PushPhaseResult, PushRunner
from offline_sync.application.status_publisher import SyncStatusPublisher
from offline_sync.application.sync_runtime import (
    CancellationToken,
    RetryPolicy,
    StructuredFileLogger,
    call_with_timeout,
    sleep_with_cancellation,
)
from offline_sync.application.sync_state_machine import SyncStateMachine
from offline_sync.core.errors import AppError, SyncCancelledError
from offline_sync.core.metrics import MetricsRegistry, metrics_registry
from offline_sync.core.observability import OperationContext, log_event, log_operational_error
from offline_sync.domain.models import SyncSettings
from offline_sync.domain.ports import (
    ChangeTrackerPort,
    ConnectivityProbePort,
    LocalStorePort,
    RemoteAdapterPort,
    SettingsStorePort,
    SyncLogPort,
    SyncStatePort,
    UnitOfWork,
)
from offline_sync.domain.sync_errors import AuthRequiredError, RemoteSyncError, RemoteUnavailableError, is_retryable
from offline_sync.domain.sync_models import (
    OperationResult,
    PullResult,
    SyncCycleSummary,
    SyncLogEntry,
    SyncPhase,
    SyncTrigger,
)
from offline_sync.domain.time_utils import SystemClock

logger = logging.getLogger(__name__)

ERROR_OFFLINE = "Device is offline"
ERROR_NOT_CONFIGURED = "Remote not configured"
ERROR_AUTH_PAUSED = "Sync paused until re-authentication"
ERROR_AUTO_SYNC_OFF = "Automatic sync is disabled"
ERROR_IN_PROGRESS = "Sync already in progress"
ERROR_SHUT_DOWN = "Sync engine is shut down"
ERROR_CANCELLED = "Sync cancelled"

SYNC_TYPE_PULL = "pull"
SYNC_TYPE_RESET = "reset"
SYNC_TYPE_CYCLE = "cycle"


class BackgroundService(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class SyncOrchestrator:
    """Coordinates the change queue, the remote adapter and the conflict resolver.

    Only one cycle runs at a time in the whole process. A trigger that lands while
    a cycle is running is folded into a single rerun once that cycle finishes.
    """

    def __init__(
        self,
        *,
        unit_of_work: UnitOfWork,
        local_store: LocalStorePort,
        tracker: ChangeTrackerPort,
        sync_state: SyncStatePort,
        sync_log: SyncLogPort,
        remote: RemoteAdapterPort | None,
        conflicts: ConflictsService,
        publisher: SyncStatusPublisher,
        settings: SyncSettings,
        connectivity: ConnectivityProbePort | None = None,
        settings_store: SettingsStorePort | None = None,
        structured_logger: StructuredFileLogger | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Any | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._uow = unit_of_work
        self._local_store = local_store
        self._tracker = tracker
        self._sync_state = sync_state
        self._sync_log = sync_log
        self._remote = remote
        self._conflicts = conflicts
        self._publisher = publisher
        self._settings = settings
        self._connectivity = connectivity
        self._settings_store = settings_store
        self._structured_logger = structured_logger
        self._sleeper = sleeper
        self._clock = clock or SystemClock()
        self._metrics = metrics or metrics_registry

        self._state = SyncStateMachine()
        self._cycle_lock = threading.Lock()
        self._flag_lock = threading.Lock()
        self._rerun_requested = False
        self._token = CancellationToken()
        self._shut_down = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-worker")
        self._services: list[BackgroundService] = []

        self._state.add_listener(self._on_phase_changed)
        self._tracker.add_listener(lambda count: self._publisher.update(pending_changes=count))
        self._conflicts.add_listener(lambda count: self._publisher.update(conflicts_pending=count))
        self._publisher.update(
            pending_changes=self._tracker.count_live(),
            conflicts_pending=self._conflicts.count_conflicts(),
            auto_sync_enabled=settings.auto_sync,
            last_sync_time=self._sync_state.get_watermark(),
        )

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    @property
    def phase(self) -> SyncPhase:
        return self._state.phase

    @property
    def state_machine(self) -> SyncStateMachine:
        return self._state

    def attach_service(self, service: BackgroundService) -> None:
        self._services.append(service)

    # Operator surface -----------------------------------------------------

    def manual_sync(self) -> OperationResult:
        return self.trigger(SyncTrigger.MANUAL)

    def push_changes(self) -> OperationResult:
        blocked = self._guard(SyncTrigger.MANUAL)
        if blocked is not None:
            return blocked
        return self._run_exclusive(self._run_push_only, "push")

    def pull_changes(self) -> OperationResult:
        blocked = self._guard(SyncTrigger.MANUAL)
        if blocked is not None:
            return blocked
        return self._run_exclusive(self._run_pull_only, "pull")

    def reset_and_resync(self) -> OperationResult:
        blocked = self._guard(SyncTrigger.MANUAL)
        if blocked is not None:
            return blocked
        if not self._try_acquire_cycle(coalesce=False):
            return OperationResult(False, error=ERROR_IN_PROGRESS)
        try:
            return self._run_reset()
        finally:
            self._release_cycle()

    def trigger(self, reason: SyncTrigger | str = SyncTrigger.MANUAL) -> OperationResult:
        trigger = SyncTrigger(reason)
        blocked = self._guard(trigger)
        if blocked is not None:
            logger.info("Sync trigger %s ignored: %s", trigger.value, blocked.error)
            return blocked
        return self._run_exclusive(lambda: self._run_full_cycle(trigger), trigger.value)

    def trigger_async(self, reason: SyncTrigger | str = SyncTrigger.MANUAL) -> Future[OperationResult]:
        if self._shut_down:
            future: Future[OperationResult] = Future()
            future.set_result(OperationResult(False, error=ERROR_SHUT_DOWN))
            return future
        return self._executor.submit(self.trigger, reason)

    def resolve_conflict(self, conflict_id: str, keep: KeepSide) -> OperationResult:
        with self._holding_cycle():
            self._conflicts.resolve(conflict_id, keep)
        return OperationResult(True, count=1)

    def merge_conflict(self, conflict_id: str, merged_payload: dict[str, Any]) -> OperationResult:
        with self._holding_cycle():
            self._conflicts.merge(conflict_id, merged_payload)
        return OperationResult(True, count=1)

    def resolve_all(self, keep: KeepSide) -> OperationResult:
        with OperationContext("resolve_all"), self._holding_cycle():
            try:
                count = self._conflicts.resolve_all(keep)
            except AppError as exc:
                self._publisher.update(last_error=str(exc))
                return OperationResult(False, error=str(exc))
        self._log("conflicts_resolved", keep=keep, count=count)
        return OperationResult(True, count=count)

    def retry_failed(self) -> OperationResult:
        count = self._tracker.retry_failed()
        self._log("failed_entries_requeued", count=count)
        return OperationResult(True, count=count)

    def toggle_auto_sync(self) -> bool:
        self._settings = replace(self._settings, auto_sync=not self._settings.auto_sync)
        if self._settings_store is not None:
            self._settings = self._settings_store.save(self._settings)
        self._publisher.update(auto_sync_enabled=self._settings.auto_sync)
        logger.info("Automatic sync %s", "enabled" if self._settings.auto_sync else "disabled")
        return self._settings.auto_sync

    def reset_schema_errors(self) -> None:
        self._publisher.update(schema_errors=())

    def mark_reauthenticated(self) -> None:
        self._publisher.update(auth_required=False, last_error=None)

    def on_connectivity_changed(self, online: bool) -> None:
        was_online = self._publisher.snapshot().is_online
        self._publisher.update(is_online=online)
        if online and not was_online:
            logger.info("Connectivity restored")
            self.trigger_async(SyncTrigger.CONNECTIVITY)
        elif not online and was_online:
            logger.info("Connectivity lost")

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._connectivity is not None:
            self._publisher.update(is_online=self._connectivity.is_online())
        for service in self._services:
            service.start()
        if self._settings.sync_on_startup:
            self.trigger_async(SyncTrigger.STARTUP)

    def shutdown(self) -> None:
        """Abandons the running cycle; pushes are idempotent so the next start resumes safely."""
        self._shut_down = True
        self._token.cancel()
        for service in self._services:
            service.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Sync engine shut down")

    # Guards and exclusivity -----------------------------------------------

    def _guard(self, trigger: SyncTrigger) -> OperationResult | None:
        if self._shut_down:
            return OperationResult(False, error=ERROR_SHUT_DOWN)
        if self._remote is None or not self._settings.remote_configured:
            return OperationResult(False, error=ERROR_NOT_CONFIGURED)
        status = self._publisher.snapshot()
        if trigger.is_automatic:
            if not self._settings.auto_sync:
                return OperationResult(False, error=ERROR_AUTO_SYNC_OFF)
            if trigger is SyncTrigger.STARTUP and not self._settings.sync_on_startup:
                return OperationResult(False, error=ERROR_AUTO_SYNC_OFF)
            if trigger is SyncTrigger.CONNECTIVITY and not self._settings.sync_when_online:
                return OperationResult(False, error=ERROR_AUTO_SYNC_OFF)
            if status.auth_required:
                return OperationResult(False, error=ERROR_AUTH_PAUSED)
        if not self._is_online():
            return OperationResult(False, error=ERROR_OFFLINE)
        return None

    def _is_online(self) -> bool:
        if self._connectivity is None:
            return True
        online = self._connectivity.is_online()
        self._publisher.update(is_online=online)
        return online

    def _run_exclusive(self, work: Callable[[], OperationResult], label: str) -> OperationResult:
        if not self._try_acquire_cycle(coalesce=True):
            logger.info("Sync %s coalesced into the running cycle", label)
            return OperationResult(True, coalesced=True)
        try:
            return work()
        finally:
            self._release_cycle()

    @contextlib.contextmanager
    def _holding_cycle(self) -> Iterator[None]:
        self._cycle_lock.acquire()
        try:
            yield
        finally:
            self._release_cycle()

    def _try_acquire_cycle(self, *, coalesce: bool) -> bool:
        # Failing to acquire and raising the rerun flag happen under one lock, so the
        # holder either sees the flag before releasing or the caller gets the lock.
        with self._flag_lock:
            if self._cycle_lock.acquire(blocking=False):
                return True
            if coalesce:
                self._rerun_requested = True
            return False

    def _keep_for_rerun(self) -> bool:
        with self._flag_lock:
            if self._rerun_requested:
                self._rerun_requested = False
                return True
            self._cycle_lock.release()
            return False

    def _release_cycle(self) -> None:
        """Releases the cycle lock after running every cycle requested while it was held."""
        held = True
        try:
            while self._keep_for_rerun():
                if self._guard(SyncTrigger.MANUAL) is not None:
                    continue
                logger.info("Running coalesced sync cycle")
                self._run_full_cycle(SyncTrigger.MANUAL)
            held = False
        finally:
            if held:
                self._cycle_lock.release()

    # Cycles ---------------------------------------------------------------

    def _run_full_cycle(self, trigger: SyncTrigger) -> OperationResult:
        with self._metrics.timer("sync_cycle_ms"), OperationContext("sync_cycle") as context:
            self._log("sync_started", trigger=trigger.value, correlation_id=context.correlation_id)
            self._metrics.increment("sync_cycles")
            try:
                self._state.transition(SyncPhase.PUSHING)
                pushed = self._push_phase()
                self._state.transition(SyncPhase.PULLING)
                pulled, server_time = self._pull_phase()
                self._state.transition(SyncPhase.RECONCILING)
                committed = self._reconcile(server_time)
                self._state.transition(SyncPhase.IDLE)
            except Exception as exc:
                return self._fail_cycle(exc, trigger.value)
            summary = SyncCycleSummary(
                pushed=pushed.pushed,
                push_failed=pushed.failed,
                requeued=pushed.requeued,
                pulled=pulled["applied"],
                skipped_stale=pulled["skipped"],
                conflicts_detected=pushed.conflicts + pulled["conflicts"],
                watermark_committed=committed,
            )
            self._finish_success(summary)
            return OperationResult(True, count=summary.total_applied)

    def _run_push_only(self) -> OperationResult:
        with OperationContext("push"):
            try:
                self._state.transition(SyncPhase.PUSHING)
                pushed = self._push_phase()
                self._state.transition(SyncPhase.IDLE)
            except Exception as exc:
                return self._fail_cycle(exc, "push")
            self._finish_success(
                SyncCycleSummary(
                    pushed=pushed.pushed,
                    push_failed=pushed.failed,
                    requeued=pushed.requeued,
                    conflicts_detected=pushed.conflicts,
                )
            )
            return OperationResult(True, count=pushed.pushed)

    def _run_pull_only(self) -> OperationResult:
        with OperationContext("pull"):
            try:
                self._state.transition(SyncPhase.PULLING)
                pulled, server_time = self._pull_phase()
                self._state.transition(SyncPhase.RECONCILING)
                committed = self._reconcile(server_time)
                self._state.transition(SyncPhase.IDLE)
            except Exception as exc:
                return self._fail_cycle(exc, "pull")
            self._finish_success(
                SyncCycleSummary(
                    pulled=pulled["applied"],
                    skipped_stale=pulled["skipped"],
                    conflicts_detected=pulled["conflicts"],
                    watermark_committed=committed,
                )
            )
            return OperationResult(True, count=pulled["applied"])

    def _run_reset(self) -> OperationResult:
        with OperationContext("reset_and_resync"):
            self._log("reset_started")
            try:
                self._state.transition(SyncPhase.RESETTING)
                snapshot = self._call_remote(
                    lambda: self._remote_adapter().fetch_snapshot(self._settings.entity_types), "snapshot"
                )
                with self._uow.transaction():
                    self._tracker.clear()
                    count = self._local_store.replace_all(snapshot.records)
                    self._sync_state.set_watermark(snapshot.server_time)
                    self._append_log(SYNC_TYPE_RESET, "success", operation="reset")
                self._conflicts.clear()
                self._state.transition(SyncPhase.IDLE)
            except Exception as exc:
                return self._fail_cycle(exc, "reset")
            self._publisher.update(
                last_sync_time=snapshot.server_time,
                last_error=None,
                pending_changes=self._tracker.count_live(),
            )
            self._log("reset_completed", count=count, per_type=_count_by_type(snapshot))
            return OperationResult(True, count=count)

    def _push_phase(self) -> PushPhaseResult:
        runner = PushRunner(
            unit_of_work=self._uow,
            tracker=self._tracker,
            local_store=self._local_store,
            sync_state=self._sync_state,
            sync_log=self._sync_log,
            remote=self._remote_adapter(),
            conflicts=self._conflicts,
            publisher=self._publisher,
            retry_policy=RetryPolicy.from_settings(self._settings),
            device_id=self._settings.device_id,
            batch_size=self._settings.batch_size,
            timeout_seconds=self._settings.request_timeout_seconds,
            token=self._token,
            sleeper=self._sleeper,
            clock=self._clock,
            metrics=self._metrics,
        )
        result = runner.run()
        self._log(
            "push_completed",
            pushed=result.pushed,
            failed=result.failed,
            requeued=result.requeued,
            conflicts=result.conflicts,
        )
        return result

    def _pull_phase(self) -> tuple[dict[str, int], str]:
        watermark = self._sync_state.get_watermark()
        result: PullResult = self._call_remote(
            lambda: self._remote_adapter().pull_since(watermark, self._settings.entity_types), "pull"
        )
        stats = {"applied": 0, "skipped": 0, "conflicts": 0}
        for record in result.records:
            self._token.raise_if_cancelled()
            live_entry = self._tracker.get(record.entity_type, record.entity_id)
            observed = self._sync_state.get_observed(record.entity_type, record.entity_id)
            action = plan_pull_action(record, live_entry, observed)
            if action.command == "APPLY":
                self._local_store.apply_remote(
                    record.entity_type,
                    record.entity_id,
                    record.payload,
                    record.updated_at,
                    deleted=record.deleted,
                    server_version=record.version,
                )
                stats["applied"] += 1
                self._metrics.increment("pull_applied")
            elif action.command == "REGISTER_CONFLICT" and live_entry is not None:
                self._tracker.mark_conflict(live_entry.entry_id, "Remote copy changed since last observed")
                self._conflicts.register(
                    record.entity_type,
                    record.entity_id,
                    local_payload=live_entry.payload,
                    server_payload=record.payload,
                    server_updated_at=record.updated_at,
                    server_version=record.version,
                    local_operation=live_entry.operation,
                    server_deleted=record.deleted,
                )
                stats["conflicts"] += 1
            else:
                stats["skipped"] += 1
                logger.debug(
                    "Pulled %s/%s skipped: %s", record.entity_type.value, record.entity_id, action.reason_code
                )
        self._append_log(SYNC_TYPE_PULL, "success", operation="pull")
        self._log("pull_completed", since=watermark, server_time=result.server_time, **stats)
        return stats, result.server_time

    def _reconcile(self, server_time: str) -> bool:
        outstanding = self._conflicts.count_conflicts()
        if outstanding:
            logger.info("Holding watermark: %s unresolved conflicts", outstanding)
            return False
        self._sync_state.set_watermark(server_time)
        return True

    def _call_remote(self, call: Callable[[], Any], operation: str) -> Any:
        policy = RetryPolicy.from_settings(self._settings)
        attempts = 0
        while True:
            attempts += 1
            self._token.raise_if_cancelled()
            try:
                return call_with_timeout(call, self._settings.request_timeout_seconds, operation=operation)
            except RemoteSyncError as exc:
                if isinstance(exc, RemoteUnavailableError) or not is_retryable(exc) or policy.is_exhausted(attempts):
                    raise
                delay = policy.backoff_for(attempts)
                self._log("remote_retry_scheduled", operation=operation, attempt=attempts, backoff_seconds=delay)
                sleep_with_cancellation(delay, self._token, self._sleeper)

    def _remote_adapter(self) -> RemoteAdapterPort:
        if self._remote is None:
            raise AppError(ERROR_NOT_CONFIGURED)
        return self._remote

    # Outcome bookkeeping --------------------------------------------------

    def _finish_success(self, summary: SyncCycleSummary) -> None:
        status = self._publisher.snapshot()
        self._publisher.update(
            last_sync_time=self._clock.now_iso(),
            last_error=None if not summary.push_failed else status.last_error,
            pending_changes=self._tracker.count_live(),
            conflicts_pending=self._conflicts.count_conflicts(),
        )
        self._log("sync_succeeded", summary=summary.to_dict())

    def _fail_cycle(self, exc: Exception, label: str) -> OperationResult:
        self._state.fail()
        if isinstance(exc, SyncCancelledError):
            self._log("sync_cancelled", operation=label)
            return OperationResult(False, error=ERROR_CANCELLED)
        message = str(exc) or exc.__class__.__name__
        changes: dict[str, Any] = {"last_error": message, "pending_changes": self._tracker.count_live()}
        if isinstance(exc, AuthRequiredError):
            changes["auth_required"] = True
        self._publisher.update(**changes)
        if isinstance(exc, AppError) and not isinstance(exc, AuthRequiredError):
            logger.warning("Sync %s aborted: %s", label, message)
        else:
            log_operational_error(f"Sync {label} failed", exc=exc, extra={"operation": label})
        self._append_log(SYNC_TYPE_CYCLE, "failed", operation=label, error_message=message)
        self._log("sync_failed", operation=label, error=message)
        return OperationResult(False, error=message)

    def _on_phase_changed(self, previous: SyncPhase, current: SyncPhase) -> None:
        self._publisher.update(
            phase=current,
            is_syncing=current not in {SyncPhase.IDLE, SyncPhase.ERROR},
        )

    def _append_log(
        self,
        sync_type: str,
        status: str,
        *,
        operation: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self._sync_log.append(
            SyncLogEntry(
                device_id=self._settings.device_id,
                sync_type=sync_type,
                entity_type=None,
                entity_id=None,
                operation=operation,
                status=status,
                created_at=self._clock.now_iso(),
                error_message=error_message,
            )
        )

    def _log(self, event: str, **payload: object) -> None:
        log_event(logger, event, payload)
        if self._structured_logger:
            self._structured_logger.log(event, **payload)


def _count_by_type(result: PullResult) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in result.records:
        if record.deleted:
            continue
        counts[record.entity_type.value] = counts.get(record.entity_type.value, 0) + 1
    return counts
