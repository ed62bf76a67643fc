from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import logging
import sqlite3
import sys
from pathlib import Path
from typing import Any

from offline_sync.application.sync_diagnostics import map_error_to_operator_message
from offline_sync.bootstrap.container import AppContainer, build_container
from offline_sync.bootstrap.logging import (
    bind_sync_context,
    clear_sync_context,
    configure_logging,
    install_exception_hook,
)
from offline_sync.bootstrap.settings import resolve_runtime_paths
from offline_sync.core.errors import BusinessError
from offline_sync.core.observability import OperationContext
from offline_sync.domain.models import ConflictRecord, EntryState
from offline_sync.domain.sync_models import OperationResult
from offline_sync.infrastructure.db import get_connection
from offline_sync.infrastructure.migrations import MigrationRunner

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERNAL_ERROR = 3

logger = logging.getLogger("offline_sync.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="offline-sync", description="Offline-first POS data synchronisation")
    parser.add_argument("--db", default=None, help="Path to the local SQLite file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sync", help="Run a full push, pull and reconcile cycle")
    subparsers.add_parser("push", help="Push queued local changes only")
    subparsers.add_parser("pull", help="Pull remote changes only")
    subparsers.add_parser("reset", help="Discard local sync state and rebuild from the server snapshot")
    subparsers.add_parser("status", help="Show queue and sync status")
    subparsers.add_parser("conflicts", help="List records changed on both sides")

    resolve = subparsers.add_parser("resolve", help="Settle one conflict or all of them")
    resolve.add_argument("--keep", choices=["local", "server"], required=True)
    resolve.add_argument("--id", dest="conflict_id", default=None, help="Conflict id; all conflicts when omitted")

    subparsers.add_parser("retry-failed", help="Requeue entries that exhausted their retries")

    log_parser = subparsers.add_parser("log", help="Show the most recent sync log rows")
    log_parser.add_argument("--limit", type=int, default=50)

    migrate = subparsers.add_parser("migrate", help="Manage the local schema")
    migrate.add_argument("action", choices=["up", "down", "status"])
    migrate.add_argument("--steps", type=int, default=1, help="Migrations to roll back")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    paths = resolve_runtime_paths(Path(args.db) if args.db else None)
    configure_logging(paths.log_dir)
    install_exception_hook()

    db_path = paths.db_path
    with OperationContext(f"cli_{args.command}"):
        try:
            if args.command == "migrate":
                return _run_migrate(db_path, args.action, args.steps)
            container = build_container(
                lambda: get_connection(db_path),
                log_dir=paths.log_dir,
                start_background_services=False,
            )
            bind_sync_context(container.settings.device_id, lambda: container.orchestrator.phase.value)
            try:
                return _dispatch(container, args)
            finally:
                clear_sync_context()
                container.close()
        except BusinessError as exc:
            _emit({"success": False, "error": str(exc)})
            return EXIT_FAILED
        except Exception as exc:
            logger.exception("CLI command %s failed", args.command)
            _emit({"success": False, "error": map_error_to_operator_message(exc).to_dict()})
            return EXIT_INTERNAL_ERROR


def _dispatch(container: AppContainer, args: argparse.Namespace) -> int:
    orchestrator = container.orchestrator
    command = args.command
    if command == "sync":
        return _emit_result(orchestrator.manual_sync(), container)
    if command == "push":
        return _emit_result(orchestrator.push_changes(), container)
    if command == "pull":
        return _emit_result(orchestrator.pull_changes(), container)
    if command == "reset":
        return _emit_result(orchestrator.reset_and_resync(), container)
    if command == "retry-failed":
        return _emit_result(orchestrator.retry_failed(), container)
    if command == "status":
        _emit(_status_payload(container))
        return EXIT_OK
    if command == "conflicts":
        _rehydrate_conflicts(container)
        conflicts = container.conflicts_service.list_conflicts()
        _emit({"success": True, "count": len(conflicts), "conflicts": [_conflict_to_dict(item) for item in conflicts]})
        return EXIT_OK
    if command == "resolve":
        _rehydrate_conflicts(container)
        if args.conflict_id:
            result = orchestrator.resolve_conflict(args.conflict_id, args.keep)
        else:
            result = orchestrator.resolve_all(args.keep)
        return _emit_result(result, container)
    if command == "log":
        entries = container.sync_log.list_recent(max(1, args.limit))
        _emit({"success": True, "count": len(entries), "entries": [asdict(entry) for entry in entries]})
        return EXIT_OK
    raise ValueError(f"Unknown command: {command}")


def _rehydrate_conflicts(container: AppContainer) -> None:
    """Conflicts live in memory; a fresh process pulls again to rebuild them."""
    if container.conflicts_service.count_conflicts():
        return
    if not container.tracker.list_entries(EntryState.CONFLICT):
        return
    result = container.orchestrator.pull_changes()
    if not result.success:
        logger.warning("Could not re-detect parked conflicts: %s", result.error)


def _run_migrate(db_path: Path, action: str, steps: int) -> int:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(db_path)
    try:
        runner = MigrationRunner(connection)
        if action == "up":
            applied = runner.apply_all()
            _emit({"success": True, "count": len(applied), "applied": applied})
        elif action == "down":
            reverted = runner.rollback(steps=steps)
            _emit({"success": True, "count": len(reverted), "reverted": reverted})
        else:
            _emit({"success": True, "migrations": runner.status()})
    finally:
        connection.close()
    return EXIT_OK


def _emit_result(result: OperationResult, container: AppContainer) -> int:
    payload = result.to_dict()
    payload["status"] = container.publisher.snapshot().to_dict()
    _emit(payload)
    return EXIT_OK if result.success else EXIT_FAILED


def _status_payload(container: AppContainer) -> dict[str, Any]:
    tracker = container.tracker
    return {
        "success": True,
        "device_id": container.settings.device_id,
        "remote_configured": container.settings.remote_configured,
        "status": container.publisher.snapshot().to_dict(),
        "queue": {
            "pending": len(tracker.list_entries(EntryState.PENDING)),
            "failed": len(tracker.list_entries(EntryState.FAILED)),
            "conflict": len(tracker.list_entries(EntryState.CONFLICT)),
        },
        "unsynced_records": container.local_store.count_unsynced(),
        "records_by_type": container.local_store.count_by_type(),
        "watermark": container.sync_state.get_watermark(),
        "metrics": container.metrics.snapshot(),
    }


def _conflict_to_dict(conflict: ConflictRecord) -> dict[str, Any]:
    data = asdict(conflict)
    data["entity_type"] = conflict.entity_type.value
    data["local_operation"] = conflict.local_operation.value
    return data


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


if __name__ == "__main__":
    raise SystemExit(main())
