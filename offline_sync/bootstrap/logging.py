"""Log files of the sync engine.

Every record is written as one JSON object carrying the correlation id of the
running operation. Once a container binds the sync context, records also carry
the device id and the phase the engine was in when they were emitted.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable

from offline_sync.core.observability import get_correlation_id, get_operation_name
from offline_sync.core.secret_redaction import LoggingSecretsFilter

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "sync.log"
OPERATIONAL_ERROR_LOG_NAME = "operational_error.log"
CRASH_LOG_NAME = "crash.log"

PhaseSource = Callable[[], str]


class SyncContextFilter(logging.Filter):
    """Stamps the bound device id and the live sync phase on every record it sees."""

    def __init__(self) -> None:
        super().__init__()
        self._device_id: str | None = None
        self._phase_source: PhaseSource | None = None

    def bind(self, device_id: str, phase_source: PhaseSource | None = None) -> None:
        self._device_id = device_id
        self._phase_source = phase_source

    def clear(self) -> None:
        self._device_id = None
        self._phase_source = None

    def filter(self, record: logging.LogRecord) -> bool:
        record.device_id = self._device_id
        record.sync_phase = self._phase_source() if self._phase_source is not None else None
        return True


sync_context = SyncContextFilter()


def bind_sync_context(device_id: str, phase_source: PhaseSource | None = None) -> None:
    sync_context.bind(device_id, phase_source)


def clear_sync_context() -> None:
    sync_context.clear()


class SyncJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "source": f"{record.module}:{record.lineno}",
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        stamps = (
            ("operation", get_operation_name()),
            ("device_id", getattr(record, "device_id", None)),
            ("phase", getattr(record, "sync_phase", None)),
        )
        event.update({key: value for key, value in stamps if value})

        details = getattr(record, "extra", None)
        if isinstance(details, dict) and details:
            event["extra"] = details
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class SyncFileHandler(RotatingFileHandler):
    """Rotating file owned by the engine; reconfiguring replaces only handlers of this type."""


class _UpToLevel(logging.Filter):
    def __init__(self, ceiling: int) -> None:
        super().__init__()
        self._ceiling = ceiling

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self._ceiling


@dataclass(frozen=True)
class _LogFile:
    name: str
    floor: int
    ceiling: int = logging.CRITICAL


# Operational errors stop below CRITICAL so crashes land only in the crash log.
_LOG_FILES = (
    _LogFile(MAIN_LOG_NAME, logging.NOTSET),
    _LogFile(OPERATIONAL_ERROR_LOG_NAME, logging.ERROR, logging.ERROR),
    _LogFile(CRASH_LOG_NAME, logging.CRITICAL),
)


def _int_from_env(name: str, default: int) -> int:
    try:
        return int(os.environ[name])
    except (KeyError, ValueError):
        return default


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    size_limit = max_bytes or _int_from_env("POS_SYNC_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES)

    root_logger = logging.getLogger()
    for handler in [handler for handler in root_logger.handlers if isinstance(handler, SyncFileHandler)]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    for log_file in _LOG_FILES:
        handler = SyncFileHandler(log_dir / log_file.name, maxBytes=size_limit, backupCount=backup_count, encoding="utf-8")
        handler.setLevel(max(level, log_file.floor))
        handler.setFormatter(SyncJsonFormatter())
        handler.addFilter(LoggingSecretsFilter())
        handler.addFilter(sync_context)
        if log_file.ceiling < logging.CRITICAL:
            handler.addFilter(_UpToLevel(log_file.ceiling))
        root_logger.addHandler(handler)


def log_crash(exc_type: type[BaseException], exc: BaseException | None, tb: Any, *, thread: str | None = None) -> None:
    details: dict[str, Any] = {"python": sys.version, "executable": sys.executable, "cwd": str(Path.cwd())}
    if thread:
        details["thread"] = thread
    logging.getLogger("offline_sync.crash").critical(
        "Unhandled exception", exc_info=(exc_type, exc, tb), extra={"extra": details}
    )


def install_exception_hook() -> None:
    """Sends uncaught exceptions to the crash log, including those raised on the sync worker threads."""
    previous_hook = sys.excepthook

    def _process_hook(exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            previous_hook(exc_type, exc, tb)
            return
        log_crash(exc_type, exc, tb)

    def _thread_hook(args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        log_crash(args.exc_type, args.exc_value, args.exc_traceback, thread=args.thread.name if args.thread else None)

    sys.excepthook = _process_hook
    threading.excepthook = _thread_hook
