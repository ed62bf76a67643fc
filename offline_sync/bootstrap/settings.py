from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from offline_sync.infrastructure.db import default_db_path
from offline_sync.infrastructure.local_config import resolve_appdata_dir

LOG_DIR_ENV = "POS_SYNC_LOG_DIR"


@dataclass(frozen=True)
class RuntimePaths:
    """Where one terminal keeps its database and its log files."""

    data_dir: Path
    log_dir: Path
    db_path: Path


def resolve_runtime_paths(db_override: Path | None = None) -> RuntimePaths:
    data_dir = resolve_appdata_dir()
    return RuntimePaths(
        data_dir=data_dir,
        log_dir=resolve_log_dir(data_dir),
        db_path=db_override or default_db_path(),
    )


def resolve_log_dir(data_dir: Path | None = None) -> Path:
    """First writable directory among the operator override, the device data dir and the temp dir."""
    candidates: list[Path] = []
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append((data_dir or resolve_appdata_dir()) / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "PosOfflineSync" / "logs")

    for candidate in candidates:
        if _is_writable_dir(candidate):
            return candidate
    raise OSError("No writable log directory among " + ", ".join(str(candidate) for candidate in candidates))


def _is_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path):
            pass
    except OSError:
        return False
    return True
