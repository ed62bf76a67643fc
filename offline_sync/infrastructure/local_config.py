from __future__ import annotations

from dataclasses import asdict, replace
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from offline_sync.domain.models import EntityType, SyncSettings

logger = logging.getLogger(__name__)

SYNC_INTERVAL_CHOICES = (5, 15, 30, 60, 120)
_BOOL_FIELDS = ("auto_sync", "sync_on_startup", "sync_when_online")
_INT_FIELDS = ("sync_interval_minutes", "batch_size", "max_attempts")
_FLOAT_FIELDS = (
    "backoff_base_seconds",
    "backoff_cap_seconds",
    "backoff_jitter",
    "request_timeout_seconds",
    "connectivity_poll_seconds",
)


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / "PosOfflineSync"


class SyncSettingsStore:
    """JSON-backed sync settings; the device id is minted on first load and persisted."""

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = self._base_dir / "config.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncSettings:
        payload = self._read_payload()
        device_id = str(payload.get("device_id", "")).strip()
        if not device_id:
            device_id = self._generate_device_id()
            payload["device_id"] = device_id
            self._write_payload(payload)
        settings = _settings_from_payload(payload, device_id)
        return _apply_env_overrides(settings)

    def save(self, settings: SyncSettings) -> SyncSettings:
        saved = replace(settings, device_id=settings.device_id or self._generate_device_id())
        payload = asdict(saved)
        payload["entity_types"] = [kind.value for kind in saved.entity_types]
        # The bearer token comes from the environment when set there; never echo it back to disk.
        if os.environ.get("POS_SYNC_API_TOKEN"):
            payload.pop("api_token", None)
        self._write_payload(payload)
        return saved

    def _read_payload(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("Could not read config.json: %s", exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring config.json: expected a JSON object")
            return {}
        return payload

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())


def _settings_from_payload(payload: dict[str, Any], device_id: str) -> SyncSettings:
    defaults = SyncSettings()
    values: dict[str, Any] = {
        "device_id": device_id,
        "remote_base_url": str(payload.get("remote_base_url", defaults.remote_base_url)).strip(),
        "api_token": str(payload.get("api_token", defaults.api_token)).strip(),
    }
    for name in _BOOL_FIELDS:
        raw = payload.get(name, getattr(defaults, name))
        values[name] = raw if isinstance(raw, bool) else str(raw).strip().lower() in {"1", "true", "yes", "on"}
    for name in _INT_FIELDS:
        values[name] = _coerce(payload.get(name), int, getattr(defaults, name))
    for name in _FLOAT_FIELDS:
        values[name] = _coerce(payload.get(name), float, getattr(defaults, name))
    if values["sync_interval_minutes"] not in SYNC_INTERVAL_CHOICES:
        logger.warning(
            "Unsupported sync interval %s minutes, using %s",
            values["sync_interval_minutes"],
            defaults.sync_interval_minutes,
        )
        values["sync_interval_minutes"] = defaults.sync_interval_minutes
    raw_types = payload.get("entity_types")
    if isinstance(raw_types, list) and raw_types:
        try:
            values["entity_types"] = tuple(EntityType.parse(item) for item in raw_types)
        except ValueError as exc:
            logger.warning("Ignoring entity_types in config.json: %s", exc)
    return SyncSettings(**values)


def _coerce(raw: Any, caster: type, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return caster(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid config value %r, using %r", raw, default)
        return default


def _apply_env_overrides(settings: SyncSettings) -> SyncSettings:
    remote_url = os.environ.get("POS_SYNC_REMOTE_URL")
    api_token = os.environ.get("POS_SYNC_API_TOKEN")
    changes: dict[str, Any] = {}
    if remote_url:
        changes["remote_base_url"] = remote_url.strip()
    if api_token:
        changes["api_token"] = api_token.strip()
    return replace(settings, **changes) if changes else settings
