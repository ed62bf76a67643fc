from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from offline_sync.domain.models import EntityType
from offline_sync.domain.sync_models import (
    AcceptedChange,
    PullResult,
    PushChange,
    PushResult,
    RejectedChange,
    RemoteRecord,
)
from offline_sync.infrastructure.remote_errors import classify_rejection_reason, map_httpx_exception

logger = logging.getLogger(__name__)

PUSH_PATH = "/sync/push"
PULL_PATH = "/sync/pull"
SNAPSHOT_PATH = "/sync/snapshot"
HEALTH_PATH = "/health"


class HttpRemoteAdapter:
    """Bulk push/pull against the central store's sync endpoints.

    The adapter never retries: every failure is raised already classified so the
    orchestrator decides what is worth another attempt.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str = "",
        device_id: str = "",
        timeout_seconds: float = 15.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._device_id = device_id
        headers = {"Content-Type": "application/json", "X-Device-Id": device_id}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
        )

    def push(self, changes: list[PushChange]) -> PushResult:
        if not changes:
            return PushResult()
        body = {"device_id": self._device_id, "changes": [change.to_wire() for change in changes]}
        data = self._request("POST", PUSH_PATH, json=body)
        try:
            return _parse_push_result(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise map_httpx_exception(exc) from exc

    def pull_since(self, since: str | None, entity_types: Iterable[EntityType]) -> PullResult:
        params: dict[str, str] = {"tables": ",".join(kind.value for kind in entity_types)}
        if since:
            params["since"] = since
        data = self._request("GET", PULL_PATH, params=params)
        try:
            return _parse_pull_result(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise map_httpx_exception(exc) from exc

    def fetch_snapshot(self, entity_types: Iterable[EntityType]) -> PullResult:
        params = {"tables": ",".join(kind.value for kind in entity_types)}
        data = self._request("GET", SNAPSHOT_PATH, params=params)
        try:
            return _parse_pull_result(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise map_httpx_exception(exc) from exc

    def ping(self) -> bool:
        try:
            response = self._client.get(HEALTH_PATH)
        except httpx.HTTPError as exc:
            logger.debug("Remote health check failed: %s", exc)
            return False
        return response.status_code < 500

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            mapped = map_httpx_exception(exc)
            logger.warning("Remote %s %s failed kind=%s: %s", method, path, mapped.kind.value, mapped)
            raise mapped from exc
        if not isinstance(data, dict):
            raise map_httpx_exception(TypeError(f"Expected a JSON object from {path}"))
        return data


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _parse_accepted(item: Any) -> AcceptedChange:
    if isinstance(item, str):
        return AcceptedChange(entity_id=item)
    return AcceptedChange(
        entity_id=str(item["id"]),
        updated_at=item.get("updated_at"),
        version=_optional_int(item.get("version")),
    )


def _parse_rejected(item: dict[str, Any]) -> RejectedChange:
    reason = str(item.get("reason") or item.get("error") or "rejected")
    error = classify_rejection_reason(reason, item.get("code"))
    server_payload = item.get("server_payload") or item.get("serverData")
    return RejectedChange(
        entity_id=str(item["id"]),
        reason=str(error),
        kind=error.kind,
        server_payload=server_payload,
        server_updated_at=item.get("server_updated_at") or item.get("lastModified"),
        server_version=_optional_int(item.get("server_version")),
    )


def _parse_push_result(data: dict[str, Any]) -> PushResult:
    return PushResult(
        accepted=tuple(_parse_accepted(item) for item in data.get("accepted", [])),
        rejected=tuple(_parse_rejected(item) for item in data.get("rejected", [])),
        server_time=data.get("serverTime") or data.get("server_time"),
    )


def _parse_remote_record(item: dict[str, Any]) -> RemoteRecord:
    payload = dict(item.get("payload") or {})
    entity_id = str(item.get("id") or payload.get("id"))
    return RemoteRecord(
        entity_type=EntityType.parse(item["entity_type"]),
        entity_id=entity_id,
        payload=payload,
        updated_at=item.get("updated_at") or payload.get("updated_at"),
        version=_optional_int(item.get("version")),
        deleted=bool(item.get("deleted", False)),
    )


def _parse_pull_result(data: dict[str, Any]) -> PullResult:
    server_time = data.get("serverTime") or data.get("server_time")
    if not server_time:
        raise KeyError("serverTime")
    return PullResult(
        records=tuple(_parse_remote_record(item) for item in data.get("records", [])),
        server_time=str(server_time),
    )
