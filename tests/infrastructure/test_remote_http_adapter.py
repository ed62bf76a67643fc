from __future__ import annotations

import json

import httpx
import pytest

from offline_sync.domain.models import EntityType, Operation
from offline_sync.domain.sync_errors import (
    AuthRequiredError,
    RemoteUnavailableError,
    RemoteValidationError,
    SchemaMismatchError,
    TransientNetworkError,
)
from offline_sync.domain.sync_models import ErrorKind, PushChange
from offline_sync.infrastructure.remote_http import HttpRemoteAdapter

BASE_URL = "https://central.example.test"


def _adapter(handler) -> HttpRemoteAdapter:
    client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpRemoteAdapter(BASE_URL, device_id="device-a", client=client)


def _change(entity_id: str = "B1") -> PushChange:
    return PushChange(
        entity_type=EntityType.BOOKINGS,
        entity_id=entity_id,
        operation=Operation.CREATE,
        payload={"id": entity_id, "customer": "Ana"},
        queued_at="2025-01-01T09:00:00Z",
        base_version=None,
    )


def test_push_sends_batch_and_parses_outcomes() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "accepted": [{"id": "B1", "updated_at": "2025-06-01T12:00:01Z", "version": "3"}, "B2"],
                "rejected": [
                    {"id": "B3", "reason": "total must be positive", "code": "validation"},
                    {
                        "id": "B4",
                        "reason": "changed remotely",
                        "code": "conflict",
                        "serverData": {"customer": "Eva"},
                        "lastModified": "2025-06-01T11:00:00Z",
                        "server_version": 7,
                    },
                ],
                "serverTime": "2025-06-01T12:00:02Z",
            },
        )

    result = _adapter(handler).push([_change("B1"), _change("B2"), _change("B3"), _change("B4")])

    assert seen[0]["device_id"] == "device-a"
    assert [change["entity_id"] for change in seen[0]["changes"]] == ["B1", "B2", "B3", "B4"]
    assert seen[0]["changes"][0]["operation"] == "create"
    assert seen[0]["changes"][0]["force"] is False
    assert result.accepted[0].version == 3
    assert result.accepted[1].entity_id == "B2"
    assert result.rejected[0].kind is ErrorKind.VALIDATION
    conflict = result.rejected[1]
    assert conflict.kind is ErrorKind.CONFLICT
    assert conflict.server_payload == {"customer": "Eva"}
    assert conflict.server_updated_at == "2025-06-01T11:00:00Z"
    assert conflict.server_version == 7
    assert result.server_time == "2025-06-01T12:00:02Z"


def test_empty_push_does_not_touch_the_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _adapter(handler).push([]).accepted == ()


def test_pull_passes_watermark_and_tables() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "records": [
                    {
                        "entity_type": "customers",
                        "id": "C1",
                        "payload": {"id": "C1", "name": "Carla", "updated_at": "2025-06-01T10:00:00Z"},
                        "version": 2,
                    },
                    {"entity_type": "bookings", "id": "B9", "payload": {}, "deleted": True},
                ],
                "server_time": "2025-06-01T12:00:00Z",
            },
        )

    result = _adapter(handler).pull_since("2025-06-01T00:00:00Z", [EntityType.CUSTOMERS, EntityType.BOOKINGS])

    assert seen[0].url.path == "/sync/pull"
    assert seen[0].url.params["since"] == "2025-06-01T00:00:00Z"
    assert seen[0].url.params["tables"] == "customers,bookings"
    assert result.server_time == "2025-06-01T12:00:00Z"
    first, second = result.records
    assert first.updated_at == "2025-06-01T10:00:00Z"
    assert first.version == 2
    assert second.deleted is True


def test_first_pull_sends_no_watermark() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"records": [], "serverTime": "2025-06-01T12:00:00Z"})

    _adapter(handler).pull_since(None, [EntityType.STAFF])

    assert "since" not in seen[0].url.params


def test_snapshot_uses_its_own_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/sync/snapshot"
        return httpx.Response(200, json={"records": [], "serverTime": "2025-06-01T12:00:00Z"})

    assert _adapter(handler).fetch_snapshot([EntityType.STAFF]).records == ()


@pytest.mark.parametrize(
    ("status_code", "body", "error_type"),
    [
        (401, {"message": "JWT expired"}, AuthRequiredError),
        (403, {"message": "forbidden"}, AuthRequiredError),
        (503, {"message": "maintenance"}, TransientNetworkError),
        (429, {"error": "Too Many Requests"}, TransientNetworkError),
        (400, {"message": "Could not find the 'tip_amount' column of 'transactions'"}, SchemaMismatchError),
        (422, {"message": "total must be positive"}, RemoteValidationError),
    ],
)
def test_http_failures_are_classified(status_code, body, error_type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    with pytest.raises(error_type):
        _adapter(handler).push([_change()])


def test_unreachable_host_is_reported_as_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteUnavailableError):
        _adapter(handler).pull_since(None, [EntityType.BOOKINGS])


def test_read_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransientNetworkError):
        _adapter(handler).pull_since(None, [EntityType.BOOKINGS])


def test_pull_without_server_time_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"records": []})

    with pytest.raises(RemoteValidationError, match="Malformed remote response"):
        _adapter(handler).pull_since(None, [EntityType.BOOKINGS])


def test_non_json_body_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(RemoteValidationError):
        _adapter(handler).pull_since(None, [EntityType.BOOKINGS])


def test_ping_reports_health_without_raising() -> None:
    def healthy(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok"})

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _adapter(healthy).ping() is True
    assert _adapter(down).ping() is False
