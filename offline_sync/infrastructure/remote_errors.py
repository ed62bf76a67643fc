from __future__ import annotations

import json

import httpx

from offline_sync.domain.schema_errors import describe_schema_error
from offline_sync.domain.sync_errors import (
    AuthRequiredError,
    RemoteConflictError,
    RemoteSyncError,
    RemoteValidationError,
    RemoteUnavailableError,
    SchemaMismatchError,
    TransientNetworkError,
)

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})
_TRANSIENT_TOKENS = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "rate limit",
    "too many requests",
)


def normalize_error_text(text: str) -> str:
    return text.strip().lower()


def _extract_response_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "hint"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text or response.reason_phrase


def classify_remote_error(text: str, status_code: int | None) -> RemoteSyncError:
    text_lower = normalize_error_text(text)
    if status_code in _TRANSIENT_STATUS_CODES:
        return TransientNetworkError(text or f"HTTP {status_code}", status_code=status_code)
    if status_code in {401, 403}:
        return AuthRequiredError(text or "Remote service requires re-authentication", status_code=status_code)
    schema_description = describe_schema_error(text)
    if schema_description is not None:
        return SchemaMismatchError(schema_description, status_code=status_code)
    if status_code == 409:
        return RemoteConflictError(text or "Remote conflict", status_code=status_code)
    if status_code is None and any(token in text_lower for token in _TRANSIENT_TOKENS):
        return TransientNetworkError(text, status_code=status_code)
    return RemoteValidationError(text or f"HTTP {status_code}", status_code=status_code)


def classify_rejection_reason(reason: str, code: str | None) -> RemoteSyncError:
    """Per-record rejection from a push response; an explicit code wins over text heuristics."""
    if code:
        normalized = code.strip().lower().replace("_", "-")
        mapping: dict[str, type[RemoteSyncError]] = {
            "transient-network": TransientNetworkError,
            "schema-mismatch": SchemaMismatchError,
            "auth-required": AuthRequiredError,
            "validation": RemoteValidationError,
            "conflict": RemoteConflictError,
        }
        error_cls = mapping.get(normalized)
        if error_cls is SchemaMismatchError:
            return SchemaMismatchError(describe_schema_error(reason) or reason)
        if error_cls is not None:
            return error_cls(reason)
    return classify_remote_error(reason, None)


def map_httpx_exception(ex: Exception) -> RemoteSyncError:
    if isinstance(ex, RemoteSyncError):
        return ex
    if isinstance(ex, httpx.HTTPStatusError):
        return classify_remote_error(_extract_response_text(ex.response), ex.response.status_code)
    if isinstance(ex, httpx.ConnectError):
        return RemoteUnavailableError(f"Remote service unreachable: {ex}")
    if isinstance(ex, httpx.TimeoutException):
        return TransientNetworkError(f"Remote request timed out: {ex}")
    if isinstance(ex, httpx.TransportError):
        return TransientNetworkError(f"Remote transport error: {ex}")
    if isinstance(ex, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return RemoteValidationError(f"Malformed remote response: {ex}")
    return RemoteValidationError(str(ex))
