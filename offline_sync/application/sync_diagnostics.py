from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from offline_sync.core.errors import BusinessError, InfraError
from offline_sync.core.observability import get_correlation_id
from offline_sync.domain.sync_errors import error_kind_of


@dataclass(frozen=True)
class SyncDiagnostic:
    reason_code: str
    title: str
    message: str
    suggested_action: str


_REASON_MAP: dict[str, SyncDiagnostic] = {
    "transient-network": SyncDiagnostic(
        reason_code="transient-network",
        title="Remote store temporarily unreachable",
        message="The request timed out or the server answered with a temporary error.",
        suggested_action="Changes stay queued and are retried automatically. Check the connection if it persists.",
    ),
    "schema-mismatch": SyncDiagnostic(
        reason_code="schema-mismatch",
        title="Remote schema does not match",
        message="The remote store is missing a table or column, or a required column is empty.",
        suggested_action="Repair the remote schema, then clear the schema error flag and sync again.",
    ),
    "auth-required": SyncDiagnostic(
        reason_code="auth-required",
        title="Sign-in required",
        message="The remote store refused the credentials of this device.",
        suggested_action="Sign in again; automatic sync stays paused until then.",
    ),
    "validation": SyncDiagnostic(
        reason_code="validation",
        title="A record was rejected",
        message="The remote store refused one record; the rest of the batch went through.",
        suggested_action="Review the record in the sync log, fix it and retry the failed entries.",
    ),
    "conflict": SyncDiagnostic(
        reason_code="conflict",
        title="Edited on another device",
        message="The same record changed here and on the server since the last sync.",
        suggested_action="Choose which version to keep, or merge them.",
    ),
    "offline": SyncDiagnostic(
        reason_code="offline",
        title="Device is offline",
        message="Changes are stored locally and will sync when the connection returns.",
        suggested_action="No action needed.",
    ),
    "unknown": SyncDiagnostic(
        reason_code="unknown",
        title="Sync could not complete",
        message="An unexpected error happened during the sync.",
        suggested_action="Try again. If it persists, send the log files to support.",
    ),
}


def resolve_sync_diagnostic(reason_code: str | None) -> SyncDiagnostic:
    if not reason_code:
        return _REASON_MAP["unknown"]
    return _REASON_MAP.get(reason_code, _REASON_MAP["unknown"])


@dataclass(frozen=True)
class OperatorErrorMessage:
    title: str
    probable_cause: str
    recommended_action: str
    severity: str
    incident_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def map_error_to_operator_message(error: Exception, *, incident_id: str | None = None) -> OperatorErrorMessage:
    resolved_incident_id = incident_id or get_correlation_id()
    kind = error_kind_of(error)
    if kind is not None:
        diagnostic = resolve_sync_diagnostic(kind.value)
        return OperatorErrorMessage(
            title=diagnostic.title,
            probable_cause=str(error).strip() or diagnostic.message,
            recommended_action=diagnostic.suggested_action,
            severity="warning" if kind.value in {"transient-network", "validation", "conflict"} else "blocking",
            incident_id=resolved_incident_id,
        )
    if isinstance(error, BusinessError):
        return OperatorErrorMessage(
            title=str(error).strip() or "The operation could not be completed",
            probable_cause="The request breaks a business rule.",
            recommended_action="Correct the input and try again.",
            severity="warning",
            incident_id=resolved_incident_id,
        )
    if isinstance(error, InfraError):
        return OperatorErrorMessage(
            title="The operation could not be completed",
            probable_cause="Local storage or the remote service could not be reached.",
            recommended_action="Try again. If it persists, check the configuration or contact support.",
            severity="blocking",
            incident_id=resolved_incident_id,
        )
    diagnostic = resolve_sync_diagnostic(None)
    return OperatorErrorMessage(
        title=diagnostic.title,
        probable_cause=diagnostic.message,
        recommended_action=diagnostic.suggested_action,
        severity="blocking",
        incident_id=resolved_incident_id,
    )
