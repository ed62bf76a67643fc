from __future__ import annotations

from typing import Any

from offline_sync.core.errors import ExternalServiceError, TransientExternalError
from offline_sync.domain.sync_models import ErrorKind


class RemoteSyncError(ExternalServiceError):
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(TransientExternalError, RemoteSyncError):
    kind = ErrorKind.TRANSIENT_NETWORK


class RemoteUnavailableError(TransientNetworkError):
    """The remote service cannot be reached at all; the whole cycle stops without spending retry budget."""


class SchemaMismatchError(RemoteSyncError):
    kind = ErrorKind.SCHEMA_MISMATCH


class AuthRequiredError(RemoteSyncError):
    kind = ErrorKind.AUTH_REQUIRED


class RemoteValidationError(RemoteSyncError):
    kind = ErrorKind.VALIDATION


class RemoteConflictError(RemoteSyncError):
    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        server_payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.server_payload = server_payload


def error_kind_of(exc: BaseException) -> ErrorKind | None:
    if isinstance(exc, RemoteSyncError):
        return exc.kind
    if isinstance(exc, TransientExternalError):
        return ErrorKind.TRANSIENT_NETWORK
    return None


def is_retryable(exc: BaseException) -> bool:
    return error_kind_of(exc) is ErrorKind.TRANSIENT_NETWORK
