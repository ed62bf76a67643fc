from __future__ import annotations

import pytest

from offline_sync.core.errors import TransientExternalError, ValidationError
from offline_sync.domain.sync_errors import (
    AuthRequiredError,
    RemoteConflictError,
    RemoteUnavailableError,
    RemoteValidationError,
    SchemaMismatchError,
    TransientNetworkError,
    error_kind_of,
    is_retryable,
)
from offline_sync.domain.sync_models import ErrorKind


@pytest.mark.parametrize(
    ("error", "kind", "retryable"),
    [
        (TransientNetworkError("timeout"), ErrorKind.TRANSIENT_NETWORK, True),
        (RemoteUnavailableError("refused"), ErrorKind.TRANSIENT_NETWORK, True),
        (TransientExternalError("database is locked"), ErrorKind.TRANSIENT_NETWORK, True),
        (SchemaMismatchError("missing column"), ErrorKind.SCHEMA_MISMATCH, False),
        (AuthRequiredError("expired"), ErrorKind.AUTH_REQUIRED, False),
        (RemoteValidationError("bad payload"), ErrorKind.VALIDATION, False),
        (RemoteConflictError("changed"), ErrorKind.CONFLICT, False),
    ],
)
def test_every_remote_failure_has_exactly_one_kind(error, kind, retryable) -> None:
    assert error_kind_of(error) is kind
    assert is_retryable(error) is retryable


def test_local_errors_have_no_remote_kind() -> None:
    assert error_kind_of(ValidationError("bad input")) is None
    assert error_kind_of(RuntimeError("boom")) is None
    assert is_retryable(RuntimeError("boom")) is False


def test_conflict_error_keeps_server_copy() -> None:
    error = RemoteConflictError("changed", status_code=409, server_payload={"phone": "333"})

    assert error.status_code == 409
    assert error.server_payload == {"phone": "333"}
