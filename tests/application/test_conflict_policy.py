from __future__ import annotations

import pytest

from offline_sync.application.conflict_policy import ConflictOutcome, evaluate_conflict_policy, is_remote_newer
from offline_sync.domain.models import ObservedVersion

OBSERVED = ObservedVersion(server_updated_at="2025-01-01T10:00:00Z", server_version=3)


@pytest.mark.parametrize(
    ("observed", "remote_updated_at", "remote_version", "expected"),
    [
        (None, "2025-01-01T10:00:00Z", 1, True),
        (OBSERVED, "2025-01-01T09:00:00Z", 4, True),
        (OBSERVED, "2025-01-01T11:00:00Z", 3, False),
        (ObservedVersion("2025-01-01T10:00:00Z"), "2025-01-01T10:00:01Z", None, True),
        (ObservedVersion("2025-01-01T10:00:00Z"), "2025-01-01T10:00:00+00:00", None, False),
        (ObservedVersion("2025-01-01T10:00:00Z"), None, None, False),
        (ObservedVersion(None), "2025-01-01T10:00:00Z", None, True),
    ],
)
def test_is_remote_newer(observed, remote_updated_at, remote_version, expected) -> None:
    assert is_remote_newer(observed, remote_updated_at, remote_version) is expected


@pytest.mark.parametrize(
    ("has_live_entry", "remote_version", "outcome"),
    [
        (True, 4, ConflictOutcome.DIVERGENT_CONFLICT),
        (True, 3, ConflictOutcome.NO_CONFLICT),
        (False, 4, ConflictOutcome.NO_CONFLICT),
        (False, 3, ConflictOutcome.NO_CONFLICT),
    ],
)
def test_conflict_needs_local_change_and_newer_remote(has_live_entry, remote_version, outcome) -> None:
    decision = evaluate_conflict_policy(has_live_entry, OBSERVED, "2025-01-01T12:00:00Z", remote_version)

    assert decision.outcome is outcome
    assert decision.should_register_conflict is (outcome is ConflictOutcome.DIVERGENT_CONFLICT)
    assert decision.remote_is_newer is (remote_version > 3)


def test_unparseable_timestamps_compare_as_text() -> None:
    observed = ObservedVersion(server_updated_at="rev-0001")

    assert is_remote_newer(observed, "rev-0002") is True
    assert is_remote_newer(observed, "rev-0001") is False
