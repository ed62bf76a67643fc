from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from offline_sync.domain.models import ObservedVersion
from offline_sync.domain.time_utils import parse_server_timestamp


class ConflictOutcome(str, Enum):
    NO_CONFLICT = "no_conflict"
    DIVERGENT_CONFLICT = "divergent_conflict"


@dataclass(frozen=True)
class ConflictDecision:
    outcome: ConflictOutcome
    remote_is_newer: bool

    @property
    def should_register_conflict(self) -> bool:
        return self.outcome is ConflictOutcome.DIVERGENT_CONFLICT


def is_remote_newer(
    observed: ObservedVersion | None,
    remote_updated_at: str | None,
    remote_version: int | None = None,
) -> bool:
    """True when the server holds a state this device has not seen yet.

    A per-record version counter is authoritative when both sides carry one;
    wall-clock timestamps are the fallback and only a strictly later one counts.
    """
    if observed is None:
        return True
    if remote_version is not None and observed.server_version is not None:
        return remote_version > observed.server_version
    if observed.server_updated_at is None:
        return True
    if remote_updated_at is None:
        return False
    remote_ts = parse_server_timestamp(remote_updated_at)
    observed_ts = parse_server_timestamp(observed.server_updated_at)
    if remote_ts is None or observed_ts is None:
        return str(remote_updated_at) > str(observed.server_updated_at)
    return remote_ts > observed_ts


def evaluate_conflict_policy(
    has_live_entry: bool,
    observed: ObservedVersion | None,
    remote_updated_at: str | None,
    remote_version: int | None = None,
) -> ConflictDecision:
    """A conflict needs both a pending local change and a server state newer than the last one observed."""
    remote_newer = is_remote_newer(observed, remote_updated_at, remote_version)
    if has_live_entry and remote_newer:
        return ConflictDecision(ConflictOutcome.DIVERGENT_CONFLICT, remote_is_newer=True)
    return ConflictDecision(ConflictOutcome.NO_CONFLICT, remote_is_newer=remote_newer)
