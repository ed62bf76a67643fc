from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from offline_sync.application.conflict_policy import evaluate_conflict_policy
from offline_sync.domain.models import ChangeQueueEntry, ObservedVersion, Operation
from offline_sync.domain.sync_models import RemoteRecord

PullCommand = Literal["APPLY", "SKIP", "REGISTER_CONFLICT"]


@dataclass(frozen=True)
class PullAction:
    command: PullCommand
    reason_code: str


def plan_pull_action(
    remote: RemoteRecord,
    live_entry: ChangeQueueEntry | None,
    observed: ObservedVersion | None,
) -> PullAction:
    if live_entry is None:
        if remote.deleted:
            return PullAction("APPLY", "remote_deleted")
        return PullAction("APPLY", "no_local_change")
    if observed is None and live_entry.operation is Operation.CREATE:
        # A record born on this device has no server history: the pulled copy is our own write.
        return PullAction("SKIP", "own_create_echo")
    decision = evaluate_conflict_policy(True, observed, remote.updated_at, remote.version)
    if decision.should_register_conflict:
        return PullAction("REGISTER_CONFLICT", "conflict_divergent")
    return PullAction("SKIP", "local_change_wins")
