from __future__ import annotations

import pytest

from offline_sync.application.sync_state_machine import SyncStateMachine, can_transition
from offline_sync.core.errors import InvalidTransitionError
from offline_sync.domain.sync_models import SyncPhase


def test_full_cycle_walks_every_phase_in_order() -> None:
    machine = SyncStateMachine()
    seen: list[tuple[SyncPhase, SyncPhase]] = []
    machine.add_listener(lambda previous, current: seen.append((previous, current)))

    for phase in (SyncPhase.PUSHING, SyncPhase.PULLING, SyncPhase.RECONCILING, SyncPhase.IDLE):
        machine.transition(phase)

    assert seen == [
        (SyncPhase.IDLE, SyncPhase.PUSHING),
        (SyncPhase.PUSHING, SyncPhase.PULLING),
        (SyncPhase.PULLING, SyncPhase.RECONCILING),
        (SyncPhase.RECONCILING, SyncPhase.IDLE),
    ]
    assert machine.phase is SyncPhase.IDLE


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (SyncPhase.IDLE, SyncPhase.RECONCILING),
        (SyncPhase.IDLE, SyncPhase.ERROR),
        (SyncPhase.PULLING, SyncPhase.PUSHING),
        (SyncPhase.RESETTING, SyncPhase.PULLING),
        (SyncPhase.ERROR, SyncPhase.PUSHING),
    ],
)
def test_illegal_transitions_are_refused(current, target) -> None:
    assert can_transition(current, target) is False


def test_illegal_transition_raises_and_keeps_phase() -> None:
    machine = SyncStateMachine()

    with pytest.raises(InvalidTransitionError, match="idle -> reconciling"):
        machine.transition(SyncPhase.RECONCILING)

    assert machine.phase is SyncPhase.IDLE


def test_fail_routes_through_error_back_to_idle() -> None:
    machine = SyncStateMachine()
    seen: list[SyncPhase] = []
    machine.add_listener(lambda _previous, current: seen.append(current))
    machine.transition(SyncPhase.PUSHING)
    assert machine.is_active is True

    machine.fail()

    assert seen == [SyncPhase.PUSHING, SyncPhase.ERROR, SyncPhase.IDLE]
    assert machine.is_active is False


def test_fail_while_idle_is_a_no_op() -> None:
    machine = SyncStateMachine()

    machine.fail()

    assert machine.phase is SyncPhase.IDLE
