from __future__ import annotations

import logging
import threading
from typing import Callable

from offline_sync.core.errors import InvalidTransitionError
from offline_sync.domain.sync_models import SyncPhase

logger = logging.getLogger(__name__)

PhaseListener = Callable[[SyncPhase, SyncPhase], None]

_ALLOWED_TRANSITIONS: dict[SyncPhase, frozenset[SyncPhase]] = {
    SyncPhase.IDLE: frozenset({SyncPhase.PUSHING, SyncPhase.PULLING, SyncPhase.RESETTING}),
    SyncPhase.PUSHING: frozenset({SyncPhase.PULLING, SyncPhase.IDLE, SyncPhase.ERROR}),
    SyncPhase.PULLING: frozenset({SyncPhase.RECONCILING, SyncPhase.ERROR}),
    SyncPhase.RECONCILING: frozenset({SyncPhase.IDLE, SyncPhase.ERROR}),
    SyncPhase.RESETTING: frozenset({SyncPhase.IDLE, SyncPhase.ERROR}),
    SyncPhase.ERROR: frozenset({SyncPhase.IDLE}),
}


def can_transition(current: SyncPhase, target: SyncPhase) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class SyncStateMachine:
    """Named sync phases with an explicit transition table.

    ``Idle -> Pushing -> Pulling -> Reconciling -> Idle`` is the full cycle; push-only
    runs return from Pushing to Idle, and any working phase may fall into Error,
    which only leads back to Idle.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._listeners: list[PhaseListener] = []

    @property
    def phase(self) -> SyncPhase:
        with self._lock:
            return self._phase

    @property
    def is_active(self) -> bool:
        return self.phase not in {SyncPhase.IDLE, SyncPhase.ERROR}

    def add_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    def transition(self, target: SyncPhase) -> None:
        with self._lock:
            current = self._phase
            if not can_transition(current, target):
                raise InvalidTransitionError(current.value, target.value)
            self._phase = target
        logger.debug("Sync phase %s -> %s", current.value, target.value)
        for listener in list(self._listeners):
            listener(current, target)

    def fail(self) -> None:
        """Routes any working phase through Error back to Idle."""
        if self.phase is SyncPhase.IDLE:
            return
        if self.phase is not SyncPhase.ERROR:
            self.transition(SyncPhase.ERROR)
        self.transition(SyncPhase.IDLE)
