"""Lifecycle state machine for one engine run.

NEW -> VALIDATING -> LOCKED -> PROCESSING <-> CHECKPOINTING -> FINALIZING -> DONE

A no-op resume goes straight from VALIDATING to DONE. FAILED is reachable
from every state at or after LOCKED; validation errors are raised before
the engine owns anything, so they leave the machine in VALIDATING.
"""

from batchledger.contracts.enums import EngineState
from batchledger.contracts.errors import IllegalStateTransition
from batchledger.contracts.events import StateChanged
from batchledger.core.events import EventBusProtocol, NullEventBus

_FAILABLE = frozenset(
    {
        EngineState.LOCKED,
        EngineState.PROCESSING,
        EngineState.CHECKPOINTING,
        EngineState.FINALIZING,
    }
)

TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.NEW: frozenset({EngineState.VALIDATING}),
    EngineState.VALIDATING: frozenset({EngineState.LOCKED, EngineState.DONE}),
    EngineState.LOCKED: frozenset({EngineState.PROCESSING, EngineState.FAILED}),
    EngineState.PROCESSING: frozenset({EngineState.CHECKPOINTING, EngineState.FINALIZING, EngineState.FAILED}),
    EngineState.CHECKPOINTING: frozenset({EngineState.PROCESSING, EngineState.FINALIZING, EngineState.FAILED}),
    EngineState.FINALIZING: frozenset({EngineState.DONE, EngineState.FAILED}),
    EngineState.DONE: frozenset(),
    EngineState.FAILED: frozenset(),
}


class EngineStateMachine:
    """Tracks one run's state and rejects transitions not in TRANSITIONS."""

    def __init__(self, event_bus: EventBusProtocol | None = None) -> None:
        self._state = EngineState.NEW
        self._event_bus = event_bus or NullEventBus()
        self.job_id: str | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    def to(self, target: EngineState) -> None:
        """Move to target.

        Raises:
            IllegalStateTransition: If target is not reachable from the current state
        """
        if target not in TRANSITIONS[self._state]:
            raise IllegalStateTransition(f"Engine cannot move from {self._state.value} to {target.value}")
        previous = self._state
        self._state = target
        self._event_bus.emit(StateChanged(job_id=self.job_id, previous=previous, current=target))

    def fail(self) -> bool:
        """Move to FAILED if the current state allows it.

        Returns:
            True if the machine is now FAILED
        """
        if self._state in _FAILABLE:
            self.to(EngineState.FAILED)
        return self._state == EngineState.FAILED
