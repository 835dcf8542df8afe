"""Deterministic pipeline state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- One state per run, starting at IDLE
- Every transition recorded in the Run Ledger
"""

from __future__ import annotations

import logging

from deployforge.core.errors import DeployError
from deployforge.core.run_ledger import RunLedger
from deployforge.models.ledger import LedgerEntry
from deployforge.models.pipeline import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    PipelineState,
    StateTransition,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(DeployError):
    """Raised when a requested state transition is not valid."""


class PipelineMachine:
    """Tracks the state of each run and records transitions.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into. ``None`` keeps the
        history in memory only.
    """

    def __init__(self, ledger: RunLedger | None = None) -> None:
        self._ledger = ledger
        # run_id -> current state
        self._states: dict[str, PipelineState] = {}
        # run_id -> ordered transitions
        self._history: dict[str, list[StateTransition]] = {}
        self._environments: dict[str, str] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def start(self, run_id: str, environment_name: str) -> None:
        """Register a new run in IDLE."""
        if run_id in self._states:
            raise InvalidTransitionError(f"Run {run_id} already started.")
        self._states[run_id] = PipelineState.IDLE
        self._history[run_id] = []
        self._environments[run_id] = environment_name

    def current(self, run_id: str) -> PipelineState:
        return self._states.get(run_id, PipelineState.IDLE)

    def history(self, run_id: str) -> list[StateTransition]:
        return list(self._history.get(run_id, []))

    def is_terminal(self, run_id: str) -> bool:
        return self.current(run_id) in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        target_state: PipelineState,
        *,
        note: str = "",
        payload_hash: str = "",
    ) -> StateTransition:
        """Move a run to ``target_state``, recording it in the ledger.

        Raises ``InvalidTransitionError`` if VALID_TRANSITIONS forbids it.
        """
        if run_id not in self._states:
            raise InvalidTransitionError(f"Run {run_id} was never started.")

        current = self._states[run_id]
        allowed = VALID_TRANSITIONS.get(current, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition run {run_id} from {current.value} to "
                f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}",
                stage=current.value,
            )

        step = StateTransition(from_state=current, to_state=target_state, note=note)
        if self._ledger is not None:
            self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    environment_name=self._environments[run_id],
                    state_transition=f"{current.value}->{target_state.value}",
                    timestamp_utc=step.timestamp_utc,
                    note=note,
                    payload_hash=payload_hash,
                )
            )

        self._states[run_id] = target_state
        self._history[run_id].append(step)
        logger.debug("Run %s: %s -> %s %s", run_id, current.value, target_state.value, note)
        return step

    def get_available_transitions(self, run_id: str) -> set[PipelineState]:
        """Return the set of valid target states for a run."""
        return set(VALID_TRANSITIONS.get(self.current(run_id), set()))
