"""
Execution state machine.

STATES:
------
    planning -> executing <-> awaiting_confirmation
                executing <-> paused
    any non-terminal -> halted (explicit halt, budget, safety, ...)
    executing / planning / awaiting_confirmation -> failed
    executing -> completed

completed, failed and halted are terminal: nothing leaves them except a
rollback, which restores a captured state wholesale instead of transitioning.
"""

from datetime import datetime
from typing import Optional

from .errors import InvalidTransition
from .schemas import AgentExecution, ExecutionState, HaltReason, TERMINAL_STATES


EXECUTION_TRANSITIONS = {
    ExecutionState.PLANNING: [
        ExecutionState.EXECUTING,
        ExecutionState.FAILED,
        ExecutionState.HALTED,
    ],
    ExecutionState.EXECUTING: [
        ExecutionState.AWAITING_CONFIRMATION,
        ExecutionState.PAUSED,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.HALTED,
    ],
    ExecutionState.AWAITING_CONFIRMATION: [
        ExecutionState.EXECUTING,
        ExecutionState.FAILED,
        ExecutionState.HALTED,
    ],
    ExecutionState.PAUSED: [
        ExecutionState.EXECUTING,
        ExecutionState.HALTED,
    ],
    ExecutionState.COMPLETED: [],
    ExecutionState.FAILED: [],
    ExecutionState.HALTED: [],
}


def can_transition(current: ExecutionState, target: ExecutionState) -> bool:
    """Check if a state transition is valid."""
    return target in EXECUTION_TRANSITIONS.get(current, [])


def transition(
    execution: AgentExecution,
    target: ExecutionState,
    reason: Optional[HaltReason] = None,
    message: Optional[str] = None,
) -> AgentExecution:
    """
    Move an execution to a new state, in place.

    The caller persists the result; nothing is acted on until it has been
    saved.

    Args:
        execution: The execution to transition
        target: The target state
        reason: Halt reason (halted only)
        message: Human-readable halt/failure message

    Returns:
        The same execution, for chaining

    Raises:
        InvalidTransition: If the transition is not allowed
    """
    if not can_transition(execution.state, target):
        allowed = [s.value for s in EXECUTION_TRANSITIONS.get(execution.state, [])]
        raise InvalidTransition(
            execution.state.value,
            target.value,
            f"Invalid state transition: {execution.state.value} -> {target.value}. "
            f"Allowed: {allowed}",
        )

    now = datetime.now()
    execution.state = target

    if target == ExecutionState.EXECUTING and execution.started_at is None:
        execution.started_at = now

    if target == ExecutionState.HALTED:
        execution.halt_reason = reason or HaltReason.USER_REQUESTED
        execution.halt_message = message
    elif target == ExecutionState.FAILED:
        execution.halt_message = message

    if target in TERMINAL_STATES:
        execution.completed_at = now

    return execution


def require_state(execution: AgentExecution, *states: ExecutionState, target: str) -> None:
    """
    Raise InvalidTransition unless the execution is in one of `states`.

    Used by control calls whose effect is not a plain state change
    (approve/reject act on the step first).
    """
    if execution.state not in states:
        raise InvalidTransition(
            execution.state.value,
            target,
            f"Cannot {target} execution {execution.id} in state {execution.state.value}",
        )
