"""
Error taxonomy for the execution engine.

Every failure an external caller can see is an EngineError subclass with a
stable `kind`. The Control API (api.py) turns these into `{kind, message}`
payloads; anything that is not an EngineError is reported as kind "internal".
"""

from typing import Any, Optional

from .schemas import ErrorPayload


class EngineError(Exception):
    """Base class for all engine errors."""

    kind = "internal"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(kind=self.kind, message=self.message)


class NotFound(EngineError):
    kind = "not_found"


class Forbidden(EngineError):
    kind = "forbidden"


class Disabled(EngineError):
    kind = "disabled"


class InvalidTransition(EngineError):
    """Raised when a control call is not valid from the execution's current state."""

    kind = "invalid_transition"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid state transition: {current} -> {target}",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class InvalidArgument(EngineError):
    kind = "invalid_argument"


class Conflict(EngineError):
    """A write was based on a stale copy of the record."""

    kind = "conflict"


class SafetyBlocked(EngineError):
    """
    approve()/resume() found the step denied by the current safety rules.

    This and the next two are raised only by control calls that would restart
    a loop. A running loop halts with the matching HaltReason instead.
    """

    kind = "safety_blocked"


class BudgetExceeded(EngineError):
    """An execution or account cap leaves no room for the next step."""

    kind = "budget_exceeded"


class MaxStepsReached(EngineError):
    """The execution already ran the agent's max_steps."""

    kind = "max_steps_reached"


class ToolInvocationError(EngineError):
    """
    Failure of the external tool/model call.

    `retryable` is a classification only. The scheduler never retries on its
    own; wrap the invoker in providers.RetryingInvoker to act on it.
    """

    kind = "tool_invocation_error"

    def __init__(self, message: str, retryable: bool = False, **details: Any):
        super().__init__(message, retryable=retryable, **details)
        self.retryable = retryable


class RollbackError(EngineError):
    """
    File replay during a rollback failed part way.

    `operations` lists every operation that was attempted, in order, each as
    {"path", "action", "status"} where status is one of "applied",
    "reverted", "failed" or "revert_failed".
    """

    kind = "rollback_error"

    def __init__(self, message: str, operations: Optional[list[dict]] = None):
        super().__init__(message, operations=operations or [])
        self.operations = operations or []

    @property
    def failed_operations(self) -> list[dict]:
        return [op for op in self.operations if op["status"] in ("failed", "revert_failed")]
