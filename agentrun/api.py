"""
Control API - the surface the CLI and the MCP server call.

Every method returns a ControlResponse:

    {"ok": true,  "data": {...}, "error": null}
    {"ok": false, "data": null,  "error": {"kind": "forbidden", "message": "..."}}

Engine errors keep their kind. Anything else is written to the Audit Log
with its details and reported to the caller only as kind "internal".
"""

import inspect
import logging
from dataclasses import is_dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from .controller import ExecutionController
from .errors import EngineError, InvalidArgument
from .schemas import ControlResponse, ErrorPayload, HaltReason, StepAction

logger = logging.getLogger(__name__)


def _to_data(value: Any) -> Any:
    """JSON-friendly form of a result."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _to_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_data(v) for v in value]
    return value


class ControlAPI:
    """
    Translates controller calls into ControlResponses.

    Usage:
        api = ControlAPI(controller)
        response = await api.start("u1", "coder", "Add a README", plan=[{"description": "write README"}])
        if not response.ok:
            print(response.error.kind, response.error.message)
    """

    def __init__(self, controller: ExecutionController):
        self.controller = controller
        self.audit = controller.audit

    async def _call(
        self,
        operation: str,
        user_id: str,
        fn: Callable,
        *args: Any,
        execution_id: Optional[str] = None,
        **kwargs: Any,
    ) -> ControlResponse:
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except EngineError as e:
            self.audit.warn(
                "control_error",
                execution_id=execution_id,
                user_id=user_id,
                operation=operation,
                kind=e.kind,
                message=e.message,
            )
            return ControlResponse(ok=False, error=e.to_payload())
        except Exception as e:
            logger.exception(f"{operation} failed unexpectedly")
            self.audit.error(
                "internal_error",
                execution_id=execution_id,
                user_id=user_id,
                operation=operation,
                error=repr(e),
            )
            return ControlResponse(
                ok=False,
                error=ErrorPayload(kind="internal", message=f"{operation} failed due to an internal error"),
            )
        return ControlResponse(ok=True, data=_to_data(result))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        agent_id: str,
        goal: str,
        assumptions: Optional[list[str]] = None,
        stopping_conditions: Optional[list[str]] = None,
        plan: Optional[list] = None,
        project_id: Optional[str] = None,
    ) -> ControlResponse:
        async def _start():
            try:
                actions = [StepAction.model_validate(a) for a in (plan or [])]
            except ValidationError as e:
                raise InvalidArgument(f"Invalid plan: {e.error_count()} error(s): {e.errors()[0]['msg']}")
            return await self.controller.start(
                user_id,
                agent_id,
                goal,
                assumptions=assumptions,
                stopping_conditions=stopping_conditions,
                plan=actions,
                project_id=project_id,
            )

        return await self._call("start", user_id, _start)

    async def pause(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "pause", user_id, self.controller.pause, execution_id, user_id, execution_id=execution_id
        )

    async def resume(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "resume", user_id, self.controller.resume, execution_id, user_id, execution_id=execution_id
        )

    async def stop(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "stop", user_id, self.controller.stop, execution_id, user_id, execution_id=execution_id
        )

    async def halt(
        self,
        execution_id: str,
        user_id: str,
        reason: str = HaltReason.USER_REQUESTED.value,
        message: Optional[str] = None,
    ) -> ControlResponse:
        async def _halt():
            try:
                halt_reason = HaltReason(reason)
            except ValueError:
                raise InvalidArgument(f"Unknown halt reason: {reason}")
            return await self.controller.halt(execution_id, user_id, halt_reason, message)

        return await self._call("halt", user_id, _halt, execution_id=execution_id)

    async def approve(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "approve", user_id, self.controller.approve, execution_id, user_id, execution_id=execution_id
        )

    async def reject(self, execution_id: str, user_id: str, reason: Optional[str] = None) -> ControlResponse:
        return await self._call(
            "reject", user_id, self.controller.reject, execution_id, user_id, reason,
            execution_id=execution_id,
        )

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def create_checkpoint(
        self,
        execution_id: str,
        user_id: str,
        description: Optional[str] = None,
    ) -> ControlResponse:
        return await self._call(
            "create_checkpoint", user_id, self.controller.create_checkpoint,
            execution_id, user_id, description,
            execution_id=execution_id,
        )

    async def list_checkpoints(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "list_checkpoints", user_id, self.controller.list_checkpoints, execution_id, user_id,
            execution_id=execution_id,
        )

    def _checkpoint_execution(self, checkpoint_id: str) -> Optional[str]:
        """Execution a checkpoint belongs to, for audit entries (None if unknown)."""
        checkpoint = self.controller.store.get_checkpoint(checkpoint_id)
        return checkpoint.execution_id if checkpoint else None

    async def rollback(self, checkpoint_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "rollback", user_id, self.controller.rollback, checkpoint_id, user_id,
            execution_id=self._checkpoint_execution(checkpoint_id),
        )

    async def rollback_preview(self, checkpoint_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "rollback_preview", user_id, self.controller.rollback_preview, checkpoint_id, user_id,
            execution_id=self._checkpoint_execution(checkpoint_id),
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_state(self, execution_id: str, user_id: str) -> ControlResponse:
        return await self._call(
            "get_state", user_id, self.controller.get_state, execution_id, user_id,
            execution_id=execution_id,
        )

    async def list_executions(self, user_id: str) -> ControlResponse:
        return await self._call("list_executions", user_id, self.controller.list_executions, user_id)

    async def usage(self, user_id: str) -> ControlResponse:
        def _usage():
            ledger = self.controller.ledger
            settings = self.controller.store.get_user_settings(user_id)
            return {
                "summary": ledger.usage_summary(user_id),
                "status": ledger.budget_status(user_id, settings),
            }

        return await self._call("usage", user_id, _usage)
