"""
Checkpoint Manager - restorable snapshots of an execution.

WHAT THIS FILE DOES:
-------------------
create()    - value copy of {state, current_step, steps, context,
              files_modified} plus file snapshots to replay on rollback
rollback()  - restore that copy, all-or-nothing
preview()   - what a rollback would change, without changing it

ROLLBACK ORDER:
--------------
    1. Replay file snapshots through the FileStore, journaling each file's
       prior content. If any operation fails, everything already applied is
       reverted from the journal and RollbackError is raised; the execution
       record has not been touched yet.
    2. Write the restored execution (version-checked). If that write fails,
       the files are reverted the same way.

A step captured as `running` (manual checkpoint taken mid-step) is restored
as `failed`: nothing will ever record its result, and the planner runs its
action again.

Checkpoints are never deleted or edited. Checkpoints taken after the restored
one stay listed and are reported as `superseded_checkpoints`.

Ownership is checked here, not just in the controller: rollback() raises
Forbidden unless the caller owns the execution.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from .audit import AuditLog
from .errors import InvalidArgument, NotFound, RollbackError
from .filestore import FileStore, capture_snapshots
from .schemas import (
    AgentExecution,
    Checkpoint,
    CheckpointState,
    FileSnapshot,
    RollbackData,
    RollbackPreview,
    RollbackResult,
    StepStatus,
    TERMINAL_STATES,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Creates checkpoints and rolls executions back to them.

    Usage:
        manager = CheckpointManager(store, files=LocalFileStore(project_root))
        cp = manager.create(execution.id, description="Before refactor", automatic=False)
        ...
        result = manager.rollback(cp.id, caller_id=execution.user_id)
    """

    def __init__(
        self,
        store: ExecutionStore,
        files: Optional[FileStore] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.files = files
        self.audit = audit

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    def create(
        self,
        execution_id: str,
        step_number: Optional[int] = None,
        description: Optional[str] = None,
        automatic: bool = True,
        context: Optional[dict[str, Any]] = None,
        rollback_data: Optional[RollbackData] = None,
        execution: Optional[AgentExecution] = None,
    ) -> Checkpoint:
        """
        Capture a checkpoint of an execution.

        Args:
            execution_id: Execution to capture
            step_number: Step the checkpoint belongs to (default: current_step)
            description: Shown in checkpoint lists
            automatic: False for checkpoints a user asked for
            context: Extra keys merged over the execution's context
            rollback_data: Explicit file snapshots; captured from
                          files_modified when omitted and a FileStore is set
            execution: Already-loaded copy of the execution (skips a read)

        Raises:
            NotFound: Unknown execution
            InvalidArgument: step_number outside 0..current_step
        """
        if execution is None:
            execution = self.store.get_execution(execution_id)
            if execution is None:
                raise NotFound(f"Execution not found: {execution_id}")

        if step_number is None:
            step_number = execution.current_step
        if step_number < 0 or step_number > execution.current_step:
            raise InvalidArgument(
                f"Checkpoint step {step_number} is outside 0..{execution.current_step}"
            )

        snapshot = execution.model_copy(deep=True)
        state = CheckpointState(
            execution_state=snapshot.state,
            current_step=snapshot.current_step,
            steps=snapshot.steps,
            context={**snapshot.context, **(context or {})},
            files_modified=snapshot.files_modified,
        )

        if rollback_data is None and self.files is not None and snapshot.files_modified:
            rollback_data = RollbackData(
                file_snapshots=capture_snapshots(self.files, snapshot.files_modified)
            )

        checkpoint = self.store.add_checkpoint(Checkpoint(
            execution_id=execution.id,
            agent_id=execution.agent_id,
            user_id=execution.user_id,
            step_number=step_number,
            description=description or f"Step {step_number}",
            state=state,
            rollback_data=rollback_data,
            automatic=automatic,
            tokens_used_at_checkpoint=execution.total_tokens_used,
            cost_at_checkpoint=execution.total_cost_usd,
        ))

        logger.info(f"Checkpoint {checkpoint.id} created for {execution.id} at step {step_number}")
        if self.audit:
            self.audit.info(
                "checkpoint_created",
                execution_id=execution.id,
                user_id=execution.user_id,
                checkpoint_id=checkpoint.id,
                step_number=step_number,
                automatic=automatic,
            )
        return checkpoint

    def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        """Checkpoints of an execution, ascending by step number."""
        return self.store.list_checkpoints(execution_id)

    def get(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self.store.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise NotFound(f"Checkpoint not found: {checkpoint_id}")
        return checkpoint

    def latest(self, execution_id: str) -> Optional[Checkpoint]:
        checkpoints = self.list_checkpoints(execution_id)
        return checkpoints[-1] if checkpoints else None

    def _later_checkpoints(self, checkpoint: Checkpoint) -> list[Checkpoint]:
        return [
            cp for cp in self.list_checkpoints(checkpoint.execution_id)
            if cp.id != checkpoint.id
            and (cp.step_number, cp.created_at) > (checkpoint.step_number, checkpoint.created_at)
        ]

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    def preview(self, checkpoint_id: str, caller_id: str) -> RollbackPreview:
        """Describe what rollback() would do."""
        checkpoint = self.store.load_owned_checkpoint(checkpoint_id, caller_id)
        execution = self.store.load_owned_execution(checkpoint.execution_id, caller_id)
        snapshots = checkpoint.rollback_data.file_snapshots if checkpoint.rollback_data else []
        return RollbackPreview(
            checkpoint_id=checkpoint.id,
            steps_to_revert=max(0, execution.current_step - checkpoint.state.current_step),
            checkpoints_after=len(self._later_checkpoints(checkpoint)),
            files_to_restore=[s.path for s in snapshots],
            target_state=checkpoint.state.model_copy(deep=True),
        )

    def rollback(self, checkpoint_id: str, caller_id: str) -> RollbackResult:
        """
        Restore an execution to a checkpoint.

        Raises:
            NotFound: Unknown checkpoint or execution
            Forbidden: Caller does not own the execution
            RollbackError: A file operation or the final write failed;
                          nothing was left half-applied
        """
        checkpoint = self.store.load_owned_checkpoint(checkpoint_id, caller_id)
        execution = self.store.load_owned_execution(checkpoint.execution_id, caller_id)
        snapshots = checkpoint.rollback_data.file_snapshots if checkpoint.rollback_data else []

        journal = self._replay(checkpoint, snapshots)

        restored = execution.model_copy(deep=True)
        target = checkpoint.state.model_copy(deep=True)
        restored.state = target.execution_state
        restored.current_step = target.current_step
        restored.steps = target.steps
        restored.context = target.context
        restored.files_modified = target.files_modified
        interrupted = []
        for step in restored.steps:
            if step.status == StepStatus.RUNNING:
                # No loop owns a step restored from a snapshot
                step.status = StepStatus.FAILED
                step.error = "Interrupted: checkpoint was taken while the step was running"
                step.completed_at = datetime.now()
                interrupted.append(step.step_number)
        if restored.state not in TERMINAL_STATES:
            restored.halt_reason = None
            restored.halt_message = None
            restored.completed_at = None

        try:
            saved = self.store.save_execution(restored)
        except Exception as e:
            operations = [entry["op"] for entry in journal]
            self._undo(journal)
            self._audit_failure(checkpoint, operations, str(e))
            raise RollbackError(
                f"Rollback to {checkpoint.id} could not be saved: {e}", operations
            ) from e

        superseded = [cp.id for cp in self._later_checkpoints(checkpoint)]
        steps_reverted = max(0, execution.current_step - target.current_step)

        logger.info(
            f"Rolled back {execution.id} to checkpoint {checkpoint.id} "
            f"(step {execution.current_step} -> {target.current_step})"
        )
        if self.audit:
            self.audit.info(
                "rollback_applied",
                execution_id=execution.id,
                user_id=caller_id,
                checkpoint_id=checkpoint.id,
                steps_reverted=steps_reverted,
                files_restored=[s.path for s in snapshots],
                superseded_checkpoints=superseded,
                interrupted_steps=interrupted,
            )

        return RollbackResult(
            checkpoint=checkpoint,
            execution=saved,
            steps_reverted=steps_reverted,
            files_restored=[s.path for s in snapshots],
            superseded_checkpoints=superseded,
        )

    def rollback_to_previous(self, execution_id: str, caller_id: str) -> RollbackResult:
        """Roll back to the most recent checkpoint of an execution."""
        self.store.load_owned_execution(execution_id, caller_id)
        checkpoint = self.latest(execution_id)
        if checkpoint is None:
            raise NotFound(f"No checkpoints for execution {execution_id}")
        return self.rollback(checkpoint.id, caller_id)

    # -------------------------------------------------------------------------
    # File replay
    # -------------------------------------------------------------------------

    def _replay(self, checkpoint: Checkpoint, snapshots: list[FileSnapshot]) -> list[dict]:
        """
        Apply snapshots in order, returning the undo journal.

        Each journal entry is {"op", "snapshot", "existed", "content"} where
        existed/content describe the file before the operation.
        """
        if not snapshots:
            return []
        if self.files is None:
            raise RollbackError(
                f"Checkpoint {checkpoint.id} has file snapshots but no file store is configured",
                [{"path": s.path, "action": s.action, "status": "failed"} for s in snapshots],
            )

        journal: list[dict] = []
        for snapshot in snapshots:
            op = {"path": snapshot.path, "action": snapshot.action, "status": "pending"}
            try:
                existed = self.files.exists(snapshot.path)
                prior = self.files.read(snapshot.path) if existed else None
            except (OSError, ValueError) as e:
                op["status"] = "failed"
                op["error"] = str(e)
                return self._abort(checkpoint, journal, op)

            entry = {"op": op, "snapshot": snapshot, "existed": existed, "content": prior}
            try:
                if snapshot.action == "delete":
                    self.files.delete(snapshot.path)
                else:
                    self.files.write(snapshot.path, snapshot.content or "")
            except (OSError, ValueError) as e:
                op["status"] = "failed"
                op["error"] = str(e)
                journal.append(entry)
                return self._abort(checkpoint, journal, op)

            op["status"] = "applied"
            journal.append(entry)
        return journal

    def _abort(self, checkpoint: Checkpoint, journal: list[dict], failed_op: dict):
        operations = [entry["op"] for entry in journal]
        if not any(op is failed_op for op in operations):
            operations.append(failed_op)
        self._undo(journal)
        self._audit_failure(checkpoint, operations, failed_op.get("error", ""))
        raise RollbackError(
            f"Rollback to {checkpoint.id} failed at {failed_op['path']}: {failed_op.get('error')}",
            operations,
        )

    def _undo(self, journal: list[dict]) -> None:
        """Restore every journaled file to its prior content, newest first."""
        for entry in reversed(journal):
            op = entry["op"]
            path = entry["snapshot"].path
            try:
                if entry["existed"]:
                    self.files.write(path, entry["content"])
                else:
                    self.files.delete(path)
            except (OSError, ValueError) as e:
                op["status"] = "revert_failed"
                op["revert_error"] = str(e)
                logger.error(f"Could not revert {path} during rollback: {e}")
                continue
            if op["status"] == "applied":
                op["status"] = "reverted"

    def _audit_failure(self, checkpoint: Checkpoint, operations: list[dict], error: str) -> None:
        logger.error(f"Rollback to checkpoint {checkpoint.id} failed: {error}")
        if self.audit:
            self.audit.error(
                "rollback_failed",
                execution_id=checkpoint.execution_id,
                user_id=checkpoint.user_id,
                checkpoint_id=checkpoint.id,
                error=error,
                operations=operations,
            )
