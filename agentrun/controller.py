"""
Execution Controller - owns the lifecycle of every execution.

WHY THIS FILE EXISTS:
--------------------
Callers never touch the scheduler or the store directly. They ask the
controller to start, pause, resume, stop, approve, reject, checkpoint or roll
back, and the controller:

1. Checks ownership (Forbidden) and existence (NotFound)
2. Validates the transition against lifecycle.py (InvalidTransition)
3. Persists the new state under the execution lock BEFORE acting on it
4. Starts a scheduler loop when the execution becomes runnable again
5. Writes an audit entry

Example:
    controller = ExecutionController(store, invoker, files=LocalFileStore(root))
    execution = await controller.start("u1", "coder", "Fix the failing tests", plan=actions)
    execution = await controller.wait(execution.id)
    if execution.state == ExecutionState.AWAITING_CONFIRMATION:
        await controller.approve(execution.id, "u1")
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from . import safety
from .audit import AuditLog
from .checkpoints import CheckpointManager
from .errors import (
    BudgetExceeded,
    Conflict,
    Disabled,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    MaxStepsReached,
    NotFound,
    SafetyBlocked,
)
from .filestore import FileStore
from .ledger import BudgetLedger
from .lifecycle import require_state, transition
from .providers import ModelInvoker
from .scheduler import ActionPlanner, ExecutionLocks, StepScheduler
from .schemas import (
    AgentExecution,
    Checkpoint,
    ExecutionState,
    ExecutionStep,
    HaltReason,
    RollbackPreview,
    RollbackResult,
    StepAction,
    StepStatus,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)


class ExecutionController:
    """Entry point for every operation on an execution."""

    def __init__(
        self,
        store: ExecutionStore,
        invoker: Optional[ModelInvoker] = None,
        files: Optional[FileStore] = None,
        planner: Optional[ActionPlanner] = None,
        resolve_invoker: Optional[Callable[[str], ModelInvoker]] = None,
        on_event: Optional[Callable[[str, AgentExecution], None]] = None,
    ):
        """
        Initialize the controller and the components it drives.

        Args:
            store: Durable store for everything
            invoker: Default model/tool invoker (or pass resolve_invoker)
            files: File store for checkpoint snapshots and rollback replay
            planner: Source of actions (default: each execution's plan)
            resolve_invoker: Optional lookup from agent model name to invoker
            on_event: Notified when an execution needs confirmation or ends
        """
        if invoker is None and resolve_invoker is None:
            raise ValueError("Either invoker or resolve_invoker is required")
        self.store = store
        self.on_event = on_event
        self.audit = AuditLog(store)
        self.ledger = BudgetLedger(store)
        self.locks = ExecutionLocks()
        self.checkpoints = CheckpointManager(store, files=files, audit=self.audit)
        self.scheduler = StepScheduler(
            store=store,
            ledger=self.ledger,
            checkpoints=self.checkpoints,
            audit=self.audit,
            invoker=invoker,
            locks=self.locks,
            planner=planner,
            resolve_invoker=resolve_invoker,
            on_event=on_event,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # LOOP MANAGEMENT
    # =========================================================================

    def _spawn(self, execution_id: str) -> bool:
        """Start a scheduler loop. Caller must hold the execution lock."""
        claim = self.locks.try_claim(execution_id)
        if claim is None:
            return False
        task = asyncio.create_task(
            self.scheduler.run(execution_id, claim),
            name=f"agentrun-{execution_id}",
        )
        task.add_done_callback(lambda done: self._task_done(execution_id, done))
        self._tasks[execution_id] = task
        return True

    def _task_done(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} ended with error: {error}")

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Optional[AgentExecution]:
        """
        Wait until no scheduler loop is running for an execution.

        Re-raises the loop's exception if it fails while being waited on.
        Returns the execution as last persisted.
        """
        while True:
            task = self._tasks.get(execution_id)
            if task is None:
                break
            if timeout is None:
                await asyncio.shield(task)
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            if self._tasks.get(execution_id) is task:
                break
        return self.store.get_execution(execution_id)

    async def close(self) -> None:
        """Cancel running loops (process shutdown)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _notify(self, event: str, execution: AgentExecution) -> None:
        if self.on_event is not None:
            self.on_event(event, execution)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(
        self,
        user_id: str,
        agent_id: str,
        goal: str,
        assumptions: Optional[list[str]] = None,
        stopping_conditions: Optional[list[str]] = None,
        plan: Optional[list[StepAction]] = None,
        project_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> AgentExecution:
        """
        Create an execution and hand it to the scheduler.

        Raises:
            NotFound: Unknown agent
            Forbidden: Agent belongs to another user
            Disabled: Agent is disabled
            InvalidArgument: Empty goal
        """
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}")
        if agent.user_id != user_id:
            raise Forbidden(f"Agent {agent_id} belongs to another user")
        if not agent.enabled:
            raise Disabled(f"Agent {agent_id} is disabled")
        if not goal or not goal.strip():
            raise InvalidArgument("Goal cannot be empty")

        plan = list(plan or [])
        execution = self.store.create_execution(AgentExecution(
            agent_id=agent.id,
            user_id=user_id,
            project_id=project_id,
            goal=goal,
            assumptions=list(assumptions or []),
            stopping_conditions=list(stopping_conditions or []),
            plan=plan,
            total_steps=len(plan),
            context=dict(context or {}),
        ))
        self.audit.info(
            "execution_created",
            execution_id=execution.id,
            user_id=user_id,
            agent_id=agent.id,
            goal=goal,
            planned_steps=len(plan),
        )

        async with self.locks.lock(execution.id):
            execution = self.store.get_execution(execution.id)
            transition(execution, ExecutionState.EXECUTING)
            execution = self.store.save_execution(execution)
            self.audit.info("execution_started", execution_id=execution.id, user_id=user_id)
            self._spawn(execution.id)

        logger.info(f"Started execution {execution.id} for agent {agent.id}")
        return execution

    async def pause(self, execution_id: str, user_id: str) -> AgentExecution:
        """Pause before the next step. Only valid while executing."""
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            require_state(execution, ExecutionState.EXECUTING, target="pause")
            transition(execution, ExecutionState.PAUSED)
            execution = self.store.save_execution(execution)
            self.audit.info("execution_paused", execution_id=execution_id, user_id=user_id)
        return execution

    async def resume(self, execution_id: str, user_id: str) -> AgentExecution:
        """
        Continue a paused execution.

        Raises:
            MaxStepsReached, BudgetExceeded, SafetyBlocked: The next step could
                not run; the execution stays paused (see _check_runnable)
        """
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            require_state(execution, ExecutionState.PAUSED, target="resume")
            await self._check_runnable(execution)
            transition(execution, ExecutionState.EXECUTING)
            execution = self.store.save_execution(execution)
            self.audit.info("execution_resumed", execution_id=execution_id, user_id=user_id)
            self._spawn(execution_id)
        return execution

    async def _check_runnable(self, execution: AgentExecution, step: Optional[ExecutionStep] = None) -> None:
        """
        Refuse to restart the loop when its next step would be stopped at once.

        Applies the scheduler's step limit and budget caps, plus the safety
        rules for an approved step, before anything is persisted. The caller
        gets the reason as an error and the execution keeps its state.
        Nothing is checked when no step is left: the loop would just
        complete the execution.
        """
        agent = self.store.get_agent(execution.agent_id)
        if agent is None:
            return
        step = step or execution.approved_step()
        if step is None and await self.scheduler.planner.next_action(execution) is None:
            return
        policy = agent.policy

        if execution.current_step >= policy.max_steps:
            raise MaxStepsReached(
                f"Execution {execution.id} already ran {execution.current_step} of at most {policy.max_steps} steps",
                current_step=execution.current_step,
                max_steps=policy.max_steps,
            )

        blocked = self.scheduler.budget_block(execution, policy)
        if blocked:
            raise BudgetExceeded(blocked)

        if step is not None:
            verdict = safety.check(
                step.action.description,
                safety.effective_rules(policy.rules, policy.include_default_rules),
            )
            if not verdict.allowed:
                raise SafetyBlocked(
                    f"Step {step.step_number} is blocked by safety rule: {verdict.reason}",
                    step_number=step.step_number,
                )

    async def halt(
        self,
        execution_id: str,
        user_id: str,
        reason: HaltReason = HaltReason.USER_REQUESTED,
        message: Optional[str] = None,
    ) -> AgentExecution:
        """
        Halt from any non-terminal state.

        A step parked at a confirmation gate is marked skipped. A step whose
        call is in flight finishes and is recorded; nothing runs after it.
        """
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            if execution.is_terminal:
                raise InvalidTransition(
                    execution.state.value,
                    ExecutionState.HALTED.value,
                    f"Execution {execution_id} already ended ({execution.state.value})",
                )
            pending = execution.awaiting_step()
            if pending is not None:
                pending.status = StepStatus.SKIPPED
                pending.error = "Execution halted"
            transition(execution, ExecutionState.HALTED, reason=reason, message=message)
            execution = self.store.save_execution(execution)
            self.audit.warn(
                "execution_halted",
                execution_id=execution_id,
                user_id=user_id,
                reason=reason.value,
                message=message,
            )
        self._notify("halted", execution)
        return execution

    async def stop(self, execution_id: str, user_id: str) -> AgentExecution:
        """Halt at the user's request."""
        return await self.halt(execution_id, user_id, HaltReason.USER_REQUESTED, "Stopped by user")

    # =========================================================================
    # CONFIRMATION GATE
    # =========================================================================

    async def approve(self, execution_id: str, user_id: str) -> AgentExecution:
        """
        Approve the step awaiting confirmation and continue with it.

        Raises:
            MaxStepsReached, BudgetExceeded, SafetyBlocked: The step could not
                run; it stays at the gate (see _check_runnable)
        """
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            require_state(execution, ExecutionState.AWAITING_CONFIRMATION, target="approve")
            step = execution.awaiting_step()
            if step is None:
                raise Conflict(f"Execution {execution_id} has no step awaiting confirmation")
            await self._check_runnable(execution, step)
            step.approved = True
            step.status = StepStatus.PENDING
            transition(execution, ExecutionState.EXECUTING)
            execution = self.store.save_execution(execution)
            self.audit.info(
                "step_approved",
                execution_id=execution_id,
                user_id=user_id,
                step_number=step.step_number,
            )
            self._spawn(execution_id)
        return execution

    async def reject(self, execution_id: str, user_id: str, reason: Optional[str] = None) -> AgentExecution:
        """
        Reject the step awaiting confirmation.

        The step is skipped. With the agent's continue_on_reject policy the
        execution carries on with the next action; otherwise it halts.
        """
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            require_state(execution, ExecutionState.AWAITING_CONFIRMATION, target="reject")
            step = execution.awaiting_step()
            if step is None:
                raise Conflict(f"Execution {execution_id} has no step awaiting confirmation")
            step.status = StepStatus.SKIPPED
            step.error = reason or "Rejected by user"
            self.audit.info(
                "step_rejected",
                execution_id=execution_id,
                user_id=user_id,
                step_number=step.step_number,
                reason=step.error,
            )

            agent = self.store.get_agent(execution.agent_id)
            if agent is not None and agent.policy.continue_on_reject:
                transition(execution, ExecutionState.EXECUTING)
                execution = self.store.save_execution(execution)
                self._spawn(execution_id)
                return execution

            halt_reason = HaltReason.SCOPE_EXPANSION if step.action.expands_scope else HaltReason.USER_REQUESTED
            transition(
                execution,
                ExecutionState.HALTED,
                reason=halt_reason,
                message=f"Step {step.step_number} rejected: {step.error}",
            )
            execution = self.store.save_execution(execution)
            self.audit.warn(
                "execution_halted",
                execution_id=execution_id,
                user_id=user_id,
                reason=halt_reason.value,
                message=execution.halt_message,
            )
        self._notify("halted", execution)
        return execution

    # =========================================================================
    # CHECKPOINTS & ROLLBACK
    # =========================================================================

    async def create_checkpoint(
        self,
        execution_id: str,
        user_id: str,
        description: Optional[str] = None,
    ) -> Checkpoint:
        """Take a manual checkpoint at the current step."""
        async with self.locks.lock(execution_id):
            execution = self.store.load_owned_execution(execution_id, user_id)
            return self.checkpoints.create(
                execution_id,
                description=description,
                automatic=False,
                execution=execution,
            )

    def list_checkpoints(self, execution_id: str, user_id: str) -> list[Checkpoint]:
        self.store.load_owned_execution(execution_id, user_id)
        return self.checkpoints.list_checkpoints(execution_id)

    def rollback_preview(self, checkpoint_id: str, user_id: str) -> RollbackPreview:
        return self.checkpoints.preview(checkpoint_id, user_id)

    async def rollback(self, checkpoint_id: str, user_id: str) -> RollbackResult:
        """
        Restore an execution to a checkpoint.

        If the restored state is `executing` and no loop is running, the
        execution is parked as `paused`; resume() continues from the
        restored step.
        """
        checkpoint = self.store.load_owned_checkpoint(checkpoint_id, user_id)
        async with self.locks.lock(checkpoint.execution_id):
            result = self.checkpoints.rollback(checkpoint_id, user_id)
            execution = result.execution
            if (
                execution.state == ExecutionState.EXECUTING
                and not self.locks.is_claimed(execution.id)
            ):
                transition(execution, ExecutionState.PAUSED)
                result.execution = self.store.save_execution(execution)
        return result

    async def rollback_to_previous(self, execution_id: str, user_id: str) -> RollbackResult:
        self.store.load_owned_execution(execution_id, user_id)
        checkpoint = self.checkpoints.latest(execution_id)
        if checkpoint is None:
            raise NotFound(f"No checkpoints for execution {execution_id}")
        return await self.rollback(checkpoint.id, user_id)

    # =========================================================================
    # QUERIES & RECOVERY
    # =========================================================================

    def get_state(self, execution_id: str, user_id: str) -> AgentExecution:
        return self.store.load_owned_execution(execution_id, user_id)

    def list_executions(self, user_id: str) -> list[AgentExecution]:
        return self.store.list_executions(user_id)

    async def recover_interrupted(self) -> list[AgentExecution]:
        """
        Park executions a previous process left `executing` as `paused`.

        Call once at startup, before starting new work. Returns the
        executions that were parked.
        """
        recovered = []
        for execution in self.store.list_executions():
            if execution.state != ExecutionState.EXECUTING:
                continue
            async with self.locks.lock(execution.id):
                if self.locks.is_claimed(execution.id):
                    continue
                current = self.store.get_execution(execution.id)
                if current is None or current.state != ExecutionState.EXECUTING:
                    continue
                for step in current.steps:
                    if step.status == StepStatus.RUNNING:
                        step.status = StepStatus.FAILED
                        step.error = "Interrupted before the result was recorded"
                transition(current, ExecutionState.PAUSED)
                current = self.store.save_execution(current)
                self.audit.warn(
                    "execution_recovered",
                    execution_id=current.id,
                    user_id=current.user_id,
                    parked_as=current.state.value,
                )
                recovered.append(current)
        if recovered:
            logger.info(f"Parked {len(recovered)} interrupted execution(s) as paused")
        return recovered
