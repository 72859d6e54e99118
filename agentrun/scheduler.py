"""
Step Scheduler - drives one execution forward, one step at a time.

WHAT THIS FILE DOES:
-------------------
run() is the body of the background task the controller starts for an
execution. Each pass of the loop:

    ┌──────────────── under the execution lock ────────────────┐
    │ 1. Reload the execution; stop unless it is `executing`   │
    │ 2. Next action: approved pending step, else the planner  │
    │    (no action left -> completed)                         │
    │ 3. current_step >= max_steps  -> halt max_steps_reached  │
    │ 4. Execution cap / account cap -> halt budget_exceeded   │
    │ 5. Safety Gate: deny    -> step failed, halt violation   │
    │                 confirm -> awaiting_confirmation, stop   │
    │ 6. Step -> running, persist                              │
    └──────────────────────────────────────────────────────────┘
      7. Invoke the model/tool (lock released, no retries)
    ┌──────────────── under the execution lock ────────────────┐
    │ 8. Ledger record for any returned call; reload; record   │
    │    output or error on the step                           │
    │    success -> current_step += 1, totals,                 │
    │               uncertainty check, automatic checkpoint    │
    │    error   -> step failed, execution failed (unless a    │
    │               pause/halt got there first)                │
    └──────────────────────────────────────────────────────────┘

CONCURRENCY:
-----------
ExecutionLocks hands out one asyncio.Lock per execution and a single-flight
"loop claim". Whoever starts a loop takes the claim under the lock; the loop
gives it back under the lock in the same critical section where it decides
to stop. A resume/approve that runs after that sees no claim and starts a new
loop; one that runs before it sees the execution still `executing` or the
claim still held. Claims are tokens, so a finished loop can never release a
newer loop's claim.

A Conflict from the store while preparing or finishing a step means the
record changed underneath the loop. That phase re-reads and runs once more;
a second Conflict fails the execution.
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from . import safety
from .audit import AuditLog
from .checkpoints import CheckpointManager
from .costs import estimate_cost
from .errors import Conflict, EngineError, ToolInvocationError
from .ledger import BudgetLedger
from .lifecycle import can_transition, transition
from .providers import InvocationResult, ModelInvoker
from .schemas import (
    AgentDefinition,
    AgentExecution,
    AgentPolicy,
    ExecutionState,
    ExecutionStep,
    HaltReason,
    StepAction,
    StepPayload,
    StepStatus,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)

UNCERTAINTY_PATTERN = re.compile(r"uncertainty[:\s]+(\d+)%", re.IGNORECASE)


# =============================================================================
# SECTION 1: LOCKS AND LOOP CLAIMS
# =============================================================================

class ExecutionLocks:
    """
    Per-execution asyncio locks plus the single-flight loop claim.

    try_claim()/release_claim() must be called inside lock(id). A lock is
    dropped once nobody holds or waits on it and no loop claims the
    execution, so the table only covers executions in use.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}
        self._claims: dict[str, object] = {}

    @asynccontextmanager
    async def lock(self, execution_id: str):
        if execution_id not in self._locks:
            self._locks[execution_id] = asyncio.Lock()
        self._users[execution_id] = self._users.get(execution_id, 0) + 1
        try:
            async with self._locks[execution_id]:
                yield
        finally:
            self._users[execution_id] -= 1
            self._prune(execution_id)

    def try_claim(self, execution_id: str) -> Optional[object]:
        """Take the loop claim. Returns a token, or None if a loop is running."""
        if execution_id in self._claims:
            return None
        token = object()
        self._claims[execution_id] = token
        return token

    def release_claim(self, execution_id: str, token: object) -> None:
        if self._claims.get(execution_id) is token:
            del self._claims[execution_id]
            self._prune(execution_id)

    def is_claimed(self, execution_id: str) -> bool:
        return execution_id in self._claims

    def _prune(self, execution_id: str) -> None:
        if self._users.get(execution_id, 0) == 0 and execution_id not in self._claims:
            self._users.pop(execution_id, None)
            self._locks.pop(execution_id, None)


# =============================================================================
# SECTION 2: ACTION PLANNERS
# =============================================================================

class ActionPlanner(ABC):
    """Proposes the next action for an execution, or None when done."""

    @abstractmethod
    async def next_action(self, execution: AgentExecution) -> Optional[StepAction]:
        pass


class PlannedActionPlanner(ActionPlanner):
    """
    Serves the actions of `execution.plan` in order.

    The position in the plan is the number of steps already settled
    (complete or skipped), so a rollback that trims steps also rewinds the
    plan.
    """

    async def next_action(self, execution: AgentExecution) -> Optional[StepAction]:
        settled = sum(
            1 for step in execution.steps
            if step.status in (StepStatus.COMPLETE, StepStatus.SKIPPED)
        )
        if settled >= len(execution.plan):
            return None
        return execution.plan[settled].model_copy(deep=True)


# =============================================================================
# SECTION 3: HELPERS
# =============================================================================

def parse_uncertainty(content: str) -> Optional[int]:
    """Extract a self-reported 'Uncertainty: NN%' from model output."""
    match = UNCERTAINTY_PATTERN.search(content or "")
    return int(match.group(1)) if match else None


def build_messages(execution: AgentExecution, step: ExecutionStep) -> list[dict]:
    """
    Messages for one step: the goal as system content, the action (and its
    input, if any) as the user turn.
    """
    user = step.action.description
    if step.input.data is not None:
        data = step.input.data
        if not isinstance(data, str):
            data = json.dumps(data, indent=2, default=str)
        user += f"\n\nInput ({step.input.content_type}):\n{data}"
    return [
        {"role": "system", "content": f"Goal: {execution.goal}"},
        {"role": "user", "content": user},
    ]


def policy_confirmation(action: StepAction, policy: AgentPolicy) -> Optional[str]:
    """Reason the agent's policy requires confirmation for an action, if any."""
    if action.expands_scope and not policy.allow_scope_expansion:
        return "Action expands scope beyond the stated goal"
    if action.mutating and policy.require_approval_for_changes:
        return "Changes require approval"
    return None


# =============================================================================
# SECTION 4: STEP SCHEDULER
# =============================================================================

class StepScheduler:
    """
    Runs the step loop for executions.

    Usage:
        scheduler = StepScheduler(store, ledger, checkpoints, audit, invoker, locks)
        async with locks.lock(execution.id):
            claim = locks.try_claim(execution.id)
        task = asyncio.create_task(scheduler.run(execution.id, claim))
    """

    def __init__(
        self,
        store: ExecutionStore,
        ledger: BudgetLedger,
        checkpoints: CheckpointManager,
        audit: AuditLog,
        invoker: Optional[ModelInvoker],
        locks: ExecutionLocks,
        planner: Optional[ActionPlanner] = None,
        resolve_invoker: Optional[Callable[[str], ModelInvoker]] = None,
        on_event: Optional[Callable[[str, AgentExecution], None]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            invoker: Default invoker for every agent (may be None when
                    resolve_invoker is given)
            planner: Source of actions (default: the execution's own plan)
            resolve_invoker: Optional lookup from AgentDefinition.model to an
                            invoker; the default invoker is used when omitted
            on_event: Called with ("awaiting_confirmation" | "completed" |
                     "halted" | "failed", execution) after the state is saved
        """
        self.store = store
        self.ledger = ledger
        self.checkpoints = checkpoints
        self.audit = audit
        self.invoker = invoker
        self.locks = locks
        self.planner = planner or PlannedActionPlanner()
        self.resolve_invoker = resolve_invoker
        self.on_event = on_event

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self, execution_id: str, claim: object) -> Optional[AgentExecution]:
        """
        Drive an execution until it leaves `executing`.

        The caller must already hold the loop claim. A Conflict (the record
        changed underneath, e.g. written by another process) re-reads and
        retries that phase once. Returns the execution as last persisted;
        re-raises anything that is not a step-level failure after marking
        the execution failed.
        """
        try:
            while True:
                async with self.locks.lock(execution_id):
                    try:
                        prepared = await self._prepare_step(execution_id)
                    except Conflict as e:
                        self._note_conflict(execution_id, "prepare", e)
                        prepared = await self._prepare_step(execution_id)
                    if prepared is None:
                        self.locks.release_claim(execution_id, claim)
                        return self.store.get_execution(execution_id)

                execution, agent, step = prepared
                result, error, duration_ms = await self._invoke(execution, agent, step)

                async with self.locks.lock(execution_id):
                    cost = self._record_usage(execution, agent, result)
                    try:
                        self._finish_step(execution_id, agent, step.step_number, result, cost, error, duration_ms)
                    except Conflict as e:
                        self._note_conflict(execution_id, "finish", e)
                        self._finish_step(execution_id, agent, step.step_number, result, cost, error, duration_ms)
        except Exception as e:
            logger.exception(f"Step loop for {execution_id} failed")
            self.audit.error("scheduler_failed", execution_id=execution_id, error=str(e))
            async with self.locks.lock(execution_id):
                self._fail_unexpectedly(execution_id, e)
            raise
        finally:
            self.locks.release_claim(execution_id, claim)

    def _note_conflict(self, execution_id: str, phase: str, error: Conflict) -> None:
        logger.warning(f"Execution {execution_id} changed during {phase}, retrying once: {error}")
        self.audit.warn("scheduler_conflict", execution_id=execution_id, phase=phase, error=str(error))

    async def _prepare_step(
        self,
        execution_id: str,
    ) -> Optional[tuple[AgentExecution, AgentDefinition, ExecutionStep]]:
        """Steps 1-6. Returns None when the loop should stop."""
        execution = self.store.get_execution(execution_id)
        if execution is None or execution.state != ExecutionState.EXECUTING:
            return None

        agent = self.store.get_agent(execution.agent_id)
        if agent is None:
            self._halt(
                execution,
                HaltReason.DEPENDENCY_FAILED,
                f"Agent {execution.agent_id} no longer exists",
            )
            return None
        policy = agent.policy

        step = execution.approved_step()
        action = step.action if step else await self.planner.next_action(execution)
        if action is None:
            transition(execution, ExecutionState.COMPLETED)
            saved = self.store.save_execution(execution)
            self.audit.info(
                "execution_completed",
                execution_id=saved.id,
                user_id=saved.user_id,
                steps=saved.current_step,
            )
            self._notify("completed", saved)
            return None

        if execution.current_step >= policy.max_steps:
            self._halt(
                execution,
                HaltReason.MAX_STEPS_REACHED,
                f"Reached the maximum of {policy.max_steps} steps",
            )
            return None

        blocked = self.budget_block(execution, policy)
        if blocked:
            self._halt(execution, HaltReason.BUDGET_EXCEEDED, blocked)
            return None

        if step is None:
            step = self._new_step(execution, action, policy)
            if step.status != StepStatus.PENDING:
                return None

        step.status = StepStatus.RUNNING
        step.started_at = datetime.now()
        saved = self.store.save_execution(execution)
        self.audit.info(
            "step_started",
            execution_id=saved.id,
            user_id=saved.user_id,
            step_number=step.step_number,
            action=action.description,
        )
        return saved, agent, saved.get_step(step.step_number)

    def _new_step(self, execution: AgentExecution, action: StepAction, policy: AgentPolicy) -> ExecutionStep:
        """Create the next step and run it through the Safety Gate."""
        verdict = safety.check(
            action.description,
            safety.effective_rules(policy.rules, policy.include_default_rules),
        )
        step = ExecutionStep(
            step_number=execution.next_step_number,
            action=action,
            input=action.input,
            safety=verdict,
        )
        execution.next_step_number += 1
        execution.steps.append(step)

        if not verdict.allowed:
            step.status = StepStatus.FAILED
            step.error = f"Blocked by safety rule: {verdict.reason}"
            step.completed_at = datetime.now()
            self.audit.warn(
                "step_blocked",
                execution_id=execution.id,
                user_id=execution.user_id,
                step_number=step.step_number,
                action=action.description,
                reason=verdict.reason,
            )
            self._halt(execution, HaltReason.VIOLATION_DETECTED, step.error)
            return step

        reason = verdict.reason if verdict.requires_confirmation else policy_confirmation(action, policy)
        if reason:
            step.status = StepStatus.AWAITING_CONFIRMATION
            step.requires_confirmation = True
            transition(execution, ExecutionState.AWAITING_CONFIRMATION)
            saved = self.store.save_execution(execution)
            self.audit.info(
                "awaiting_confirmation",
                execution_id=saved.id,
                user_id=saved.user_id,
                step_number=step.step_number,
                action=action.description,
                reason=reason,
                risk_level=verdict.risk_level.value,
            )
            self._notify("awaiting_confirmation", saved)
        return step

    def budget_block(self, execution: AgentExecution, policy: AgentPolicy) -> Optional[str]:
        """Reason the next step may not be dispatched, or None."""
        check = self.ledger.check_execution_cap(execution.user_id, execution.id, policy)
        if not check.allowed:
            return check.reason
        settings = self.store.get_user_settings(execution.user_id)
        check = self.ledger.check_account_cap(
            execution.user_id,
            settings,
            estimate_usd=policy.estimated_step_cost_usd,
        )
        if not check.allowed:
            return check.reason
        return None

    async def _invoke(
        self,
        execution: AgentExecution,
        agent: AgentDefinition,
        step: ExecutionStep,
    ) -> tuple[Optional[InvocationResult], Optional[ToolInvocationError], int]:
        """Step 7. Never raises for invocation failures; returns them instead."""
        options = {
            "model": agent.model,
            "action_kind": step.action.kind,
            "step_number": step.step_number,
        }
        started = time.monotonic()
        try:
            invoker = self.resolve_invoker(agent.model) if self.resolve_invoker else self.invoker
            result = await invoker.invoke(build_messages(execution, step), options)
            error = None
        except ToolInvocationError as e:
            result, error = None, e
        except Exception as e:
            result, error = None, ToolInvocationError(f"Invocation failed: {e}")
        return result, error, int((time.monotonic() - started) * 1000)

    def _record_usage(
        self,
        execution: AgentExecution,
        agent: AgentDefinition,
        result: Optional[InvocationResult],
    ) -> Optional[Decimal]:
        """Charge a finished call to the ledger once, whatever happens to the step."""
        if result is None:
            return None
        model = result.model or agent.model
        cost = result.cost_usd
        if cost is None:
            cost = estimate_cost(model, result.usage.input_tokens, result.usage.output_tokens)
        self.ledger.record_usage(
            execution.user_id,
            tokens_used=result.usage.tokens,
            cost_usd=cost,
            model=model,
            operation="agent_step",
            execution_id=execution.id,
            project_id=execution.project_id,
        )
        return cost

    def _finish_step(
        self,
        execution_id: str,
        agent: AgentDefinition,
        step_number: int,
        result: Optional[InvocationResult],
        cost: Optional[Decimal],
        error: Optional[ToolInvocationError],
        duration_ms: int,
    ) -> None:
        """Step 8. Reloads the execution, so it can be retried after a Conflict."""
        execution = self.store.get_execution(execution_id)
        if execution is None:
            return

        step = execution.get_step(step_number)
        if step is None or step.status != StepStatus.RUNNING:
            # Rolled back while the call was in flight
            self.audit.warn(
                "step_result_discarded",
                execution_id=execution.id,
                user_id=execution.user_id,
                step_number=step_number,
            )
            return

        step.duration_ms = duration_ms
        step.completed_at = datetime.now()

        if error is not None:
            step.status = StepStatus.FAILED
            step.error = error.message
            if can_transition(execution.state, ExecutionState.FAILED):
                transition(execution, ExecutionState.FAILED, message=f"Step {step_number} failed: {error.message}")
            saved = self.store.save_execution(execution)
            self.audit.error(
                "step_failed",
                execution_id=saved.id,
                user_id=saved.user_id,
                step_number=step_number,
                error=error.message,
                retryable=error.retryable,
            )
            if saved.state == ExecutionState.FAILED:
                self._notify("failed", saved)
            return

        step.status = StepStatus.COMPLETE
        step.output = StepPayload.text(result.content)
        step.tokens_used = result.usage.tokens
        step.cost_usd = cost
        execution.current_step += 1
        execution.total_tokens_used += result.usage.tokens
        execution.total_cost_usd += cost
        for path in result.files_modified:
            if path not in execution.files_modified:
                execution.files_modified.append(path)
        execution.context["last_output"] = result.content

        uncertainty = parse_uncertainty(result.content)
        halted = False
        if (
            uncertainty is not None
            and uncertainty > agent.policy.uncertainty_threshold
            and execution.state in (ExecutionState.EXECUTING, ExecutionState.PAUSED)
        ):
            transition(
                execution,
                ExecutionState.HALTED,
                reason=HaltReason.UNCERTAINTY_THRESHOLD,
                message=f"Uncertainty {uncertainty}% exceeds threshold {agent.policy.uncertainty_threshold}%",
            )
            halted = True

        saved = self.store.save_execution(execution)
        self.audit.info(
            "step_completed",
            execution_id=saved.id,
            user_id=saved.user_id,
            step_number=step_number,
            tokens=result.usage.tokens,
            cost_usd=str(cost),
            duration_ms=duration_ms,
        )
        if halted:
            self.audit.warn(
                "execution_halted",
                execution_id=saved.id,
                user_id=saved.user_id,
                reason=HaltReason.UNCERTAINTY_THRESHOLD.value,
                message=saved.halt_message,
            )
            self._notify("halted", saved)

        if agent.policy.auto_checkpoint:
            self.checkpoints.create(
                saved.id,
                description=f"After step {step_number}",
                automatic=True,
                execution=saved,
            )

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    def _halt(self, execution: AgentExecution, reason: HaltReason, message: str) -> AgentExecution:
        transition(execution, ExecutionState.HALTED, reason=reason, message=message)
        saved = self.store.save_execution(execution)
        logger.info(f"Execution {saved.id} halted: {reason.value} ({message})")
        self.audit.warn(
            "execution_halted",
            execution_id=saved.id,
            user_id=saved.user_id,
            reason=reason.value,
            message=message,
        )
        self._notify("halted", saved)
        return saved

    def _fail_unexpectedly(self, execution_id: str, error: Exception) -> None:
        """Mark the execution failed after an unexpected error, if still possible."""
        try:
            execution = self.store.get_execution(execution_id)
            if execution is None or not can_transition(execution.state, ExecutionState.FAILED):
                return
            for step in execution.steps:
                if step.status == StepStatus.RUNNING:
                    step.status = StepStatus.FAILED
                    step.error = str(error)
                    step.completed_at = datetime.now()
            transition(execution, ExecutionState.FAILED, message=f"Internal error: {error}")
            saved = self.store.save_execution(execution)
        except (EngineError, OSError) as e:
            logger.error(f"Could not mark {execution_id} failed: {e}")
            return
        self._notify("failed", saved)

    def _notify(self, event: str, execution: AgentExecution) -> None:
        if self.on_event is not None:
            self.on_event(event, execution)
