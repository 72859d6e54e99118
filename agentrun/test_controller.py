"""
Execution Controller Tests

Test list:
1. test_start_validation - Unknown, foreign or disabled agents and empty goals rejected
2. test_pause_and_resume_in_flight - Pause lands between steps; resume continues
3. test_stop_in_flight - The in-flight result is recorded, nothing runs after
4. test_approve_from_executing - approve() outside a gate is InvalidTransition
5. test_reject - Halts (scope expansion / user request) or continues per policy
6. test_halt_while_awaiting - The parked step is skipped
7. test_ownership - Other users get Forbidden on every operation
8. test_checkpoint_and_rollback - Manual checkpoint, rollback parks as paused, resume
9. test_rollback_failure_keeps_step - Failing file write -> RollbackError, current_step unchanged
10. test_recover_interrupted - Executions left running are parked as paused
11. test_rollback_to_checkpoint_taken_mid_step - Restored running steps become failed
12. test_uncertainty_halts_paused_execution - In-flight uncertainty halts even after a pause
13. test_resume_refused_at_max_steps / test_approve_refused - Limits re-checked before a restart
14. test_finished_loops_release_bookkeeping - No task or lock left once loops end
"""

import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from agentrun.controller import ExecutionController
from agentrun.errors import (
    BudgetExceeded,
    Disabled,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    MaxStepsReached,
    NotFound,
    RollbackError,
    SafetyBlocked,
)
from agentrun.providers import InvocationResult, ModelInvoker
from agentrun.schemas import (
    AgentDefinition,
    AgentExecution,
    ExecutionState,
    ExecutionStep,
    HaltReason,
    SafetyRule,
    StepAction,
    StepStatus,
)

from .conftest import OTHER_USER_ID, USER_ID, actions, result
from .test_checkpoints import FailingFileStore
from .test_scheduler import run_plan, set_policy


class GatedInvoker(ModelInvoker):
    """Blocks every call until release() so tests can act mid-step."""

    def __init__(self, content: Optional[str] = None):
        self.started = asyncio.Event()
        self._gate = asyncio.Event()
        self.calls = 0
        self.content = content

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        self.calls += 1
        self.started.set()
        await self._gate.wait()
        self._gate.clear()
        return result(self.content or f"call {self.calls}")

    def release(self):
        self.started.clear()
        self._gate.set()


@pytest.fixture
def gated():
    return GatedInvoker()


@pytest.fixture
def gated_controller(store, gated, files, agent):
    return ExecutionController(store, gated, files=files)


# =============================================================================
# TEST 1: Start validation
# =============================================================================

@pytest.mark.asyncio
async def test_start_validation(controller, store, agent):
    """
    Test 1: start() checks the agent and the goal before creating anything.
    """
    with pytest.raises(NotFound):
        await controller.start(USER_ID, "missing", "goal")

    with pytest.raises(Forbidden):
        await controller.start(OTHER_USER_ID, agent.id, "goal")

    with pytest.raises(InvalidArgument):
        await controller.start(USER_ID, agent.id, "   ")

    store.save_agent(AgentDefinition(id="off", user_id=USER_ID, name="Off", enabled=False))
    with pytest.raises(Disabled):
        await controller.start(USER_ID, "off", "goal")

    assert store.list_executions() == []

    execution = await controller.start(
        USER_ID, agent.id, "Write docs",
        assumptions=["repo is clean"],
        plan=actions("one"),
        project_id="proj-1",
    )
    assert execution.state == ExecutionState.EXECUTING
    assert execution.started_at is not None
    assert execution.total_steps == 1
    assert execution.project_id == "proj-1"
    await controller.wait(execution.id)

    print("✓ Test 1 passed: start validates input")


# =============================================================================
# TEST 2: Pause and resume
# =============================================================================

@pytest.mark.asyncio
async def test_pause_and_resume_in_flight(gated_controller, gated):
    """
    Test 2: A pause during a step takes effect before the next one.

    Verifies:
    - The in-flight step is still recorded as complete
    - The loop stops with the execution paused at current_step 1
    - pause() on a paused execution is InvalidTransition
    - resume() runs the rest of the plan
    """
    controller = gated_controller
    execution = await controller.start(USER_ID, "coder", "Three steps", plan=actions("a", "b", "c"))

    await gated.started.wait()
    paused = await controller.pause(execution.id, USER_ID)
    assert paused.state == ExecutionState.PAUSED
    gated.release()

    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.PAUSED
    assert execution.current_step == 1
    assert execution.steps[0].status == StepStatus.COMPLETE
    assert gated.calls == 1

    with pytest.raises(InvalidTransition):
        await controller.pause(execution.id, USER_ID)

    await controller.resume(execution.id, USER_ID)
    with pytest.raises(InvalidTransition):
        await controller.resume(execution.id, USER_ID)

    for _ in range(2):
        await gated.started.wait()
        gated.release()
    execution = await controller.wait(execution.id)

    assert execution.state == ExecutionState.COMPLETED
    assert execution.current_step == 3
    assert gated.calls == 3

    print("✓ Test 2 passed: pause and resume work mid-flight")


# =============================================================================
# TEST 3: Stop in flight
# =============================================================================

@pytest.mark.asyncio
async def test_stop_in_flight(gated_controller, gated, store):
    """
    Test 3: stop() during a step halts; the step's result is still recorded.
    """
    controller = gated_controller
    execution = await controller.start(USER_ID, "coder", "Two steps", plan=actions("a", "b"))

    await gated.started.wait()
    stopped = await controller.stop(execution.id, USER_ID)
    assert stopped.state == ExecutionState.HALTED
    assert stopped.halt_reason == HaltReason.USER_REQUESTED
    gated.release()

    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.HALTED
    assert execution.steps[0].status == StepStatus.COMPLETE
    assert execution.current_step == 1
    assert gated.calls == 1
    assert controller.ledger.total_usage(USER_ID).calls == 1

    with pytest.raises(InvalidTransition):
        await controller.stop(execution.id, USER_ID)


# =============================================================================
# TEST 4: approve() outside a gate
# =============================================================================

@pytest.mark.asyncio
async def test_approve_from_executing(controller, store, agent):
    """
    Test 4: approve() on an executing execution raises InvalidTransition.
    """
    execution = store.create_execution(AgentExecution(
        agent_id=agent.id,
        user_id=USER_ID,
        goal="Busy",
        state=ExecutionState.EXECUTING,
    ))

    with pytest.raises(InvalidTransition) as exc_info:
        await controller.approve(execution.id, USER_ID)
    assert exc_info.value.current == "executing"

    with pytest.raises(InvalidTransition):
        await controller.reject(execution.id, USER_ID)

    assert store.get_execution(execution.id).version == execution.version

    print("✓ Test 4 passed: approve outside a gate rejected")


# =============================================================================
# TEST 5: Reject
# =============================================================================

@pytest.mark.asyncio
async def test_reject(controller, store, agent, invoker):
    """
    Test 5: reject() skips the step, then halts or continues.

    Verifies:
    - A rejected scope-expanding step halts with scope_expansion
    - A rejected ordinary step halts with user_requested
    - With continue_on_reject the plan carries on after the skipped step
    """
    scoped = await controller.start(
        USER_ID, agent.id, "Fix typo",
        plan=[StepAction(description="rewrite the whole site", expands_scope=True)],
    )
    scoped = await controller.wait(scoped.id)
    assert scoped.state == ExecutionState.AWAITING_CONFIRMATION

    halted = await controller.reject(scoped.id, USER_ID, "out of scope")
    assert halted.state == ExecutionState.HALTED
    assert halted.halt_reason == HaltReason.SCOPE_EXPANSION
    assert halted.steps[0].status == StepStatus.SKIPPED
    assert halted.steps[0].error == "out of scope"

    pushed = await run_plan(controller, agent, "git push origin main")
    halted = await controller.reject(pushed.id, USER_ID)
    assert halted.halt_reason == HaltReason.USER_REQUESTED

    set_policy(store, agent, continue_on_reject=True)
    carried = await run_plan(controller, agent, "git push origin main", "write changelog")
    await controller.reject(carried.id, USER_ID)
    carried = await controller.wait(carried.id)

    assert carried.state == ExecutionState.COMPLETED
    assert [s.status for s in carried.steps] == [StepStatus.SKIPPED, StepStatus.COMPLETE]
    assert carried.current_step == 1
    assert invoker.calls[-1]["messages"][1]["content"] == "write changelog"

    print("✓ Test 5 passed: reject halts or continues")


# =============================================================================
# TEST 6: Halt while awaiting
# =============================================================================

@pytest.mark.asyncio
async def test_halt_while_awaiting(controller, agent, events):
    """
    Test 6: halt() at a confirmation gate skips the parked step.
    """
    execution = await run_plan(controller, agent, "git push origin main")
    halted = await controller.halt(execution.id, USER_ID, HaltReason.CONTEXT_CHANGED, "Branch moved")

    assert halted.state == ExecutionState.HALTED
    assert halted.halt_reason == HaltReason.CONTEXT_CHANGED
    assert halted.halt_message == "Branch moved"
    assert halted.steps[0].status == StepStatus.SKIPPED
    assert [event for event, _ in events] == ["awaiting_confirmation", "halted"]

    with pytest.raises(InvalidTransition):
        await controller.approve(execution.id, USER_ID)


# =============================================================================
# TEST 7: Ownership
# =============================================================================

@pytest.mark.asyncio
async def test_ownership(controller, agent):
    """
    Test 7: Every operation on someone else's execution is Forbidden.
    """
    execution = await run_plan(controller, agent, "git push origin main")
    checkpoint = await controller.create_checkpoint(execution.id, USER_ID, "mine")

    for call in [
        controller.pause(execution.id, OTHER_USER_ID),
        controller.resume(execution.id, OTHER_USER_ID),
        controller.stop(execution.id, OTHER_USER_ID),
        controller.approve(execution.id, OTHER_USER_ID),
        controller.reject(execution.id, OTHER_USER_ID),
        controller.create_checkpoint(execution.id, OTHER_USER_ID),
        controller.rollback(checkpoint.id, OTHER_USER_ID),
    ]:
        with pytest.raises(Forbidden):
            await call

    with pytest.raises(Forbidden):
        controller.get_state(execution.id, OTHER_USER_ID)
    with pytest.raises(Forbidden):
        controller.list_checkpoints(execution.id, OTHER_USER_ID)
    with pytest.raises(NotFound):
        controller.get_state("missing", USER_ID)

    assert controller.list_executions(OTHER_USER_ID) == []
    assert controller.get_state(execution.id, USER_ID).state == ExecutionState.AWAITING_CONFIRMATION


# =============================================================================
# TEST 8: Checkpoint and rollback
# =============================================================================

@pytest.mark.asyncio
async def test_checkpoint_and_rollback(controller, store, agent, invoker, files, workspace):
    """
    Test 8: Roll a completed execution back and run it forward again.

    Verifies:
    - Rollback restores current_step/steps from the checkpoint
    - The restored `executing` state is parked as `paused` (no loop running)
    - Files are restored from the checkpoint's snapshots
    - resume() re-runs the reverted part of the plan
    """
    files.write("notes.md", "draft 1")
    invoker.script = [
        result("step 1", files=["notes.md"]),
        result("step 2"),
    ]
    execution = await run_plan(controller, agent, "one", "two")
    assert execution.state == ExecutionState.COMPLETED

    after_first = controller.list_checkpoints(execution.id, USER_ID)[0]
    assert after_first.step_number == 1
    files.write("notes.md", "draft 2")

    preview = controller.rollback_preview(after_first.id, USER_ID)
    assert preview.steps_to_revert == 1
    assert preview.files_to_restore == ["notes.md"]

    rolled = await controller.rollback(after_first.id, USER_ID)
    assert rolled.execution.state == ExecutionState.PAUSED
    assert rolled.execution.current_step == 1
    assert [s.step_number for s in rolled.execution.steps] == [1]
    assert len(rolled.superseded_checkpoints) == 1
    assert (workspace / "notes.md").read_text() == "draft 1"

    await controller.resume(execution.id, USER_ID)
    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.COMPLETED
    assert execution.current_step == 2
    assert [s.step_number for s in execution.steps] == [1, 3]

    manual = await controller.create_checkpoint(execution.id, USER_ID, "before release")
    assert manual.automatic is False
    assert manual.description == "before release"

    previous = await controller.rollback_to_previous(execution.id, USER_ID)
    assert previous.checkpoint.id == manual.id

    print("✓ Test 8 passed: checkpoint and rollback")


# =============================================================================
# TEST 9: Rollback failure
# =============================================================================

@pytest.mark.asyncio
async def test_rollback_failure_keeps_step(store, agent, invoker, workspace):
    """
    Test 9: A failing file write during rollback raises RollbackError and
    leaves current_step where it was.
    """
    files = FailingFileStore(workspace, fail_on="locked.txt")
    controller = ExecutionController(store, invoker, files=files)

    files.write("readme.txt", "v1")
    (workspace / "locked.txt").write_text("locked")
    invoker.script = [
        result("one", files=["readme.txt", "locked.txt"]),
        result("two"),
    ]
    execution = await run_plan(controller, agent, "one", "two")
    first = controller.list_checkpoints(execution.id, USER_ID)[0]
    files.write("readme.txt", "v2")

    with pytest.raises(RollbackError) as exc_info:
        await controller.rollback(first.id, USER_ID)

    assert exc_info.value.kind == "rollback_error"
    after = controller.get_state(execution.id, USER_ID)
    assert after.current_step == 2
    assert after.state == ExecutionState.COMPLETED
    assert (workspace / "readme.txt").read_text() == "v2"


# =============================================================================
# TEST 10: Recovery
# =============================================================================

@pytest.mark.asyncio
async def test_recover_interrupted(controller, store, agent):
    """
    Test 10: An execution a crashed process left `executing` is parked.

    Verifies:
    - State becomes paused; a running step is marked failed
    - Executions in other states are untouched
    """
    interrupted = store.create_execution(AgentExecution(
        agent_id=agent.id,
        user_id=USER_ID,
        goal="Crashed",
        state=ExecutionState.EXECUTING,
        next_step_number=2,
        steps=[ExecutionStep(
            step_number=1,
            action=StepAction(description="long call"),
            status=StepStatus.RUNNING,
        )],
    ))
    done = store.create_execution(AgentExecution(
        agent_id=agent.id, user_id=USER_ID, goal="Done", state=ExecutionState.COMPLETED,
    ))

    recovered = await controller.recover_interrupted()

    assert [e.id for e in recovered] == [interrupted.id]
    parked = store.get_execution(interrupted.id)
    assert parked.state == ExecutionState.PAUSED
    assert parked.steps[0].status == StepStatus.FAILED
    assert store.get_execution(done.id).version == done.version
    assert "execution_recovered" in [e.event for e in store.list_audit(interrupted.id)]


# =============================================================================
# TEST 11: Checkpoint taken mid-step
# =============================================================================

@pytest.mark.asyncio
async def test_rollback_to_checkpoint_taken_mid_step(gated_controller, gated, store):
    """
    Test 11: A step captured as running is restored as failed.

    Verifies:
    - The manual checkpoint holds the in-flight step as running
    - After rollback no step is left running
    - resume() runs the interrupted action once more, then the rest
    """
    controller = gated_controller
    execution = await controller.start(USER_ID, "coder", "Two steps", plan=actions("a", "b"))

    await gated.started.wait()
    mid_step = await controller.create_checkpoint(execution.id, USER_ID, "During step 1")
    assert [s.status for s in mid_step.state.steps] == [StepStatus.RUNNING]
    gated.release()

    await gated.started.wait()
    gated.release()
    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.COMPLETED

    rolled = await controller.rollback(mid_step.id, USER_ID)
    restored = rolled.execution
    assert restored.state == ExecutionState.PAUSED
    assert [s.status for s in restored.steps] == [StepStatus.FAILED]
    assert "Interrupted" in restored.steps[0].error

    await controller.resume(execution.id, USER_ID)
    for _ in range(2):
        await gated.started.wait()
        gated.release()
    execution = await controller.wait(execution.id)

    assert execution.state == ExecutionState.COMPLETED
    assert [(s.step_number, s.action.description, s.status) for s in execution.steps] == [
        (1, "a", StepStatus.FAILED),
        (3, "a", StepStatus.COMPLETE),
        (4, "b", StepStatus.COMPLETE),
    ]
    assert gated.calls == 4
    assert "rollback_applied" in [e.event for e in store.list_audit(execution.id)]

    print("✓ Test 11 passed: interrupted step restored as failed")


# =============================================================================
# TEST 12: Uncertainty reported while paused
# =============================================================================

@pytest.mark.asyncio
async def test_uncertainty_halts_paused_execution(store, files, agent):
    """
    Test 12: A high uncertainty in the in-flight step halts even after a pause.

    Verifies:
    - The step is recorded and billed
    - The execution ends halted with uncertainty_threshold, not paused
    - resume() is refused and no second call is made
    """
    gated = GatedInvoker(content="Draft written. Uncertainty: 95%")
    controller = ExecutionController(store, gated, files=files)
    execution = await controller.start(USER_ID, "coder", "Two steps", plan=actions("a", "b"))

    await gated.started.wait()
    await controller.pause(execution.id, USER_ID)
    gated.release()

    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.HALTED
    assert execution.halt_reason == HaltReason.UNCERTAINTY_THRESHOLD
    assert execution.steps[0].status == StepStatus.COMPLETE
    assert controller.ledger.total_usage(USER_ID).calls == 1

    with pytest.raises(InvalidTransition):
        await controller.resume(execution.id, USER_ID)
    assert gated.calls == 1

    print("✓ Test 12 passed: uncertainty halts a paused execution")


# =============================================================================
# TEST 13: Refused restarts
# =============================================================================

@pytest.mark.asyncio
async def test_resume_refused_at_max_steps(gated_controller, gated, store, agent):
    """
    Test 13a: resume() at max_steps with work left raises MaxStepsReached
    and the execution stays paused.
    """
    controller = gated_controller
    set_policy(store, agent, max_steps=1)
    execution = await controller.start(USER_ID, "coder", "Two steps", plan=actions("a", "b"))

    await gated.started.wait()
    await controller.pause(execution.id, USER_ID)
    gated.release()
    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.PAUSED
    assert execution.current_step == 1

    with pytest.raises(MaxStepsReached):
        await controller.resume(execution.id, USER_ID)
    assert store.get_execution(execution.id).state == ExecutionState.PAUSED
    assert gated.calls == 1

    # Raising the limit makes the same execution resumable
    set_policy(store, agent, max_steps=5)
    await controller.resume(execution.id, USER_ID)
    await gated.started.wait()
    gated.release()
    execution = await controller.wait(execution.id)
    assert execution.state == ExecutionState.COMPLETED

    print("✓ Test 13a passed: resume refused at max steps")


@pytest.mark.asyncio
async def test_approve_refused(controller, store, agent, invoker):
    """
    Test 13b: approve() re-checks the parked step.

    Verifies:
    - A deny rule added after the gate -> SafetyBlocked, step stays parked
    - A spent execution budget -> BudgetExceeded
    - Nothing is dispatched
    """
    execution = await run_plan(controller, agent, "git push origin main")
    assert execution.state == ExecutionState.AWAITING_CONFIRMATION

    set_policy(store, agent, rules=[SafetyRule(type="deny", pattern="git push*", description="Frozen")])
    with pytest.raises(SafetyBlocked) as exc_info:
        await controller.approve(execution.id, USER_ID)
    assert "Frozen" in exc_info.value.message

    parked = store.get_execution(execution.id)
    assert parked.state == ExecutionState.AWAITING_CONFIRMATION
    assert parked.awaiting_step().approved is False

    set_policy(store, agent, rules=[], budget_limit_usd=Decimal("0"))
    with pytest.raises(BudgetExceeded):
        await controller.approve(execution.id, USER_ID)
    assert store.get_execution(execution.id).state == ExecutionState.AWAITING_CONFIRMATION
    assert invoker.calls == []

    print("✓ Test 13b passed: approve re-checks the step")


# =============================================================================
# TEST 14: Bookkeeping released
# =============================================================================

@pytest.mark.asyncio
async def test_finished_loops_release_bookkeeping(controller, agent):
    """
    Test 14: Finished loops leave no task or lock behind.
    """
    for goal in ("First", "Second", "Third"):
        execution = await controller.start(USER_ID, agent.id, goal, plan=actions("a", "b"))
        execution = await controller.wait(execution.id)
        assert execution.state == ExecutionState.COMPLETED
    await asyncio.sleep(0)

    assert controller._tasks == {}
    assert controller.locks._locks == {}
    assert controller.locks._claims == {}

    # Later control calls still lock and release normally
    checkpoint = controller.list_checkpoints(execution.id, USER_ID)[0]
    await controller.rollback(checkpoint.id, USER_ID)
    assert controller.locks._locks == {}

    print("✓ Test 14 passed: bookkeeping released")
