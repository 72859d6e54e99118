"""
Checkpoint Manager Tests

Test list:
1. test_create_checkpoint - Value copy of the execution, defaults filled in
2. test_create_validates_step - step_number outside 0..current_step rejected
3. test_rollback_restores_state - current_step, steps and state restored exactly
4. test_rollback_replays_files - Snapshots written back, deleted files removed
5. test_rollback_file_failure - A failing write undoes earlier writes, execution untouched
6. test_rollback_ownership - Another user's rollback is Forbidden
7. test_preview_and_superseded - Preview changes nothing; later checkpoints kept
8. test_rollback_save_failure - A failed final write reverts the files
"""

from datetime import datetime

import pytest

from agentrun.audit import AuditLog
from agentrun.checkpoints import CheckpointManager
from agentrun.errors import Conflict, Forbidden, InvalidArgument, NotFound, RollbackError
from agentrun.filestore import LocalFileStore
from agentrun.schemas import (
    AgentExecution,
    ExecutionState,
    ExecutionStep,
    FileSnapshot,
    RollbackData,
    StepAction,
    StepPayload,
    StepStatus,
)

from .conftest import OTHER_USER_ID, USER_ID


class FailingFileStore(LocalFileStore):
    """LocalFileStore whose writes to `fail_on` raise OSError."""

    def __init__(self, root, fail_on: str):
        super().__init__(root)
        self.fail_on = fail_on

    def write(self, path: str, content: str) -> None:
        if path == self.fail_on:
            raise OSError(f"disk full writing {path}")
        super().write(path, content)


def complete_step(number: int) -> ExecutionStep:
    return ExecutionStep(
        step_number=number,
        action=StepAction(description=f"step {number}"),
        output=StepPayload.text(f"output {number}"),
        status=StepStatus.COMPLETE,
        completed_at=datetime.now(),
    )


def advance(store, execution: AgentExecution, steps: int = 1, **changes) -> AgentExecution:
    """Record `steps` more completed steps on an execution."""
    for _ in range(steps):
        execution.steps.append(complete_step(execution.next_step_number))
        execution.next_step_number += 1
        execution.current_step += 1
    for key, value in changes.items():
        setattr(execution, key, value)
    return store.save_execution(execution)


@pytest.fixture
def execution(store, agent):
    return store.create_execution(AgentExecution(
        agent_id=agent.id,
        user_id=USER_ID,
        goal="Tidy the docs",
        state=ExecutionState.EXECUTING,
    ))


@pytest.fixture
def manager(store, files):
    return CheckpointManager(store, files=files, audit=AuditLog(store))


# =============================================================================
# TEST 1: Create
# =============================================================================

def test_create_checkpoint(store, manager, execution):
    """
    Test 1: A checkpoint is a value copy of the execution.

    Verifies:
    - step_number defaults to current_step, description to "Step N"
    - Later changes to the execution do not leak into the checkpoint
    - Extra context is merged over the execution's context
    - The audit log records the checkpoint
    """
    execution = advance(store, execution, 2, context={"branch": "docs"})

    cp = manager.create(execution.id, context={"note": "before edits"})
    assert cp.id
    assert cp.step_number == 2
    assert cp.description == "Step 2"
    assert cp.automatic is True
    assert cp.state.current_step == 2
    assert len(cp.state.steps) == 2
    assert cp.state.context == {"branch": "docs", "note": "before edits"}

    advance(store, store.get_execution(execution.id), 1, context={"branch": "other"})
    stored = store.get_checkpoint(cp.id)
    assert stored.state.current_step == 2
    assert stored.state.context["branch"] == "docs"

    events = [e.event for e in store.list_audit(execution.id)]
    assert "checkpoint_created" in events

    with pytest.raises(NotFound):
        manager.create("missing")

    print("✓ Test 1 passed: checkpoint captured by value")


# =============================================================================
# TEST 2: Step validation
# =============================================================================

def test_create_validates_step(store, manager, execution):
    """
    Test 2: step_number must lie within 0..current_step.
    """
    execution = advance(store, execution, 1)

    assert manager.create(execution.id, step_number=0).step_number == 0
    with pytest.raises(InvalidArgument):
        manager.create(execution.id, step_number=2)
    with pytest.raises(InvalidArgument):
        manager.create(execution.id, step_number=-1)


# =============================================================================
# TEST 3: Rollback restores state
# =============================================================================

def test_rollback_restores_state(store, manager, execution):
    """
    Test 3: Checkpoint, advance, rollback -> state restored exactly.

    Verifies:
    - current_step, steps, state and context equal the checkpointed values
    - Halt fields are cleared when the restored state is not terminal
    - next_step_number never goes backwards
    """
    execution = advance(store, execution, 2, context={"phase": "draft"})
    cp = manager.create(execution.id)
    snapshot = store.get_execution(execution.id)

    execution = advance(
        store, snapshot.model_copy(deep=True), 3,
        state=ExecutionState.HALTED,
        context={"phase": "publish"},
        halt_message="Reached the maximum of 5 steps",
    )
    assert execution.current_step == 5

    result = manager.rollback(cp.id, USER_ID)
    restored = store.get_execution(execution.id)

    assert restored.current_step == snapshot.current_step
    assert restored.steps == snapshot.steps
    assert restored.state == snapshot.state
    assert restored.context == snapshot.context
    assert restored.halt_message is None
    assert restored.next_step_number == 6
    assert result.steps_reverted == 3
    assert result.execution.version == restored.version

    print("✓ Test 3 passed: rollback restores state")


# =============================================================================
# TEST 4: File replay
# =============================================================================

def test_rollback_replays_files(store, manager, files, workspace, execution):
    """
    Test 4: Snapshots are written back through the file store.

    Verifies:
    - Files in files_modified are captured at checkpoint time
    - A modified file gets its old content back
    - A file that did not exist at checkpoint time is deleted again
    """
    files.write("README.md", "v1")
    execution = advance(store, execution, 1, files_modified=["README.md", "NOTES.md"])
    cp = manager.create(execution.id)

    snapshots = {s.path: s for s in cp.rollback_data.file_snapshots}
    assert snapshots["README.md"].action == "modify"
    assert snapshots["README.md"].content == "v1"
    assert snapshots["NOTES.md"].action == "delete"

    files.write("README.md", "v2")
    files.write("NOTES.md", "scratch")
    advance(store, store.get_execution(execution.id), 1)

    result = manager.rollback(cp.id, USER_ID)

    assert (workspace / "README.md").read_text() == "v1"
    assert not (workspace / "NOTES.md").exists()
    assert sorted(result.files_restored) == ["NOTES.md", "README.md"]

    print("✓ Test 4 passed: files replayed on rollback")


# =============================================================================
# TEST 5: File failure is all-or-nothing
# =============================================================================

def test_rollback_file_failure(store, workspace, execution):
    """
    Test 5: A failing file write during rollback changes nothing.

    Verifies:
    - RollbackError is raised and lists the failed operation
    - The write already applied is reverted
    - current_step and version of the execution are unchanged
    - The failure is written to the audit log
    """
    files = FailingFileStore(workspace, fail_on="b.txt")
    manager = CheckpointManager(store, files=files, audit=AuditLog(store))

    files.write("a.txt", "a-after")
    execution = advance(store, execution, 3)
    cp = manager.create(execution.id, rollback_data=RollbackData(file_snapshots=[
        FileSnapshot(path="a.txt", content="a-before", action="modify"),
        FileSnapshot(path="b.txt", content="b-before", action="create"),
    ]))
    execution = advance(store, store.get_execution(execution.id), 2)

    with pytest.raises(RollbackError) as exc_info:
        manager.rollback(cp.id, USER_ID)

    error = exc_info.value
    statuses = {op["path"]: op["status"] for op in error.operations}
    assert statuses == {"a.txt": "reverted", "b.txt": "failed"}
    assert [op["path"] for op in error.failed_operations] == ["b.txt"]

    assert (workspace / "a.txt").read_text() == "a-after"
    assert not (workspace / "b.txt").exists()

    after = store.get_execution(execution.id)
    assert after.current_step == 5
    assert after.version == execution.version

    assert "rollback_failed" in [e.event for e in store.list_audit(execution.id)]

    print("✓ Test 5 passed: failed rollback leaves everything as it was")


def test_rollback_without_file_store(store, execution):
    """Snapshots with no file store to replay them fail before anything changes."""
    manager = CheckpointManager(store)
    execution = advance(store, execution, 1)
    cp = manager.create(execution.id, rollback_data=RollbackData(file_snapshots=[
        FileSnapshot(path="a.txt", content="x", action="create"),
    ]))
    advance(store, store.get_execution(execution.id), 1)

    with pytest.raises(RollbackError):
        manager.rollback(cp.id, USER_ID)
    assert store.get_execution(execution.id).current_step == 2


# =============================================================================
# TEST 6: Ownership
# =============================================================================

def test_rollback_ownership(store, manager, execution):
    """
    Test 6: Only the owner of the execution may roll it back or preview it.
    """
    execution = advance(store, execution, 1)
    cp = manager.create(execution.id)
    advance(store, store.get_execution(execution.id), 1)

    with pytest.raises(Forbidden):
        manager.rollback(cp.id, OTHER_USER_ID)
    with pytest.raises(Forbidden):
        manager.preview(cp.id, OTHER_USER_ID)
    with pytest.raises(NotFound):
        manager.rollback("nope", USER_ID)

    assert store.get_execution(execution.id).current_step == 2


# =============================================================================
# TEST 7: Preview and superseded checkpoints
# =============================================================================

def test_preview_and_superseded(store, manager, execution):
    """
    Test 7: Preview changes nothing; later checkpoints are kept and reported.

    Verifies:
    - preview() reports steps to revert and checkpoints after the target
    - rollback() keeps later checkpoints and lists them as superseded
    - rollback_to_previous() targets the most recent checkpoint
    """
    execution = advance(store, execution, 1)
    first = manager.create(execution.id, description="first")
    execution = advance(store, store.get_execution(execution.id), 2)
    second = manager.create(execution.id, description="second")
    execution = advance(store, store.get_execution(execution.id), 1)

    preview = manager.preview(first.id, USER_ID)
    assert preview.steps_to_revert == 3
    assert preview.checkpoints_after == 1
    assert preview.target_state.current_step == 1
    assert store.get_execution(execution.id).version == execution.version

    result = manager.rollback(first.id, USER_ID)
    assert result.superseded_checkpoints == [second.id]
    assert [cp.id for cp in manager.list_checkpoints(execution.id)] == [first.id, second.id]

    latest = manager.rollback_to_previous(execution.id, USER_ID)
    assert latest.checkpoint.id == second.id
    assert store.get_execution(execution.id).current_step == 3

    print("✓ Test 7 passed: preview and superseded checkpoints")


# =============================================================================
# TEST 8: Final write failure
# =============================================================================

def test_rollback_save_failure(store, manager, files, workspace, execution, monkeypatch):
    """
    Test 8: If the restored execution cannot be saved, the files are reverted.
    """
    files.write("doc.md", "old")
    execution = advance(store, execution, 1, files_modified=["doc.md"])
    cp = manager.create(execution.id)
    files.write("doc.md", "new")

    def conflict(_execution):
        raise Conflict("stale write")

    monkeypatch.setattr(store, "save_execution", conflict)

    with pytest.raises(RollbackError) as exc_info:
        manager.rollback(cp.id, USER_ID)

    assert isinstance(exc_info.value.__cause__, Conflict)
    assert (workspace / "doc.md").read_text() == "new"
