"""
Shared fixtures for the AgentRun tests.

Everything runs in memory except `workspace`/`files`, which use a temporary
directory. No test talks to a real model: ScriptedInvoker plays back
queued results instead.
"""

from decimal import Decimal
from typing import Optional, Union

import pytest

from agentrun.controller import ExecutionController
from agentrun.filestore import LocalFileStore
from agentrun.providers import InvocationResult, ModelInvoker, Usage
from agentrun.schemas import AgentDefinition, AgentPolicy, StepAction
from agentrun.store import InMemoryStore


USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class ScriptedInvoker(ModelInvoker):
    """
    Returns queued results (or raises queued errors) in order.

    When the queue runs dry it keeps answering with `default`.
    """

    def __init__(self, script: Optional[list[Union[InvocationResult, Exception]]] = None, default=None):
        self.script = list(script or [])
        self.default = default or result("ok")
        self.calls: list[dict] = []

    async def invoke(self, messages: list[dict], options: Optional[dict] = None) -> InvocationResult:
        self.calls.append({"messages": messages, "options": options})
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item


def result(content: str = "ok", tokens: int = 100, cost: str = "0.001", files: Optional[list[str]] = None):
    """One successful invocation result."""
    return InvocationResult(
        content=content,
        usage=Usage(input_tokens=tokens // 2, output_tokens=tokens - tokens // 2),
        model="test-model",
        cost_usd=Decimal(cost),
        files_modified=files or [],
    )


def actions(*descriptions: str, **kwargs) -> list[StepAction]:
    return [StepAction(description=d, **kwargs) for d in descriptions]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def workspace(tmp_path):
    """Project root for the file store."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def files(workspace):
    return LocalFileStore(workspace)


@pytest.fixture
def invoker():
    return ScriptedInvoker()


@pytest.fixture
def policy():
    """Permissive policy: no approval for changes, generous caps."""
    return AgentPolicy(
        max_steps=10,
        budget_limit_usd=Decimal("10"),
        budget_limit_tokens=1_000_000,
        require_approval_for_changes=False,
    )


@pytest.fixture
def agent(store, policy):
    return store.save_agent(AgentDefinition(
        id="coder",
        user_id=USER_ID,
        name="Coder",
        model="test-model",
        policy=policy,
    ))


@pytest.fixture
def events():
    """Collects (event, execution) pairs from on_event."""
    return []


@pytest.fixture
def controller(store, invoker, files, agent, events):
    return ExecutionController(
        store,
        invoker,
        files=files,
        on_event=lambda event, execution: events.append((event, execution)),
    )
