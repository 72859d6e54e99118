#!/usr/bin/env python3
"""
MCP Server for AgentRun - the Control API as MCP tools.

IMPORTANT: Never print to stdout - it breaks JSON-RPC communication.
All logging must go to stderr.

Tools (each returns a JSON ControlResponse: {"ok", "data", "error"}):
- agentrun_start: Start an execution from a goal and a list of steps
- agentrun_status / agentrun_list: Inspect executions
- agentrun_pause / agentrun_resume / agentrun_stop: Lifecycle control
- agentrun_approve / agentrun_reject: Answer a confirmation gate
- agentrun_checkpoint / agentrun_checkpoints: Manual checkpoint, timeline
- agentrun_rollback_preview / agentrun_rollback: Restore a checkpoint
- agentrun_usage: Ledger summary and budget status
- agentrun_check: Dry-run an action through the Safety Gate

Executions keep running in this server's event loop between tool calls.

To run:
    python -m agentrun.mcp_server

To register with an MCP client:
    <client> mcp add agentrun -- python -m agentrun.mcp_server
"""

import sys
import json
import logging
from typing import Optional

# CRITICAL: Configure logging to stderr BEFORE any other imports
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("agentrun-mcp")

# MCP imports
from mcp.server.fastmcp import FastMCP

from . import safety
from .api import ControlAPI
from .config import AgentRunConfig, load_config, seed_store
from .controller import ExecutionController
from .filestore import LocalFileStore
from .providers import ModelInvoker, get_invoker
from .schemas import ControlResponse, ErrorPayload
from .store import JsonFileStore

# Create MCP server
mcp = FastMCP("agentrun")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

class _ServerState:
    """Config, store and Control API, built on first use."""

    def __init__(self):
        self.config: Optional[AgentRunConfig] = None
        self.api: Optional[ControlAPI] = None
        self._invokers: dict[str, ModelInvoker] = {}

    def _resolve_invoker(self, model_name: str) -> ModelInvoker:
        if model_name not in self._invokers:
            self._invokers[model_name] = get_invoker(self.config, model_name)
        return self._invokers[model_name]

    async def get_api(self) -> ControlAPI:
        """
        Build the Control API on first use.

        Executions a previous server process left `executing` are parked as
        `paused` before any tool runs, so they can be resumed.
        """
        if self.api is None:
            config = load_config()
            store = JsonFileStore(config.engine.store_dir)
            seed_store(config, store)
            controller = ExecutionController(
                store,
                files=LocalFileStore(config.engine.workspace_dir),
                resolve_invoker=self._resolve_invoker,
            )
            self.config = config
            recovered = await controller.recover_interrupted()
            for execution in recovered:
                logger.warning(f"Parked interrupted execution {execution.id} as paused")
            self.api = ControlAPI(controller)
            logger.info(f"Store at {config.engine.store_dir}, user {config.engine.user_id}")
        return self.api

    @property
    def user_id(self) -> str:
        """Configured user. Only valid after get_api()."""
        return self.config.engine.user_id


_state = _ServerState()


def _parse_steps(steps: str) -> list:
    """Steps as a JSON array of step objects, or newline-separated descriptions."""
    steps = steps.strip()
    if not steps:
        return []
    if steps.startswith("["):
        return json.loads(steps)
    return [{"description": line.strip()} for line in steps.splitlines() if line.strip()]


def _dump(response: ControlResponse) -> str:
    return response.model_dump_json(indent=2)


def _setup_error(tool: str, e: Exception) -> str:
    logger.error(f"{tool} failed: {e}")
    return _dump(ControlResponse(ok=False, error=ErrorPayload(kind="internal", message=str(e))))


# =============================================================================
# MCP TOOLS - LIFECYCLE
# =============================================================================

@mcp.tool()
async def agentrun_start(
    goal: str,
    steps: str = "",
    agent: str = "default",
    assumptions: str = "",
    project: str = "",
) -> str:
    """
    Start a new execution.

    The agent works through the steps in order. Each step is checked against
    the agent's safety rules and budgets first; risky steps stop at a
    confirmation gate until agentrun_approve or agentrun_reject is called.

    Args:
        goal: What the agent should achieve (e.g., "Add a README and publish it")
        steps: JSON array of step objects ({"description", "kind", "mutating", "expands_scope"})
               or one step description per line
        agent: Agent id from the config (default: "default")
        assumptions: Optional assumptions, one per line
        project: Optional project id recorded on the execution and ledger

    Returns:
        JSON ControlResponse whose data is the new execution.
    """
    logger.info(f"agentrun_start: {goal[:50]}...")

    try:
        plan = _parse_steps(steps)
    except ValueError as e:
        return _dump(ControlResponse(
            ok=False, error=ErrorPayload(kind="invalid_argument", message=f"Invalid steps JSON: {e}")
        ))
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_start", e)

    response = await api.start(
        _state.user_id,
        agent,
        goal,
        assumptions=[a.strip() for a in assumptions.splitlines() if a.strip()],
        plan=plan,
        project_id=project or None,
    )
    return _dump(response)


@mcp.tool()
async def agentrun_pause(execution_id: str) -> str:
    """
    Pause an execution before its next step.

    Args:
        execution_id: Execution to pause
    """
    logger.info(f"agentrun_pause: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_pause", e)
    return _dump(await api.pause(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_resume(execution_id: str) -> str:
    """
    Resume a paused execution.

    Args:
        execution_id: Execution to resume
    """
    logger.info(f"agentrun_resume: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_resume", e)
    return _dump(await api.resume(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_stop(execution_id: str) -> str:
    """
    Halt an execution. It cannot be resumed afterwards.

    Args:
        execution_id: Execution to stop
    """
    logger.info(f"agentrun_stop: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_stop", e)
    return _dump(await api.stop(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_approve(execution_id: str) -> str:
    """
    Approve the step waiting at a confirmation gate and continue.

    Args:
        execution_id: Execution in awaiting_confirmation
    """
    logger.info(f"agentrun_approve: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_approve", e)
    return _dump(await api.approve(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_reject(execution_id: str, reason: str = "") -> str:
    """
    Reject the step waiting at a confirmation gate.

    The step is skipped. Depending on the agent's policy the execution either
    continues with the next step or halts.

    Args:
        execution_id: Execution in awaiting_confirmation
        reason: Optional reason recorded on the step
    """
    logger.info(f"agentrun_reject: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_reject", e)
    return _dump(await api.reject(execution_id, _state.user_id, reason or None))


# =============================================================================
# MCP TOOLS - CHECKPOINTS
# =============================================================================

@mcp.tool()
async def agentrun_checkpoint(execution_id: str, description: str = "") -> str:
    """
    Create a manual checkpoint at the execution's current step.

    Args:
        execution_id: Execution to checkpoint
        description: Optional label (e.g., "before the migration")
    """
    logger.info(f"agentrun_checkpoint: {execution_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_checkpoint", e)
    return _dump(await api.create_checkpoint(execution_id, _state.user_id, description or None))


@mcp.tool()
async def agentrun_checkpoints(execution_id: str) -> str:
    """
    List an execution's checkpoints, oldest first.

    Args:
        execution_id: Execution whose checkpoints to list
    """
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_checkpoints", e)
    return _dump(await api.list_checkpoints(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_rollback_preview(checkpoint_id: str) -> str:
    """
    Show what rolling back to a checkpoint would change, without changing it.

    Args:
        checkpoint_id: Target checkpoint
    """
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_rollback_preview", e)
    return _dump(await api.rollback_preview(checkpoint_id, _state.user_id))


@mcp.tool()
async def agentrun_rollback(checkpoint_id: str) -> str:
    """
    Restore an execution (and its files) to a checkpoint.

    Either everything is restored or nothing is: a failed file write undoes
    the writes already made and leaves the execution untouched.

    Args:
        checkpoint_id: Target checkpoint
    """
    logger.info(f"agentrun_rollback: {checkpoint_id}")
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_rollback", e)
    return _dump(await api.rollback(checkpoint_id, _state.user_id))


# =============================================================================
# MCP TOOLS - QUERIES
# =============================================================================

@mcp.tool()
async def agentrun_status(execution_id: str) -> str:
    """
    Get an execution with its steps, totals and halt reason.

    Args:
        execution_id: Execution to show
    """
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_status", e)
    return _dump(await api.get_state(execution_id, _state.user_id))


@mcp.tool()
async def agentrun_list() -> str:
    """List executions, newest first."""
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_list", e)
    return _dump(await api.list_executions(_state.user_id))


@mcp.tool()
async def agentrun_usage() -> str:
    """Token and cost usage (today, this week, this month, all time) and budget status."""
    try:
        api = await _state.get_api()
    except Exception as e:
        return _setup_error("agentrun_usage", e)
    return _dump(await api.usage(_state.user_id))


@mcp.tool()
async def agentrun_check(action: str, agent: str = "default") -> str:
    """
    Check an action against an agent's safety rules without running it.

    Args:
        action: Action description (e.g., "git push --force origin main")
        agent: Agent whose rules to use (default: "default")

    Returns:
        JSON SafetyCheckResult: allowed, requires_confirmation, risk_level, matched rules.
    """
    logger.info(f"agentrun_check: {action[:50]}")
    try:
        api = await _state.get_api()
        definition = api.controller.store.get_agent(agent)
        if definition is None:
            return _dump(ControlResponse(
                ok=False, error=ErrorPayload(kind="not_found", message=f"Agent not found: {agent}")
            ))
        rules = safety.effective_rules(definition.policy.rules, definition.policy.include_default_rules)
        result = safety.check(action, rules)
    except Exception as e:
        return _setup_error("agentrun_check", e)
    return _dump(ControlResponse(ok=True, data=result.model_dump(mode="json")))


# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:
    logger.info("Starting AgentRun MCP Server")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
