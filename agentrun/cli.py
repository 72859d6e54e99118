#!/usr/bin/env python3
"""
AgentRun CLI - run and control autonomous agent executions.

USAGE:
------
  agentrun run "goal" --action "write README" --action "git push"
  agentrun run --plan plan.yaml          - Goal, agent and steps from a file
  agentrun status EXECUTION_ID           - Show an execution and its steps
  agentrun list                          - List executions
  agentrun pause|resume|stop ID
  agentrun approve|reject ID             - Answer a confirmation gate
  agentrun checkpoint ID -d "before X"   - Manual checkpoint
  agentrun checkpoints ID                - Checkpoint timeline
  agentrun rollback CHECKPOINT_ID        - Preview, confirm, restore
  agentrun usage                         - Ledger summary and budget status
  agentrun check "git push --force"      - Dry-run the Safety Gate
  agentrun recover                       - Park executions a crash left running

PLAN FILE:
---------
```yaml
goal: "Add a README and publish it"
agent: default
assumptions: ["Repository is clean"]
steps:
  - description: "edit:README.md"
    kind: file_write
    mutating: true
  - description: "git push origin main"
    kind: terminal
```
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from . import __version__, safety, ui
from .alerts import AlertManager
from .config import AgentRunConfig, configure_logging, load_config, seed_store
from .controller import ExecutionController
from .errors import EngineError, NotFound
from .filestore import LocalFileStore
from .providers import ModelInvoker, get_invoker
from .schemas import ExecutionState, StepAction
from .store import JsonFileStore

logger = logging.getLogger(__name__)


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agentrun",
        description="Autonomous agent execution with safety rules, budgets and rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentrun run "Tidy the docs" --action "edit:docs/index.md" --model echo
  agentrun run --plan plan.yaml
  agentrun approve abc12345
  agentrun rollback 9f3e21aa
        """
    )
    parser.add_argument("-c", "--config", type=Path, help="Config file (default: ~/.agentrun/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"AgentRun {__version__}")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    run = sub.add_parser("run", help="Start a new execution")
    run.add_argument("goal", nargs="?", help="Goal for the agent (or set it in --plan)")
    run.add_argument("-p", "--plan", type=Path, help="YAML/JSON plan file")
    run.add_argument("-a", "--action", action="append", default=[], help="Add a step (repeatable)")
    run.add_argument("--agent", help="Agent id (default: plan's agent or 'default')")
    run.add_argument("--model", help="Model to use instead of the agent's")
    run.add_argument("--project", help="Project id recorded on the execution and ledger")
    run.add_argument("--no-interactive", action="store_true", help="Leave confirmation gates for later")

    for name, help_text in [
        ("status", "Show an execution"),
        ("pause", "Pause before the next step"),
        ("stop", "Halt an execution"),
        ("checkpoints", "List checkpoints of an execution"),
    ]:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("execution_id")

    for name, help_text in [
        ("resume", "Resume a paused execution"),
        ("approve", "Approve the step awaiting confirmation"),
    ]:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("execution_id")
        cmd.add_argument("--model", help="Model to use instead of the agent's")
        cmd.add_argument("--no-interactive", action="store_true", help="Leave confirmation gates for later")

    reject = sub.add_parser("reject", help="Reject the step awaiting confirmation")
    reject.add_argument("execution_id")
    reject.add_argument("-r", "--reason", help="Why the step was rejected")
    reject.add_argument("--model", help="Model to use instead of the agent's")
    reject.add_argument("--no-interactive", action="store_true", help="Leave confirmation gates for later")

    sub.add_parser("list", help="List executions")

    checkpoint = sub.add_parser("checkpoint", help="Create a manual checkpoint")
    checkpoint.add_argument("execution_id")
    checkpoint.add_argument("-d", "--description", help="Checkpoint description")

    rollback = sub.add_parser("rollback", help="Roll an execution back to a checkpoint")
    rollback.add_argument("checkpoint_id")
    rollback.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")

    sub.add_parser("usage", help="Show token/cost usage and budget status")

    check = sub.add_parser("check", help="Check an action against the Safety Gate")
    check.add_argument("action", help="Action description, e.g. 'git push --force'")
    check.add_argument("--agent", default="default", help="Use this agent's rules")

    sub.add_parser("recover", help="Park executions left running by a crashed process")

    return parser


# =============================================================================
# SETUP
# =============================================================================

class CliContext:
    """Config, store and controller for one CLI invocation."""

    def __init__(self, config: AgentRunConfig, model_override: Optional[str] = None):
        self.config = config
        self.user_id = config.engine.user_id
        self.store = JsonFileStore(config.engine.store_dir)
        seed_store(config, self.store)
        self.alerts = AlertManager.from_config(config.alerts)
        self._model_override = model_override
        self._invokers: dict[str, ModelInvoker] = {}
        self.controller = ExecutionController(
            self.store,
            files=LocalFileStore(config.engine.workspace_dir),
            resolve_invoker=self._resolve_invoker,
            on_event=self.alerts.on_execution_event,
        )

    def _resolve_invoker(self, model_name: str) -> ModelInvoker:
        name = self._model_override or model_name
        if name not in self._invokers:
            self._invokers[name] = get_invoker(self.config, name)
        return self._invokers[name]


def load_plan(path: Path) -> dict:
    """Read a YAML or JSON plan file."""
    if not path.exists():
        raise FileNotFoundError(f"Plan file not found: {path}")
    text = path.read_text()
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text) or {}


async def drive(ctx: CliContext, execution_id: str, interactive: bool = True):
    """
    Wait for the scheduler loop; answer confirmation gates interactively.

    Returns the execution once it stops needing this process.
    """
    controller = ctx.controller
    while True:
        with ui.show_thinking("Running steps..."):
            execution = await controller.wait(execution_id)
        if execution.state != ExecutionState.AWAITING_CONFIRMATION or not interactive:
            return execution

        choice = ui.prompt_confirmation(execution)
        if choice == "approve":
            await controller.approve(execution_id, ctx.user_id)
        elif choice == "reject":
            await controller.reject(execution_id, ctx.user_id)
        elif choice == "stop":
            await controller.stop(execution_id, ctx.user_id)
        else:
            ui.show_info(f"Left waiting. Continue later with: agentrun approve {execution_id}")
            return execution


def _finish(execution) -> int:
    ui.show_execution(execution)
    if execution.state == ExecutionState.AWAITING_CONFIRMATION:
        ui.show_info(f"Waiting for confirmation: agentrun approve|reject {execution.id}")
    return 1 if execution.state == ExecutionState.FAILED else 0


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_run(ctx: CliContext, args: argparse.Namespace) -> int:
    plan_data = load_plan(args.plan) if args.plan else {}
    goal = args.goal or plan_data.get("goal")
    if not goal:
        ui.show_error("A goal is required (argument or 'goal:' in the plan file)")
        return 1

    try:
        steps = [StepAction.model_validate(s) for s in plan_data.get("steps", [])]
    except ValidationError as e:
        ui.show_error(f"Invalid plan: {e}")
        return 1
    steps.extend(StepAction(description=a) for a in args.action)
    if not steps:
        ui.show_warning("No steps given; the execution will complete immediately")

    agent_id = args.agent or plan_data.get("agent") or "default"
    execution = await ctx.controller.start(
        ctx.user_id,
        agent_id,
        goal,
        assumptions=plan_data.get("assumptions"),
        stopping_conditions=plan_data.get("stopping_conditions"),
        plan=steps,
        project_id=args.project or plan_data.get("project"),
    )
    ui.show_header("AgentRun", f"Execution {execution.id} - {len(steps)} planned step(s)")
    execution = await drive(ctx, execution.id, interactive=not args.no_interactive)
    return _finish(execution)


async def cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    ui.show_execution(ctx.controller.get_state(args.execution_id, ctx.user_id))
    return 0


async def cmd_list(ctx: CliContext, args: argparse.Namespace) -> int:
    ui.show_header("Executions")
    ui.show_executions_list(ctx.controller.list_executions(ctx.user_id))
    return 0


async def cmd_pause(ctx: CliContext, args: argparse.Namespace) -> int:
    execution = await ctx.controller.pause(args.execution_id, ctx.user_id)
    ui.show_success(f"Execution {execution.id} will pause before its next step")
    return 0


async def cmd_stop(ctx: CliContext, args: argparse.Namespace) -> int:
    execution = await ctx.controller.stop(args.execution_id, ctx.user_id)
    ui.show_success(f"Execution {execution.id} halted")
    return 0


async def cmd_resume(ctx: CliContext, args: argparse.Namespace) -> int:
    await ctx.controller.resume(args.execution_id, ctx.user_id)
    execution = await drive(ctx, args.execution_id, interactive=not args.no_interactive)
    return _finish(execution)


async def cmd_approve(ctx: CliContext, args: argparse.Namespace) -> int:
    await ctx.controller.approve(args.execution_id, ctx.user_id)
    execution = await drive(ctx, args.execution_id, interactive=not args.no_interactive)
    return _finish(execution)


async def cmd_reject(ctx: CliContext, args: argparse.Namespace) -> int:
    await ctx.controller.reject(args.execution_id, ctx.user_id, args.reason)
    execution = await drive(ctx, args.execution_id, interactive=not args.no_interactive)
    return _finish(execution)


async def cmd_checkpoint(ctx: CliContext, args: argparse.Namespace) -> int:
    cp = await ctx.controller.create_checkpoint(args.execution_id, ctx.user_id, args.description)
    ui.show_success(f"Checkpoint {cp.id} created at step {cp.step_number}")
    return 0


async def cmd_checkpoints(ctx: CliContext, args: argparse.Namespace) -> int:
    ui.show_checkpoints(ctx.controller.list_checkpoints(args.execution_id, ctx.user_id))
    return 0


async def cmd_rollback(ctx: CliContext, args: argparse.Namespace) -> int:
    preview = ctx.controller.rollback_preview(args.checkpoint_id, ctx.user_id)
    ui.show_rollback_preview(preview)
    if not args.yes and not ui.prompt_continue("Roll back?"):
        ui.show_info("Rollback cancelled")
        return 0
    result = await ctx.controller.rollback(args.checkpoint_id, ctx.user_id)
    ui.show_rollback_result(result)
    return 0


async def cmd_usage(ctx: CliContext, args: argparse.Namespace) -> int:
    ledger = ctx.controller.ledger
    ui.show_header("Usage", f"user: {ctx.user_id}")
    ui.show_usage(
        ledger.usage_summary(ctx.user_id),
        ledger.budget_status(ctx.user_id, ctx.store.get_user_settings(ctx.user_id)),
    )
    return 0


async def cmd_check(ctx: CliContext, args: argparse.Namespace) -> int:
    agent = ctx.store.get_agent(args.agent)
    if agent is None:
        raise NotFound(f"Agent not found: {args.agent}")
    result = safety.check(
        args.action,
        safety.effective_rules(agent.policy.rules, agent.policy.include_default_rules),
    )
    ui.show_safety_result(args.action, result)
    return 0 if result.allowed else 2


async def cmd_recover(ctx: CliContext, args: argparse.Namespace) -> int:
    recovered = await ctx.controller.recover_interrupted()
    if not recovered:
        ui.show_info("Nothing to recover")
    for execution in recovered:
        ui.show_warning(f"Execution {execution.id} parked as paused; resume with: agentrun resume {execution.id}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "status": cmd_status,
    "list": cmd_list,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "stop": cmd_stop,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "checkpoint": cmd_checkpoint,
    "checkpoints": cmd_checkpoints,
    "rollback": cmd_rollback,
    "usage": cmd_usage,
    "check": cmd_check,
    "recover": cmd_recover,
}


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        ui.show_error(f"Could not load config: {e}")
        return 1

    configure_logging(config.logging, level="DEBUG" if args.verbose else None)
    logger.debug(f"Command {args.command}, store {config.engine.store_dir}")

    try:
        ctx = CliContext(config, model_override=getattr(args, "model", None))
    except ValueError as e:
        ui.show_error(str(e))
        return 1

    try:
        return await COMMANDS[args.command](ctx, args)
    except EngineError as e:
        ui.show_error(f"{e.kind}: {e.message}")
        return 1
    except (FileNotFoundError, ValueError) as e:
        ui.show_error(str(e))
        return 1
    finally:
        await ctx.controller.close()


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
