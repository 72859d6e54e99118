"""
Rich terminal UI components for AgentRun.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to show executions, steps, checkpoints and budgets in a
readable way. Rich provides panels, tables and colors; this module keeps the
styling consistent across commands.

COMPONENTS:
----------
- show_execution() - Execution header, halt info and its steps table
- show_executions_list() - One row per execution
- show_checkpoints() - Checkpoint timeline for an execution
- show_rollback_preview() / show_rollback_result()
- show_safety_result() - Safety Gate verdict for a dry-run check
- show_usage() - Ledger summary and budget status
- prompt_confirmation() - Interactive approve/reject at a confirmation gate
"""

from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from .costs import BudgetStatus
from .ledger import UsageTotals
from .schemas import (
    AgentExecution,
    Checkpoint,
    ExecutionStep,
    RollbackPreview,
    RollbackResult,
    SafetyCheckResult,
)

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

STATUS_COLORS = {
    "planning": "dim",
    "executing": "yellow",
    "awaiting_confirmation": "magenta",
    "paused": "blue",
    "completed": "green",
    "failed": "red",
    "halted": "red",
    "pending": "dim",
    "running": "yellow",
    "complete": "green",
    "skipped": "dim",
}

RISK_COLORS = {
    "low": "green",
    "medium": "yellow",
    "high": "red bold",
}

WARNING_COLORS = {
    "none": "green",
    "low": "yellow",
    "medium": "yellow bold",
    "high": "red",
    "exceeded": "red bold",
}


def _status(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _truncate(text: Optional[str], limit: int = 60) -> str:
    text = (text or "").replace("\n", " ")
    return text[:limit] + "..." if len(text) > limit else text


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_section(title: str) -> None:
    """Display a section divider."""
    console.print(f"\n[bold cyan]{title}[/bold cyan]")
    console.print("─" * 40)


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# EXECUTION DISPLAY
# =============================================================================

def show_execution(execution: AgentExecution, show_steps: bool = True) -> None:
    """
    Display an execution with its steps.

    Args:
        execution: The execution to display
        show_steps: Also render the steps table
    """
    content = Text()
    content.append("Goal: ", style="bold")
    content.append(f"{execution.goal}\n")
    content.append("State: ", style="bold")
    content.append(execution.state.value, style=STATUS_COLORS.get(execution.state.value, "white"))
    content.append(f"   Steps: {execution.current_step}/{execution.total_steps or '?'}")
    content.append(f"   Tokens: {execution.total_tokens_used:,}")
    content.append(f"   Cost: ${execution.total_cost_usd:.4f}\n")

    if execution.assumptions:
        content.append("Assumptions:\n", style="bold")
        for assumption in execution.assumptions:
            content.append(f"  • {assumption}\n")

    if execution.halt_reason or execution.halt_message:
        content.append("\nStopped: ", style="bold red")
        if execution.halt_reason:
            content.append(f"{execution.halt_reason.value} ", style="red")
        content.append(execution.halt_message or "")

    console.print(Panel(
        content,
        title=f"[bold]Execution {execution.id}[/bold]",
        subtitle=f"[dim]agent: {execution.agent_id}[/dim]",
        border_style=STATUS_COLORS.get(execution.state.value, "blue"),
        box=box.ROUNDED,
    ))

    if show_steps and execution.steps:
        show_steps_table(execution.steps)


def show_steps_table(steps: list[ExecutionStep]) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Steps[/bold]")
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Risk", justify="center")
    table.add_column("Tokens", justify="right", style="dim")
    table.add_column("Result / Error", style="dim")

    for step in steps:
        risk = step.safety.risk_level.value if step.safety else "-"
        risk_color = RISK_COLORS.get(risk, "white")
        detail = step.error if step.error else (step.output.data if step.output else "")
        table.add_row(
            str(step.step_number),
            _truncate(step.action.description, 40),
            _status(step.status.value),
            f"[{risk_color}]{risk}[/{risk_color}]",
            f"{step.tokens_used:,}",
            _truncate(str(detail) if detail else "", 50),
        )

    console.print(table)


def show_executions_list(executions: list[AgentExecution]) -> None:
    if not executions:
        console.print("[dim]No executions found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("State")
    table.add_column("Steps", justify="right")
    table.add_column("Goal")
    table.add_column("Created", style="dim")

    for execution in executions:
        table.add_row(
            execution.id,
            execution.agent_id,
            _status(execution.state.value),
            str(execution.current_step),
            _truncate(execution.goal, 50),
            execution.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


# =============================================================================
# CHECKPOINT DISPLAY
# =============================================================================

def show_checkpoints(checkpoints: list[Checkpoint]) -> None:
    if not checkpoints:
        console.print("[dim]No checkpoints yet.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Checkpoints[/bold]")
    table.add_column("ID", style="cyan")
    table.add_column("Step", justify="right")
    table.add_column("State")
    table.add_column("Kind")
    table.add_column("Files", justify="right")
    table.add_column("Description")
    table.add_column("Created", style="dim")

    for cp in checkpoints:
        files = len(cp.rollback_data.file_snapshots) if cp.rollback_data else 0
        table.add_row(
            cp.id,
            str(cp.step_number),
            _status(cp.state.execution_state.value),
            "auto" if cp.automatic else "[bold]manual[/bold]",
            str(files),
            _truncate(cp.description, 40),
            cp.created_at.strftime("%H:%M:%S"),
        )

    console.print(table)


def show_rollback_preview(preview: RollbackPreview) -> None:
    content = Text()
    content.append("Steps to revert: ", style="bold")
    content.append(f"{preview.steps_to_revert}\n", style="yellow" if preview.steps_to_revert else "green")
    content.append("Later checkpoints (kept, superseded): ", style="bold")
    content.append(f"{preview.checkpoints_after}\n")
    content.append("Restores state: ", style="bold")
    content.append(f"{preview.target_state.execution_state.value} at step {preview.target_state.current_step}\n")
    if preview.files_to_restore:
        content.append("Files:\n", style="bold")
        for path in preview.files_to_restore:
            content.append(f"  • {path}\n")

    console.print(Panel(
        content,
        title=f"[bold yellow]Rollback to {preview.checkpoint_id}[/bold yellow]",
        border_style="yellow",
        box=box.ROUNDED,
    ))


def show_rollback_result(result: RollbackResult) -> None:
    show_success(
        f"Rolled back to checkpoint {result.checkpoint.id} "
        f"({result.steps_reverted} step(s) reverted, {len(result.files_restored)} file(s) restored)"
    )
    if result.superseded_checkpoints:
        show_info(f"Superseded checkpoints kept: {', '.join(result.superseded_checkpoints)}")
    show_info(f"Execution is now {result.execution.state.value}")


# =============================================================================
# SAFETY & USAGE DISPLAY
# =============================================================================

def show_safety_result(action: str, result: SafetyCheckResult) -> None:
    if not result.allowed:
        verdict, color = "BLOCKED", "red"
    elif result.requires_confirmation:
        verdict, color = "CONFIRM", "yellow"
    else:
        verdict, color = "ALLOWED", "green"

    content = Text()
    content.append("Action: ", style="bold")
    content.append(f"{action}\n")
    content.append("Risk: ", style="bold")
    content.append(f"{result.risk_level.value}\n", style=RISK_COLORS.get(result.risk_level.value, "white"))
    if result.matched_rule:
        content.append("Rule: ", style="bold")
        content.append(f"{result.matched_rule.type.value} '{result.matched_rule.pattern}'\n")
    if result.reason:
        content.append("Reason: ", style="bold")
        content.append(result.reason)

    console.print(Panel(content, title=f"[bold {color}]{verdict}[/bold {color}]", border_style=color, box=box.ROUNDED))


def show_usage(summary: dict[str, UsageTotals], status: BudgetStatus) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Usage[/bold]")
    table.add_column("Period")
    table.add_column("Calls", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right", style="green")

    for period, totals in summary.items():
        table.add_row(
            period.replace("_", " "),
            str(totals.calls),
            f"{totals.tokens:,}",
            f"${totals.cost_usd:.4f}",
        )
    console.print(table)

    color = WARNING_COLORS.get(status.warning_level, "white")
    lines = []
    if status.daily_limit is not None:
        lines.append(f"Daily: ${status.daily_used:.4f} of ${status.daily_limit} (remaining ${status.daily_remaining:.4f})")
    if status.monthly_limit is not None:
        lines.append(f"Monthly: ${status.monthly_used:.4f} of ${status.monthly_limit} (remaining ${status.monthly_remaining:.4f})")
    if not lines:
        lines.append("No account budget limits configured")
    lines.append(f"Warning level: [{color}]{status.warning_level}[/{color}]")
    console.print(Panel("\n".join(lines), title="[bold]Budget[/bold]", border_style=color, box=box.ROUNDED))


# =============================================================================
# INTERACTIVE PROMPTS
# =============================================================================

def prompt_confirmation(execution: AgentExecution) -> str:
    """
    Ask the user what to do with a step awaiting confirmation.

    Returns:
        One of: "approve", "reject", "pause", "stop"
    """
    step = execution.awaiting_step()
    if step is not None:
        content = Text()
        content.append(f"{step.action.description}\n\n")
        if step.safety and step.safety.reason:
            content.append("Why: ", style="bold")
            content.append(f"{step.safety.reason}\n")
        if step.action.mutating:
            content.append("This step changes files or external state.\n", style="yellow")
        if step.action.expands_scope:
            content.append("This step reaches beyond the stated goal.\n", style="yellow")
        risk = step.safety.risk_level.value if step.safety else "medium"
        console.print(Panel(
            content,
            title=f"[bold magenta]Step {step.step_number} needs confirmation[/bold magenta]",
            subtitle=f"[{RISK_COLORS.get(risk, 'white')}]risk: {risk}[/{RISK_COLORS.get(risk, 'white')}]",
            border_style="magenta",
            box=box.ROUNDED,
        ))

    console.print("\n[bold]Options:[/bold]")
    console.print("  [green]a[/green]pprove - Run this step")
    console.print("  [yellow]r[/yellow]eject  - Skip this step")
    console.print("  [blue]p[/blue]ause   - Decide later")
    console.print("  [red]x[/red]       - Stop the execution")

    choice = Prompt.ask(
        "\n[bold]Choice[/bold]",
        choices=["a", "r", "p", "x", "approve", "reject", "pause", "stop"],
        default="a",
    )
    mapping = {
        "a": "approve", "approve": "approve",
        "r": "reject", "reject": "reject",
        "p": "pause", "pause": "pause",
        "x": "stop", "stop": "stop",
    }
    return mapping.get(choice, "approve")


def prompt_continue(message: str = "Continue?") -> bool:
    """Simple yes/no confirmation prompt."""
    return Confirm.ask(f"[bold]{message}[/bold]", default=True)


def show_thinking(message: str = "Working..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Running steps..."):
            execution = await controller.wait(execution_id)
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")
