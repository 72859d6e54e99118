"""
Alert system for AgentRun.
Terminal alerts for executions that need confirmation or have stopped.
"""

from rich.console import Console
from rich.panel import Panel

from .config import AlertConfig
from .schemas import AgentExecution


class AlertManager:
    """Manages alerts and notifications."""

    STYLE_MAP = {
        "critical": "bold red",
        "warning": "bold yellow",
        "info": "bold blue",
        "success": "bold green",
    }

    def __init__(self, terminal: bool = True, bell: bool = True, console: Console = None):
        self.terminal_enabled = terminal
        self.bell_enabled = bell
        self.console = console or Console(stderr=True)

    @classmethod
    def from_config(cls, config: AlertConfig) -> "AlertManager":
        return cls(terminal=config.terminal, bell=config.bell)

    def _terminal_bell(self):
        """Ring terminal bell."""
        self.console.bell()

    def _terminal_alert(self, title: str, message: str, style: str = "warning"):
        """Display a prominent terminal alert."""
        border_style = self.STYLE_MAP.get(style, "bold yellow")

        self.console.print()
        self.console.print(Panel(
            f"[{border_style}]{message}[/{border_style}]",
            title=f"⚠️  {title}" if style in ("critical", "warning") else title,
            border_style=border_style,
        ))
        self.console.print()

        if style == "critical" and self.bell_enabled:
            self._terminal_bell()

    def info(self, title: str, message: str = ""):
        if self.terminal_enabled:
            self._terminal_alert(title, message or title, "info")

    def warning(self, title: str, message: str = ""):
        if self.terminal_enabled:
            self._terminal_alert(title, message or title, "warning")

    def critical(self, title: str, message: str = ""):
        if self.terminal_enabled:
            self._terminal_alert(title, message or title, "critical")

    def success(self, title: str, message: str = ""):
        if self.terminal_enabled:
            self._terminal_alert(title, message or title, "success")

    # -------------------------------------------------------------------------
    # Execution events
    # -------------------------------------------------------------------------

    def on_execution_event(self, event: str, execution: AgentExecution) -> None:
        """
        Hook for ExecutionController(on_event=...).

        awaiting_confirmation -> warning (with bell)
        halted / failed       -> critical
        completed             -> success
        """
        if event == "awaiting_confirmation":
            step = execution.awaiting_step()
            detail = step.action.description if step else "A step"
            self.warning(f"Confirmation needed ({execution.id})", f"{detail}\nApprove or reject to continue.")
            if self.bell_enabled and self.terminal_enabled:
                self._terminal_bell()
        elif event == "halted":
            reason = execution.halt_reason.value if execution.halt_reason else "halted"
            self.critical(f"Execution halted ({execution.id})", f"{reason}: {execution.halt_message or ''}")
        elif event == "failed":
            self.critical(f"Execution failed ({execution.id})", execution.halt_message or "Step failed")
        elif event == "completed":
            self.success(
                f"Execution completed ({execution.id})",
                f"{execution.current_step} step(s), ${execution.total_cost_usd:.4f}",
            )
