"""
AgentRun - autonomous agent execution with guardrails.

An agent works toward a goal one step at a time. Every step passes through:
1. The Safety Gate (deny / require-confirmation / allow rules)
2. The Budget Ledger (per-execution and per-account spending caps)
3. The Checkpoint Manager (automatic checkpoints, rollback with file replay)

The Execution Controller owns the lifecycle; the Step Scheduler drives the
loop; everything noteworthy lands in the Audit Log.
"""

__version__ = "0.1.0"

# Re-export key classes for convenience
from .schemas import (
    AgentDefinition,
    AgentExecution,
    AgentPolicy,
    Checkpoint,
    ControlResponse,
    ExecutionState,
    ExecutionStep,
    HaltReason,
    SafetyCheckResult,
    SafetyRule,
    StepAction,
    StepStatus,
    UserSettings,
)

from .errors import (
    EngineError,
    NotFound,
    Forbidden,
    Disabled,
    InvalidTransition,
    InvalidArgument,
    Conflict,
    ToolInvocationError,
    RollbackError,
)

from .providers import (
    ModelInvoker,
    AnthropicInvoker,
    OpenAIInvoker,
    EchoInvoker,
    RetryingInvoker,
    get_invoker,
)

from .store import ExecutionStore, InMemoryStore, JsonFileStore
from .filestore import FileStore, LocalFileStore
from .ledger import BudgetLedger
from .checkpoints import CheckpointManager
from .audit import AuditLog
from .scheduler import ActionPlanner, PlannedActionPlanner, StepScheduler
from .controller import ExecutionController
from .api import ControlAPI

from .config import (
    AgentRunConfig,
    ModelConfig,
    load_config,
    get_default_config,
    save_config,
    configure_logging,
)

from .cli import main as cli_main

__all__ = [
    # Schemas
    "AgentDefinition",
    "AgentExecution",
    "AgentPolicy",
    "Checkpoint",
    "ControlResponse",
    "ExecutionState",
    "ExecutionStep",
    "HaltReason",
    "SafetyCheckResult",
    "SafetyRule",
    "StepAction",
    "StepStatus",
    "UserSettings",
    # Errors
    "EngineError",
    "NotFound",
    "Forbidden",
    "Disabled",
    "InvalidTransition",
    "InvalidArgument",
    "Conflict",
    "ToolInvocationError",
    "RollbackError",
    # Providers
    "ModelInvoker",
    "AnthropicInvoker",
    "OpenAIInvoker",
    "EchoInvoker",
    "RetryingInvoker",
    "get_invoker",
    # Engine
    "ExecutionStore",
    "InMemoryStore",
    "JsonFileStore",
    "FileStore",
    "LocalFileStore",
    "BudgetLedger",
    "CheckpointManager",
    "AuditLog",
    "ActionPlanner",
    "PlannedActionPlanner",
    "StepScheduler",
    "ExecutionController",
    "ControlAPI",
    # Config
    "AgentRunConfig",
    "ModelConfig",
    "load_config",
    "get_default_config",
    "save_config",
    "configure_logging",
    # CLI
    "cli_main",
]
