"""
Pydantic schemas for the AgentRun execution engine.

WHY THIS FILE EXISTS:
--------------------
Execution and step status used to live in loosely-typed JSON blobs, where any
string could end up in a status column and a step could be "complete" with an
error attached. Everything the engine persists or hands to a caller is
defined here instead, so that:
1. States and statuses are enums, not free strings
2. Step input/output carry an explicit content-type tag
3. Checkpoints and safety results are immutable values
4. Every record validates on the way in and out of the store

ENTITIES:
--------
    AgentDefinition  -> who runs (owner, model, AgentPolicy)
    AgentExecution   -> one run toward a goal, with its ExecutionSteps
    Checkpoint       -> frozen snapshot of an execution + rollback data
    BudgetUsageRecord-> one append-only ledger line
    AuditEntry       -> one append-only diagnostic line
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================

class ExecutionState(str, Enum):
    """Lifecycle state of an AgentExecution (see lifecycle.py for transitions)."""
    PLANNING = "planning"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    HALTED = "halted"


TERMINAL_STATES = frozenset({
    ExecutionState.COMPLETED,
    ExecutionState.FAILED,
    ExecutionState.HALTED,
})


class StepStatus(str, Enum):
    """Status of a single ExecutionStep."""
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class HaltReason(str, Enum):
    """Why an execution was halted."""
    MAX_STEPS_REACHED = "max_steps_reached"
    UNCERTAINTY_THRESHOLD = "uncertainty_threshold"
    SCOPE_EXPANSION = "scope_expansion"
    BUDGET_EXCEEDED = "budget_exceeded"
    USER_REQUESTED = "user_requested"
    VIOLATION_DETECTED = "violation_detected"
    GOAL_INVALID = "goal_invalid"
    DEPENDENCY_FAILED = "dependency_failed"
    CONTEXT_CHANGED = "context_changed"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RuleType(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    CONFIRM = "confirm"


class AuditLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# =============================================================================
# SAFETY SCHEMAS
# =============================================================================

class SafetyRule(BaseModel):
    """
    One entry of an agent's ordered rule list.

    Example:
        SafetyRule(
            type="deny",
            pattern="force push",
            description="Force pushes rewrite shared history"
        )
    """
    id: Optional[str] = Field(default=None, description="Stable rule identifier")
    type: RuleType = Field(description="allow, deny or confirm")
    pattern: str = Field(
        description="Terms, glob (*, ?) or 're:' regex matched case-insensitively"
    )
    description: str = Field(default="", description="Shown to the user when the rule fires")
    category: Literal["file", "terminal", "network", "system", "custom"] = Field(
        default="custom",
        description="Rule grouping"
    )

    @field_validator("pattern")
    @classmethod
    def pattern_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Rule pattern cannot be empty")
        return v


class SafetyCheckResult(BaseModel):
    """Verdict of the Safety Gate for one action description. Pure value."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    requires_confirmation: bool = False
    reason: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    matched_rule: Optional[SafetyRule] = None


# =============================================================================
# AGENT SCHEMAS
# =============================================================================

class AgentPolicy(BaseModel):
    """
    Execution policy owned by the agent, not by any single execution.

    The two budget limits here are the per-execution cap. The account-wide
    daily/monthly cap lives in UserSettings and is checked independently.
    """
    max_steps: int = Field(default=10, ge=0, description="Completed steps allowed per execution")
    uncertainty_threshold: int = Field(
        default=70, ge=0, le=100,
        description="Halt when the model reports uncertainty above this percentage"
    )
    budget_limit_usd: Decimal = Field(default=Decimal("1.00"), ge=0)
    budget_limit_tokens: int = Field(default=100000, ge=0)
    require_approval_for_changes: bool = True
    allow_scope_expansion: bool = False
    auto_checkpoint: bool = True
    rules: list[SafetyRule] = Field(default_factory=list)
    include_default_rules: bool = Field(
        default=True,
        description="Evaluate the built-in rule set after the agent's own rules"
    )
    continue_on_reject: bool = Field(
        default=False,
        description="After a rejected step, continue with the next action instead of halting"
    )
    estimated_step_cost_usd: Decimal = Field(
        default=Decimal("0"), ge=0,
        description="Expected cost of one step, used by the pre-dispatch cap check"
    )
    estimated_step_tokens: int = Field(default=0, ge=0)


class AgentDefinition(BaseModel):
    """A configured agent that executions are started from."""
    id: str
    user_id: str
    name: str
    model: str = Field(default="default", description="Name of a configured model")
    enabled: bool = True
    policy: AgentPolicy = Field(default_factory=AgentPolicy)


class UserSettings(BaseModel):
    """Account-wide settings. Only the budget caps matter to the engine."""
    user_id: str
    daily_budget_limit_usd: Optional[Decimal] = Field(default=None, ge=0)
    monthly_budget_limit_usd: Optional[Decimal] = Field(default=None, ge=0)


# =============================================================================
# STEP SCHEMAS
# =============================================================================

class StepPayload(BaseModel):
    """Opaque step input/output tagged with its content type."""
    content_type: str = Field(default="application/json")
    data: Any = None

    @classmethod
    def text(cls, value: str) -> "StepPayload":
        return cls(content_type="text/plain", data=value)


class StepAction(BaseModel):
    """
    A proposed unit of work.

    `description` is what the Safety Gate evaluates, e.g. "git push --force"
    or "edit:src/config.py".
    """
    kind: str = Field(default="model", description="model, terminal, file_write, ...")
    description: str
    input: StepPayload = Field(default_factory=StepPayload)
    mutating: bool = Field(default=False, description="Changes files or external state")
    expands_scope: bool = Field(default=False, description="Reaches beyond the stated goal")


class ExecutionStep(BaseModel):
    """One discrete unit of work within an execution."""
    step_number: int = Field(ge=1)
    action: StepAction
    input: StepPayload = Field(default_factory=StepPayload)
    output: Optional[StepPayload] = None
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    requires_confirmation: bool = False
    approved: bool = False
    safety: Optional[SafetyCheckResult] = None
    tokens_used: int = 0
    cost_usd: Decimal = Decimal("0")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# =============================================================================
# EXECUTION SCHEMAS
# =============================================================================

class AgentExecution(BaseModel):
    """
    One run of an agent toward a goal.

    `current_step` counts completed steps. `next_step_number` is the counter
    new steps draw from; it only ever grows, so step numbers are never reused
    even after a rollback trims `steps`.
    """
    id: str = ""
    agent_id: str
    user_id: str
    project_id: Optional[str] = None
    goal: str
    assumptions: list[str] = Field(default_factory=list)
    stopping_conditions: list[str] = Field(default_factory=list)
    state: ExecutionState = ExecutionState.PLANNING
    current_step: int = 0
    total_steps: int = 0
    next_step_number: int = 1
    plan: list[StepAction] = Field(default_factory=list)
    steps: list[ExecutionStep] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    files_modified: list[str] = Field(default_factory=list)
    halt_reason: Optional[HaltReason] = None
    halt_message: Optional[str] = None
    total_tokens_used: int = 0
    total_cost_usd: Decimal = Decimal("0")
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def get_step(self, step_number: int) -> Optional[ExecutionStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def awaiting_step(self) -> Optional[ExecutionStep]:
        """The step parked at a confirmation gate, if any."""
        for step in reversed(self.steps):
            if step.status == StepStatus.AWAITING_CONFIRMATION:
                return step
        return None

    def approved_step(self) -> Optional[ExecutionStep]:
        """An approved step that has not been dispatched yet."""
        for step in reversed(self.steps):
            if step.status == StepStatus.PENDING and step.approved:
                return step
        return None


# =============================================================================
# CHECKPOINT SCHEMAS
# =============================================================================

class FileSnapshot(BaseModel):
    """
    One file operation replayed on rollback.

    create/modify write `content` to `path`; delete removes `path`.
    """
    path: str
    content: Optional[str] = None
    action: Literal["create", "modify", "delete"]


class RollbackData(BaseModel):
    file_snapshots: list[FileSnapshot] = Field(default_factory=list)
    db_changes: list[Any] = Field(default_factory=list)


class CheckpointState(BaseModel):
    """Value copy of the restorable parts of an execution."""
    execution_state: ExecutionState
    current_step: int
    steps: list[ExecutionStep] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    files_modified: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """Immutable snapshot of an execution at a given step."""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    execution_id: str
    agent_id: str
    user_id: str
    step_number: int = Field(ge=0)
    description: Optional[str] = None
    state: CheckpointState
    rollback_data: Optional[RollbackData] = None
    automatic: bool = True
    tokens_used_at_checkpoint: int = 0
    cost_at_checkpoint: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=datetime.now)


class RollbackResult(BaseModel):
    """What a successful rollback did."""
    checkpoint: Checkpoint
    execution: AgentExecution
    steps_reverted: int = 0
    files_restored: list[str] = Field(default_factory=list)
    superseded_checkpoints: list[str] = Field(
        default_factory=list,
        description="IDs of checkpoints taken after the restored one; kept, not deleted"
    )


class RollbackPreview(BaseModel):
    checkpoint_id: str
    steps_to_revert: int
    checkpoints_after: int
    files_to_restore: list[str] = Field(default_factory=list)
    target_state: CheckpointState


# =============================================================================
# LEDGER & AUDIT SCHEMAS
# =============================================================================

class BudgetUsageRecord(BaseModel):
    """One append-only ledger line."""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    user_id: str
    tokens_used: int = Field(ge=0)
    cost_usd: Decimal = Field(ge=0)
    model: Optional[str] = None
    operation: str = "agent_step"
    execution_id: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class AuditEntry(BaseModel):
    """One append-only diagnostic line. Never read for control decisions."""
    model_config = ConfigDict(frozen=True)

    id: str = ""
    execution_id: Optional[str] = None
    user_id: Optional[str] = None
    level: AuditLevel = AuditLevel.INFO
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# CONTROL API SCHEMAS
# =============================================================================

class ErrorPayload(BaseModel):
    """The only error shape external callers ever see."""
    kind: str
    message: str


class ControlResponse(BaseModel):
    ok: bool
    data: Any = None
    error: Optional[ErrorPayload] = None


# List of all schemas for easy iteration
ALL_SCHEMAS = [
    SafetyRule,
    SafetyCheckResult,
    AgentPolicy,
    AgentDefinition,
    UserSettings,
    StepPayload,
    StepAction,
    ExecutionStep,
    AgentExecution,
    FileSnapshot,
    RollbackData,
    CheckpointState,
    Checkpoint,
    RollbackResult,
    RollbackPreview,
    BudgetUsageRecord,
    AuditEntry,
    ErrorPayload,
    ControlResponse,
]
