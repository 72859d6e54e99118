"""
Durable store for AgentRun.

WHY THIS FILE EXISTS:
--------------------
The controller, scheduler, checkpoint manager and ledger never hold state
that only lives in memory: every transition is written here before it is
acted on. This module defines the storage contract and two implementations:

    InMemoryStore  - dicts of deep copies; tests and embedded use
    JsonFileStore  - one JSON document per record under a base directory,
                     JSONL for the append-only ledger and audit trail

VALUE SEMANTICS:
---------------
Records go in and come out as deep copies. Nothing a caller holds aliases what
the store keeps, so mutating a loaded execution never changes a checkpoint or
another caller's copy until it is explicitly saved.

CONCURRENCY:
-----------
Executions carry a `version`. save_execution() only accepts a copy whose
version matches the stored one (compare-and-swap) and bumps it; a stale write
raises Conflict.

LAYOUT (JsonFileStore):
----------------------
<base>/
├── agents/<agent_id>.json
├── executions/<execution_id>.json
├── checkpoints/<checkpoint_id>.json
├── settings/<user_id>.json
├── usage.jsonl
└── audit.jsonl
"""

import json
import os
import re
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Type, TypeVar

from pydantic import BaseModel

from .errors import Conflict, Forbidden, NotFound
from .schemas import (
    AgentDefinition,
    AgentExecution,
    AuditEntry,
    BudgetUsageRecord,
    Checkpoint,
    UserSettings,
)

T = TypeVar("T", bound=BaseModel)


def new_id() -> str:
    """Short unique identifier for a new record."""
    return str(uuid.uuid4())[:8]


def _filter_usage(
    records: Iterable[BudgetUsageRecord],
    user_id: str,
    execution_id: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
) -> list[BudgetUsageRecord]:
    result = []
    for record in records:
        if record.user_id != user_id:
            continue
        if execution_id is not None and record.execution_id != execution_id:
            continue
        if since is not None and record.created_at < since:
            continue
        if until is not None and record.created_at >= until:
            continue
        result.append(record)
    return result


def _sort_checkpoints(checkpoints: Iterable[Checkpoint]) -> list[Checkpoint]:
    return sorted(checkpoints, key=lambda cp: (cp.step_number, cp.created_at))


# =============================================================================
# STORAGE CONTRACT
# =============================================================================

class ExecutionStore(ABC):
    """
    Base class for durable stores.

    All implementations must return deep copies and enforce the execution
    version check in save_execution().
    """

    # -- Agents ---------------------------------------------------------------

    @abstractmethod
    def save_agent(self, agent: AgentDefinition) -> AgentDefinition:
        pass

    @abstractmethod
    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        pass

    @abstractmethod
    def list_agents(self, user_id: Optional[str] = None) -> list[AgentDefinition]:
        pass

    # -- Executions -----------------------------------------------------------

    @abstractmethod
    def create_execution(self, execution: AgentExecution) -> AgentExecution:
        """Persist a new execution, assigning its id and version 1."""
        pass

    @abstractmethod
    def get_execution(self, execution_id: str) -> Optional[AgentExecution]:
        pass

    @abstractmethod
    def save_execution(self, execution: AgentExecution) -> AgentExecution:
        """
        Replace a stored execution.

        Raises:
            NotFound: If the execution was never created
            Conflict: If execution.version is not the stored version

        Returns:
            The stored copy, with its version bumped
        """
        pass

    @abstractmethod
    def list_executions(self, user_id: Optional[str] = None) -> list[AgentExecution]:
        pass

    # -- Checkpoints ----------------------------------------------------------

    @abstractmethod
    def add_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        pass

    @abstractmethod
    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        """Checkpoints of one execution, ascending by step number."""
        pass

    # -- Ledger ---------------------------------------------------------------

    @abstractmethod
    def append_usage(self, record: BudgetUsageRecord) -> BudgetUsageRecord:
        pass

    @abstractmethod
    def list_usage(
        self,
        user_id: str,
        execution_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[BudgetUsageRecord]:
        pass

    # -- Audit ----------------------------------------------------------------

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        pass

    @abstractmethod
    def list_audit(self, execution_id: Optional[str] = None) -> list[AuditEntry]:
        pass

    # -- Settings -------------------------------------------------------------

    @abstractmethod
    def get_user_settings(self, user_id: str) -> UserSettings:
        """Settings for a user; defaults (no caps) when none were saved."""
        pass

    @abstractmethod
    def save_user_settings(self, settings: UserSettings) -> UserSettings:
        pass

    # -- Ownership helpers ----------------------------------------------------

    def load_owned_execution(self, execution_id: str, user_id: str) -> AgentExecution:
        """
        Load an execution on behalf of a caller.

        Raises:
            NotFound: Unknown execution id
            Forbidden: The caller does not own the execution
        """
        execution = self.get_execution(execution_id)
        if execution is None:
            raise NotFound(f"Execution not found: {execution_id}")
        if execution.user_id != user_id:
            raise Forbidden(f"Execution {execution_id} belongs to another user")
        return execution

    def load_owned_checkpoint(self, checkpoint_id: str, user_id: str) -> Checkpoint:
        """Load a checkpoint whose execution is owned by the caller."""
        checkpoint = self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise NotFound(f"Checkpoint not found: {checkpoint_id}")
        execution = self.get_execution(checkpoint.execution_id)
        owner = execution.user_id if execution is not None else checkpoint.user_id
        if owner != user_id:
            raise Forbidden(f"Checkpoint {checkpoint_id} belongs to another user")
        return checkpoint


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryStore(ExecutionStore):
    """
    Store backed by dictionaries.

    Usage:
        store = InMemoryStore()
        store.save_agent(AgentDefinition(id="coder", user_id="u1", name="Coder"))
    """

    def __init__(self):
        self._agents: dict[str, AgentDefinition] = {}
        self._executions: dict[str, AgentExecution] = {}
        self._checkpoints: dict[str, Checkpoint] = {}
        self._usage: list[BudgetUsageRecord] = []
        self._audit: list[AuditEntry] = []
        self._settings: dict[str, UserSettings] = {}
        self._lock = threading.Lock()

    def save_agent(self, agent: AgentDefinition) -> AgentDefinition:
        with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
        return agent.model_copy(deep=True)

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    def list_agents(self, user_id: Optional[str] = None) -> list[AgentDefinition]:
        return [
            agent.model_copy(deep=True)
            for agent in self._agents.values()
            if user_id is None or agent.user_id == user_id
        ]

    def create_execution(self, execution: AgentExecution) -> AgentExecution:
        stored = execution.model_copy(
            deep=True,
            update={"id": execution.id or new_id(), "version": 1},
        )
        with self._lock:
            if stored.id in self._executions:
                raise Conflict(f"Execution already exists: {stored.id}")
            self._executions[stored.id] = stored
        return stored.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> Optional[AgentExecution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    def save_execution(self, execution: AgentExecution) -> AgentExecution:
        with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                raise NotFound(f"Execution not found: {execution.id}")
            if current.version != execution.version:
                raise Conflict(
                    f"Execution {execution.id} was modified concurrently "
                    f"(version {execution.version}, stored {current.version})"
                )
            stored = execution.model_copy(
                deep=True,
                update={"version": current.version + 1, "updated_at": datetime.now()},
            )
            self._executions[stored.id] = stored
        return stored.model_copy(deep=True)

    def list_executions(self, user_id: Optional[str] = None) -> list[AgentExecution]:
        executions = [
            execution.model_copy(deep=True)
            for execution in self._executions.values()
            if user_id is None or execution.user_id == user_id
        ]
        return sorted(executions, key=lambda e: e.created_at, reverse=True)

    def add_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        stored = checkpoint.model_copy(deep=True, update={"id": checkpoint.id or new_id()})
        with self._lock:
            if stored.id in self._checkpoints:
                raise Conflict(f"Checkpoint already exists: {stored.id}")
            self._checkpoints[stored.id] = stored
        return stored.model_copy(deep=True)

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        checkpoint = self._checkpoints.get(checkpoint_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        return _sort_checkpoints(
            cp.model_copy(deep=True)
            for cp in self._checkpoints.values()
            if cp.execution_id == execution_id
        )

    def append_usage(self, record: BudgetUsageRecord) -> BudgetUsageRecord:
        stored = record.model_copy(update={"id": record.id or new_id()})
        with self._lock:
            self._usage.append(stored)
        return stored

    def list_usage(
        self,
        user_id: str,
        execution_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[BudgetUsageRecord]:
        return _filter_usage(list(self._usage), user_id, execution_id, since, until)

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        stored = entry.model_copy(deep=True, update={"id": entry.id or new_id()})
        with self._lock:
            self._audit.append(stored)
        return stored

    def list_audit(self, execution_id: Optional[str] = None) -> list[AuditEntry]:
        return [
            entry.model_copy(deep=True)
            for entry in self._audit
            if execution_id is None or entry.execution_id == execution_id
        ]

    def get_user_settings(self, user_id: str) -> UserSettings:
        settings = self._settings.get(user_id)
        return settings.model_copy() if settings else UserSettings(user_id=user_id)

    def save_user_settings(self, settings: UserSettings) -> UserSettings:
        with self._lock:
            self._settings[settings.user_id] = settings.model_copy()
        return settings.model_copy()


# =============================================================================
# JSON FILE STORE
# =============================================================================

class JsonFileStore(ExecutionStore):
    """
    Store that keeps records as JSON files.

    Usage:
        store = JsonFileStore(Path.home() / ".agentrun" / "store")
        execution = store.create_execution(AgentExecution(...))

        # Later, from another process...
        execution = store.get_execution(execution.id)
    """

    def __init__(self, base_path: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            base_path: Base directory for storage.
                      Defaults to ~/.agentrun/store
        """
        self.base_path = Path(base_path or Path.home() / ".agentrun" / "store").expanduser()
        for name in ("agents", "executions", "checkpoints", "settings"):
            (self.base_path / name).mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # -- File helpers ---------------------------------------------------------

    @staticmethod
    def _safe_name(key: str) -> str:
        """Turn a record key into a file name that cannot escape its directory."""
        return re.sub(r"[^A-Za-z0-9_.-]", "_", key).lstrip(".") or "_"

    def _record_path(self, kind: str, key: str) -> Path:
        return self.base_path / kind / f"{self._safe_name(key)}.json"

    def _write_json(self, path: Path, model: BaseModel) -> None:
        """Write a record atomically (temp file + replace)."""
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(model.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _read_json(path: Path, schema: Type[T]) -> Optional[T]:
        if not path.exists():
            return None
        return schema.model_validate_json(path.read_text())

    def _read_all(self, kind: str, schema: Type[T]) -> list[T]:
        records = []
        for path in sorted((self.base_path / kind).glob("*.json")):
            records.append(schema.model_validate_json(path.read_text()))
        return records

    def _append_line(self, name: str, model: BaseModel) -> None:
        with open(self.base_path / name, "a") as f:
            f.write(model.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _read_lines(self, name: str, schema: Type[T]) -> list[T]:
        path = self.base_path / name
        if not path.exists():
            return []
        records = []
        with open(path) as f:
            for line in f:
                if line.strip():
                    records.append(schema.model_validate(json.loads(line)))
        return records

    # -- Agents ---------------------------------------------------------------

    def save_agent(self, agent: AgentDefinition) -> AgentDefinition:
        with self._lock:
            self._write_json(self._record_path("agents", agent.id), agent)
        return agent.model_copy(deep=True)

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._read_json(self._record_path("agents", agent_id), AgentDefinition)

    def list_agents(self, user_id: Optional[str] = None) -> list[AgentDefinition]:
        return [
            agent for agent in self._read_all("agents", AgentDefinition)
            if user_id is None or agent.user_id == user_id
        ]

    # -- Executions -----------------------------------------------------------

    def create_execution(self, execution: AgentExecution) -> AgentExecution:
        stored = execution.model_copy(
            deep=True,
            update={"id": execution.id or new_id(), "version": 1},
        )
        path = self._record_path("executions", stored.id)
        with self._lock:
            if path.exists():
                raise Conflict(f"Execution already exists: {stored.id}")
            self._write_json(path, stored)
        return stored

    def get_execution(self, execution_id: str) -> Optional[AgentExecution]:
        return self._read_json(self._record_path("executions", execution_id), AgentExecution)

    def save_execution(self, execution: AgentExecution) -> AgentExecution:
        path = self._record_path("executions", execution.id)
        with self._lock:
            current = self._read_json(path, AgentExecution)
            if current is None:
                raise NotFound(f"Execution not found: {execution.id}")
            if current.version != execution.version:
                raise Conflict(
                    f"Execution {execution.id} was modified concurrently "
                    f"(version {execution.version}, stored {current.version})"
                )
            stored = execution.model_copy(
                deep=True,
                update={"version": current.version + 1, "updated_at": datetime.now()},
            )
            self._write_json(path, stored)
        return stored.model_copy(deep=True)

    def list_executions(self, user_id: Optional[str] = None) -> list[AgentExecution]:
        executions = [
            execution for execution in self._read_all("executions", AgentExecution)
            if user_id is None or execution.user_id == user_id
        ]
        return sorted(executions, key=lambda e: e.created_at, reverse=True)

    # -- Checkpoints ----------------------------------------------------------

    def add_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        stored = checkpoint.model_copy(deep=True, update={"id": checkpoint.id or new_id()})
        path = self._record_path("checkpoints", stored.id)
        with self._lock:
            if path.exists():
                raise Conflict(f"Checkpoint already exists: {stored.id}")
            self._write_json(path, stored)
        return stored

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self._read_json(self._record_path("checkpoints", checkpoint_id), Checkpoint)

    def list_checkpoints(self, execution_id: str) -> list[Checkpoint]:
        return _sort_checkpoints(
            cp for cp in self._read_all("checkpoints", Checkpoint)
            if cp.execution_id == execution_id
        )

    # -- Ledger ---------------------------------------------------------------

    def append_usage(self, record: BudgetUsageRecord) -> BudgetUsageRecord:
        stored = record.model_copy(update={"id": record.id or new_id()})
        with self._lock:
            self._append_line("usage.jsonl", stored)
        return stored

    def list_usage(
        self,
        user_id: str,
        execution_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[BudgetUsageRecord]:
        records = self._read_lines("usage.jsonl", BudgetUsageRecord)
        return _filter_usage(records, user_id, execution_id, since, until)

    # -- Audit ----------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        stored = entry.model_copy(update={"id": entry.id or new_id()})
        with self._lock:
            self._append_line("audit.jsonl", stored)
        return stored

    def list_audit(self, execution_id: Optional[str] = None) -> list[AuditEntry]:
        return [
            entry for entry in self._read_lines("audit.jsonl", AuditEntry)
            if execution_id is None or entry.execution_id == execution_id
        ]

    # -- Settings -------------------------------------------------------------

    def get_user_settings(self, user_id: str) -> UserSettings:
        settings = self._read_json(self._record_path("settings", user_id), UserSettings)
        return settings or UserSettings(user_id=user_id)

    def save_user_settings(self, settings: UserSettings) -> UserSettings:
        with self._lock:
            self._write_json(self._record_path("settings", settings.user_id), settings)
        return settings.model_copy()
