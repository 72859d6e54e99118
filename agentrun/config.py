"""
Configuration Management for AgentRun.

WHAT THIS FILE DOES:
-------------------
Loads configuration from YAML with sensible defaults: which models exist,
where the store lives, the account budget caps for the local user, the agents
and their policies, logging and terminal alerts.

CONFIG FILE LOCATION:
--------------------
1. --config PATH
2. ~/.agentrun/config.yaml
3. ./agentrun.yaml (or ./agentrun.yml)
4. Built-in defaults

CONFIG FORMAT:
-------------
```yaml
models:
  claude:
    provider: "anthropic"
    model: "claude-sonnet-4-20250514"
    api_key_env: "ANTHROPIC_API_KEY"
    retries: 2
  local:
    provider: "ollama"
    model: "deepseek-coder-v2:16b"

engine:
  user_id: "me"
  default_model: "claude"
  store_path: "~/.agentrun/store"
  workspace_root: "."

budgets:
  daily_limit_usd: "5.00"
  monthly_limit_usd: "50.00"

agents:
  coder:
    name: "Coder"
    model: "claude"
    policy:
      max_steps: 8
      budget_limit_usd: "0.50"
      rules:
        - type: deny
          pattern: "force push"
          description: "Never rewrite shared history"

logging:
  level: "INFO"
  file: "~/.agentrun/agentrun.log"

alerts:
  terminal: true
  bell: true
```
"""

import getpass
import logging
import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

from .schemas import AgentDefinition, UserSettings
from .store import ExecutionStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_CONFIG_PATHS = [
    Path.home() / ".agentrun" / "config.yaml",
    Path("./agentrun.yaml"),
    Path("./agentrun.yml"),
]


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ModelConfig:
    """Configuration for a single model."""
    provider: str
    model: str
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.7
    retries: int = 0

    def get_api_key(self) -> Optional[str]:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def to_dict(self) -> dict:
        result = {
            "provider": self.provider,
            "model": self.model,
        }
        if self.api_key_env:
            result["api_key_env"] = self.api_key_env
        if self.base_url:
            result["base_url"] = self.base_url
        if self.max_tokens != 4096:
            result["max_tokens"] = self.max_tokens
        if self.temperature != 0.7:
            result["temperature"] = self.temperature
        if self.retries:
            result["retries"] = self.retries
        return result


@dataclass
class EngineConfig:
    """Where things live and who the local user is."""
    user_id: str = field(default_factory=getpass.getuser)
    default_model: str = "claude"
    store_path: str = "~/.agentrun/store"
    workspace_root: str = "."

    @property
    def store_dir(self) -> Path:
        return Path(self.store_path).expanduser()

    @property
    def workspace_dir(self) -> Path:
        return Path(self.workspace_root).expanduser()


@dataclass
class BudgetConfig:
    """Account-wide caps for the local user."""
    daily_limit_usd: Optional[Decimal] = None
    monthly_limit_usd: Optional[Decimal] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AlertConfig:
    """Configuration for terminal alerts."""
    terminal: bool = True
    bell: bool = True


@dataclass
class AgentRunConfig:
    """
    Complete configuration for AgentRun.

    It can be loaded from a YAML file or created with defaults.
    """
    models: dict[str, ModelConfig] = field(default_factory=dict)
    engine: EngineConfig = field(default_factory=EngineConfig)
    budgets: BudgetConfig = field(default_factory=BudgetConfig)
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    def get_model(self, name: str) -> Optional[ModelConfig]:
        return self.models.get(name)

    def list_models(self) -> list[str]:
        return list(self.models.keys())

    def user_settings(self) -> UserSettings:
        """Account caps for the configured user."""
        return UserSettings(
            user_id=self.engine.user_id,
            daily_budget_limit_usd=self.budgets.daily_limit_usd,
            monthly_budget_limit_usd=self.budgets.monthly_limit_usd,
        )


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> AgentRunConfig:
    """
    Get the default configuration.

    Works out of the box with the "echo" model; the others need their API
    keys (or a running Ollama) in the environment.
    """
    engine = EngineConfig()
    return AgentRunConfig(
        models={
            "claude": ModelConfig(
                provider="anthropic",
                model="claude-sonnet-4-20250514",
                api_key_env="ANTHROPIC_API_KEY",
            ),
            "gpt4": ModelConfig(
                provider="openai",
                model="gpt-4o",
                api_key_env="OPENAI_API_KEY",
            ),
            "local": ModelConfig(
                provider="ollama",
                model="deepseek-coder-v2:16b",
                base_url="http://localhost:11434/v1",
            ),
            "echo": ModelConfig(provider="echo", model="echo"),
        },
        engine=engine,
        agents={
            "default": AgentDefinition(
                id="default",
                user_id=engine.user_id,
                name="Default agent",
                model=engine.default_model,
            ),
        },
    )


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _parse_model_config(data: dict) -> ModelConfig:
    """Parse a model configuration from dict."""
    return ModelConfig(
        provider=data.get("provider", "anthropic"),
        model=data.get("model", "claude-sonnet-4-20250514"),
        api_key_env=data.get("api_key_env"),
        base_url=data.get("base_url"),
        max_tokens=int(data.get("max_tokens", 4096)),
        temperature=float(data.get("temperature", 0.7)),
        retries=int(data.get("retries", 0)),
    )


def _parse_config(data: dict) -> AgentRunConfig:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "models" in data:
        config.models = {}
        for name, model_data in (data["models"] or {}).items():
            config.models[name] = _parse_model_config(model_data or {})

    if "engine" in data:
        engine_data = data["engine"] or {}
        config.engine = EngineConfig(
            user_id=str(engine_data.get("user_id") or config.engine.user_id),
            default_model=engine_data.get("default_model", config.engine.default_model),
            store_path=engine_data.get("store_path", config.engine.store_path),
            workspace_root=engine_data.get("workspace_root", config.engine.workspace_root),
        )

    if "budgets" in data:
        budgets_data = data["budgets"] or {}
        config.budgets = BudgetConfig(
            daily_limit_usd=_decimal_or_none(budgets_data.get("daily_limit_usd")),
            monthly_limit_usd=_decimal_or_none(budgets_data.get("monthly_limit_usd")),
        )

    if "agents" in data:
        config.agents = {}
        for agent_id, agent_data in (data["agents"] or {}).items():
            agent_data = dict(agent_data or {})
            agent_data.setdefault("name", agent_id)
            agent_data.setdefault("model", config.engine.default_model)
            config.agents[agent_id] = AgentDefinition.model_validate({
                **agent_data,
                "id": agent_id,
                "user_id": config.engine.user_id,
            })
    else:
        # Keep the default agent on the configured user and model
        for agent in config.agents.values():
            agent.user_id = config.engine.user_id
            agent.model = config.engine.default_model

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "INFO")).upper(),
            file=logging_data.get("file"),
        )

    if "alerts" in data:
        alerts_data = data["alerts"] or {}
        config.alerts = AlertConfig(
            terminal=alerts_data.get("terminal", True),
            bell=alerts_data.get("bell", True),
        )

    return config


def load_config(path: Optional[Path] = None) -> AgentRunConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries the default locations and
              falls back to defaults.

    Raises:
        FileNotFoundError: An explicit path does not exist
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    config_path = get_config_path()
    if config_path:
        return load_config_from_file(config_path)

    return get_default_config()


def load_config_from_file(path: Path) -> AgentRunConfig:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        pydantic.ValidationError: If an agent definition is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: AgentRunConfig, path: Path) -> None:
    """Save configuration to a YAML file in the format load_config reads."""
    data = {
        "models": {
            name: model.to_dict()
            for name, model in config.models.items()
        },
        "engine": {
            "user_id": config.engine.user_id,
            "default_model": config.engine.default_model,
            "store_path": config.engine.store_path,
            "workspace_root": config.engine.workspace_root,
        },
        "budgets": {
            "daily_limit_usd": (
                str(config.budgets.daily_limit_usd)
                if config.budgets.daily_limit_usd is not None else None
            ),
            "monthly_limit_usd": (
                str(config.budgets.monthly_limit_usd)
                if config.budgets.monthly_limit_usd is not None else None
            ),
        },
        "agents": {
            agent_id: agent.model_dump(mode="json", exclude={"id", "user_id"})
            for agent_id, agent in config.agents.items()
        },
        "logging": {
            "level": config.logging.level,
        },
        "alerts": {
            "terminal": config.alerts.terminal,
            "bell": config.alerts.bell,
        },
    }
    if config.logging.file:
        data["logging"]["file"] = config.logging.file

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """Path to the active config file, or None if using defaults."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


# =============================================================================
# RUNTIME SETUP
# =============================================================================

def configure_logging(config: Optional[LoggingConfig] = None, level: Optional[str] = None) -> None:
    """
    Send log records to stderr (never stdout: the MCP server owns stdout),
    plus a log file when one is configured.
    """
    config = config or LoggingConfig()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, (level or config.level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def seed_store(config: AgentRunConfig, store: ExecutionStore) -> None:
    """Write the configured agents and account caps into the store."""
    for agent in config.agents.values():
        store.save_agent(agent)
    store.save_user_settings(config.user_settings())
