"""Project configuration loaded from ``.canvasflow/config.yaml``."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from canvasflow.core.agents import DEFAULT_AGENT_TIMEOUT
from canvasflow.core.models import ExecutionOptions

CONFIG_DIR = ".canvasflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# canvasflow configuration for this project

# Agent backend (AI-role chat API)
agent:
  base_url: http://localhost:3001/api
  timeout: 180
  headers: {}

# Run defaults (command-line options override these)
execution:
  continue_on_error: false
  logging: true
  max_concurrent_nodes: 3
  node_timeout: null
  agent_timeout: null
  retry_on_failure: false
  max_retries: 0
"""


class ConfigError(Exception):
    """Configuration file cannot be read or is invalid."""

    pass


class AgentSettings(BaseModel):
    base_url: str = "http://localhost:3001/api"
    timeout: float = Field(default=DEFAULT_AGENT_TIMEOUT, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)


class ExecutionSettings(BaseModel):
    continue_on_error: bool = False
    logging: bool = True
    max_concurrent_nodes: int = Field(default=3, ge=1)
    node_timeout: float | None = Field(default=None, gt=0)
    agent_timeout: float | None = Field(default=None, gt=0)
    retry_on_failure: bool = False
    max_retries: int = Field(default=0, ge=0)


class EngineConfig(BaseModel):
    agent: AgentSettings = Field(default_factory=AgentSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)

    def execution_options(self, **overrides: Any) -> ExecutionOptions:
        """Build run options from the configured defaults.

        Overrides set to None are ignored, so unset command-line options keep
        the configured value.
        """
        values = self.execution.model_dump()
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ExecutionOptions(**values)


def config_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / CONFIG_DIR / CONFIG_FILE


def load_config(repo_path: str | Path | None = None) -> EngineConfig:
    """Load configuration, falling back to defaults when no file exists.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation
    """
    path = config_path(repo_path if repo_path is not None else Path.cwd())
    if not path.exists():
        return EngineConfig()

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping in {path}, got {type(raw).__name__}")

    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def write_default_config(repo_path: str | Path) -> Path:
    """Write the default configuration file. Returns its path."""
    path = config_path(repo_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return path
