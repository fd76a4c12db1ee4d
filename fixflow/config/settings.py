"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every part of fixflow: the
item tracker, the notification channel, the model endpoint, per-phase
timeouts and retry policies, and the intake loop.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fixflow.enums import WorkflowPhase
from fixflow.exceptions import ConfigurationError
from fixflow.utils.retry import RetryPolicy


class TrackerConfig(BaseModel):
    """Item tracker configuration (in-memory or Notion).

    Supports environment references for the token:
    - api_token: "${NOTION_TOKEN}"
    """

    provider_type: Literal["memory", "notion"] = Field(default="memory", description="Type of item tracker")
    base_url: str = Field(default="https://api.notion.com/v1", description="Tracker API base URL")
    api_token: SecretStr | None = Field(default=None, description="API token for the tracker")
    database_id: str | None = Field(default=None, description="QA database identifier")
    notion_version: str = Field(default="2022-06-28", description="Notion-Version header value")
    status_property: str = Field(default="Status", description="Name of the status select property")
    title_property: str = Field(default="Title", description="Name of the title property")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    @model_validator(mode="after")
    def validate_notion_config(self) -> TrackerConfig:
        """Ensure the Notion tracker has its credentials."""
        if self.provider_type == "notion":
            if not self.database_id:
                raise ValueError("database_id is required when provider_type='notion'")
            if self.api_token is None:
                raise ValueError("api_token is required when provider_type='notion'")
        return self


class NotifierConfig(BaseModel):
    """Notification channel configuration.

    Slack notifications are silently disabled when no bot token is set.
    """

    provider_type: Literal["log", "slack"] = Field(default="log", description="Type of notifier")
    bot_token: SecretStr | None = Field(default=None, description="Slack bot token")
    channel: str = Field(default="#qa-automation", description="Channel receiving notifications")
    base_url: str = Field(default="https://slack.com/api", description="Slack Web API base URL")
    request_timeout: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds")


class AgentConfig(BaseModel):
    """Model endpoint configuration for the analysis and implementation strategies.

    Any OpenAI-compatible chat completions endpoint works (vLLM, LM Studio,
    OpenRouter, Ollama's /v1, ...).
    """

    base_url: str = Field(default="http://localhost:8000/v1", description="Chat completions API base URL")
    model: str = Field(default="default", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="Bearer token for the endpoint")
    request_timeout: float = Field(default=300.0, gt=0, description="HTTP timeout in seconds")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int = Field(default=4096, ge=1, description="Maximum tokens per reply")


class PhaseConfig(BaseModel):
    """Timeout and retry policy for one pipeline phase."""

    timeout: float = Field(default=300.0, gt=0, description="Per-attempt timeout in seconds")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts including the first")
    initial_delay: float = Field(default=1.0, ge=0, description="Delay before the second attempt")
    max_delay: float = Field(default=30.0, ge=0, description="Upper bound for a single delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Delay growth factor")
    retryable_errors: list[str] | None = Field(
        default=None, description="Explicit error codes to retry (default: network-class errors)"
    )

    def to_retry_policy(self) -> RetryPolicy:
        """Build the Backoff Executor policy for this phase."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            retryable_errors=frozenset(self.retryable_errors) if self.retryable_errors else None,
        )


def default_phase_configs() -> dict[WorkflowPhase, PhaseConfig]:
    """Default timeouts: 5 min analysis, 1 min classification, 30 min implementation."""
    return {
        WorkflowPhase.ANALYSIS: PhaseConfig(timeout=300.0),
        WorkflowPhase.CLASSIFICATION: PhaseConfig(timeout=60.0),
        WorkflowPhase.IMPLEMENTATION: PhaseConfig(timeout=1800.0),
        WorkflowPhase.REPORTING: PhaseConfig(timeout=300.0),
    }


class WorkflowConfig(BaseModel):
    """Intake loop and session behavior configuration."""

    poll_interval: float = Field(default=120.0, gt=0, description="Seconds between tracker polls")
    session_timeout: float = Field(default=3600.0, gt=0, description="Wall-clock limit per session")
    session_retention: float = Field(
        default=86400.0, gt=0, description="Age after which finished sessions are swept"
    )
    max_concurrent_sessions: int = Field(default=3, ge=1, le=50, description="Concurrent pipelines")
    recheck_status: bool = Field(
        default=True, description="Re-read the item from the tracker before accepting it"
    )
    classifier: Literal["heuristic", "llm"] = Field(default="llm", description="Classification strategy")
    publish_directory: str = Field(default=".fixflow/changes", description="Where change bundles are written")
    phases: dict[WorkflowPhase, PhaseConfig] = Field(default_factory=default_phase_configs)

    @model_validator(mode="after")
    def fill_missing_phases(self) -> WorkflowConfig:
        """Use defaults for phases not present in the configuration."""
        for phase, config in default_phase_configs().items():
            self.phases.setdefault(phase, config)
        return self

    def phase(self, phase: WorkflowPhase) -> PhaseConfig:
        """Get the configuration of a runnable phase."""
        try:
            return self.phases[phase]
        except KeyError as e:
            raise ConfigurationError(f"No configuration for phase: {phase.value}") from e


class ProjectConfig(BaseModel):
    """Project the QA database belongs to."""

    id: str = Field(..., description="Project identifier")
    name: str = Field(..., description="Human-readable project name")
    enabled: bool = Field(default=True, description="Whether automation is enabled")
    owner: str | None = Field(default=None, description="Repository owner/organization")
    repo: str | None = Field(default=None, description="Repository name")
    base_branch: str = Field(default="main", description="Branch changes are based on")
    require_approval: bool = Field(default=True, description="Changes need human approval")


class FixflowSettings(BaseSettings):
    """Main fixflow settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIXFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    project: ProjectConfig | None = None

    @property
    def publish_dir(self) -> Path:
        """Get the change bundle directory as Path object."""
        return Path(self.workflow.publish_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> FixflowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            FixflowSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        Args:
            content: String content with placeholders

        Returns:
            Content with environment variables substituted

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are preserved unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
