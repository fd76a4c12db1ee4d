"""Configuration models and YAML loading for fixflow."""

from fixflow.config.settings import (
    AgentConfig,
    FixflowSettings,
    NotifierConfig,
    PhaseConfig,
    ProjectConfig,
    TrackerConfig,
    WorkflowConfig,
)

__all__ = [
    "AgentConfig",
    "FixflowSettings",
    "NotifierConfig",
    "PhaseConfig",
    "ProjectConfig",
    "TrackerConfig",
    "WorkflowConfig",
]
