"""Workflow orchestration engine: sessions, step execution and the pipeline driver."""

from fixflow.engine.events import EventBus
from fixflow.engine.orchestrator import WorkflowOrchestrator
from fixflow.engine.session_store import SessionStore
from fixflow.engine.step_runner import PhaseStrategy, StepConfig, StepRunner
from fixflow.engine.types import (
    ProgressUpdate,
    Session,
    SessionContext,
    SessionError,
    StepContext,
    StepError,
    StepMetadata,
    StepResult,
)

__all__ = [
    "EventBus",
    "PhaseStrategy",
    "ProgressUpdate",
    "Session",
    "SessionContext",
    "SessionError",
    "SessionStore",
    "StepConfig",
    "StepContext",
    "StepError",
    "StepMetadata",
    "StepResult",
    "StepRunner",
    "WorkflowOrchestrator",
]
