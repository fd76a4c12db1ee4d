"""Type definitions for sessions and step execution.

This module provides the dataclasses shared by the Session Store, the
Step Runner and the Workflow Orchestrator:

- ``Session`` / ``SessionContext`` / ``SessionError``: the record of one
  pipeline run and the working set threaded through its phases.
- ``StepResult`` / ``StepError`` / ``StepMetadata``: the uniform envelope
  every phase returns to the orchestrator.
- ``ProgressUpdate`` / ``StepContext``: advisory progress reporting from
  inside a phase strategy.

Example:
    A failed step as seen by the orchestrator::

        result = StepResult.fail(
            StepError(message="Step analysis timeout after 300s", code="STEP_TIMEOUT", retryable=True),
            StepMetadata(step_id="analysis", execution_time=912.4, retry_count=2),
        )
        assert not result.success
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from fixflow.enums import SessionStatus, WorkflowPhase
from fixflow.models.analysis import Analysis, ClassificationDecision, CodeChanges, PublishedChange
from fixflow.models.domain import WorkItem

if TYPE_CHECKING:
    from fixflow.config.settings import ProjectConfig

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class SessionError:
    """Terminal error descriptor recorded on a session."""

    message: str
    code: str
    retryable: bool = False
    phase: WorkflowPhase | None = None


@dataclass
class SessionContext:
    """Working set accumulated while a session moves through its phases.

    Later phases add fields; they never erase earlier ones. Values that do
    not map to a named field are kept in ``extras``.

    Attributes:
        session_id: Owning session
        item: Snapshot of the work item taken at intake
        project_id: Optional project identifier
        project_config: Optional project configuration
        analysis: Result of the analysis phase
        decision: Result of the classification phase
        code_changes: Result of the implementation phase
        published: Result of the reporting phase
        extras: Additional values merged by strategies or callers
        created_at: When the context was created
        updated_at: When the context was last merged into
    """

    session_id: str
    item: WorkItem
    project_id: str | None = None
    project_config: "ProjectConfig | None" = None
    analysis: Analysis | None = None
    decision: ClassificationDecision | None = None
    code_changes: CodeChanges | None = None
    published: PublishedChange | None = None
    extras: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    """Record of one pipeline execution for a work item.

    Sessions are owned by ``SessionStore``; treat instances handed out by
    the store as read-only.
    """

    id: str
    item_id: str
    context: SessionContext
    project_id: str | None = None
    status: SessionStatus = SessionStatus.CREATED
    current_phase: WorkflowPhase | None = None
    completed_phases: list[WorkflowPhase] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    error: SessionError | None = None

    @property
    def is_active(self) -> bool:
        """Check whether the session is still CREATED or RUNNING."""
        return not self.status.is_terminal

    @property
    def duration(self) -> float | None:
        """Seconds between start and completion, if completed."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class StepError:
    """Normalized failure of a step."""

    message: str
    code: str
    retryable: bool


@dataclass(frozen=True)
class StepMetadata:
    """Bookkeeping for one Step Runner invocation."""

    step_id: str
    execution_time: float
    retry_count: int = 0


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """Uniform outcome of a step: either a payload or an error."""

    success: bool
    metadata: StepMetadata
    data: T | None = None
    error: StepError | None = None

    @classmethod
    def ok(cls, data: T, metadata: StepMetadata) -> "StepResult[T]":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: StepError, metadata: StepMetadata) -> "StepResult[T]":
        return cls(success=False, error=error, metadata=metadata)


@dataclass(frozen=True)
class ProgressUpdate:
    """Advisory progress report emitted while a step runs."""

    session_id: str
    phase: WorkflowPhase
    message: str
    progress: int | None = None
    timestamp: datetime = field(default_factory=_utcnow)


ProgressReporter = Callable[[ProgressUpdate], None]


@dataclass
class StepContext:
    """Execution context handed to a phase strategy for one attempt.

    A context is deactivated when its attempt loses the timeout race;
    progress reported through a deactivated context is dropped.
    """

    session_id: str
    phase: WorkflowPhase
    step_id: str
    session_context: SessionContext
    reporter: ProgressReporter | None = None
    active: bool = True

    @property
    def item(self) -> WorkItem:
        """Work item the session is processing."""
        return self.session_context.item

    def report_progress(self, message: str, progress: int | None = None) -> None:
        """Report progress of the running attempt.

        Args:
            message: Human-readable description of what is happening
            progress: Optional completion percentage, clamped to 0-100
        """
        if not self.active or self.reporter is None:
            return
        if progress is not None:
            progress = max(0, min(100, progress))
        self.reporter(
            ProgressUpdate(
                session_id=self.session_id,
                phase=self.phase,
                message=message,
                progress=progress,
            )
        )
