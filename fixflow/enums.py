"""Enumerations shared across the fixflow engine and providers."""

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle status of a workflow session.

    CREATED and RUNNING are the only non-terminal statuses. Once a session
    reaches COMPLETED, FAILED or TIMEOUT it never transitions again.
    """

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check whether this status ends the session lifecycle."""
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.TIMEOUT)


class WorkflowPhase(str, Enum):
    """Fixed, ordered phases of the remediation pipeline."""

    DETECTION = "detection"
    ANALYSIS = "analysis"
    CLASSIFICATION = "classification"
    IMPLEMENTATION = "implementation"
    REPORTING = "reporting"
    COMPLETION = "completion"

    def __str__(self) -> str:
        return self.value


class ItemStatus(str, Enum):
    """Status values of a work item in the tracker.

    The values match the select options used in the QA database, so they
    are sent to the tracker verbatim.
    """

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    DONE = "Done"
    NOT_ACTIONABLE = "Not Actionable"
    IN_REVIEW = "In Review"
    CANCELLED = "Cancelled"

    def __str__(self) -> str:
        return self.value


class ItemPriority(str, Enum):
    """Priority levels reported on a work item."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value
