"""Domain and payload models for fixflow."""

from fixflow.models.analysis import (
    Analysis,
    ChangeType,
    ClassificationDecision,
    CodeChanges,
    Complexity,
    FileChange,
    ImplementationRequest,
    IssueType,
    PublishedChange,
    Severity,
    TestRunSummary,
    VisualEvidence,
    WorkType,
)
from fixflow.models.domain import ItemMetadata, WorkItem

__all__ = [
    "Analysis",
    "ChangeType",
    "ClassificationDecision",
    "CodeChanges",
    "Complexity",
    "FileChange",
    "ImplementationRequest",
    "IssueType",
    "ItemMetadata",
    "PublishedChange",
    "Severity",
    "TestRunSummary",
    "VisualEvidence",
    "WorkItem",
    "WorkType",
]
