"""Phase payload models.

This module defines the Pydantic models produced and consumed by the
pipeline phases. Payloads that come from a model reply are validated
through these models, so a malformed reply fails inside the phase that
produced it instead of leaking into later phases.

Example:
    Validating a classification reply::

        decision = ClassificationDecision.model_validate(
            {"should_act": False, "confidence": 0.85, "reason": "Needs product decision"}
        )
        if not decision.should_act:
            ...
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IssueType(str, Enum):
    """Kind of report, as determined during analysis."""

    BUG = "bug"
    FEATURE = "feature"
    IMPROVEMENT = "improvement"
    QUESTION = "question"
    DOCUMENTATION = "documentation"


class Severity(str, Enum):
    """Impact level of the reported problem.

    - critical: system down, data loss, security issue
    - high: major functionality broken
    - medium: feature partially working
    - low: minor or cosmetic
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WorkType(str, Enum):
    """Kind of change needed for an actionable report."""

    BUG_FIX = "bug_fix"
    FEATURE_ADD = "feature_add"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    TEST_ADDITION = "test_addition"


class Complexity(str, Enum):
    """Estimated size of the change."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ChangeType(str, Enum):
    """How a file is touched by a change set."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class VisualEvidence(BaseModel):
    """Findings extracted from one attached screenshot."""

    description: str
    extracted_text: str | None = None
    relevant_details: list[str] = Field(default_factory=list)


class Analysis(BaseModel):
    """Structured analysis of a QA report."""

    summary: str
    issue_type: IssueType
    severity: Severity
    steps_to_reproduce: list[str] = Field(default_factory=list)
    expected_behavior: str = ""
    actual_behavior: str = ""
    visual_evidence: list[VisualEvidence] = Field(default_factory=list)
    affected_components: list[str] = Field(default_factory=list)
    suspected_root_cause: str | None = None
    related_issues: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    analyzed_at: datetime = Field(default_factory=_utcnow)


class ClassificationDecision(BaseModel):
    """Decision whether the engine should act on a report.

    ``should_act=False`` is a normal outcome, not an error: the pipeline
    stops and the report is handed back to a human with ``reason``.
    """

    should_act: bool
    reason: str
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    work_type: WorkType | None = None
    estimated_complexity: Complexity | None = None
    required_skills: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    classified_at: datetime = Field(default_factory=_utcnow)


class FileChange(BaseModel):
    """A single file in a change set."""

    path: str
    content: str = ""
    change_type: ChangeType = ChangeType.MODIFIED
    description: str = ""


class TestRunSummary(BaseModel):
    """Outcome of running tests against a change set.

    Test execution is not performed by fixflow itself; strategies that run
    tests elsewhere may attach their results here.
    """

    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float | None = None
    coverage: float | None = None


class CodeChanges(BaseModel):
    """Change set produced by the implementation phase."""

    files: list[FileChange] = Field(default_factory=list)
    summary: str = ""
    tests: TestRunSummary | None = None
    branch: str | None = None
    generated_at: datetime = Field(default_factory=_utcnow)


class ImplementationRequest(BaseModel):
    """Input of the implementation phase."""

    analysis: Analysis
    decision: ClassificationDecision


class PublishedChange(BaseModel):
    """Reference to a change set published by the reporting phase."""

    reference: str
    url: str
    branch: str
    title: str
    files_changed: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
