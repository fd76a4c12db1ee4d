"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from fixflow.config.settings import PhaseConfig, WorkflowConfig
from fixflow.engine.events import EventBus
from fixflow.engine.orchestrator import WorkflowOrchestrator
from fixflow.engine.types import StepContext
from fixflow.enums import ItemPriority, ItemStatus, WorkflowPhase
from fixflow.models.analysis import (
    Analysis,
    ChangeType,
    ClassificationDecision,
    CodeChanges,
    Complexity,
    FileChange,
    IssueType,
    PublishedChange,
    Severity,
    WorkType,
)
from fixflow.models.domain import ItemMetadata, WorkItem
from fixflow.providers.base import Notifier
from fixflow.providers.local import InMemoryItemTracker


class FakeStrategy:
    """Phase strategy returning a canned payload.

    ``errors`` are raised by the first attempts, in order; after that the
    strategy returns ``result``. ``delay`` makes every attempt sleep first.
    """

    def __init__(
        self,
        name: str,
        result: Any = None,
        errors: list[Exception] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.result = result
        self.errors = list(errors or [])
        self.delay = delay
        self.calls: list[Any] = []
        self.contexts: list[StepContext] = []

    async def execute(self, payload: Any, context: StepContext) -> Any:
        self.calls.append(payload)
        self.contexts.append(context)
        context.report_progress(f"{self.name} working", 50)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


async def no_sleep(delay: float) -> None:
    """Sleep replacement so retries do not wait."""


@pytest.fixture
def sample_item() -> WorkItem:
    """Sample QA report ready for intake."""
    return WorkItem(
        id="qa-101",
        title="Login button unresponsive on Safari",
        description="Clicking the login button on Safari 17 does nothing.",
        status=ItemStatus.NOT_STARTED,
        url="https://tracker.example.com/qa-101",
        priority=ItemPriority.HIGH,
        metadata=ItemMetadata(
            reporter="qa-team",
            created_at=datetime(2024, 5, 1, 9, 0, tzinfo=UTC),
            updated_at=datetime(2024, 5, 1, 9, 0, tzinfo=UTC),
        ),
    )


@pytest.fixture
def sample_analysis() -> Analysis:
    """Complete analysis of the sample report."""
    return Analysis(
        summary="Login button does not submit the form on Safari",
        issue_type=IssueType.BUG,
        severity=Severity.HIGH,
        steps_to_reproduce=["Open the login page in Safari", "Click Login"],
        expected_behavior="User is logged in",
        actual_behavior="Nothing happens",
        affected_components=["auth/login_form.js"],
        confidence=0.85,
    )


@pytest.fixture
def actionable_decision() -> ClassificationDecision:
    """Decision to act on the sample report."""
    return ClassificationDecision(
        should_act=True,
        confidence=0.8,
        reason="Clear, reproducible bug in one component",
        work_type=WorkType.BUG_FIX,
        estimated_complexity=Complexity.SIMPLE,
    )


@pytest.fixture
def not_actionable_decision() -> ClassificationDecision:
    """Decision to hand the report back to a human."""
    return ClassificationDecision(
        should_act=False,
        confidence=0.85,
        reason="Needs product decision",
        blockers=["Design sign-off"],
    )


@pytest.fixture
def sample_changes() -> CodeChanges:
    """Change set fixing the sample report."""
    return CodeChanges(
        files=[
            FileChange(
                path="auth/login_form.js",
                content="export function submit() { form.submit(); }\n",
                change_type=ChangeType.MODIFIED,
                description="Submit the form on click",
            )
        ],
        summary="Submit the login form when the button is clicked",
        branch="fixflow/qa-101-login-button-unresponsive",
    )


@pytest.fixture
def sample_published() -> PublishedChange:
    """Published change set."""
    return PublishedChange(
        reference="change-7",
        url="https://git.example.com/pulls/7",
        branch="fixflow/qa-101-login-button-unresponsive",
        title="Fix: Login button unresponsive on Safari",
        files_changed=1,
    )


@pytest.fixture
def tracker(sample_item: WorkItem) -> InMemoryItemTracker:
    """In-memory tracker holding the sample item."""
    return InMemoryItemTracker([sample_item])


@pytest.fixture
def mock_notifier() -> AsyncMock:
    """Notifier recording every call."""
    return AsyncMock(spec=Notifier)


@pytest.fixture
def fast_workflow() -> WorkflowConfig:
    """Workflow configuration with short timeouts and no retry delay."""
    phase = PhaseConfig(timeout=5.0, max_attempts=3, initial_delay=0.0, max_delay=0.0)
    return WorkflowConfig(
        poll_interval=60.0,
        session_timeout=60.0,
        max_concurrent_sessions=3,
        phases={
            WorkflowPhase.ANALYSIS: phase,
            WorkflowPhase.CLASSIFICATION: phase,
            WorkflowPhase.IMPLEMENTATION: phase,
            WorkflowPhase.REPORTING: phase,
        },
    )


@pytest.fixture
def strategies(
    sample_analysis: Analysis,
    actionable_decision: ClassificationDecision,
    sample_changes: CodeChanges,
    sample_published: PublishedChange,
) -> dict[WorkflowPhase, FakeStrategy]:
    """Fake strategies for the happy path."""
    return {
        WorkflowPhase.ANALYSIS: FakeStrategy("fake-analyzer", sample_analysis),
        WorkflowPhase.CLASSIFICATION: FakeStrategy("fake-classifier", actionable_decision),
        WorkflowPhase.IMPLEMENTATION: FakeStrategy("fake-implementer", sample_changes),
        WorkflowPhase.REPORTING: FakeStrategy("fake-publisher", sample_published),
    }


@pytest.fixture
def make_strategy() -> type[FakeStrategy]:
    """The fake strategy class, for tests that build their own."""
    return FakeStrategy


@pytest.fixture
def make_orchestrator(
    tracker: InMemoryItemTracker,
    mock_notifier: AsyncMock,
    strategies: dict[WorkflowPhase, FakeStrategy],
    fast_workflow: WorkflowConfig,
) -> Callable[..., WorkflowOrchestrator]:
    """Factory building an orchestrator from the shared fixtures.

    Keyword arguments override the defaults.
    """

    def factory(**overrides: Any) -> WorkflowOrchestrator:
        kwargs: dict[str, Any] = {
            "tracker": tracker,
            "notifier": mock_notifier,
            "strategies": strategies,
            "workflow": fast_workflow,
            "events": EventBus(),
            "sleep": no_sleep,
        }
        kwargs.update(overrides)
        return WorkflowOrchestrator(**kwargs)

    return factory
