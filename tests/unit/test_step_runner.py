"""Tests for engine/step_runner.py."""

import asyncio

import pytest

from fixflow.config.settings import PhaseConfig
from fixflow.engine.events import EventBus
from fixflow.engine.step_runner import DEFAULT_ERROR_CODE, StepConfig, StepRunner
from fixflow.engine.types import ProgressUpdate, SessionContext, StepError, StepMetadata
from fixflow.enums import WorkflowPhase
from fixflow.exceptions import ContractError, ExternalServiceError
from fixflow.utils.retry import RetryPolicy


async def no_sleep(delay: float) -> None:
    pass


@pytest.fixture
def session_context(sample_item) -> SessionContext:
    return SessionContext(session_id="session-1", item=sample_item)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


def make_config(timeout: float = 5.0, max_attempts: int = 3, **retry_kwargs) -> StepConfig:
    return StepConfig(
        step_id="analysis",
        phase=WorkflowPhase.ANALYSIS,
        timeout=timeout,
        retry=RetryPolicy(max_attempts=max_attempts, initial_delay=0.0, **retry_kwargs),
    )


class TestStepConfig:
    """Tests for StepConfig."""

    def test_for_phase_uses_phase_settings(self):
        config = StepConfig.for_phase(
            WorkflowPhase.IMPLEMENTATION,
            PhaseConfig(timeout=1800, max_attempts=2, initial_delay=5.0, retryable_errors=["STEP_TIMEOUT"]),
        )

        assert config.step_id == "implementation"
        assert config.phase == WorkflowPhase.IMPLEMENTATION
        assert config.timeout == 1800
        assert config.retry.max_attempts == 2
        assert config.retry.initial_delay == 5.0
        assert config.retry.retryable_errors == frozenset({"STEP_TIMEOUT"})


class TestStepRunnerSuccess:
    """Tests for successful steps."""

    @pytest.mark.asyncio
    async def test_success_wraps_payload(self, make_strategy, session_context, bus):
        strategy = make_strategy("fake", result={"ok": True})
        runner = StepRunner(strategy, make_config(), events=bus, sleep=no_sleep)

        result = await runner.run("input", session_id="session-1", session_context=session_context)

        assert result.success is True
        assert result.data == {"ok": True}
        assert result.error is None
        assert result.metadata.step_id == "analysis"
        assert result.metadata.retry_count == 0
        assert result.metadata.execution_time >= 0
        assert strategy.calls == ["input"]

    @pytest.mark.asyncio
    async def test_context_exposes_session(self, make_strategy, session_context, sample_item):
        strategy = make_strategy("fake", result=1)
        runner = StepRunner(strategy, make_config(), sleep=no_sleep)

        await runner.run(None, session_id="session-1", session_context=session_context)

        context = strategy.contexts[0]
        assert context.session_id == "session-1"
        assert context.phase == WorkflowPhase.ANALYSIS
        assert context.item == sample_item

    @pytest.mark.asyncio
    async def test_progress_and_completion_events(self, make_strategy, session_context, bus):
        progress: list[ProgressUpdate] = []
        completed: list[StepMetadata] = []
        bus.subscribe("step.progress", lambda _, update: progress.append(update))
        bus.subscribe("step.completed", lambda _, metadata: completed.append(metadata))

        runner = StepRunner(make_strategy("fake", result=1), make_config(), events=bus, sleep=no_sleep)
        await runner.run(None, session_id="session-1", session_context=session_context)

        assert [u.progress for u in progress] == [0, 50, 100]
        assert all(u.session_id == "session-1" for u in progress)
        assert len(completed) == 1
        assert completed[0].step_id == "analysis"


class TestStepRunnerFailure:
    """Tests for failed steps."""

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, make_strategy, session_context):
        strategy = make_strategy("fake", result="done", errors=[ConnectionError("reset")])
        runner = StepRunner(strategy, make_config(), sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.success is True
        assert result.data == "done"
        assert result.metadata.retry_count == 1
        assert len(strategy.calls) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_fails_immediately(self, make_strategy, session_context, bus):
        failures: list[StepError] = []
        bus.subscribe("step.failed", lambda _, error: failures.append(error))
        strategy = make_strategy("fake", errors=[ContractError("missing analysis")])
        runner = StepRunner(strategy, make_config(), events=bus, sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.success is False
        assert result.data is None
        assert result.error == StepError(message="missing analysis", code="CONTRACT_VIOLATION", retryable=False)
        assert result.metadata.retry_count == 0
        assert len(strategy.calls) == 1
        assert failures == [result.error]

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_last_error(self, make_strategy, session_context):
        errors = [ExternalServiceError("busy", status_code=503) for _ in range(3)]
        strategy = make_strategy("fake", errors=errors)
        runner = StepRunner(strategy, make_config(max_attempts=3), sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.success is False
        assert result.error.code == "EXTERNAL_SERVICE_ERROR"
        assert result.error.retryable is True
        assert result.metadata.retry_count == 2
        assert len(strategy.calls) == 3

    @pytest.mark.asyncio
    async def test_plain_exception_gets_default_code(self, make_strategy, session_context):
        runner = StepRunner(make_strategy("fake", errors=[KeyError("files")]), make_config(), sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.error.code == DEFAULT_ERROR_CODE
        assert "files" in result.error.message

    @pytest.mark.asyncio
    async def test_retry_emits_progress_and_calls_user_hook(self, make_strategy, session_context, bus):
        hook_calls = []
        messages = []
        bus.subscribe("step.progress", lambda _, update: messages.append(update.message))
        config = make_config(on_retry=lambda error, attempt: hook_calls.append(attempt))
        strategy = make_strategy("fake", result=1, errors=[TimeoutError("timed out")])

        await StepRunner(strategy, config, events=bus, sleep=no_sleep).run(
            None, session_id="session-1", session_context=session_context
        )

        assert hook_calls == [1]
        assert any(message.startswith("Retrying analysis after attempt 1") for message in messages)


class TestStepRunnerTimeout:
    """Tests for the per-attempt timeout race."""

    @pytest.mark.asyncio
    async def test_timeout_fails_with_step_timeout(self, make_strategy, session_context):
        strategy = make_strategy("slow", result="late", delay=0.5)
        runner = StepRunner(strategy, make_config(timeout=0.05, max_attempts=1), sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.success is False
        assert result.error.code == "STEP_TIMEOUT"
        assert "timeout" in result.error.message
        assert result.error.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, make_strategy, session_context):
        strategy = make_strategy("slow", result="late", delay=0.5)
        runner = StepRunner(strategy, make_config(timeout=0.05, max_attempts=2), sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)

        assert result.success is False
        assert result.metadata.retry_count == 1
        assert len(strategy.calls) == 2

    @pytest.mark.asyncio
    async def test_late_result_is_discarded(self, make_strategy, session_context, bus):
        """Test an abandoned attempt's result never becomes the step result."""
        progress: list[ProgressUpdate] = []
        bus.subscribe("step.progress", lambda _, update: progress.append(update))
        strategy = make_strategy("slow", result="late", delay=0.1)
        runner = StepRunner(strategy, make_config(timeout=0.02, max_attempts=1), events=bus, sleep=no_sleep)

        result = await runner.run(None, session_id="session-1", session_context=session_context)
        assert result.success is False
        assert runner.abandoned_attempts == 1
        assert strategy.contexts[0].active is False

        await asyncio.sleep(0.2)

        assert runner.abandoned_attempts == 0
        assert result.data is None
        assert not any(update.progress == 100 for update in progress)

    @pytest.mark.asyncio
    async def test_abandoned_attempt_progress_dropped(self, session_context, bus):
        progress: list[ProgressUpdate] = []
        bus.subscribe("step.progress", lambda _, update: progress.append(update))

        class ChattyStrategy:
            name = "chatty"

            async def execute(self, payload, context):
                await asyncio.sleep(0.1)
                context.report_progress("still working", 90)
                return "late"

        runner = StepRunner(ChattyStrategy(), make_config(timeout=0.02, max_attempts=1), events=bus, sleep=no_sleep)
        await runner.run(None, session_id="session-1", session_context=session_context)
        await asyncio.sleep(0.2)

        assert "still working" not in [update.message for update in progress]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, make_strategy, session_context):
        strategy = make_strategy("slow", result="late", delay=10)
        runner = StepRunner(strategy, make_config(timeout=20), sleep=no_sleep)

        task = asyncio.create_task(runner.run(None, session_id="session-1", session_context=session_context))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestStepRunnerLiveness:
    """Tests for the owning-session liveness check."""

    @pytest.mark.asyncio
    async def test_no_retry_after_session_ends(self, make_strategy, session_context, bus):
        progress: list[ProgressUpdate] = []
        bus.subscribe("step.progress", lambda _, update: progress.append(update))
        active = [True]
        strategy = make_strategy("fake", result=1, errors=[TimeoutError("timed out"), TimeoutError("timed out")])
        runner = StepRunner(strategy, make_config(max_attempts=3), events=bus, sleep=no_sleep)

        def is_active() -> bool:
            # the session ends while the first attempt is running
            alive = active[0]
            if strategy.calls:
                active[0] = False
            return alive

        result = await runner.run(
            None, session_id="session-1", session_context=session_context, is_active=is_active
        )

        assert result.success is False
        assert result.error.code == "STEP_ABANDONED"
        assert result.error.retryable is False
        assert len(strategy.calls) == 1
        assert not any(update.message.startswith("Retrying") for update in progress)

    @pytest.mark.asyncio
    async def test_inactive_session_never_starts(self, make_strategy, session_context, bus):
        progress: list[ProgressUpdate] = []
        bus.subscribe("step.progress", lambda _, update: progress.append(update))
        strategy = make_strategy("fake", result=1)
        runner = StepRunner(strategy, make_config(), events=bus, sleep=no_sleep)

        result = await runner.run(
            None, session_id="session-1", session_context=session_context, is_active=lambda: False
        )

        assert result.error.code == "STEP_ABANDONED"
        assert strategy.calls == []
        assert progress == []
