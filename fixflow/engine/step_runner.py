"""Uniform execution contract for pipeline phases.

Every phase strategy (analysis, classification, implementation,
reporting) runs inside a ``StepRunner``. The runner gives all of them the
same envelope regardless of what they do internally:

1. Each attempt races the strategy against the phase timeout. When the
   timer wins, the attempt fails with ``StepTimeoutError``. The strategy
   task is abandoned, not cancelled: its eventual result or exception is
   consumed by a done-callback, logged, and never reported.
2. The whole race is wrapped in the Backoff Executor
   (``fixflow.utils.retry``) using the phase's retry policy.
3. With an ``is_active`` check, no new attempt starts and no progress is
   reported once the owning session has ended. The in-flight attempt is
   left to finish in the background.
4. The outcome is normalized into a ``StepResult``. ``run()`` does not
   raise; only task cancellation propagates.

Progress reports (``step.progress`` events) are advisory and never affect
control flow.

Example:
    >>> runner = StepRunner(
    ...     LLMAnalyzer(chat),
    ...     StepConfig(step_id="analysis", phase=WorkflowPhase.ANALYSIS, timeout=300),
    ...     events=bus,
    ... )
    >>> result = await runner.run(None, session_id=session.id, session_context=session.context)
    >>> if result.success:
    ...     analysis = result.data
"""

import asyncio
import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import structlog

from fixflow.config.settings import PhaseConfig
from fixflow.engine.events import EventBus
from fixflow.engine.types import (
    ProgressUpdate,
    SessionContext,
    StepContext,
    StepError,
    StepMetadata,
    StepResult,
)
from fixflow.enums import WorkflowPhase
from fixflow.exceptions import StepAbandonedError, StepTimeoutError
from fixflow.utils.retry import RetryPolicy, SleepFunc, is_retryable_error, retry

log = structlog.get_logger(__name__)

P = TypeVar("P", contravariant=True)
R = TypeVar("R", covariant=True)
T = TypeVar("T")

DEFAULT_ERROR_CODE = "STEP_ERROR"


class PhaseStrategy(Protocol[P, R]):
    """Capability implemented by every phase strategy."""

    name: str

    async def execute(self, payload: P, context: StepContext) -> R:
        """Produce the phase payload.

        Args:
            payload: Output of the previous phase (None for analysis)
            context: Per-attempt execution context

        Returns:
            The phase's typed payload
        """
        ...


@dataclass(frozen=True)
class StepConfig:
    """Timeout and retry settings of one step."""

    step_id: str
    phase: WorkflowPhase
    timeout: float = 300.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def for_phase(cls, phase: WorkflowPhase, config: PhaseConfig) -> "StepConfig":
        """Build a step configuration from the phase section of the settings."""
        return cls(
            step_id=phase.value,
            phase=phase,
            timeout=config.timeout,
            retry=config.to_retry_policy(),
        )


def _error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return DEFAULT_ERROR_CODE


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class StepRunner(Generic[T]):
    """Run one phase strategy with timeout, retry and result normalization.

    Attributes:
        strategy: The phase strategy being executed
        config: Timeout and retry settings
    """

    def __init__(
        self,
        strategy: PhaseStrategy[Any, T],
        config: StepConfig,
        events: EventBus | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the runner.

        Args:
            strategy: Strategy implementing the phase
            config: Step configuration
            events: Event bus receiving progress events
            sleep: Awaitable sleep used between retry attempts
        """
        self.strategy = strategy
        self.config = config
        self._events = events or EventBus()
        self._sleep = sleep
        self._abandoned: set[asyncio.Future[Any]] = set()

    @property
    def abandoned_attempts(self) -> int:
        """Number of timed-out attempts whose strategy is still running."""
        return len(self._abandoned)

    async def run(
        self,
        payload: Any,
        *,
        session_id: str,
        session_context: SessionContext,
        is_active: Callable[[], bool] | None = None,
    ) -> StepResult[T]:
        """Execute the strategy and return a normalized result.

        Args:
            payload: Input payload for the strategy
            session_id: Session the step belongs to
            session_context: Accumulated session context
            is_active: Liveness check of the owning session, consulted
                before every attempt and progress report

        Returns:
            StepResult wrapping the payload or the normalized error
        """
        started = time.monotonic()
        attempts = 0
        user_hook = self.config.retry.on_retry
        alive = is_active or (lambda: True)

        def publish(update: ProgressUpdate) -> None:
            if alive():
                self._publish(update)

        def on_retry(error: BaseException, attempt: int) -> None:
            publish(
                ProgressUpdate(
                    session_id=session_id,
                    phase=self.config.phase,
                    message=f"Retrying {self.config.step_id} after attempt {attempt}: {_error_message(error)}",
                )
            )
            if user_hook is not None:
                user_hook(error, attempt)

        async def attempt() -> T:
            nonlocal attempts
            if not alive():
                raise StepAbandonedError(self.config.step_id, session_id)
            attempts += 1
            return await self._attempt(payload, session_id, session_context, publish)

        policy = dataclasses.replace(self.config.retry, on_retry=on_retry)

        log.info(
            "step_started",
            step_id=self.config.step_id,
            session_id=session_id,
            strategy=self.strategy.name,
            timeout=self.config.timeout,
        )
        publish(
            ProgressUpdate(
                session_id=session_id,
                phase=self.config.phase,
                message=f"Starting {self.strategy.name}",
                progress=0,
            )
        )

        try:
            data = await retry(attempt, policy, sleep=self._sleep)
        except Exception as e:
            metadata = StepMetadata(
                step_id=self.config.step_id,
                execution_time=time.monotonic() - started,
                retry_count=max(attempts - 1, 0),
            )
            error = StepError(
                message=_error_message(e),
                code=_error_code(e),
                retryable=is_retryable_error(e),
            )
            log.error(
                "step_failed",
                step_id=self.config.step_id,
                session_id=session_id,
                code=error.code,
                error=error.message,
                attempts=attempts,
            )
            self._events.emit("step.failed", error)
            return StepResult.fail(error, metadata)

        metadata = StepMetadata(
            step_id=self.config.step_id,
            execution_time=time.monotonic() - started,
            retry_count=attempts - 1,
        )
        log.info(
            "step_completed",
            step_id=self.config.step_id,
            session_id=session_id,
            execution_time=round(metadata.execution_time, 3),
            retry_count=metadata.retry_count,
        )
        publish(
            ProgressUpdate(
                session_id=session_id,
                phase=self.config.phase,
                message=f"{self.strategy.name} completed",
                progress=100,
            )
        )
        self._events.emit("step.completed", metadata)
        return StepResult.ok(data, metadata)

    async def _attempt(
        self,
        payload: Any,
        session_id: str,
        session_context: SessionContext,
        publish: Callable[[ProgressUpdate], None],
    ) -> T:
        context = StepContext(
            session_id=session_id,
            phase=self.config.phase,
            step_id=self.config.step_id,
            session_context=session_context,
            reporter=publish,
        )
        task = asyncio.ensure_future(self.strategy.execute(payload, context))

        try:
            done, _ = await asyncio.wait({task}, timeout=self.config.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        context.active = False
        self._abandoned.add(task)
        task.add_done_callback(self._discard_late_result)
        log.warning(
            "step_timeout",
            step_id=self.config.step_id,
            session_id=session_id,
            timeout=self.config.timeout,
        )
        raise StepTimeoutError(self.config.step_id, self.config.timeout)

    def _discard_late_result(self, task: asyncio.Future[Any]) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        log.info(
            "late_step_result_discarded",
            step_id=self.config.step_id,
            outcome="error" if error is not None else "success",
            error=str(error) if error is not None else None,
        )

    def _publish(self, update: ProgressUpdate) -> None:
        log.debug(
            "step_progress",
            step_id=self.config.step_id,
            session_id=update.session_id,
            message=update.message,
            progress=update.progress,
        )
        self._events.emit("step.progress", update)
