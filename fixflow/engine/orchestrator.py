"""
Workflow orchestrator for the QA remediation pipeline.

This module provides the WorkflowOrchestrator class, which drives work
items through the fixed phase sequence and owns the intake loop.

Architecture Overview:
    The orchestrator sits between the item tracker, the notification
    channel and the phase strategies. Each phase runs inside a
    ``StepRunner`` that enforces the phase timeout and retry policy; the
    ``SessionStore`` records the session and bounds its total wall-clock
    time.

Pipeline:
    1. DETECTION: create the session, mark it RUNNING, move the item to
       "In Progress" and announce the start
    2. ANALYSIS: analyze the report
    3. CLASSIFICATION: decide whether to act; a negative decision moves
       the item to "Not Actionable" and closes the session as COMPLETED
    4. IMPLEMENTATION: produce a change set
    5. REPORTING: publish the change set
    6. COMPLETION: move the item to "Done", announce success, close

Error Policy:
    A failed phase aborts the pipeline. The session is marked FAILED (a
    timed-out session keeps TIMEOUT), the item is moved to "In Review"
    with a comment carrying the original error message, a failure
    notification is sent, and the error propagates to the caller. The
    intake loop logs it and keeps going.

Intake:
    Items arrive through the tracker subscription (best effort) and a
    periodic poll for "Not Started" items. Both feed ``handle_item``,
    which claims the item id in an in-flight set before doing anything
    else, so duplicate deliveries of the same item start one pipeline.

Example:
    >>> orchestrator = WorkflowOrchestrator(tracker, notifier, strategies, workflow=settings.workflow)
    >>> await orchestrator.start()
    >>> ...
    >>> await orchestrator.stop(drain_timeout=30)
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from fixflow.config.settings import ProjectConfig, WorkflowConfig
from fixflow.engine.events import EventBus
from fixflow.engine.session_store import SessionStore
from fixflow.engine.step_runner import PhaseStrategy, StepConfig, StepRunner
from fixflow.engine.types import Session, SessionError
from fixflow.enums import ItemStatus, SessionStatus, WorkflowPhase
from fixflow.exceptions import (
    ConfigurationError,
    ContractError,
    PhaseFailedError,
    SessionTimeoutError,
    WorkflowError,
)
from fixflow.models.analysis import (
    Analysis,
    ClassificationDecision,
    CodeChanges,
    ImplementationRequest,
    PublishedChange,
)
from fixflow.models.domain import WorkItem
from fixflow.providers.base import ItemTracker, Notifier
from fixflow.utils.retry import SleepFunc

log = structlog.get_logger(__name__)

RUNNABLE_PHASES = (
    WorkflowPhase.ANALYSIS,
    WorkflowPhase.CLASSIFICATION,
    WorkflowPhase.IMPLEMENTATION,
    WorkflowPhase.REPORTING,
)

CHANGE_URL_PROPERTY = "PR URL"

StrategyMap = Mapping[WorkflowPhase, PhaseStrategy[Any, Any]]


class WorkflowOrchestrator:
    """Drive work items through the remediation pipeline.

    Attributes:
        tracker: Item tracker holding the QA reports.
        notifier: Notification channel.
        workflow: Intake and phase configuration.
        project: Optional project the items belong to.
        sessions: Session store recording every pipeline run.
        events: Event bus shared with the store and the step runners.
    """

    def __init__(
        self,
        tracker: ItemTracker,
        notifier: Notifier,
        strategies: StrategyMap,
        workflow: WorkflowConfig | None = None,
        sessions: SessionStore | None = None,
        events: EventBus | None = None,
        project: ProjectConfig | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            tracker: Item tracker implementation
            notifier: Notification channel implementation
            strategies: Mapping of every runnable phase to its strategy
            workflow: Workflow configuration, defaults to ``WorkflowConfig()``
            sessions: Session store, created from ``workflow`` if omitted
            events: Event bus, created if omitted
            project: Optional project configuration
            sleep: Awaitable sleep used by the step runners between retries

        Raises:
            ConfigurationError: If a runnable phase has no strategy
        """
        missing = [phase.value for phase in RUNNABLE_PHASES if phase not in strategies]
        if missing:
            raise ConfigurationError(f"No strategy configured for phases: {', '.join(missing)}")

        self.tracker = tracker
        self.notifier = notifier
        self.workflow = workflow or WorkflowConfig()
        self.project = project
        self.events = events or EventBus()
        self.sessions = sessions or SessionStore(
            default_timeout=self.workflow.session_timeout,
            events=self.events,
        )

        self._runners: dict[WorkflowPhase, StepRunner[Any]] = {
            phase: StepRunner(
                strategies[phase],
                StepConfig.for_phase(phase, self.workflow.phase(phase)),
                events=self.events,
                sleep=sleep,
            )
            for phase in RUNNABLE_PHASES
        }

        self._running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._in_flight: set[str] = set()
        self._deadlines: dict[str, asyncio.Event] = {}
        self._semaphore = asyncio.Semaphore(self.workflow.max_concurrent_sessions)

        self.events.subscribe("session.timeout", self._on_session_timeout)

    @property
    def is_running(self) -> bool:
        """Check whether the intake loop is running."""
        return self._running

    async def start(self) -> None:
        """Subscribe to the tracker and start the poll loop."""
        if self._running:
            log.warning("orchestrator_already_running")
            return

        self._running = True
        try:
            await self.tracker.subscribe(self._on_item_event)
        except Exception as e:
            log.warning("tracker_subscription_failed", error=str(e))

        self._poll_task = asyncio.create_task(self._poll_loop())
        log.info(
            "orchestrator_started",
            poll_interval=self.workflow.poll_interval,
            max_concurrent_sessions=self.workflow.max_concurrent_sessions,
        )
        self.events.emit("orchestrator.started", self.get_stats())

    async def stop(self, drain_timeout: float | None = None) -> None:
        """Stop intake and wait for in-flight pipelines.

        Pipelines still running after ``drain_timeout`` seconds are
        abandoned, not cancelled.

        Args:
            drain_timeout: Seconds to wait for in-flight pipelines, or None
                to wait until they finish
        """
        if not self._running:
            return
        self._running = False

        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        try:
            await self.tracker.unsubscribe(self._on_item_event)
        except Exception as e:
            log.warning("tracker_unsubscribe_failed", error=str(e))

        pending: set[asyncio.Task[Any]] = set()
        if self._tasks:
            log.info("draining_pipelines", count=len(self._tasks), drain_timeout=drain_timeout)
            _, pending = await asyncio.wait(set(self._tasks), timeout=drain_timeout)

        if pending:
            log.warning("pipelines_abandoned", count=len(pending))
        else:
            self.sessions.shutdown()

        log.info("orchestrator_stopped", **self.sessions.stats())
        self.events.emit("orchestrator.stopped", self.get_stats())

    async def poll_once(self) -> int:
        """Query "Not Started" items once and dispatch them.

        Also runs the retention sweep. Tracker errors are logged, never
        raised.

        Returns:
            Number of items dispatched
        """
        self.sessions.cleanup(self.workflow.session_retention)

        try:
            items = await self.tracker.query_items(ItemStatus.NOT_STARTED)
        except Exception as e:
            log.error("poll_failed", error=str(e), error_type=type(e).__name__)
            return 0

        for item in items:
            self._dispatch(item)

        log.debug("poll_completed", items=len(items), in_flight=len(self._in_flight))
        return len(items)

    async def handle_item(self, item: WorkItem) -> Session | None:
        """Accept an item for processing if nothing else is processing it.

        Items not in "Not Started" status and items already in flight are
        skipped. Pipeline failures are logged here and not raised, so the
        intake loop keeps running.

        Args:
            item: Snapshot delivered by the subscription or the poll

        Returns:
            The session if a pipeline ran, None if the item was skipped or
            the pipeline failed
        """
        if item.status != ItemStatus.NOT_STARTED:
            log.debug("item_skipped", item_id=item.id, reason="status", status=item.status.value)
            return None

        if item.id in self._in_flight:
            log.info("item_skipped", item_id=item.id, reason="in_flight")
            return None
        self._in_flight.add(item.id)

        try:
            if self.workflow.recheck_status:
                current = await self.tracker.get_item(item.id)
                if current is None or current.status != ItemStatus.NOT_STARTED:
                    log.info(
                        "item_skipped",
                        item_id=item.id,
                        reason="status_changed",
                        status=current.status.value if current else None,
                    )
                    return None
                item = current

            async with self._semaphore:
                return await self.process_item(item)

        except WorkflowError as e:
            log.error("item_processing_failed", item_id=item.id, code=e.code, error=str(e))
            return None
        except Exception as e:
            log.error(
                "item_processing_error",
                item_id=item.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None
        finally:
            self._in_flight.discard(item.id)

    async def process_item(self, item: WorkItem) -> Session:
        """Run the full pipeline for one item.

        Args:
            item: Work item to process

        Returns:
            The closed session

        Raises:
            PhaseFailedError: If a phase failed
            SessionTimeoutError: If the session timed out
            WorkflowError: For other pipeline errors
        """
        session = self.sessions.create(
            item,
            project_id=self.project.id if self.project else None,
            project_config=self.project,
        )
        self._deadlines[session.id] = asyncio.Event()
        log.info("workflow_started", session_id=session.id, item_id=item.id, title=item.title)

        try:
            self.sessions.update_phase(session.id, WorkflowPhase.DETECTION)
            self.sessions.update_status(session.id, SessionStatus.RUNNING)
            await self.tracker.update_status(item.id, ItemStatus.IN_PROGRESS)
            await self._notify("start", self.notifier.notify_start, item, session.id)

            analysis = self._expect(
                await self._run_phase(session, WorkflowPhase.ANALYSIS, None),
                Analysis,
                WorkflowPhase.ANALYSIS,
            )
            self.sessions.update_context(session.id, {"analysis": analysis})

            decision = self._expect(
                await self._run_phase(session, WorkflowPhase.CLASSIFICATION, analysis),
                ClassificationDecision,
                WorkflowPhase.CLASSIFICATION,
            )
            self.sessions.update_context(session.id, {"decision": decision})

            if not decision.should_act:
                await self._handle_not_actionable(session, item, decision)
                return session

            request = ImplementationRequest(analysis=analysis, decision=decision)
            changes = self._expect(
                await self._run_phase(session, WorkflowPhase.IMPLEMENTATION, request),
                CodeChanges,
                WorkflowPhase.IMPLEMENTATION,
            )
            self.sessions.update_context(session.id, {"code_changes": changes})

            published = self._expect(
                await self._run_phase(session, WorkflowPhase.REPORTING, changes),
                PublishedChange,
                WorkflowPhase.REPORTING,
            )
            self.sessions.update_context(session.id, {"published": published})

            await self._complete_item(session, item, published)
            return session

        except Exception as e:
            await self._handle_failure(session, item, e)
            raise
        finally:
            self._deadlines.pop(session.id, None)

    def get_stats(self) -> dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            "running": self._running,
            "sessions": self.sessions.stats(),
            "active_sessions": len(self.sessions.active_sessions()),
            "in_flight": sorted(self._in_flight),
            "pending_tasks": len(self._tasks),
        }

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                log.error("poll_loop_error", error=str(e), error_type=type(e).__name__, exc_info=True)
            await asyncio.sleep(self.workflow.poll_interval)

    async def _on_item_event(self, item: WorkItem) -> None:
        self._dispatch(item)

    def _dispatch(self, item: WorkItem) -> asyncio.Task[Session | None]:
        task = asyncio.create_task(self.handle_item(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_phase(self, session: Session, phase: WorkflowPhase, payload: Any) -> Any:
        """Run one phase, racing it against the session deadline.

        Raises:
            SessionTimeoutError: If the session timed out before or during
                the phase
            PhaseFailedError: If the step result is unsuccessful
        """
        self._ensure_active(session.id)
        self.sessions.update_phase(session.id, phase)
        log.info("phase_started", session_id=session.id, phase=phase.value)

        runner = self._runners[phase]
        step = asyncio.ensure_future(
            runner.run(
                payload,
                session_id=session.id,
                session_context=session.context,
                is_active=lambda: self._is_active(session.id),
            )
        )
        deadline = asyncio.ensure_future(self._deadlines[session.id].wait())

        try:
            await asyncio.wait({step, deadline}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            raise
        finally:
            deadline.cancel()

        if not step.done():
            self._tasks.add(step)
            step.add_done_callback(self._tasks.discard)
            step.add_done_callback(
                lambda _: log.info("late_phase_result_discarded", session_id=session.id, phase=phase.value)
            )
            raise SessionTimeoutError(session.id)

        result = step.result()
        self._ensure_active(session.id)

        if not result.success:
            error = result.error
            raise PhaseFailedError(phase, error.message, code=error.code, retryable=error.retryable)

        log.info(
            "phase_completed",
            session_id=session.id,
            phase=phase.value,
            execution_time=round(result.metadata.execution_time, 3),
            retry_count=result.metadata.retry_count,
        )
        return result.data

    def _ensure_active(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            raise WorkflowError(f"Session {session_id} no longer exists")
        if session.status == SessionStatus.TIMEOUT:
            raise SessionTimeoutError(session_id)
        if session.status.is_terminal:
            raise WorkflowError(f"Session {session_id} is already {session.status.value}")

    def _is_active(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return session is not None and session.is_active

    def _close_reported(self, session_id: str) -> None:
        """Close a session whose outcome has already been reported.

        The session timer may fire while the outcome is being reported. The
        session then stays TIMEOUT and the pipeline is not treated as failed.
        """
        if self.sessions.close(session_id):
            return
        current = self.sessions.get(session_id)
        log.warning(
            "session_expired_after_outcome",
            session_id=session_id,
            status=current.status.value if current else None,
        )

    @staticmethod
    def _expect(value: Any, expected: type, phase: WorkflowPhase) -> Any:
        if not isinstance(value, expected):
            raise ContractError(
                f"{phase.value} produced {type(value).__name__}, expected {expected.__name__}"
            )
        return value

    async def _handle_not_actionable(
        self,
        session: Session,
        item: WorkItem,
        decision: ClassificationDecision,
    ) -> None:
        self._ensure_active(session.id)
        log.info(
            "item_not_actionable",
            session_id=session.id,
            item_id=item.id,
            reason=decision.reason,
            confidence=decision.confidence,
        )
        await self.tracker.update_status(item.id, ItemStatus.NOT_ACTIONABLE)
        await self.tracker.add_comment(item.id, self._not_actionable_comment(decision))
        await self._notify(
            "not_actionable", self.notifier.notify_not_actionable, item, decision.reason, session.id
        )

        self._close_reported(session.id)
        self.events.emit("workflow.not_actionable", session)

    async def _complete_item(self, session: Session, item: WorkItem, published: PublishedChange) -> None:
        self._ensure_active(session.id)
        self.sessions.update_phase(session.id, WorkflowPhase.COMPLETION)

        await self.tracker.update_status(item.id, ItemStatus.DONE)
        await self.tracker.add_comment(
            item.id,
            f"Automated fix published: {published.title}\n{published.url}",
        )
        try:
            await self.tracker.update_properties(item.id, {CHANGE_URL_PROPERTY: published.url})
        except Exception as e:
            log.warning("change_url_update_failed", item_id=item.id, error=str(e))

        await self._notify("success", self.notifier.notify_success, item, published, session.id)

        self._close_reported(session.id)
        log.info(
            "workflow_completed",
            session_id=session.id,
            item_id=item.id,
            reference=published.reference,
        )
        self.events.emit("workflow.completed", session)

    async def _handle_failure(self, session: Session, item: WorkItem, error: Exception) -> None:
        """Record a pipeline failure and report it.

        Tracker errors raised while reporting are logged and do not
        replace the original error.
        """
        current = self.sessions.get(session.id)
        phase = current.current_phase if current else None

        if isinstance(error, PhaseFailedError):
            message = error.reason
            phase = error.phase
        else:
            message = str(error) or type(error).__name__

        code = getattr(error, "code", None)
        session_error = SessionError(
            message=message,
            code=code if isinstance(code, str) else "WORKFLOW_ERROR",
            retryable=bool(getattr(error, "retryable", False)),
            phase=phase,
        )

        if current is not None and current.is_active:
            self.sessions.update_status(session.id, SessionStatus.FAILED, session_error)

        log.error(
            "workflow_failed",
            session_id=session.id,
            item_id=item.id,
            phase=phase.value if phase else None,
            code=session_error.code,
            error=message,
            session_status=current.status.value if current else None,
        )
        self.events.emit("workflow.failed", session)

        try:
            await self.tracker.update_status(item.id, ItemStatus.IN_REVIEW)
        except Exception as e:
            log.error("failure_status_update_failed", item_id=item.id, error=str(e))

        phase_name = phase.value if phase else "unknown phase"
        try:
            await self.tracker.add_comment(
                item.id,
                f"Automated remediation failed during {phase_name}. Manual review needed.\n\nError: {message}",
            )
        except Exception as e:
            log.error("failure_comment_failed", item_id=item.id, error=str(e))

        await self._notify("failure", self.notifier.notify_failure, item, message, session.id)

    async def _notify(self, kind: str, send: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await send(*args)
        except Exception as e:
            log.warning("notification_failed", kind=kind, error=str(e))

    def _on_session_timeout(self, event: str, session: Session) -> None:
        deadline = self._deadlines.get(session.id)
        if deadline is not None:
            deadline.set()

    @staticmethod
    def _not_actionable_comment(decision: ClassificationDecision) -> str:
        lines = [f"Not actionable by automation: {decision.reason}"]
        if decision.blockers:
            lines.append("Blockers: " + ", ".join(decision.blockers))
        if decision.prerequisites:
            lines.append("Prerequisites: " + ", ".join(decision.prerequisites))
        return "\n".join(lines)
