"""
In-memory registry of workflow sessions.

This module provides the SessionStore class, the only component allowed
to mutate sessions. It owns:

- Status transitions following the session state machine
- Phase history and context merging
- Per-session wall-clock timeouts (cancellable timer handles)
- The retention sweep, which is the only path that deletes sessions

State Machine:
    CREATED -> RUNNING -> {COMPLETED | FAILED | TIMEOUT}

    CREATED may also go straight to a terminal status (for example when
    the session timer fires before the orchestrator marks it RUNNING).
    No transition ever leaves a terminal status; such requests are logged
    and ignored.

Invariant:
    ``completed_at`` is set if and only if the status is terminal.

Concurrency Model:
    Every public method runs to completion without awaiting, so each call
    is atomic with respect to other coroutines on the same event loop.
    There is no atomicity across calls.

Example:
    >>> store = SessionStore(default_timeout=3600, events=bus)
    >>> session = store.create(item)
    >>> store.update_status(session.id, SessionStatus.RUNNING)
    >>> store.update_phase(session.id, WorkflowPhase.ANALYSIS)
    >>> store.close(session.id)
"""

import asyncio
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import fields
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from fixflow.engine.events import EventBus
from fixflow.engine.types import Session, SessionContext, SessionError
from fixflow.enums import SessionStatus, WorkflowPhase
from fixflow.models.domain import WorkItem

if TYPE_CHECKING:
    from fixflow.config.settings import ProjectConfig

log = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

SESSION_TIMEOUT_CODE = "SESSION_TIMEOUT"

_ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset(
        {
            SessionStatus.CREATED,
            SessionStatus.RUNNING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.TIMEOUT,
        }
    ),
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.RUNNING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.TIMEOUT,
        }
    ),
}

_SWEEPABLE = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

_CONTEXT_FIELDS = frozenset(f.name for f in fields(SessionContext))
_PROTECTED_CONTEXT_FIELDS = frozenset({"session_id", "created_at", "updated_at", "extras"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def generate_session_id() -> str:
    """Generate a session id: millisecond timestamp plus random suffix."""
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class SessionStore:
    """Manage workflow sessions in memory.

    Attributes:
        default_timeout: Session wall-clock limit in seconds.
    """

    def __init__(
        self,
        default_timeout: float = 3600.0,
        events: EventBus | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            default_timeout: Seconds after which a non-terminal session
                is moved to TIMEOUT
            events: Event bus receiving session events
            clock: Source of timestamps
        """
        self.default_timeout = default_timeout
        self._events = events or EventBus()
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def create(
        self,
        item: WorkItem,
        project_id: str | None = None,
        project_config: "ProjectConfig | None" = None,
        timeout: float | None = None,
    ) -> Session:
        """Create a session for a work item and arm its timeout.

        Must be called from a running event loop.

        Args:
            item: Work item being processed
            project_id: Optional project identifier
            project_config: Optional project configuration
            timeout: Override of ``default_timeout`` for this session

        Returns:
            The new session in CREATED status
        """
        loop = asyncio.get_running_loop()

        session_id = generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()

        now = self._clock()
        context = SessionContext(
            session_id=session_id,
            item=item,
            project_id=project_id,
            project_config=project_config,
            created_at=now,
            updated_at=now,
        )
        session = Session(
            id=session_id,
            item_id=item.id,
            context=context,
            project_id=project_id,
            started_at=now,
        )
        self._sessions[session_id] = session

        timeout = self.default_timeout if timeout is None else timeout
        self._timers[session_id] = loop.call_later(timeout, self._on_timeout, session_id)

        log.info("session_created", session_id=session_id, item_id=item.id, timeout=timeout)
        self._events.emit("session.created", session)
        return session

    def get(self, session_id: str) -> Session | None:
        """Get a session by id."""
        return self._sessions.get(session_id)

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        error: SessionError | None = None,
    ) -> bool:
        """Transition a session to a new status.

        Terminal statuses stamp ``completed_at`` and disarm the timer.
        Unknown sessions and transitions out of a terminal status are
        logged and ignored.

        Args:
            session_id: Session to update
            status: New status
            error: Optional error descriptor to record

        Returns:
            True if the transition was applied
        """
        session = self._sessions.get(session_id)
        if session is None:
            log.warning("session_not_found", session_id=session_id, operation="update_status")
            return False

        allowed = _ALLOWED_TRANSITIONS.get(session.status, frozenset())
        if status not in allowed:
            log.warning(
                "invalid_session_transition",
                session_id=session_id,
                from_status=session.status.value,
                to_status=status.value,
            )
            return False

        previous = session.status
        session.status = status
        if error is not None:
            session.error = error
        if status.is_terminal:
            session.completed_at = self._clock()
            self._disarm(session_id)

        log.info(
            "session_status_updated",
            session_id=session_id,
            from_status=previous.value,
            to_status=status.value,
        )
        self._events.emit("session.updated", session)
        return True

    def update_phase(self, session_id: str, phase: WorkflowPhase) -> bool:
        """Set the current phase and append it to the phase history.

        Reporting the same phase twice in a row records it once.

        Returns:
            True if the session exists
        """
        session = self._sessions.get(session_id)
        if session is None:
            log.warning("session_not_found", session_id=session_id, operation="update_phase")
            return False

        session.current_phase = phase
        if not session.completed_phases or session.completed_phases[-1] != phase:
            session.completed_phases.append(phase)

        log.debug("session_phase_updated", session_id=session_id, phase=phase.value)
        self._events.emit("session.phase", session)
        return True

    def update_context(self, session_id: str, updates: Mapping[str, Any]) -> bool:
        """Shallow-merge values into the session context.

        ``None`` values are ignored so a merge never erases a field. Keys
        that are not context fields are stored in ``extras``.

        Returns:
            True if the session exists
        """
        session = self._sessions.get(session_id)
        if session is None:
            log.warning("session_not_found", session_id=session_id, operation="update_context")
            return False

        context = session.context
        for key, value in updates.items():
            if value is None or key in _PROTECTED_CONTEXT_FIELDS:
                continue
            if key in _CONTEXT_FIELDS:
                setattr(context, key, value)
            else:
                context.extras[key] = value
        context.updated_at = self._clock()

        self._events.emit("session.context", session)
        return True

    def close(self, session_id: str, status: SessionStatus = SessionStatus.COMPLETED) -> bool:
        """Finish a session. The session stays in the store.

        Args:
            session_id: Session to close
            status: Terminal status, COMPLETED by default

        Returns:
            True if the session was transitioned

        Raises:
            ValueError: If ``status`` is not terminal
        """
        if not status.is_terminal:
            raise ValueError(f"close() requires a terminal status, got {status.value}")

        closed = self.update_status(session_id, status)
        self._disarm(session_id)
        if closed:
            log.info("session_closed", session_id=session_id, status=status.value)
            self._events.emit("session.closed", self._sessions[session_id])
        return closed

    def cleanup(self, max_age: float = 86400.0) -> int:
        """Remove finished sessions older than ``max_age`` seconds.

        Only COMPLETED and FAILED sessions are removed. TIMEOUT sessions
        are kept for manual inspection; active sessions are never touched.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        expired = [
            session.id
            for session in self._sessions.values()
            if session.status in _SWEEPABLE
            and session.completed_at is not None
            and (now - session.completed_at).total_seconds() > max_age
        ]

        for session_id in expired:
            self._disarm(session_id)
            del self._sessions[session_id]

        if expired:
            log.info("sessions_cleaned", count=len(expired), max_age=max_age)
            self._events.emit("session.cleaned", expired)
        return len(expired)

    def active_sessions(self) -> list[Session]:
        """Sessions in CREATED or RUNNING status."""
        return [s for s in self._sessions.values() if s.is_active]

    def sessions_by_project(self, project_id: str) -> list[Session]:
        """Sessions belonging to a project."""
        return [s for s in self._sessions.values() if s.project_id == project_id]

    def sessions_for_item(self, item_id: str) -> list[Session]:
        """Sessions created for a work item, oldest first."""
        return sorted(
            (s for s in self._sessions.values() if s.item_id == item_id),
            key=lambda s: s.started_at,
        )

    def count_by_status(self) -> dict[SessionStatus, int]:
        """Number of sessions per status."""
        counts = {status: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status] += 1
        return counts

    def stats(self) -> dict[str, int]:
        """Summary counts for logging."""
        counts = self.count_by_status()
        return {
            "total": len(self._sessions),
            "active": counts[SessionStatus.CREATED] + counts[SessionStatus.RUNNING],
            "completed": counts[SessionStatus.COMPLETED],
            "failed": counts[SessionStatus.FAILED],
            "timeout": counts[SessionStatus.TIMEOUT],
        }

    def shutdown(self) -> None:
        """Cancel every armed session timer."""
        for handle in self._timers.values():
            handle.cancel()
        count = len(self._timers)
        self._timers.clear()
        log.debug("session_timers_cancelled", count=count)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _disarm(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        session = self._sessions.get(session_id)
        if session is None or session.status.is_terminal:
            return

        error = SessionError(
            message="Session timed out",
            code=SESSION_TIMEOUT_CODE,
            retryable=False,
            phase=session.current_phase,
        )
        if not self.update_status(session_id, SessionStatus.TIMEOUT, error):
            return

        log.warning(
            "session_timeout",
            session_id=session_id,
            item_id=session.item_id,
            phase=session.current_phase.value if session.current_phase else None,
        )
        self._events.emit("session.timeout", session)
