"""Tests for engine/session_store.py."""

import asyncio
import random
import re
from datetime import UTC, datetime, timedelta

import pytest

from fixflow.config.settings import ProjectConfig
from fixflow.engine.events import EventBus
from fixflow.engine.session_store import SessionStore, generate_session_id
from fixflow.engine.types import SessionError
from fixflow.enums import SessionStatus, WorkflowPhase


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus, clock) -> SessionStore:
    return SessionStore(default_timeout=60, events=bus, clock=clock)


def test_generate_session_id_format():
    """Test session ids carry a millisecond timestamp and random suffix."""
    session_id = generate_session_id()
    assert re.fullmatch(r"session-\d{13}-[0-9a-f]{12}", session_id)
    assert generate_session_id() != session_id


class TestCreate:
    """Tests for SessionStore.create."""

    @pytest.mark.asyncio
    async def test_create_initial_state(self, store, sample_item, clock):
        session = store.create(sample_item)

        assert session.status == SessionStatus.CREATED
        assert session.item_id == sample_item.id
        assert session.context.item == sample_item
        assert session.context.session_id == session.id
        assert session.current_phase is None
        assert session.completed_phases == []
        assert session.started_at == clock.now
        assert session.completed_at is None
        assert session.error is None
        assert store.get(session.id) is session
        assert session.id in store
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_create_with_project(self, store, sample_item):
        project = ProjectConfig(id="web", name="Web App")
        session = store.create(sample_item, project_id="web", project_config=project)

        assert session.project_id == "web"
        assert session.context.project_config == project
        assert store.sessions_by_project("web") == [session]
        assert store.sessions_by_project("mobile") == []

    @pytest.mark.asyncio
    async def test_create_emits_event(self, store, bus, sample_item):
        created = []
        bus.subscribe("session.created", lambda _, session: created.append(session))

        session = store.create(sample_item)

        assert created == [session]

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store, sample_item):
        ids = {store.create(sample_item).id for _ in range(50)}
        assert len(ids) == 50

    def test_create_requires_running_loop(self, store, sample_item):
        with pytest.raises(RuntimeError):
            store.create(sample_item)

    def test_get_unknown(self, store):
        assert store.get("missing") is None


class TestStatusTransitions:
    """Tests for the session state machine."""

    @pytest.mark.asyncio
    async def test_running_then_completed(self, store, sample_item, clock):
        session = store.create(sample_item)
        assert store.update_status(session.id, SessionStatus.RUNNING) is True
        assert session.completed_at is None

        clock.advance(30)
        assert store.update_status(session.id, SessionStatus.COMPLETED) is True

        assert session.status == SessionStatus.COMPLETED
        assert session.completed_at == clock.now
        assert session.duration == 30.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.TIMEOUT])
    async def test_terminal_status_is_final(self, store, sample_item, terminal):
        session = store.create(sample_item)
        store.update_status(session.id, SessionStatus.RUNNING)
        store.update_status(session.id, terminal)
        completed_at = session.completed_at

        for status in SessionStatus:
            assert store.update_status(session.id, status) is False

        assert session.status == terminal
        assert session.completed_at == completed_at

    @pytest.mark.asyncio
    async def test_running_cannot_go_back_to_created(self, store, sample_item):
        session = store.create(sample_item)
        store.update_status(session.id, SessionStatus.RUNNING)

        assert store.update_status(session.id, SessionStatus.CREATED) is False
        assert session.status == SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_created_can_go_straight_to_timeout(self, store, sample_item):
        session = store.create(sample_item)

        assert store.update_status(session.id, SessionStatus.TIMEOUT) is True
        assert session.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_records_error(self, store, sample_item):
        session = store.create(sample_item)
        error = SessionError("analysis failed", "PHASE_FAILED", phase=WorkflowPhase.ANALYSIS)

        store.update_status(session.id, SessionStatus.FAILED, error)

        assert session.error == error

    def test_unknown_session_ignored(self, store):
        assert store.update_status("missing", SessionStatus.RUNNING) is False

    @pytest.mark.asyncio
    async def test_completed_at_set_iff_terminal(self, store, sample_item):
        sessions = [store.create(sample_item) for _ in range(4)]
        store.update_status(sessions[1].id, SessionStatus.RUNNING)
        store.update_status(sessions[2].id, SessionStatus.FAILED)
        store.close(sessions[3].id)

        for session in sessions:
            assert (session.completed_at is not None) == session.status.is_terminal

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [0, 1, 7, 42, 1234])
    async def test_completed_at_set_iff_terminal_randomized(self, store, sample_item, seed):
        """Test completed_at tracks terminal status across random mutation sequences."""
        rng = random.Random(seed)
        sessions = [store.create(sample_item) for _ in range(5)]
        statuses = list(SessionStatus)
        phases = list(WorkflowPhase)

        def mutate(session_id: str) -> None:
            action = rng.choice(["status", "phase", "close", "close_failed", "timer", "context"])
            if action == "status":
                store.update_status(session_id, rng.choice(statuses))
            elif action == "phase":
                store.update_phase(session_id, rng.choice(phases))
            elif action == "close":
                store.close(session_id)
            elif action == "close_failed":
                store.close(session_id, SessionStatus.FAILED)
            elif action == "timer":
                store._on_timeout(session_id)
            else:
                store.update_context(session_id, {"note": rng.random()})

        try:
            for _ in range(200):
                mutate(rng.choice(sessions).id)
                for session in sessions:
                    assert (session.completed_at is not None) == session.status.is_terminal
        finally:
            store.shutdown()


class TestPhaseAndContext:
    """Tests for update_phase and update_context."""

    @pytest.mark.asyncio
    async def test_phase_history(self, store, sample_item):
        session = store.create(sample_item)

        for phase in (WorkflowPhase.DETECTION, WorkflowPhase.ANALYSIS, WorkflowPhase.ANALYSIS):
            assert store.update_phase(session.id, phase) is True

        assert session.current_phase == WorkflowPhase.ANALYSIS
        assert session.completed_phases == [WorkflowPhase.DETECTION, WorkflowPhase.ANALYSIS]

    def test_phase_unknown_session(self, store):
        assert store.update_phase("missing", WorkflowPhase.ANALYSIS) is False

    @pytest.mark.asyncio
    async def test_context_merge_is_additive(self, store, sample_item, sample_analysis, actionable_decision, clock):
        session = store.create(sample_item)
        store.update_context(session.id, {"analysis": sample_analysis})
        clock.advance(5)
        store.update_context(session.id, {"decision": actionable_decision, "analysis": None})

        assert session.context.analysis == sample_analysis
        assert session.context.decision == actionable_decision
        assert session.context.updated_at == clock.now
        assert session.context.created_at < session.context.updated_at

    @pytest.mark.asyncio
    async def test_unknown_keys_go_to_extras(self, store, sample_item):
        session = store.create(sample_item)

        store.update_context(session.id, {"reviewer": "alice", "session_id": "hijacked"})

        assert session.context.extras == {"reviewer": "alice"}
        assert session.context.session_id == session.id

    def test_context_unknown_session(self, store):
        assert store.update_context("missing", {"a": 1}) is False


class TestClose:
    """Tests for SessionStore.close."""

    @pytest.mark.asyncio
    async def test_close_defaults_to_completed(self, store, bus, sample_item):
        closed = []
        bus.subscribe("session.closed", lambda _, session: closed.append(session))
        session = store.create(sample_item)
        store.update_status(session.id, SessionStatus.RUNNING)

        assert store.close(session.id) is True

        assert session.status == SessionStatus.COMPLETED
        assert store.get(session.id) is session
        assert closed == [session]

    @pytest.mark.asyncio
    async def test_close_with_failed(self, store, sample_item):
        session = store.create(sample_item)
        assert store.close(session.id, SessionStatus.FAILED) is True
        assert session.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_close_rejects_non_terminal_status(self, store, sample_item):
        session = store.create(sample_item)
        with pytest.raises(ValueError, match="terminal"):
            store.close(session.id, SessionStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_close_after_timeout_keeps_timeout(self, store, sample_item):
        session = store.create(sample_item)
        store.update_status(session.id, SessionStatus.TIMEOUT)

        assert store.close(session.id) is False
        assert session.status == SessionStatus.TIMEOUT


class TestTimeout:
    """Tests for the per-session timer."""

    @pytest.mark.asyncio
    async def test_timer_moves_running_session_to_timeout(self, bus, sample_item):
        timeouts = []
        bus.subscribe("session.timeout", lambda _, session: timeouts.append(session))
        store = SessionStore(default_timeout=0.02, events=bus)
        session = store.create(sample_item)
        store.update_status(session.id, SessionStatus.RUNNING)
        store.update_phase(session.id, WorkflowPhase.IMPLEMENTATION)

        await asyncio.sleep(0.1)

        assert session.status == SessionStatus.TIMEOUT
        assert session.completed_at is not None
        assert session.error.code == "SESSION_TIMEOUT"
        assert session.error.message == "Session timed out"
        assert session.error.retryable is False
        assert session.error.phase == WorkflowPhase.IMPLEMENTATION
        assert timeouts == [session]

    @pytest.mark.asyncio
    async def test_timer_can_fire_before_running(self, sample_item):
        store = SessionStore(default_timeout=0.02)
        session = store.create(sample_item)

        await asyncio.sleep(0.1)

        assert session.status == SessionStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_per_session_timeout_override(self, sample_item):
        store = SessionStore(default_timeout=3600)
        session = store.create(sample_item, timeout=0.02)

        await asyncio.sleep(0.1)

        assert session.status == SessionStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_closed_session_does_not_time_out(self, bus, sample_item):
        timeouts = []
        bus.subscribe("session.timeout", lambda _, session: timeouts.append(session))
        store = SessionStore(default_timeout=0.02, events=bus)
        session = store.create(sample_item)
        store.close(session.id)

        await asyncio.sleep(0.1)

        assert session.status == SessionStatus.COMPLETED
        assert timeouts == []

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self, sample_item):
        store = SessionStore(default_timeout=0.02)
        session = store.create(sample_item)

        store.shutdown()
        await asyncio.sleep(0.1)

        assert session.status == SessionStatus.CREATED


class TestCleanup:
    """Tests for the retention sweep."""

    @pytest.mark.asyncio
    async def test_removes_old_finished_sessions(self, store, bus, sample_item, clock):
        cleaned = []
        bus.subscribe("session.cleaned", lambda _, ids: cleaned.extend(ids))
        completed = store.create(sample_item)
        failed = store.create(sample_item)
        store.close(completed.id)
        store.close(failed.id, SessionStatus.FAILED)

        clock.advance(101)

        assert store.cleanup(max_age=100) == 2
        assert store.get(completed.id) is None
        assert store.get(failed.id) is None
        assert sorted(cleaned) == sorted([completed.id, failed.id])

    @pytest.mark.asyncio
    async def test_keeps_recent_sessions(self, store, sample_item, clock):
        session = store.create(sample_item)
        store.close(session.id)

        clock.advance(100)

        assert store.cleanup(max_age=100) == 0
        assert session.id in store

    @pytest.mark.asyncio
    async def test_never_removes_active_or_timed_out_sessions(self, store, sample_item, clock):
        active = store.create(sample_item)
        store.update_status(active.id, SessionStatus.RUNNING)
        timed_out = store.create(sample_item)
        store.update_status(timed_out.id, SessionStatus.TIMEOUT)

        clock.advance(10_000)

        assert store.cleanup(max_age=1) == 0
        assert active.id in store
        assert timed_out.id in store


class TestQueries:
    """Tests for query helpers."""

    @pytest.mark.asyncio
    async def test_stats_and_active_sessions(self, store, sample_item):
        running = store.create(sample_item)
        store.update_status(running.id, SessionStatus.RUNNING)
        created = store.create(sample_item)
        done = store.create(sample_item)
        store.close(done.id)
        failed = store.create(sample_item)
        store.close(failed.id, SessionStatus.FAILED)
        timed_out = store.create(sample_item)
        store.update_status(timed_out.id, SessionStatus.TIMEOUT)

        assert {s.id for s in store.active_sessions()} == {running.id, created.id}
        assert store.stats() == {"total": 5, "active": 2, "completed": 1, "failed": 1, "timeout": 1}
        assert store.count_by_status()[SessionStatus.RUNNING] == 1

    @pytest.mark.asyncio
    async def test_sessions_for_item_oldest_first(self, store, sample_item, clock):
        first = store.create(sample_item)
        clock.advance(1)
        second = store.create(sample_item)

        assert store.sessions_for_item(sample_item.id) == [first, second]
        assert store.sessions_for_item("other") == []
