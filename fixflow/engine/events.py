"""In-process event bus.

The bus is created once by the caller and passed explicitly to the
Session Store, the Step Runner and the Workflow Orchestrator. Events are
advisory: a failing listener is logged and never affects the emitter.

Event names used by the engine:
    session.created, session.updated, session.phase, session.context,
    session.closed, session.timeout, session.cleaned,
    step.progress, step.completed, step.failed,
    workflow.completed, workflow.not_actionable, workflow.failed,
    orchestrator.started, orchestrator.stopped
"""

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)

Listener = Callable[[str, Any], None]

WILDCARD = "*"


class EventBus:
    """Synchronous publish/subscribe dispatcher.

    Listeners are called in subscription order with ``(event, payload)``.
    Subscribing to ``"*"`` receives every event.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> None:
        """Register a listener for an event name (or ``"*"``)."""
        self._listeners[event].append(listener)

    def unsubscribe(self, event: str, listener: Listener) -> bool:
        """Remove a listener.

        Returns:
            True if the listener was registered
        """
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def emit(self, event: str, payload: Any = None) -> None:
        """Deliver an event to its listeners and to wildcard listeners."""
        listeners = [*self._listeners.get(event, []), *self._listeners.get(WILDCARD, [])]
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception as e:
                log.warning("event_listener_failed", event_name=event, error=str(e))

    def listener_count(self, event: str | None = None) -> int:
        """Number of listeners for one event, or for all events."""
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())
