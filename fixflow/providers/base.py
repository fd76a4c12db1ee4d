"""
Abstract base classes for providers.

This module defines the collaborator interfaces the orchestration engine
depends on: the item tracker holding QA reports and the notification
channel used to tell the team what happened.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from fixflow.enums import ItemStatus
from fixflow.models.analysis import PublishedChange
from fixflow.models.domain import WorkItem

ItemHandler = Callable[[WorkItem], Awaitable[None]]


class ItemTracker(ABC):
    """Abstract base class for item tracker implementations.

    The tracker owns work items; the engine only reads snapshots and
    requests status changes. All methods are async to support non-blocking
    I/O with HTTP clients.
    """

    async def connect(self) -> None:
        """Open connections. The default implementation does nothing."""

    async def disconnect(self) -> None:
        """Close connections. The default implementation does nothing."""

    @abstractmethod
    async def query_items(self, status: ItemStatus = ItemStatus.NOT_STARTED) -> list[WorkItem]:
        """Retrieve items with the given status.

        Args:
            status: Status filter; "Not Started" is the intake query.

        Returns:
            Item snapshots, oldest first where the tracker supports ordering.

        Raises:
            TrackerError: If the tracker request fails.
        """
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> WorkItem | None:
        """Retrieve a fresh snapshot of one item.

        Returns:
            The item, or None if it does not exist.

        Raises:
            TrackerError: If the tracker request fails.
        """
        pass

    @abstractmethod
    async def update_status(self, item_id: str, status: ItemStatus) -> None:
        """Set an item's status.

        Must be idempotent: setting the current status again is a no-op
        from the caller's point of view.

        Raises:
            TrackerError: If the item does not exist or the request fails.
        """
        pass

    @abstractmethod
    async def add_comment(self, item_id: str, text: str) -> None:
        """Attach a comment to an item.

        Raises:
            TrackerError: If the item does not exist or the request fails.
        """
        pass

    @abstractmethod
    async def update_properties(self, item_id: str, properties: dict[str, Any]) -> None:
        """Update arbitrary item properties (for example a change URL).

        Raises:
            TrackerError: If the item does not exist or the request fails.
        """
        pass

    async def subscribe(self, handler: ItemHandler) -> None:
        """Register a handler invoked when an item becomes "Not Started".

        Push delivery is best effort. Trackers without push support keep
        this default no-op and rely on polling.
        """

    async def unsubscribe(self, handler: ItemHandler) -> None:
        """Remove a handler registered with ``subscribe``."""


class Notifier(ABC):
    """Abstract base class for notification channels.

    Implementations should not raise; the orchestrator additionally
    catches and logs anything that escapes so that a notification problem
    never changes a pipeline's outcome.
    """

    @abstractmethod
    async def notify_start(self, item: WorkItem, session_id: str) -> None:
        """Announce that processing of an item started."""
        pass

    @abstractmethod
    async def notify_success(self, item: WorkItem, published: PublishedChange, session_id: str) -> None:
        """Announce that a change set was produced and published."""
        pass

    @abstractmethod
    async def notify_not_actionable(self, item: WorkItem, reason: str, session_id: str) -> None:
        """Announce that an item was handed back to a human."""
        pass

    @abstractmethod
    async def notify_failure(self, item: WorkItem, error: str, session_id: str) -> None:
        """Announce that processing failed, with the original error message."""
        pass
