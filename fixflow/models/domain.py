"""
Domain models for work items read from the item tracker.

These models are the normalized internal representation of a QA report,
converted from the tracker's native page format. The engine only ever
reads them; the tracker owns their lifecycle.

Example:
    Creating a work item for a local run::

        item = WorkItem(
            id="qa-101",
            url="https://tracker.example.com/qa-101",
            title="Login button unresponsive",
            description="Clicking login on Safari does nothing",
            status=ItemStatus.NOT_STARTED,
            priority=ItemPriority.HIGH,
            metadata=ItemMetadata(reporter="jdoe"),
        )
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from fixflow.enums import ItemPriority, ItemStatus


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ItemMetadata:
    """Reporter and bookkeeping data attached to a work item."""

    reporter: str = "Unknown"
    """Display name of the person who filed the report."""

    created_at: datetime = field(default_factory=_utcnow)
    """Timestamp when the report was filed."""

    updated_at: datetime = field(default_factory=_utcnow)
    """Timestamp of the most recent edit in the tracker."""

    database_id: str = ""
    """Identifier of the tracker database the item lives in."""


@dataclass(frozen=True)
class WorkItem:
    """Immutable snapshot of a QA report.

    A new snapshot is produced whenever the tracker is queried; holding an
    old snapshot never reflects later status changes.
    """

    id: str
    """Tracker-assigned identifier, stable for the item's lifetime."""

    title: str
    """One-line summary of the report."""

    description: str = ""
    """Full report text, possibly multi-paragraph."""

    status: ItemStatus = ItemStatus.NOT_STARTED
    """Current tracker status at snapshot time."""

    url: str = ""
    """Human-facing link to the report in the tracker UI."""

    priority: ItemPriority | None = None
    """Reported priority, if the reporter set one."""

    images: tuple[str, ...] = ()
    """Attached screenshots, as URLs or base64 data."""

    metadata: ItemMetadata = field(default_factory=ItemMetadata)
    """Reporter and timestamp information."""

    @property
    def has_images(self) -> bool:
        """Check whether the report has attached images."""
        return len(self.images) > 0

    def with_status(self, status: ItemStatus) -> "WorkItem":
        """Return a copy of this snapshot with a different status."""
        return replace(self, status=status)
