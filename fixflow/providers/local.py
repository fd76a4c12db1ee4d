"""In-process tracker and log-only notifier.

``InMemoryItemTracker`` keeps work items in a dictionary and supports push
subscription, which makes it suitable for local runs (items loaded from a
YAML or JSON file) and for tests. ``LogNotifier`` writes notifications to
the structured log instead of a chat channel.
"""

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from fixflow.enums import ItemPriority, ItemStatus
from fixflow.exceptions import ConfigurationError, TrackerError
from fixflow.models.analysis import PublishedChange
from fixflow.models.domain import ItemMetadata, WorkItem
from fixflow.providers.base import ItemHandler, ItemTracker, Notifier

log = structlog.get_logger(__name__)


def load_items(path: str | Path) -> list[WorkItem]:
    """Load work items from a YAML file.

    The file holds a list of mappings with the keys ``id``, ``title`` and
    optionally ``description``, ``status``, ``priority``, ``url``,
    ``images`` and ``reporter``.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    items_file = Path(path)
    if not items_file.exists():
        raise ConfigurationError(f"Items file not found: {path}")

    try:
        entries = yaml.safe_load(items_file.read_text()) or []
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}") from e
    if not isinstance(entries, list):
        raise ConfigurationError("Items file must contain a list of items")

    items = []
    for entry in entries:
        try:
            items.append(
                WorkItem(
                    id=str(entry["id"]),
                    title=entry["title"],
                    description=entry.get("description", ""),
                    status=ItemStatus(entry.get("status", ItemStatus.NOT_STARTED.value)),
                    url=entry.get("url", ""),
                    priority=ItemPriority(entry["priority"]) if entry.get("priority") else None,
                    images=tuple(entry.get("images", ())),
                    metadata=ItemMetadata(reporter=entry.get("reporter", "Unknown")),
                )
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid item entry in {path}: {e}") from e
    return items


class InMemoryItemTracker(ItemTracker):
    """Item tracker backed by a dictionary.

    Handlers registered with ``subscribe`` are awaited whenever an item is
    added with, or moved back to, the "Not Started" status.
    """

    def __init__(self, items: Iterable[WorkItem] = ()) -> None:
        self._items: dict[str, WorkItem] = {item.id: item for item in items}
        self._comments: dict[str, list[str]] = {}
        self._properties: dict[str, dict[str, Any]] = {}
        self._handlers: list[ItemHandler] = []
        self.status_history: list[tuple[str, ItemStatus]] = []

    async def add_item(self, item: WorkItem) -> None:
        """Add or replace an item and publish it if it is ready for intake."""
        self._items[item.id] = item
        log.debug("tracker_item_added", item_id=item.id, status=item.status.value)
        if item.status == ItemStatus.NOT_STARTED:
            await self._publish(item)

    async def query_items(self, status: ItemStatus = ItemStatus.NOT_STARTED) -> list[WorkItem]:
        items = [item for item in self._items.values() if item.status == status]
        return sorted(items, key=lambda item: item.metadata.created_at)

    async def get_item(self, item_id: str) -> WorkItem | None:
        return self._items.get(item_id)

    async def update_status(self, item_id: str, status: ItemStatus) -> None:
        item = self._require(item_id)
        self._items[item_id] = item.with_status(status)
        self.status_history.append((item_id, status))
        log.info("tracker_status_updated", item_id=item_id, status=status.value)

        if status == ItemStatus.NOT_STARTED and item.status != ItemStatus.NOT_STARTED:
            await self._publish(self._items[item_id])

    async def add_comment(self, item_id: str, text: str) -> None:
        self._require(item_id)
        self._comments.setdefault(item_id, []).append(text)
        log.debug("tracker_comment_added", item_id=item_id, length=len(text))

    async def update_properties(self, item_id: str, properties: dict[str, Any]) -> None:
        self._require(item_id)
        self._properties.setdefault(item_id, {}).update(properties)

    async def subscribe(self, handler: ItemHandler) -> None:
        self._handlers.append(handler)

    async def unsubscribe(self, handler: ItemHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def comments(self, item_id: str) -> list[str]:
        """Comments attached to an item, oldest first."""
        return list(self._comments.get(item_id, []))

    def properties(self, item_id: str) -> dict[str, Any]:
        """Properties set through ``update_properties``."""
        return dict(self._properties.get(item_id, {}))

    def _require(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise TrackerError(f"Item not found: {item_id}", status_code=404)
        return item

    async def _publish(self, item: WorkItem) -> None:
        for handler in list(self._handlers):
            try:
                await handler(item)
            except Exception as e:
                log.warning("tracker_handler_failed", item_id=item.id, error=str(e))


class LogNotifier(Notifier):
    """Notifier that writes every notification to the log."""

    async def notify_start(self, item: WorkItem, session_id: str) -> None:
        log.info("notify_start", item_id=item.id, title=item.title, session_id=session_id)

    async def notify_success(self, item: WorkItem, published: PublishedChange, session_id: str) -> None:
        log.info(
            "notify_success",
            item_id=item.id,
            session_id=session_id,
            reference=published.reference,
            url=published.url,
            files_changed=published.files_changed,
        )

    async def notify_not_actionable(self, item: WorkItem, reason: str, session_id: str) -> None:
        log.info("notify_not_actionable", item_id=item.id, session_id=session_id, reason=reason)

    async def notify_failure(self, item: WorkItem, error: str, session_id: str) -> None:
        log.warning("notify_failure", item_id=item.id, session_id=session_id, error=error)
