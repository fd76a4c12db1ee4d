"""Notion item tracker implementation using direct REST API calls."""

from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from fixflow.enums import ItemPriority, ItemStatus
from fixflow.exceptions import TrackerError
from fixflow.models.domain import ItemMetadata, WorkItem
from fixflow.providers.base import ItemHandler, ItemTracker
from fixflow.utils.retry import async_retry

log = structlog.get_logger(__name__)

REPORTER_PROPERTY = "Reporter"
PRIORITY_PROPERTY = "Priority"
SCREENSHOTS_PROPERTY = "Screenshots"


class NotionItemTracker(ItemTracker):
    """Notion database as the QA item tracker.

    Items are pages of one database. The status lives in a select property
    whose options match ``ItemStatus`` values; the description is the text
    of the page's paragraph blocks. Notion has no push API usable here, so
    ``subscribe`` is a logged no-op and intake relies on polling.
    """

    def __init__(
        self,
        token: str,
        database_id: str,
        base_url: str = "https://api.notion.com/v1",
        notion_version: str = "2022-06-28",
        status_property: str = "Status",
        title_property: str = "Title",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Notion tracker.

        Args:
            token: Notion integration token
            database_id: QA database identifier
            base_url: Notion API base URL
            notion_version: Value of the Notion-Version header
            status_property: Name of the status select property
            title_property: Name of the title property
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.token = token.strip() if token else token
        self.database_id = database_id
        self.base_url = base_url.rstrip("/")
        self.notion_version = notion_version
        self.status_property = status_property
        self.title_property = title_property
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Create the HTTP client and verify access to the database."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Notion-Version": self.notion_version,
                "Content-Type": "application/json",
            },
        )
        await self._request("GET", f"/databases/{self.database_id}")
        log.info("notion_connected", database_id=self.database_id)

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            log.info("notion_disconnected")

    async def __aenter__(self) -> "NotionItemTracker":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.disconnect()

    @async_retry(max_attempts=3)
    async def query_items(self, status: ItemStatus = ItemStatus.NOT_STARTED) -> list[WorkItem]:
        """Query database pages with the given status, oldest first."""
        log.info("notion_query", status=status.value)

        body: dict[str, Any] = {
            "filter": {"property": self.status_property, "select": {"equals": status.value}},
            "sorts": [{"timestamp": "created_time", "direction": "ascending"}],
        }
        pages: list[dict[str, Any]] = []
        while True:
            data = await self._request("POST", f"/databases/{self.database_id}/query", json=body)
            pages.extend(data.get("results", []))
            if not data.get("has_more"):
                break
            body["start_cursor"] = data.get("next_cursor")

        items = []
        for page in pages:
            try:
                items.append(await self._parse_page(page))
            except TrackerError as e:
                log.warning("notion_page_skipped", page_id=page.get("id"), error=e.message)
        return items

    @async_retry(max_attempts=3)
    async def get_item(self, item_id: str) -> WorkItem | None:
        """Fetch one page; returns None for a 404."""
        try:
            page = await self._request("GET", f"/pages/{item_id}")
        except TrackerError as e:
            if e.status_code == 404:
                return None
            raise
        if page.get("archived"):
            return None
        return await self._parse_page(page)

    @async_retry(max_attempts=3)
    async def update_status(self, item_id: str, status: ItemStatus) -> None:
        """Set the status select property."""
        await self._request(
            "PATCH",
            f"/pages/{item_id}",
            json={"properties": {self.status_property: {"select": {"name": status.value}}}},
        )
        log.info("notion_status_updated", item_id=item_id, status=status.value)

    @async_retry(max_attempts=3)
    async def add_comment(self, item_id: str, text: str) -> None:
        """Append the comment to the page as a paragraph block."""
        await self._request(
            "PATCH",
            f"/blocks/{item_id}/children",
            json={
                "children": [
                    {
                        "object": "block",
                        "type": "paragraph",
                        "paragraph": {"rich_text": [{"type": "text", "text": {"content": text[:2000]}}]},
                    }
                ]
            },
        )
        log.debug("notion_comment_added", item_id=item_id)

    @async_retry(max_attempts=3)
    async def update_properties(self, item_id: str, properties: dict[str, Any]) -> None:
        """Update page properties.

        Plain string values are sent as URL properties when they look like
        URLs and as rich text otherwise; dict values are sent unchanged.
        """
        payload = {name: self._property_value(value) for name, value in properties.items()}
        await self._request("PATCH", f"/pages/{item_id}", json={"properties": payload})
        log.debug("notion_properties_updated", item_id=item_id, properties=list(properties))

    async def subscribe(self, handler: ItemHandler) -> None:
        log.warning(
            "notion_subscription_unsupported",
            database_id=self.database_id,
            message="Notion has no push API, relying on polling",
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if self._client is None:
            raise TrackerError("Notion tracker is not connected")

        response = await self._client.request(method, path, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = response.text
            try:
                detail = response.json().get("message", detail)
            except ValueError:
                pass
            log.error(
                "notion_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error=detail,
            )
            raise TrackerError(
                f"Notion {method} {path} failed: {detail}",
                status_code=response.status_code,
                response_text=response.text,
            ) from e
        return response.json()

    async def _parse_page(self, page: dict[str, Any]) -> WorkItem:
        properties = page.get("properties", {})

        title_parts = properties.get(self.title_property, {}).get("title", [])
        title = "".join(part.get("plain_text", "") for part in title_parts) or "Untitled"

        status_option = (properties.get(self.status_property, {}).get("select") or {}).get("name")
        try:
            status = ItemStatus(status_option) if status_option else ItemStatus.NOT_STARTED
        except ValueError as e:
            raise TrackerError(f"Unknown status {status_option!r} on page {page.get('id')}") from e

        priority_option = (properties.get(PRIORITY_PROPERTY, {}).get("select") or {}).get("name")
        priority = None
        if priority_option:
            try:
                priority = ItemPriority(priority_option.lower())
            except ValueError:
                log.debug("notion_unknown_priority", page_id=page.get("id"), priority=priority_option)

        people = properties.get(REPORTER_PROPERTY, {}).get("people", [])
        reporter = people[0].get("name", "Unknown") if people else "Unknown"

        description, block_images = await self._page_content(page["id"])
        images = self._file_urls(properties.get(SCREENSHOTS_PROPERTY, {}).get("files", []))

        return WorkItem(
            id=page["id"],
            url=page.get("url", ""),
            title=title,
            description=description,
            status=status,
            priority=priority,
            images=tuple(images + block_images),
            metadata=ItemMetadata(
                reporter=reporter,
                created_at=_parse_timestamp(page.get("created_time")),
                updated_at=_parse_timestamp(page.get("last_edited_time")),
                database_id=self.database_id,
            ),
        )

    async def _page_content(self, page_id: str) -> tuple[str, list[str]]:
        """Text of paragraph blocks and URLs of image blocks.

        Missing content is not fatal: the item is still returned with an
        empty description.
        """
        try:
            data = await self._request("GET", f"/blocks/{page_id}/children", params={"page_size": 100})
        except TrackerError as e:
            log.warning("notion_page_content_failed", page_id=page_id, error=e.message)
            return "", []

        paragraphs: list[str] = []
        images: list[str] = []
        for block in data.get("results", []):
            block_type = block.get("type")
            if block_type == "paragraph":
                text = "".join(rt.get("plain_text", "") for rt in block["paragraph"].get("rich_text", []))
                if text:
                    paragraphs.append(text)
            elif block_type == "image":
                images.extend(self._file_urls([block["image"]]))
        return "\n\n".join(paragraphs), images

    @staticmethod
    def _file_urls(files: list[dict[str, Any]]) -> list[str]:
        urls = []
        for entry in files:
            source = entry.get("file") or entry.get("external") or {}
            if source.get("url"):
                urls.append(source["url"])
        return urls

    @staticmethod
    def _property_value(value: Any) -> Any:
        if isinstance(value, dict):
            return value
        text = str(value)
        if text.startswith(("http://", "https://", "file://")):
            return {"url": text}
        return {"rich_text": [{"type": "text", "text": {"content": text}}]}


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, UTC)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
