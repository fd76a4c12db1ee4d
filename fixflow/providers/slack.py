"""Slack notification channel using the Web API (chat.postMessage)."""

from typing import Any

import httpx
import structlog

from fixflow.exceptions import NotificationError
from fixflow.models.analysis import PublishedChange
from fixflow.models.domain import WorkItem
from fixflow.providers.base import Notifier

log = structlog.get_logger(__name__)


class SlackNotifier(Notifier):
    """Post workflow notifications to a Slack channel.

    Notifications are disabled when no bot token is configured. Delivery
    errors are logged and never raised.
    """

    def __init__(
        self,
        token: str | None,
        channel: str = "#qa-automation",
        base_url: str = "https://slack.com/api",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Slack notifier.

        Args:
            token: Bot token; None disables notifications
            channel: Channel receiving the messages
            base_url: Slack Web API base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.channel = channel
        self.enabled = bool(token)
        self._client: httpx.AsyncClient | None = None

        if self.enabled:
            self._client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                timeout=timeout,
                transport=transport,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json; charset=utf-8"},
            )
        else:
            log.warning("slack_disabled", reason="bot token not set")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def notify_start(self, item: WorkItem, session_id: str) -> None:
        await self.send(
            f"Starting QA: {item.title}",
            f"*QA Processing Started*\n\n*QA:* {_link(item)}\n*Status:* In Progress\n"
            f"*Reporter:* {item.metadata.reporter}",
            kind="start",
        )

    async def notify_success(self, item: WorkItem, published: PublishedChange, session_id: str) -> None:
        buttons = [_button("Review change", published.url, primary=True)]
        if item.url:
            buttons.append(_button("View QA", item.url))
        await self.send(
            f"QA completed: {item.title}",
            f"*QA Completed Successfully*\n\n*QA:* {_link(item)}\n*Change:* <{published.url}|{published.reference}>\n"
            f"*Branch:* `{published.branch}`\n*Files Changed:* {published.files_changed} files",
            buttons=buttons,
            kind="success",
        )

    async def notify_not_actionable(self, item: WorkItem, reason: str, session_id: str) -> None:
        await self.send(
            f"QA not actionable: {item.title}",
            f"*QA Not Actionable*\n\n*QA:* {_link(item)}\n*Reason:* {reason}\n\n_This QA requires manual review._",
            buttons=[_button("View QA", item.url)] if item.url else None,
            kind="not_actionable",
        )

    async def notify_failure(self, item: WorkItem, error: str, session_id: str) -> None:
        await self.send(
            f"QA processing failed: {item.title}",
            f"*QA Processing Failed*\n\n*QA:* {_link(item)}\n*Error:* {error}\n*Session:* `{session_id}`",
            buttons=[_button("View QA", item.url)] if item.url else None,
            kind="failure",
        )

    async def send(
        self,
        text: str,
        markdown: str | None = None,
        buttons: list[dict[str, Any]] | None = None,
        kind: str = "message",
    ) -> bool:
        """Post a message.

        Args:
            text: Plain-text fallback
            markdown: Optional mrkdwn section text
            buttons: Optional action buttons
            kind: Notification kind, for logging

        Returns:
            True if Slack accepted the message
        """
        if self._client is None:
            return False

        payload: dict[str, Any] = {"channel": self.channel, "text": text}
        blocks: list[dict[str, Any]] = []
        if markdown:
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": markdown}})
        if buttons:
            blocks.append({"type": "actions", "elements": buttons})
        if blocks:
            payload["blocks"] = blocks

        try:
            await self._post(payload)
        except (NotificationError, httpx.HTTPError, ValueError) as e:
            log.error("slack_notification_failed", kind=kind, error=str(e))
            return False

        log.debug("slack_notification_sent", kind=kind, channel=self.channel)
        return True

    async def _post(self, payload: dict[str, Any]) -> None:
        response = await self._client.post("/chat.postMessage", json=payload)
        if response.status_code >= 400:
            raise NotificationError(
                "Slack request failed",
                status_code=response.status_code,
                response_text=response.text,
            )
        data = response.json()
        if not data.get("ok", False):
            raise NotificationError(f"Slack API error: {data.get('error', 'unknown')}")


def _link(item: WorkItem) -> str:
    return f"<{item.url}|{item.title}>" if item.url else item.title


def _button(label: str, url: str, primary: bool = False) -> dict[str, Any]:
    button: dict[str, Any] = {"type": "button", "text": {"type": "plain_text", "text": label}, "url": url}
    if primary:
        button["style"] = "primary"
    return button
