"""Factory for creating tracker, notifier and chat client instances based on configuration."""

from collections.abc import Iterable

import structlog

from fixflow.config.settings import FixflowSettings
from fixflow.exceptions import ConfigurationError
from fixflow.models.domain import WorkItem
from fixflow.providers.base import ItemTracker, Notifier
from fixflow.providers.llm import ChatClient
from fixflow.providers.local import InMemoryItemTracker, LogNotifier
from fixflow.providers.notion import NotionItemTracker
from fixflow.providers.slack import SlackNotifier

log = structlog.get_logger(__name__)


def create_tracker(settings: FixflowSettings, items: Iterable[WorkItem] = ()) -> ItemTracker:
    """Create the item tracker selected by configuration.

    Args:
        settings: Settings containing the tracker section
        items: Initial items for the in-memory tracker

    Returns:
        ItemTracker instance (in-memory or Notion)

    Raises:
        ConfigurationError: If the tracker type is not supported

    Example:
        >>> settings = FixflowSettings.from_yaml("fixflow.yaml")
        >>> tracker = create_tracker(settings)
        >>> await tracker.connect()
        >>> items = await tracker.query_items()
    """
    config = settings.tracker

    if config.provider_type == "memory":
        log.info("creating_memory_tracker")
        return InMemoryItemTracker(items)

    elif config.provider_type == "notion":
        log.info("creating_notion_tracker", database_id=config.database_id)
        return NotionItemTracker(
            token=config.api_token.get_secret_value(),
            database_id=config.database_id,
            base_url=config.base_url,
            notion_version=config.notion_version,
            status_property=config.status_property,
            title_property=config.title_property,
            timeout=config.request_timeout,
        )

    else:
        raise ConfigurationError(
            f"Unsupported tracker type: {config.provider_type}. Supported types: memory, notion"
        )


def create_notifier(settings: FixflowSettings) -> Notifier:
    """Create the notification channel selected by configuration.

    A Slack notifier without a token is created disabled rather than
    rejected.
    """
    config = settings.notifier

    if config.provider_type == "log":
        return LogNotifier()

    elif config.provider_type == "slack":
        log.info("creating_slack_notifier", channel=config.channel)
        return SlackNotifier(
            token=config.bot_token.get_secret_value() if config.bot_token else None,
            channel=config.channel,
            base_url=config.base_url,
            timeout=config.request_timeout,
        )

    else:
        raise ConfigurationError(
            f"Unsupported notifier type: {config.provider_type}. Supported types: log, slack"
        )


def create_chat_client(settings: FixflowSettings) -> ChatClient:
    """Create the chat client used by the model-backed strategies."""
    config = settings.agent
    log.info("creating_chat_client", base_url=config.base_url, model=config.model)
    return ChatClient(
        base_url=config.base_url,
        model=config.model,
        api_key=config.api_key.get_secret_value() if config.api_key else None,
        timeout=config.request_timeout,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )
