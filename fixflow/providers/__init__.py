"""Collaborator implementations: item trackers, notifiers and the chat client."""

from fixflow.providers.base import ItemHandler, ItemTracker, Notifier

__all__ = ["ItemHandler", "ItemTracker", "Notifier"]
