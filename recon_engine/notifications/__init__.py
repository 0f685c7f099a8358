"""Notifications for scheduled import runs."""

from .notifier import LoggingNotifier, Notifier, WebhookNotifier, build_notifier

__all__ = ["Notifier", "LoggingNotifier", "WebhookNotifier", "build_notifier"]
