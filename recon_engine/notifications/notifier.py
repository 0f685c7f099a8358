"""
Notifications for scheduled import runs.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import requests

from ..models import ImportRunSummary

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivers a run summary to a schedule's notification list."""

    @abstractmethod
    def send(self, recipients: List[str], summary: ImportRunSummary) -> bool:
        """Returns True when the notification was delivered."""
        pass


class LoggingNotifier(Notifier):
    """Writes run summaries to the log instead of delivering them."""

    def send(self, recipients: List[str], summary: ImportRunSummary) -> bool:
        outcome = "succeeded" if summary.success else "failed"
        logger.info(
            f"Scheduled import '{summary.config_name}' {outcome} "
            f"(created={summary.created}, updated={summary.updated}, failed={summary.failed}); "
            f"notifying {', '.join(recipients)}"
        )
        return True


class WebhookNotifier(Notifier):
    """Posts run summaries as JSON to a webhook that handles delivery."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, recipients: List[str], summary: ImportRunSummary) -> bool:
        payload = {"recipients": recipients, "summary": summary.model_dump(mode="json")}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to deliver notification for {summary.config_name}: {e}")
            return False

        logger.info(f"Notification for {summary.config_name} sent to {len(recipients)} recipients")
        return True


def build_notifier(webhook_url: Optional[str] = None) -> Notifier:
    """Webhook delivery when a URL is configured, log-only otherwise."""
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LoggingNotifier()
