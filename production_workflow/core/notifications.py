"""
Notification sinks.

Notifications are fire-and-forget: ``notify`` never raises for delivery
failures, it logs them and returns False.
"""

import logging
from typing import Optional, Protocol

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "#production"


class Notifier(Protocol):
    async def notify(self, channel: str, message: str) -> bool:
        """Send ``message`` to ``channel``. Returns True when delivered."""
        ...


class LoggingNotifier:
    """Writes notifications to the application log. Used when no webhook is set."""

    async def notify(self, channel: str, message: str) -> bool:
        logger.info("Notification for %s: %s", channel, message)
        return True


class SlackWebhookNotifier:
    """
    Posts notifications to a Slack incoming webhook.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def notify(self, channel: str, message: str) -> bool:
        payload = {"channel": channel, "text": message}
        try:
            response = await self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Failed to deliver notification to {channel}: {e}")
            return False


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """Create and cache the notifier for the current settings."""
    global _notifier
    if _notifier is None:
        settings = get_settings()
        if settings.slack_webhook_url:
            _notifier = SlackWebhookNotifier(
                settings.slack_webhook_url,
                timeout=settings.notification_timeout_seconds,
            )
        else:
            _notifier = LoggingNotifier()
    return _notifier
