"""
Notification Dispatcher

Outbound alert when a driver run ends in a state that needs a human.

Delivery is a single Slack-compatible webhook POST:

    {"text": "🚨 *CC-Forge [HALT]*\\n<message>"}

IMPORTANT:
- Only HALT-severity messages are sent; lower severities are dropped
- Disabled (silent no-op) when FORGE_SLACK_WEBHOOK is unset
- Transport failures are logged at warning level and swallowed; a
  notification can never change a run's exit code
"""

import logging
import os
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger("notifier")

# Configuration
WEBHOOK_ENV = "FORGE_SLACK_WEBHOOK"
WEBHOOK_TIMEOUT = 10.0  # seconds


class NotificationSeverity(str, Enum):
    """Finding grades; only HALT is delivered."""
    INFO = "INFO"
    WARN = "WARN"
    HALT = "HALT"


class NotificationDispatcher:
    """
    Sends HALT alerts to a webhook.

    `transport` lets tests substitute an httpx.MockTransport.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = WEBHOOK_TIMEOUT,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv(WEBHOOK_ENV, "")
        self._transport = transport
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url and self.webhook_url.strip())

    def notify_critical(
        self,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.HALT,
    ) -> bool:
        """
        Send `message` if it is HALT-grade and a webhook is configured.

        Returns:
            True if the webhook accepted the message, False otherwise
        """
        if self._normalise(severity) != NotificationSeverity.HALT:
            return False
        if not self.enabled:
            logger.debug("Webhook not configured, notification skipped")
            return False

        payload = {"text": f"🚨 *CC-Forge [{NotificationSeverity.HALT.value}]*\n{message}"}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Webhook rejected notification: HTTP {e.response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Webhook notification failed: {e}")
            return False

        logger.info("Critical notification sent")
        return True

    @staticmethod
    def _normalise(severity) -> Optional[NotificationSeverity]:
        """Map a severity name onto a grade; "fatal" is an alias for HALT."""
        name = str(getattr(severity, "value", severity)).strip().upper()
        if name == "FATAL":
            return NotificationSeverity.HALT
        try:
            return NotificationSeverity(name)
        except ValueError:
            logger.debug(f"Unknown notification severity '{severity}', dropped")
            return None
