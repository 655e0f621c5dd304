"""
Alert Notifiers

Delivery of ERROR and FATAL log entries to people.

- WebhookAlertNotifier: POSTs a JSON payload (Slack-compatible "text" field)
- ConsoleAlertNotifier: Writes an ALERT line, used in production when no
  webhook is configured

Notifiers may raise; the structured logger catches and logs every failure.
"""

import logging

import httpx

from offmarket.core.logger import AlertNotifier, LogEntry

logger = logging.getLogger(__name__)


class WebhookAlertNotifier(AlertNotifier):
    """
    Sends alerts to a webhook URL.

    Args:
        url: Webhook endpoint
        timeout: Seconds before the request is abandoned
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def build_payload(self, entry: LogEntry) -> dict:
        return {
            "text": f"ALERT [{entry.level.name}] {entry.category.value}: {entry.message}",
            "level": entry.level.name,
            "category": entry.category.value,
            "message": entry.message,
            "requestId": entry.request_id,
            "userId": entry.user_id,
            "timestamp": entry.timestamp.isoformat(),
        }

    async def notify(self, entry: LogEntry) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=self.build_payload(entry))
            response.raise_for_status()


class ConsoleAlertNotifier(AlertNotifier):
    async def notify(self, entry: LogEntry) -> None:
        logger.error(f"ALERT [{entry.level.name}] {entry.category.value}: {entry.message}")
