"""
Conduit Notifications

Fire-and-forget delivery of step failure notifications.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx
import structlog

from conduit.types import NotificationChannelType

logger = structlog.get_logger(__name__)


@dataclass
class Notification:
    """A notification handed to the delivery system."""
    channels: List[str] = field(default_factory=list)
    recipients: List[str] = field(default_factory=list)
    template: Optional[str] = None
    template_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channels": list(self.channels),
            "recipients": list(self.recipients),
            "template": self.template,
            "templateData": self.template_data,
        }


class NotificationChannel:
    """Base class for notification channels."""

    name = "channel"

    async def send(self, notification: Notification) -> Dict[str, Any]:
        """Send a notification."""
        raise NotImplementedError


class LogChannel(NotificationChannel):
    """Channel that records the notification in the structured log."""

    def __init__(self, name: str):
        self.name = name

    async def send(self, notification: Notification) -> Dict[str, Any]:
        logger.info(
            "notification_sent",
            channel=self.name,
            recipients=notification.recipients,
            template=notification.template,
            execution_id=notification.template_data.get("executionId"),
            step_id=notification.template_data.get("stepId"),
        )
        return {"logged": True}


class WebhookChannel(NotificationChannel):
    """Posts the notification as JSON to a URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Dict[str, str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def send(self, notification: Notification) -> Dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                self.url,
                json=notification.to_dict(),
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()

        return {"status_code": response.status_code}


class NotificationDispatcher:
    """
    Dispatches notifications without blocking the caller.

    Features:
    - email, teams, slack and webhook channels
    - Custom channel registration
    - Delivery failures are logged and never reach the workflow
    """

    def __init__(self, webhook_url: Optional[str] = None):
        self._channels: Dict[str, NotificationChannel] = {
            NotificationChannelType.EMAIL.value: LogChannel("email"),
            NotificationChannelType.TEAMS.value: LogChannel("teams"),
            NotificationChannelType.SLACK.value: LogChannel("slack"),
            NotificationChannelType.WEBHOOK.value: (
                WebhookChannel(webhook_url) if webhook_url else LogChannel("webhook")
            ),
        }
        self._pending: Set[asyncio.Task] = set()
        self._stats = {
            "dispatched": 0,
            "delivered": 0,
            "failed": 0,
        }

    def register_channel(self, name: str, channel: NotificationChannel) -> None:
        """Register a custom notification channel."""
        self._channels[name.lower()] = channel

    def dispatch(self, notification: Notification) -> asyncio.Task:
        """Schedule delivery and return immediately."""
        self._stats["dispatched"] += 1
        task = asyncio.ensure_future(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, notification: Notification) -> None:
        for channel_name in notification.channels:
            channel = self._channels.get(channel_name.lower())
            if channel is None:
                self._stats["failed"] += 1
                logger.warning("notification_channel_unknown", channel=channel_name)
                continue

            try:
                await channel.send(notification)
                self._stats["delivered"] += 1
            except Exception as e:
                self._stats["failed"] += 1
                logger.error("notification_error", channel=channel_name, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "pending": len(self._pending)}
