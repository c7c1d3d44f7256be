"""Webhook notifications for provisioning failures and cleanup sweeps."""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict

import aiohttp

from .config import NotificationsConfig
from .errors import GuestNetError
from .models import CleanupReport, SyncReport

logger = logging.getLogger(__name__)


class NotificationLevel:
    """Notification severity levels."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notifier:
    """Sends operator notifications to Slack and/or Discord webhooks."""

    def __init__(
        self,
        slack_webhook: Optional[str] = None,
        discord_webhook: Optional[str] = None,
    ):
        self.slack_webhook = slack_webhook
        self.discord_webhook = discord_webhook

    @classmethod
    def from_config(cls, config: NotificationsConfig) -> "Notifier":
        return cls(slack_webhook=config.slack_webhook, discord_webhook=config.discord_webhook)

    @property
    def enabled(self) -> bool:
        return bool(self.slack_webhook or self.discord_webhook)

    async def notify_failure(self, operation: str, room: str, error: GuestNetError) -> None:
        """Notify that a guest operation failed."""
        await self._send_notifications(
            title=f"Guest {operation} failed",
            message=f"Room {room}: {error.message}",
            level=NotificationLevel.ERROR,
            fields={
                "Room": room,
                "Operation": operation,
                "Error Kind": error.kind,
            },
        )

    async def notify_cleanup(self, report: CleanupReport) -> None:
        """Notify the result of an expiry sweep; silent when nothing happened."""
        if report.attempted == 0:
            return

        level = NotificationLevel.WARNING if report.failed else NotificationLevel.SUCCESS
        fields = {
            "Removed": str(report.removed),
            "Failed": str(report.failed),
        }
        for failure in report.failures[:5]:
            fields[f"Room {failure.room_number}"] = f"{failure.username}: {failure.message}"

        await self._send_notifications(
            title="Expired guest cleanup",
            message=f"{report.removed} expired guest(s) removed, {report.failed} failed",
            level=level,
            fields=fields,
        )

    async def notify_sync(self, report: SyncReport) -> None:
        """Notify a store/router sync that found problems."""
        if not report.errors:
            return

        await self._send_notifications(
            title="Router sync errors",
            message="; ".join(report.errors[:5]),
            level=NotificationLevel.WARNING,
            fields={
                "Created": str(report.created_on_device),
                "Removed": str(report.removed_from_device),
                "Errors": str(len(report.errors)),
            },
        )

    async def _send_notifications(
        self,
        title: str,
        message: str,
        level: str = NotificationLevel.INFO,
        fields: Optional[Dict[str, str]] = None,
    ) -> None:
        """Send notifications to all configured channels."""
        tasks = []

        if self.slack_webhook:
            tasks.append(self._send_slack(title, message, level, fields))

        if self.discord_webhook:
            tasks.append(self._send_discord(title, message, level, fields))

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_slack(
        self,
        title: str,
        message: str,
        level: str,
        fields: Optional[Dict[str, str]] = None,
    ) -> None:
        """Send notification to Slack."""
        colors = {
            NotificationLevel.INFO: "#2196F3",
            NotificationLevel.SUCCESS: "#4CAF50",
            NotificationLevel.WARNING: "#FF9800",
            NotificationLevel.ERROR: "#F44336",
        }

        attachment = {
            "color": colors.get(level, "#808080"),
            "title": title,
            "text": message,
            "ts": int(datetime.now().timestamp()),
        }

        if fields:
            attachment["fields"] = [
                {"title": k, "value": v, "short": True}
                for k, v in fields.items()
            ]

        await self._post(self.slack_webhook, {"attachments": [attachment]}, "Slack", (200,))

    async def _send_discord(
        self,
        title: str,
        message: str,
        level: str,
        fields: Optional[Dict[str, str]] = None,
    ) -> None:
        """Send notification to Discord."""
        # Discord uses decimal colors
        colors = {
            NotificationLevel.INFO: 2201331,
            NotificationLevel.SUCCESS: 5025616,
            NotificationLevel.WARNING: 16750848,
            NotificationLevel.ERROR: 16007990,
        }

        embed = {
            "title": title,
            "description": message,
            "color": colors.get(level, 8421504),
            "timestamp": datetime.now().isoformat(),
        }

        if fields:
            embed["fields"] = [
                {"name": k, "value": v, "inline": True}
                for k, v in fields.items()
            ]

        await self._post(self.discord_webhook, {"embeds": [embed]}, "Discord", (200, 204))

    async def _post(self, url: str, payload: dict, channel: str, ok_statuses: tuple) -> None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=10)
                ) as response:
                    if response.status not in ok_statuses:
                        logger.error(f"{channel} notification failed: {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send {channel} notification: {e}")
