"""
Notification Dispatcher

Fans severity-tagged cycle outcomes out to the configured channels. A channel
that fails is logged and never blocks the other channels or the cycle.
"""
from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import aiohttp

from drvault.config import BackupSettings
from drvault.logging import get_logger
from drvault.models import Severity

logger = get_logger(__name__)


@dataclass
class Notification:
    """A message describing the outcome of one cycle."""
    severity: Severity
    summary: str
    detail: dict[str, Any] = field(default_factory=dict)
    items: list[str] = field(default_factory=list)
    source: str = "drvault"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            'severity': self.severity.value,
            'summary': self.summary,
            'detail': self.detail,
            'items': self.items,
            'source': self.source,
            'timestamp': self.timestamp.isoformat(),
        }


class NotificationChannel:
    """Base class for notification channels."""

    def __init__(self, name: str, enabled: bool = True):
        self.name = name
        self.enabled = enabled

    async def send(self, notification: Notification) -> bool:
        """Deliver a notification. Override in subclasses."""
        raise NotImplementedError

    def format_message(self, notification: Notification) -> str:
        message = f"[{notification.severity.value.upper()}] {notification.summary}\n"
        message += f"Time: {notification.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}\n"
        message += f"Source: {notification.source}\n"
        if notification.items:
            message += "Failed steps:\n"
            message += "".join(f"  - {item}\n" for item in notification.items)
        return message


class LogChannel(NotificationChannel):
    """Writes notifications to the application log."""

    def __init__(self, name: str = "log"):
        super().__init__(name)
        self.logger = get_logger(f"drvault.notifications.{name}")

    async def send(self, notification: Notification) -> bool:
        message = self.format_message(notification)
        if notification.severity == Severity.CRITICAL:
            self.logger.critical(message)
        elif notification.severity == Severity.FAILED:
            self.logger.error(message)
        elif notification.severity == Severity.WARNING:
            self.logger.warning(message)
        else:
            self.logger.info(message)
        return True


class WebhookChannel(NotificationChannel):
    """Posts the notification as JSON to a webhook."""

    def __init__(
        self,
        name: str,
        webhook_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ):
        super().__init__(name)
        self.webhook_url = webhook_url
        self.headers = headers or {"Content-Type": "application/json"}
        self.timeout = timeout

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        return {
            "notification": notification.to_dict(),
            "message": self.format_message(notification),
        }

    async def send(self, notification: Notification) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(
                    self.webhook_url, json=self.build_payload(notification), headers=self.headers
                ) as response:
                    if response.status < 300:
                        logger.info(f"Notification sent via {self.name}")
                        return True
                    logger.error(f"{self.name} returned status {response.status}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send notification via {self.name}: {e}")
            return False


class SlackChannel(WebhookChannel):
    """Slack incoming webhook."""

    COLORS = {
        Severity.INFO: "#439FE0",
        Severity.SUCCESS: "#36a64f",
        Severity.WARNING: "#ff9900",
        Severity.FAILED: "#ff0000",
        Severity.CRITICAL: "#8b0000",
    }

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        fields = [
            {"title": "Source", "value": notification.source, "short": True},
            {
                "title": "Timestamp",
                "value": notification.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC'),
                "short": True,
            },
        ]
        if notification.items:
            fields.append({"title": "Failed steps", "value": "\n".join(notification.items), "short": False})

        return {
            "attachments": [
                {
                    "color": self.COLORS[notification.severity],
                    "title": f"{notification.severity.value.upper()} - {notification.summary}",
                    "fields": fields,
                    "ts": int(notification.timestamp.timestamp()),
                }
            ]
        }


class EmailChannel(NotificationChannel):
    """SMTP e-mail channel."""

    def __init__(
        self,
        name: str,
        smtp_host: str,
        smtp_port: int,
        from_email: str,
        to_emails: list[str],
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        super().__init__(name)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.from_email = from_email
        self.to_emails = to_emails
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _send_sync(self, notification: Notification) -> None:
        msg = MIMEMultipart()
        msg['From'] = self.from_email
        msg['To'] = ', '.join(self.to_emails)
        msg['Subject'] = f"[{notification.severity.value.upper()}] {notification.summary}"
        msg.attach(MIMEText(self.format_message(notification), 'plain'))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.from_email, self.to_emails, msg.as_string())

    async def send(self, notification: Notification) -> bool:
        try:
            await asyncio.to_thread(self._send_sync, notification)
            logger.info(f"Notification sent via email to {len(self.to_emails)} recipients")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email notification: {e}")
            return False


class NotificationDispatcher:
    """Sends every notification to all enabled channels concurrently."""

    def __init__(self, channels: list[NotificationChannel] | None = None):
        self.channels = channels or []
        self.sent: list[Notification] = []

    async def notify(
        self,
        severity: Severity,
        summary: str,
        detail: dict[str, Any] | None = None,
        items: list[str] | None = None,
    ) -> dict[str, bool]:
        """
        Deliver one notification.

        Returns:
            Delivery result per channel name; never raises for channel failures
        """
        notification = Notification(severity, summary, detail or {}, items or [])
        self.sent.append(notification)
        if len(self.sent) > 100:
            del self.sent[:-100]

        channels = [channel for channel in self.channels if channel.enabled]
        if not channels:
            logger.debug("No notification channels configured")
            return {}

        results = await asyncio.gather(
            *(channel.send(notification) for channel in channels), return_exceptions=True
        )
        delivered: dict[str, bool] = {}
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(f"Notification channel {channel.name} raised: {result!r}")
                delivered[channel.name] = False
            else:
                delivered[channel.name] = bool(result)

        logger.info(f"Notification sent to {sum(delivered.values())}/{len(channels)} channels")
        return delivered


def create_dispatcher(settings: BackupSettings) -> NotificationDispatcher:
    """Build a dispatcher with every channel the settings configure."""
    channels: list[NotificationChannel] = []
    if settings.log_channel:
        channels.append(LogChannel())
    if settings.slack_webhook_url:
        channels.append(SlackChannel(
            "slack", settings.slack_webhook_url, timeout=settings.notification_timeout_seconds
        ))
    if settings.webhook_url:
        channels.append(WebhookChannel(
            "webhook", settings.webhook_url, timeout=settings.notification_timeout_seconds
        ))
    if settings.smtp_host and settings.email_to:
        channels.append(EmailChannel(
            "email",
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_from or f"drvault@{settings.smtp_host}",
            settings.email_to,
            settings.smtp_username,
            settings.smtp_password,
            timeout=settings.notification_timeout_seconds,
        ))
    return NotificationDispatcher(channels)
