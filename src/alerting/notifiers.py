"""
Notification channels for the alerting system.

Notifiers deliver one alert to one destination. They raise
DeliveryFailure on any problem; the dispatcher turns that into a recorded
attempt instead of an error.
"""

import abc
import asyncio
import logging
import smtplib
import ssl
from collections import defaultdict
from email.message import EmailMessage
from typing import Any, Dict, Optional

import httpx

from .alerts import Alert
from .channels import (
    ChannelConfig,
    EmailConfig,
    SlackConfig,
    WebhookConfig,
    check_outbound_url,
    is_private_address,
)
from .errors import DeliveryFailure, ValidationError
from .store import InAppFeed
from .types import DeliveryChannel

logger = logging.getLogger(__name__)

PRODUCT_NAME = "Compliance Alerting"

# Color mapping for Slack attachments
SEVERITY_COLORS = {
    "critical": "#ff0000",
    "high": "#ff8800",
    "medium": "#ffcc00",
    "low": "#36a64f",
}


def alert_payload(alert: Alert) -> Dict[str, Any]:
    """Generic JSON body posted to webhooks."""
    return {
        "event": "alert.fired",
        "alert": alert.to_dict(include_history=False),
    }


class BaseNotifier(abc.ABC):
    """Abstract base class for all notifiers."""

    channel: DeliveryChannel

    @abc.abstractmethod
    async def send(self, alert: Alert, config: Optional[ChannelConfig]) -> None:
        """
        Deliver an alert.

        Args:
            alert: The alert to deliver
            config: This channel's configuration, or None if missing

        Raises:
            DeliveryFailure: If the alert could not be delivered
        """

    @abc.abstractmethod
    async def send_test(self, config: ChannelConfig) -> None:
        """
        Deliver a test notification without any alert.

        Raises:
            DeliveryFailure: If the test notification could not be delivered
        """


class HTTPNotifier(BaseNotifier):
    """Shared plumbing for notifiers that POST JSON over HTTPS."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        resolve_hosts: bool = True,
    ):
        """
        Args:
            client: Shared HTTP client. A private one is created per call if None.
            resolve_hosts: Resolve hostnames and reject private addresses
        """
        self._client = client
        self.resolve_hosts = resolve_hosts

    async def _guard_url(self, url: str) -> None:
        try:
            _, host = check_outbound_url(url)
        except ValidationError as e:
            raise DeliveryFailure(self.channel.value, str(e))
        if not self.resolve_hosts:
            return
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, 443)
        except OSError as e:
            raise DeliveryFailure(self.channel.value, f"cannot resolve hostname: {e}")
        for info in infos:
            if is_private_address(info[4][0]):
                raise DeliveryFailure(
                    self.channel.value, "webhook URL resolves to a private IP address"
                )

    async def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        expect_200: bool = False,
    ) -> None:
        await self._guard_url(url)
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=request_headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, headers=request_headers)
        except httpx.HTTPError as e:
            raise DeliveryFailure(self.channel.value, f"request failed: {e}")

        if expect_200 and response.status_code != 200:
            raise DeliveryFailure(
                self.channel.value, f"returned status {response.status_code}"
            )
        if response.status_code >= 400:
            raise DeliveryFailure(
                self.channel.value, f"returned status {response.status_code}"
            )


class SlackNotifier(HTTPNotifier):
    """
    Sends formatted alerts to a Slack incoming webhook.

    Uses attachment formatting with a severity color bar.
    """

    channel = DeliveryChannel.SLACK

    def format(self, alert: Alert) -> Dict[str, Any]:
        return {
            "attachments": [
                {
                    "color": SEVERITY_COLORS.get(alert.severity.value, "#cccccc"),
                    "pretext": f"{PRODUCT_NAME} Alert #{alert.alert_number}",
                    "title": alert.title,
                    "text": alert.snapshot.message or alert.description or "",
                    "fields": [
                        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                        {"title": "Status", "value": alert.status.value, "short": True},
                        {"title": "Control", "value": alert.control_id, "short": True},
                        {"title": "Test", "value": alert.test_id, "short": True},
                        {
                            "title": "SLA Deadline",
                            "value": alert.sla_deadline.isoformat() if alert.sla_deadline else "N/A",
                            "short": False,
                        },
                    ],
                    "footer": PRODUCT_NAME,
                }
            ]
        }

    async def send(self, alert: Alert, config: Optional[ChannelConfig]) -> None:
        if not isinstance(config, SlackConfig):
            raise DeliveryFailure(self.channel.value, "slack_webhook_url is not configured")
        await self._post(config.url, self.format(alert), expect_200=True)

    async def send_test(self, config: ChannelConfig) -> None:
        payload = {
            "text": f"*{PRODUCT_NAME} - Test Alert*\nThis is a test notification. "
                    "If you see this, your Slack integration is working!",
        }
        await self._post(config.url, payload, expect_200=True)


class WebhookNotifier(HTTPNotifier):
    """
    Sends alerts to a generic webhook URL.

    Uses HTTP POST with JSON payload and the rule's whitelisted headers.
    """

    channel = DeliveryChannel.WEBHOOK

    async def send(self, alert: Alert, config: Optional[ChannelConfig]) -> None:
        if not isinstance(config, WebhookConfig):
            raise DeliveryFailure(self.channel.value, "webhook_url is not configured")
        await self._post(config.url, alert_payload(alert), headers=config.headers)

    async def send_test(self, config: ChannelConfig) -> None:
        payload = {
            "event": "test_delivery",
            "message": f"This is a test notification from {PRODUCT_NAME}.",
        }
        await self._post(config.url, payload, headers=config.headers)


class SMTPTransport:
    """
    Blocking SMTP sender.

    Port 465 uses implicit TLS; any other port upgrades with STARTTLS when
    the server offers it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        username: str = "",
        password: str = "",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username
        self.password = password
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host and self.port and self.from_address)

    def build_message(self, recipients, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def send(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context) as s:
                if self.username:
                    s.login(self.username, self.password)
                s.send_message(msg)
            return
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
            s.ehlo()
            if s.has_extn("starttls"):
                s.starttls(context=context)
                s.ehlo()
            if self.username:
                s.login(self.username, self.password)
            s.send_message(msg)


class EmailNotifier(BaseNotifier):
    """Sends alerts by email. The SMTP exchange runs in a worker thread."""

    channel = DeliveryChannel.EMAIL

    def __init__(self, transport: Optional[SMTPTransport] = None):
        self.transport = transport

    def format(self, alert: Alert) -> tuple:
        subject = f"[{alert.severity.value.upper()}] Alert #{alert.alert_number}: {alert.title}"
        lines = [
            alert.title,
            "",
            f"Severity: {alert.severity.value}",
            f"Status: {alert.status.value}",
            f"Control: {alert.control_id}",
            f"Test: {alert.test_id}",
            f"Result: {alert.snapshot.status.value} - {alert.snapshot.message}",
        ]
        if alert.sla_deadline:
            lines.append(f"SLA deadline: {alert.sla_deadline.isoformat()}")
        return subject, "\n".join(lines)

    async def _deliver(self, recipients, subject: str, body: str) -> None:
        if self.transport is None or not self.transport.configured:
            raise DeliveryFailure(self.channel.value, "SMTP is not configured")
        msg = self.transport.build_message(recipients, subject, body)
        try:
            await asyncio.to_thread(self.transport.send, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailure(self.channel.value, f"SMTP send failed: {e}")

    async def send(self, alert: Alert, config: Optional[ChannelConfig]) -> None:
        if not isinstance(config, EmailConfig):
            raise DeliveryFailure(self.channel.value, "email_recipients is not configured")
        subject, body = self.format(alert)
        await self._deliver(config.recipients, subject, body)

    async def send_test(self, config: ChannelConfig) -> None:
        await self._deliver(
            config.recipients,
            f"{PRODUCT_NAME} - Test Alert",
            "This is a test notification. If you received it, email delivery is working.",
        )


class InAppNotifier(BaseNotifier):
    """Publishes alerts to the tenant's in-application feed."""

    channel = DeliveryChannel.IN_APP

    def __init__(self, feeds: Optional[Dict[str, InAppFeed]] = None):
        self.feeds: Dict[str, InAppFeed] = defaultdict(InAppFeed)
        if feeds:
            self.feeds.update(feeds)

    def feed(self, tenant_id: str) -> InAppFeed:
        return self.feeds[tenant_id]

    async def send(self, alert: Alert, config: Optional[ChannelConfig]) -> None:
        self.feed(alert.tenant_id).publish(alert)

    async def send_test(self, config: ChannelConfig) -> None:
        logger.info("In-app test delivery requested; feed is always reachable")


__all__ = [
    "BaseNotifier",
    "HTTPNotifier",
    "SlackNotifier",
    "WebhookNotifier",
    "SMTPTransport",
    "EmailNotifier",
    "InAppNotifier",
    "alert_payload",
    "SEVERITY_COLORS",
]
