"""
Per-channel delivery configuration.

Each channel carries its own config variant. A config that exists is valid;
a channel selected on a rule without its config fails at dispatch time.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from .errors import ValidationError
from .types import DeliveryChannel

ALLOWED_WEBHOOK_HEADERS = frozenset({
    "authorization",
    "content-type",
    "x-api-key",
    "x-request-id",
    "x-correlation-id",
    "user-agent",
})


def is_allowed_webhook_header(name: str) -> bool:
    """Check a header against the whitelist (case-insensitive, X-Custom-* allowed)."""
    lower = name.lower()
    return lower in ALLOWED_WEBHOOK_HEADERS or lower.startswith("x-custom-")


def is_private_address(address: str) -> bool:
    """True for loopback, private, link-local and unique-local addresses."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_private or ip.is_link_local


def check_outbound_url(url: str) -> Tuple[str, str]:
    """
    Static checks on an outbound notification URL.

    Args:
        url: URL to check

    Returns:
        Tuple of (url, hostname)

    Raises:
        ValidationError: If the URL is not HTTPS, has no host, or names a
            private IP literal
    """
    if not url.startswith("https://"):
        raise ValidationError("webhook URL must use HTTPS")
    host = urlparse(url).hostname
    if not host:
        raise ValidationError(f"invalid URL: {url}")
    if is_private_address(host):
        raise ValidationError("webhook URL resolves to a private IP address")
    return url, host


@dataclass(frozen=True)
class SlackConfig:
    """Slack incoming-webhook destination."""
    channel: ClassVar[DeliveryChannel] = DeliveryChannel.SLACK

    url: str

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ValidationError("slack_webhook_url is required for Slack delivery")

    def to_dict(self) -> Dict[str, Any]:
        return {"slack_webhook_url": self.url}


@dataclass(frozen=True)
class EmailConfig:
    """Email recipients."""
    channel: ClassVar[DeliveryChannel] = DeliveryChannel.EMAIL

    recipients: Tuple[str, ...]

    def __post_init__(self) -> None:
        cleaned = tuple(r.strip() for r in self.recipients if r and r.strip())
        if not cleaned:
            raise ValidationError("email_recipients is required for email delivery")
        for recipient in cleaned:
            if "@" not in recipient:
                raise ValidationError(f"Invalid email recipient: {recipient}")
        object.__setattr__(self, "recipients", cleaned)

    def to_dict(self) -> Dict[str, Any]:
        return {"email_recipients": list(self.recipients)}


@dataclass(frozen=True)
class WebhookConfig:
    """Generic JSON webhook destination."""
    channel: ClassVar[DeliveryChannel] = DeliveryChannel.WEBHOOK

    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ValidationError("webhook_url is required for webhook delivery")
        for name in self.headers:
            if not is_allowed_webhook_header(name):
                raise ValidationError(
                    f"Header '{name}' is not allowed. Allowed: Authorization, "
                    "Content-Type, X-API-Key, X-Request-ID, X-Correlation-ID, "
                    "User-Agent, X-Custom-*"
                )

    def to_dict(self) -> Dict[str, Any]:
        return {"webhook_url": self.url, "webhook_headers": dict(self.headers)}


@dataclass(frozen=True)
class InAppConfig:
    """In-application feed. Needs no configuration."""
    channel: ClassVar[DeliveryChannel] = DeliveryChannel.IN_APP

    def to_dict(self) -> Dict[str, Any]:
        return {}


ChannelConfig = Union[SlackConfig, EmailConfig, WebhookConfig, InAppConfig]


def build_channel_configs(
    slack_webhook_url: Optional[str] = None,
    email_recipients: Optional[List[str]] = None,
    webhook_url: Optional[str] = None,
    webhook_headers: Optional[Dict[str, str]] = None,
) -> Dict[DeliveryChannel, ChannelConfig]:
    """
    Build channel config variants from flat wire fields.

    Fields left empty produce no config for their channel. Header names are
    still checked against the whitelist.

    Raises:
        ValidationError: If a provided field is malformed
    """
    configs: Dict[DeliveryChannel, ChannelConfig] = {DeliveryChannel.IN_APP: InAppConfig()}
    if slack_webhook_url:
        configs[DeliveryChannel.SLACK] = SlackConfig(url=slack_webhook_url)
    if email_recipients:
        configs[DeliveryChannel.EMAIL] = EmailConfig(recipients=tuple(email_recipients))
    if webhook_url:
        configs[DeliveryChannel.WEBHOOK] = WebhookConfig(
            url=webhook_url, headers=dict(webhook_headers or {})
        )
    elif webhook_headers:
        for name in webhook_headers:
            if not is_allowed_webhook_header(name):
                raise ValidationError(f"Header '{name}' is not allowed")
    return configs


def config_from_request(channel: DeliveryChannel, data: Dict[str, Any]) -> ChannelConfig:
    """
    Build exactly one channel config from an ad hoc request payload.

    Raises:
        ValidationError: If the payload lacks what the channel needs
    """
    channel = DeliveryChannel(channel)
    if channel == DeliveryChannel.SLACK:
        return SlackConfig(url=data.get("slack_webhook_url") or "")
    if channel == DeliveryChannel.EMAIL:
        return EmailConfig(recipients=tuple(data.get("email_recipients") or ()))
    if channel == DeliveryChannel.WEBHOOK:
        return WebhookConfig(
            url=data.get("webhook_url") or "",
            headers=dict(data.get("webhook_headers") or {}),
        )
    return InAppConfig()


__all__ = [
    "ALLOWED_WEBHOOK_HEADERS",
    "is_allowed_webhook_header",
    "is_private_address",
    "check_outbound_url",
    "SlackConfig",
    "EmailConfig",
    "WebhookConfig",
    "InAppConfig",
    "ChannelConfig",
    "build_channel_configs",
    "config_from_request",
]
