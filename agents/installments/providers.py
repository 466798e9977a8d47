"""Channel providers used by the dispatcher.

Every provider exposes ``send_channel_message(channel, recipient,
template_data)`` and either returns a ``ProviderReceipt`` or raises
``ProviderDeliveryError``. There is no retry here: one failed call is a
terminal failure for that notification.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from backend.core.config import settings
from backend.integrations.brevo_client import BrevoClient
from backend.integrations.twilio_client import TwilioClient

from .dto import Channel, ProviderReceipt, Recipient
from .errors import ProviderDeliveryError

logger = logging.getLogger(__name__)


class ChannelProvider(Protocol):
    name: str

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt: ...


class BrevoEmailProvider:
    """Email delivery via Brevo."""

    name = "brevo"

    def __init__(self, client: BrevoClient | None = None, dry_run: bool = False):
        self.client = client or BrevoClient()
        self.dry_run = dry_run

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt:
        if channel is not Channel.EMAIL:
            raise ProviderDeliveryError(self.name, f"unsupported channel {channel.value}")
        response = self.client.send_transactional(
            to=recipient.address,
            subject=template_data.get("subject") or "",
            text=template_data["body"],
            agency_id=template_data.get("agency_id", ""),
            cc=list(recipient.cc),
            to_name=recipient.name,
            reference=template_data.get("reference"),
            dry_run=self.dry_run,
        )
        if not response.success:
            raise ProviderDeliveryError(self.name, response.error or "send failed", response.status_code)
        return ProviderReceipt(provider=self.name, message_id=response.message_id)


class TwilioSmsProvider:
    """SMS delivery via Twilio."""

    name = "twilio"

    def __init__(self, client: TwilioClient | None = None, dry_run: bool = False):
        self.client = client or TwilioClient()
        self.dry_run = dry_run

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt:
        if channel is not Channel.SMS:
            raise ProviderDeliveryError(self.name, f"unsupported channel {channel.value}")
        response = self.client.send_sms(
            to=recipient.address,
            body=template_data["body"].strip(),
            agency_id=template_data.get("agency_id", ""),
            dry_run=self.dry_run,
        )
        if not response.success:
            raise ProviderDeliveryError(self.name, response.error or "send failed", response.status_code)
        return ProviderReceipt(provider=self.name, message_id=response.message_sid)


@dataclass
class DryRunProvider:
    """Records messages instead of sending them."""

    name: str = "dry_run"
    sent: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        self._lock = threading.Lock()

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt:
        with self._lock:
            self.sent.append(
                {"channel": channel.value, "to": recipient.address, "cc": list(recipient.cc), **template_data}
            )
            message_id = f"{self.name}-{len(self.sent)}"
        logger.info(
            "dry_run_message",
            extra={"agency_id": template_data.get("agency_id"), "channel": channel.value},
        )
        return ProviderReceipt(provider=self.name, message_id=message_id)


class ChannelRouter:
    """Routes each channel to its provider."""

    name = "router"

    def __init__(self, providers: dict[Channel, ChannelProvider]):
        self.providers = dict(providers)

    def provider_for(self, channel: Channel) -> ChannelProvider:
        provider = self.providers.get(channel)
        if provider is None:
            raise ProviderDeliveryError(self.name, f"no provider configured for {channel.value}")
        return provider

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt:
        return self.provider_for(channel).send_channel_message(channel, recipient, template_data)


def default_provider() -> ChannelProvider:
    """Provider stack from settings (``NOTIFY_DRY_RUN`` short-circuits to a recorder)."""
    if settings.NOTIFY_DRY_RUN:
        return DryRunProvider()
    return ChannelRouter({Channel.EMAIL: BrevoEmailProvider(), Channel.SMS: TwilioSmsProvider()})
