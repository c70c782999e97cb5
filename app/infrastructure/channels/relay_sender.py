"""Senders for channels delivered through an internal relay, and dry-run."""

import logging
import uuid

import httpx

from app.core.exceptions import ChannelSendError
from app.infrastructure.channels.base import ChannelSender, OutboundMedia, SendReceipt
from app.settings import settings

logger = logging.getLogger(__name__)


class WebhookRelaySender(ChannelSender):
    """Posts outbound email/webchat messages to a relay service.

    The relay is expected to answer with ``{"id": "..."}``.
    """

    provider = "relay"

    def __init__(self, channel: str, url: str, timeout: float | None = None) -> None:
        self.channel = channel
        self.url = url
        self.timeout = timeout or settings.channel_send_timeout_seconds

    async def send(self, to: str, text: str | None, media: OutboundMedia | None = None) -> SendReceipt:
        payload = {"channel": self.channel, "to": to, "text": text}
        if media:
            payload["media"] = {"kind": media.kind, "url": media.url}
        headers = {}
        if settings.webhook_shared_token:
            headers["X-Webhook-Token"] = settings.webhook_shared_token

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            raise ChannelSendError(f"{self.channel} relay timed out after {self.timeout}s", retryable=True) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise ChannelSendError(
                f"{self.channel} relay failed with HTTP {status_code}",
                retryable=status_code >= 500,
                status_code=status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ChannelSendError(f"{self.channel} relay failed: {e}", retryable=True) from e

        return SendReceipt(
            provider_message_id=str(data.get("id") or uuid.uuid4()),
            status=data.get("status", "sent"),
            provider=self.provider,
            raw_response=data,
        )


class LoggingSender(ChannelSender):
    """Dry-run sender: logs the message instead of delivering it."""

    provider = "dry_run"

    def __init__(self, channel: str) -> None:
        self.channel = channel

    async def send(self, to: str, text: str | None, media: OutboundMedia | None = None) -> SendReceipt:
        provider_id = f"dry_{uuid.uuid4().hex}"
        logger.info(
            "[DRY_RUN_SEND] Outbound message not delivered",
            extra={"channel": self.channel, "to": to, "text_length": len(text or ""), "provider_message_id": provider_id},
        )
        return SendReceipt(provider_message_id=provider_id, status="sent", provider=self.provider)
