"""Meta Graph API clients for WhatsApp Cloud API, Messenger and Instagram.

API docs: https://developers.facebook.com/docs/whatsapp/cloud-api
"""

import logging
from typing import Any

import httpx

from app.core.exceptions import ChannelSendError, MediaFetchError
from app.infrastructure.channels.base import (
    ByteRange,
    ChannelSender,
    MediaContent,
    MediaFetcher,
    OutboundMedia,
    SendReceipt,
)
from app.settings import settings

logger = logging.getLogger(__name__)


def _auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {settings.meta_access_token}"}


class MetaGraphSender(ChannelSender):
    """Sends WhatsApp, Messenger and Instagram messages through the Graph API."""

    provider = "meta"

    def __init__(self, channel: str, timeout: float | None = None) -> None:
        if channel not in ("whatsapp", "facebook", "instagram"):
            raise ValueError(f"Unsupported Meta channel: {channel}")
        if not settings.meta_access_token:
            raise ValueError("META_ACCESS_TOKEN must be set for Meta channels")
        self.channel = channel
        self.timeout = timeout or settings.channel_send_timeout_seconds

    def _build_request(self, to: str, text: str | None, media: OutboundMedia | None) -> tuple[str, dict[str, Any]]:
        if self.channel == "whatsapp":
            url = f"{settings.meta_graph_url}/{settings.whatsapp_phone_number_id}/messages"
            body: dict[str, Any] = {"messaging_product": "whatsapp", "to": to.lstrip("+")}
            if media:
                ref = {"id": media.media_id} if media.media_id else {"link": media.url}
                if media.caption or text:
                    ref["caption"] = media.caption or text
                body.update({"type": media.kind, media.kind: ref})
            else:
                body.update({"type": "text", "text": {"body": text or ""}})
            return url, body

        url = f"{settings.meta_graph_url}/{settings.meta_page_id or 'me'}/messages"
        if media:
            message: dict[str, Any] = {
                "attachment": {"type": media.kind, "payload": {"url": media.url, "is_reusable": True}},
            }
        else:
            message = {"text": text or ""}
        return url, {"recipient": {"id": to}, "message": message, "messaging_type": "RESPONSE"}

    async def send(self, to: str, text: str | None, media: OutboundMedia | None = None) -> SendReceipt:
        url, body = self._build_request(to, text, media)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=body, headers=_auth_headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            # Unknown outcome: the provider may have accepted the message
            raise ChannelSendError(f"Meta send timed out after {self.timeout}s", retryable=True) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise ChannelSendError(
                f"Meta send failed with HTTP {status_code}: {e.response.text[:300]}",
                retryable=status_code >= 500,
                status_code=status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ChannelSendError(f"Meta send failed: {e}", retryable=True) from e

        if self.channel == "whatsapp":
            messages = data.get("messages") or [{}]
            provider_id = messages[0].get("id")
        else:
            provider_id = data.get("message_id")
        if not provider_id:
            raise ChannelSendError(f"Meta response missing message id: {data}")

        return SendReceipt(provider_message_id=provider_id, status="sent", provider=self.provider, raw_response=data)


class MetaMediaFetcher(MediaFetcher):
    """Resolves a media id to its download URL and streams the bytes."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    async def fetch(self, media_id: str, byte_range: ByteRange | None = None) -> MediaContent:
        if not settings.meta_access_token:
            raise MediaFetchError("META_ACCESS_TOKEN is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                meta_resp = await client.get(f"{settings.meta_graph_url}/{media_id}", headers=_auth_headers())
                meta_resp.raise_for_status()
                info = meta_resp.json()
                download_url = info.get("url")
                if not download_url:
                    raise MediaFetchError(f"No download URL for media {media_id}", status_code=404)

                headers = _auth_headers()
                if byte_range:
                    headers["Range"] = byte_range.header_value()
                resp = await client.get(download_url, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MediaFetchError(
                f"Media {media_id} fetch failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise MediaFetchError(f"Media {media_id} fetch failed: {e}") from e

        content_type = resp.headers.get("content-type") or info.get("mime_type") or "application/octet-stream"
        total_size = info.get("file_size")
        if resp.status_code == 206:
            logger.debug(f"Provider honoured range for media {media_id}")
            return MediaContent(
                content=resp.content,
                content_type=content_type,
                total_size=int(total_size) if total_size else None,
                content_range=resp.headers.get("content-range"),
            )
        return MediaContent(
            content=resp.content,
            content_type=content_type,
            total_size=len(resp.content),
        )
