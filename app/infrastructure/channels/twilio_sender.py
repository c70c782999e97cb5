"""Twilio SMS sender."""

import asyncio

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from app.core.exceptions import ChannelSendError
from app.infrastructure.channels.base import ChannelSender, OutboundMedia, SendReceipt
from app.settings import settings


class TwilioSmsSender(ChannelSender):
    """Twilio SMS/MMS sender.

    The twilio REST client is synchronous, so sends run in a worker thread.
    """

    provider = "twilio"

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize Twilio client.

        Args:
            account_sid: Twilio account SID (defaults to settings)
            auth_token: Twilio auth token (defaults to settings)
            from_number: Sending number (defaults to settings)
            timeout: HTTP timeout in seconds
        """
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.from_number = from_number or settings.twilio_from_number

        if not self.account_sid or not self.auth_token or not self.from_number:
            raise ValueError("Twilio account SID, auth token and from number must be provided")

        self.timeout = timeout or settings.channel_send_timeout_seconds
        self.client = TwilioClient(
            self.account_sid,
            self.auth_token,
            http_client=TwilioHttpClient(timeout=self.timeout),
        )

    def _create(self, to: str, text: str | None, media: OutboundMedia | None):
        kwargs = {"to": to, "from_": self.from_number, "body": text or ""}
        if media and media.url:
            kwargs["media_url"] = [media.url]
        return self.client.messages.create(**kwargs)

    async def send(self, to: str, text: str | None, media: OutboundMedia | None = None) -> SendReceipt:
        try:
            message = await asyncio.to_thread(self._create, to, text, media)
        except TwilioRestException as e:
            raise ChannelSendError(
                f"Twilio SMS send failed: {e.msg}",
                retryable=e.status >= 500,
                status_code=e.status,
            ) from e
        except TwilioException as e:
            raise ChannelSendError(f"Twilio SMS send failed: {e}", retryable=True) from e

        return SendReceipt(
            provider_message_id=message.sid,
            status=message.status,
            provider=self.provider,
            raw_response={
                "sid": message.sid,
                "status": message.status,
                "date_created": message.date_created.isoformat() if message.date_created else None,
            },
        )
