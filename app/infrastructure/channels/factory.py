"""Channel sender factory."""

import logging

from app.core.phone import normalize_channel
from app.infrastructure.channels.base import ChannelSender, MediaFetcher
from app.infrastructure.channels.meta_client import MetaGraphSender, MetaMediaFetcher
from app.infrastructure.channels.relay_sender import LoggingSender, WebhookRelaySender
from app.infrastructure.channels.twilio_sender import TwilioSmsSender
from app.settings import settings

logger = logging.getLogger(__name__)


class ChannelSenderFactory:
    """Builds the sender for a channel from settings."""

    def get_sender(self, channel: str) -> ChannelSender:
        """Get sender for channel.

        Falls back to a dry-run sender when ``dry_run_sends`` is on or the
        channel has no provider configured.
        """
        channel = normalize_channel(channel)
        if settings.dry_run_sends:
            return LoggingSender(channel)

        if channel in ("whatsapp", "facebook", "instagram") and settings.meta_access_token:
            return MetaGraphSender(channel)
        if channel == "sms" and settings.twilio_account_sid and settings.twilio_auth_token:
            return TwilioSmsSender()
        if channel == "email" and settings.email_relay_url:
            return WebhookRelaySender(channel, settings.email_relay_url)
        if channel == "webchat" and settings.webchat_relay_url:
            return WebhookRelaySender(channel, settings.webchat_relay_url)

        logger.warning(f"No provider configured for channel {channel}, using dry-run sender")
        return LoggingSender(channel)


def get_media_fetcher() -> MediaFetcher:
    return MetaMediaFetcher()
