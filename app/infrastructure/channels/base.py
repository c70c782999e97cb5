"""Channel send and media fetch interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class SendReceipt:
    """Result of a channel send."""

    provider_message_id: str
    status: str
    provider: str
    raw_response: dict | None = None


@dataclass
class OutboundMedia:
    """Media attached to an outbound message."""

    kind: str  # image, audio, video, document
    url: str | None = None
    media_id: str | None = None
    caption: str | None = None


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range; ``end`` None means to the end of the resource."""

    start: int
    end: int | None = None

    def header_value(self) -> str:
        return f"bytes={self.start}-{'' if self.end is None else self.end}"


@dataclass
class MediaContent:
    """Fetched media bytes.

    ``content_range`` is set only when the provider honoured a range
    request, in which case ``content`` holds just that slice.
    """

    content: bytes
    content_type: str
    total_size: int | None = None
    content_range: str | None = None

    @property
    def is_partial(self) -> bool:
        return self.content_range is not None


class ChannelSender(ABC):
    """Protocol for outbound channel providers."""

    provider: str = "unknown"

    @abstractmethod
    async def send(self, to: str, text: str | None, media: OutboundMedia | None = None) -> SendReceipt:
        """Send a message.

        Args:
            to: Provider-facing recipient address
            text: Message text
            media: Optional media attachment

        Returns:
            SendReceipt with the provider message id

        Raises:
            ChannelSendError: If the provider rejects the send or times out
        """
        pass


class MediaFetcher(ABC):
    """Protocol for provider media retrieval."""

    @abstractmethod
    async def fetch(self, media_id: str, byte_range: ByteRange | None = None) -> MediaContent:
        """Fetch media by provider id.

        Args:
            media_id: Provider media id
            byte_range: Optional range for partial retrieval

        Returns:
            MediaContent, partial if the provider honoured the range

        Raises:
            MediaFetchError: If the media cannot be retrieved
        """
        pass
