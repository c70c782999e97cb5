"""Message repository."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.conversation import Message, MessageDirection
from app.persistence.repositories.base import BaseRepository


class MessageRepository(BaseRepository[Message]):
    """Repository for Message entities."""

    def __init__(self, session: AsyncSession):
        """Initialize message repository."""
        super().__init__(Message, session)

    async def get_by_provider_id(self, channel: str, provider_message_id: str) -> Message | None:
        """Get message by provider-assigned id (dedup lookup)."""
        stmt = select(Message).where(
            Message.channel == channel,
            Message.provider_message_id == provider_message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recent_outbound(
        self,
        contact_id: int,
        lead_id: int | None,
        channel: str,
        since: datetime,
    ) -> list[Message]:
        """Outbound messages in the idempotency window, newest first.

        Args:
            contact_id: Contact ID
            lead_id: Lead ID; None matches any lead
            channel: Channel tag
            since: Start of the window

        Returns:
            Messages ordered by creation time descending
        """
        stmt = select(Message).where(
            Message.contact_id == contact_id,
            Message.channel == channel,
            Message.direction == MessageDirection.OUTBOUND.value,
            Message.created_at >= since,
        )
        if lead_id is not None:
            stmt = stmt.where(Message.lead_id == lead_id)
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_conversation(self, conversation_id: int, limit: int = 50) -> list[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(reversed(result.scalars().all()))
