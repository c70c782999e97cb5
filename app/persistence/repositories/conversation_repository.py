"""Conversation repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.conversation import Conversation
from app.persistence.repositories.base import BaseRepository


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation entities."""

    def __init__(self, session: AsyncSession):
        """Initialize conversation repository."""
        super().__init__(Conversation, session)

    async def get_by_contact_channel(self, contact_id: int, channel: str) -> Conversation | None:
        """Get the conversation for a (contact, channel) pair."""
        stmt = select(Conversation).where(
            Conversation.contact_id == contact_id,
            Conversation.channel == channel,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_for_lead(self, lead_id: int, channel: str | None = None) -> Conversation | None:
        """Get the lead's most recently active conversation.

        Args:
            lead_id: Lead ID
            channel: Optional channel filter

        Returns:
            Conversation or None if the lead has none
        """
        stmt = select(Conversation).where(Conversation.lead_id == lead_id)
        if channel:
            stmt = stmt.where(Conversation.channel == channel)
        stmt = stmt.order_by(Conversation.last_message_at.desc(), Conversation.id.desc()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def reload(self, conversation_id: int) -> Conversation | None:
        """Fetch the current row, discarding any stale in-session copy."""
        return await self.session.get(Conversation, conversation_id, populate_existing=True)
