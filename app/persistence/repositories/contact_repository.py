"""Contact repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.contact import Contact
from app.persistence.repositories.base import BaseRepository


class ContactRepository(BaseRepository[Contact]):
    """Repository for Contact entities."""

    def __init__(self, session: AsyncSession):
        """Initialize contact repository."""
        super().__init__(Contact, session)

    async def get_by_address(self, address: str) -> Contact | None:
        """Get contact by normalized address."""
        stmt = select(Contact).where(Contact.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_wa_id(self, wa_id: str) -> Contact | None:
        """Get the oldest contact carrying a WhatsApp id."""
        stmt = select(Contact).where(Contact.wa_id == wa_id).order_by(Contact.id).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
