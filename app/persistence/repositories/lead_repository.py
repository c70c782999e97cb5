"""Lead repository."""

from datetime import date, datetime

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.conversation import Message, MessageDirection
from app.persistence.models.lead import Lead, NON_REUSABLE_STAGES, TERMINAL_STAGES
from app.persistence.repositories.base import BaseRepository


class LeadRepository(BaseRepository[Lead]):
    """Repository for Lead entities.

    The ``list_*`` scan queries feed the scheduled automation run and
    only return live leads (not archived, not in a terminal stage).
    """

    def __init__(self, session: AsyncSession):
        """Initialize lead repository."""
        super().__init__(Lead, session)

    def _live(self):
        return and_(Lead.archived_at.is_(None), Lead.stage.notin_(TERMINAL_STAGES))

    async def get_reusable_for_contact(self, contact_id: int, created_after: datetime) -> Lead | None:
        """Get the contact's most recent lead that a new inbound can attach to.

        Args:
            contact_id: Contact ID
            created_after: Leads created before this are treated as stale

        Returns:
            Most recently created open lead or None
        """
        stmt = (
            select(Lead)
            .where(
                Lead.contact_id == contact_id,
                Lead.archived_at.is_(None),
                Lead.stage.notin_(NON_REUSABLE_STAGES),
                Lead.created_at >= created_after,
            )
            .order_by(Lead.created_at.desc(), Lead.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_live(self, limit: int = 500) -> list[Lead]:
        stmt = select(Lead).where(self._live()).order_by(Lead.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_inactive_since(self, cutoff: datetime, limit: int = 500) -> list[Lead]:
        """Leads with no message in either direction since ``cutoff``."""
        recent_message = exists().where(Message.lead_id == Lead.id, Message.created_at >= cutoff)
        stmt = (
            select(Lead)
            .where(self._live(), Lead.created_at < cutoff, ~recent_message)
            .order_by(Lead.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_followup_due(self, now: datetime, overdue_before: datetime | None = None, limit: int = 500) -> list[Lead]:
        """Leads whose next follow-up is due.

        Args:
            now: Follow-ups at or before this are due
            overdue_before: When given, only follow-ups older than this

        Returns:
            Matching leads
        """
        cutoff = overdue_before or now
        stmt = (
            select(Lead)
            .where(self._live(), Lead.next_follow_up_at.is_not(None), Lead.next_follow_up_at <= cutoff)
            .order_by(Lead.next_follow_up_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_awaiting_reply(self, inbound_before: datetime, limit: int = 500) -> list[Lead]:
        """Leads whose last inbound is older than the cutoff with no outbound after it."""
        answered = exists().where(
            Message.lead_id == Lead.id,
            Message.direction == MessageDirection.OUTBOUND.value,
            Message.created_at >= Lead.last_inbound_at,
        )
        stmt = (
            select(Lead)
            .where(
                self._live(),
                Lead.last_inbound_at.is_not(None),
                Lead.last_inbound_at <= inbound_before,
                ~answered,
            )
            .order_by(Lead.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_expiring_between(self, start: date, end: date, limit: int = 500) -> list[Lead]:
        stmt = (
            select(Lead)
            .where(self._live(), Lead.expiry_date.is_not(None), Lead.expiry_date.between(start, end))
            .order_by(Lead.expiry_date)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
