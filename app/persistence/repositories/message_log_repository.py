"""Repositories for the inbound, outbound and reply dedup fences.

Claims insert a row and commit immediately. A unique violation rolls the
session back and reports the claim as already taken, so callers must not
hold uncommitted work when claiming.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.persistence.models.message_log import (
    InboundMessageDedup,
    OutboundLogStatus,
    OutboundMessageLog,
    ProcessingStatus,
    ReplyEngineLog,
)
from app.persistence.repositories.base import BaseRepository


class InboundDedupRepository(BaseRepository[InboundMessageDedup]):
    """Repository for InboundMessageDedup entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(InboundMessageDedup, session)

    async def claim(self, provider: str, provider_message_id: str) -> bool:
        """Record first receipt of an inbound event.

        Returns:
            True if this call created the record, False on redelivery
        """
        self.session.add(InboundMessageDedup(
            provider=provider,
            provider_message_id=provider_message_id,
            processing_status=ProcessingStatus.PROCESSING.value,
        ))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    async def get(self, provider: str, provider_message_id: str) -> InboundMessageDedup | None:
        stmt = select(InboundMessageDedup).where(
            InboundMessageDedup.provider == provider,
            InboundMessageDedup.provider_message_id == provider_message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark(
        self,
        provider: str,
        provider_message_id: str,
        status: ProcessingStatus,
        error: str | None = None,
    ) -> None:
        """Set the processing outcome and commit."""
        stmt = (
            update(InboundMessageDedup)
            .where(
                InboundMessageDedup.provider == provider,
                InboundMessageDedup.provider_message_id == provider_message_id,
            )
            .values(processing_status=status.value, error=error, processed_at=utcnow())
        )
        await self.session.execute(stmt)
        await self.session.commit()


class OutboundMessageLogRepository(BaseRepository[OutboundMessageLog]):
    """Repository for OutboundMessageLog entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(OutboundMessageLog, session)

    async def get_by_key(self, dedupe_key: str) -> OutboundMessageLog | None:
        stmt = select(OutboundMessageLog).where(OutboundMessageLog.dedupe_key == dedupe_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        dedupe_key: str,
        purpose: str,
        conversation_id: int | None = None,
        inbound_provider_message_id: str | None = None,
    ) -> bool:
        """Insert a PENDING log row for a keyed send.

        Returns:
            True if the send may proceed, False if the key was already used
        """
        self.session.add(OutboundMessageLog(
            dedupe_key=dedupe_key,
            purpose=purpose,
            conversation_id=conversation_id,
            inbound_provider_message_id=inbound_provider_message_id,
            status=OutboundLogStatus.PENDING.value,
        ))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    async def mark(
        self,
        dedupe_key: str,
        status: OutboundLogStatus,
        message_id: int | None = None,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record the send outcome. Committed together with the caller's work."""
        values: dict = {"status": status.value, "message_id": message_id, "error": error}
        if status == OutboundLogStatus.SENT:
            values["provider_message_id"] = provider_message_id
            values["sent_at"] = utcnow()
        stmt = update(OutboundMessageLog).where(OutboundMessageLog.dedupe_key == dedupe_key).values(**values)
        await self.session.execute(stmt)


class ReplyEngineLogRepository(BaseRepository[ReplyEngineLog]):
    """Repository for ReplyEngineLog entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(ReplyEngineLog, session)

    async def get_for_inbound(self, conversation_id: int, inbound_message_id: str) -> ReplyEngineLog | None:
        stmt = select(ReplyEngineLog).where(
            ReplyEngineLog.conversation_id == conversation_id,
            ReplyEngineLog.inbound_message_id == inbound_message_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
