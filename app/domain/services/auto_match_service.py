"""Auto-match resolver: idempotent find-or-create of contact, lead and conversation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import utcnow
from app.core.exceptions import IdentityConflictError
from app.core.phone import PHONE_CHANNELS, normalize_address, normalize_channel
from app.domain.services.inbound_normalizer import InboundEvent
from app.persistence.models.contact import Contact
from app.persistence.models.conversation import Conversation, Message, MessageDirection, MessageStatus
from app.persistence.models.lead import Lead, LeadStage
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.lead_repository import LeadRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ResolveResult:
    """Outcome of resolving one inbound event."""

    contact: Contact | None
    lead: Lead | None
    conversation: Conversation | None
    message: Message
    was_duplicate: bool
    contact_created: bool = False
    lead_created: bool = False


class AutoMatchResolver:
    """Resolves inbound events to identity records.

    Correctness under concurrent redelivery comes from the unique
    constraints on message (channel, provider id), contact address and
    conversation (contact, channel). A constraint violation means another
    worker won the race: the transaction is rolled back and resolution is
    retried once, which then sees the winner's rows.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.contact_repo = ContactRepository(session)
        self.lead_repo = LeadRepository(session)
        self.conversation_repo = ConversationRepository(session)
        self.message_repo = MessageRepository(session)

    async def resolve(self, event: InboundEvent) -> ResolveResult:
        """Resolve an inbound event and persist the inbound message.

        Args:
            event: Canonical inbound event

        Returns:
            ResolveResult; ``was_duplicate`` is True when the message was
            already stored and nothing was written

        Raises:
            IdentityConflictError: If the retry also hits a conflict
        """
        try:
            return await self._resolve_once(event)
        except (IntegrityError, StaleDataError) as e:
            await self.session.rollback()
            logger.warning(
                "[IDENTITY_CONFLICT] Concurrent writer won, retrying resolution",
                extra={
                    "channel": event.channel,
                    "provider_message_id": event.provider_message_id,
                    "error_type": type(e).__name__,
                },
            )

        try:
            return await self._resolve_once(event)
        except (IntegrityError, StaleDataError) as e:
            await self.session.rollback()
            raise IdentityConflictError(
                f"Identity resolution for {event.channel}:{event.provider_message_id} conflicted twice"
            ) from e

    async def _resolve_once(self, event: InboundEvent) -> ResolveResult:
        channel = normalize_channel(event.channel)

        existing = await self.message_repo.get_by_provider_id(channel, event.provider_message_id)
        if existing is not None:
            logger.info(
                "[DUPLICATE_INBOUND] Message already stored",
                extra={
                    "channel": channel,
                    "provider_message_id": event.provider_message_id,
                    "message_id": existing.id,
                },
            )
            return await self._duplicate_result(existing)

        now = utcnow()
        contact, contact_created = await self._find_or_create_contact(channel, event)
        lead, lead_created = await self._find_or_create_lead(contact, channel)
        conversation = await self._upsert_conversation(contact, lead, channel, event, now)

        message = Message(
            conversation_id=conversation.id,
            contact_id=contact.id,
            lead_id=lead.id,
            direction=MessageDirection.INBOUND.value,
            channel=channel,
            type=event.message_type,
            body=event.text,
            media_id=event.media.media_id if event.media else None,
            media_mime_type=event.media.mime_type if event.media else None,
            status=MessageStatus.RECEIVED.value,
            provider_message_id=event.provider_message_id,
            raw_payload=event.raw_payload or None,
            created_at=now,
        )
        self.session.add(message)

        lead.last_inbound_at = now

        await self.session.flush()
        await self.session.commit()

        logger.info(
            f"Resolved inbound {channel} message {event.provider_message_id}: "
            f"contact={contact.id} lead={lead.id} conversation={conversation.id}",
            extra={
                "contact_created": contact_created,
                "lead_created": lead_created,
                "message_id": message.id,
            },
        )
        return ResolveResult(
            contact=contact,
            lead=lead,
            conversation=conversation,
            message=message,
            was_duplicate=False,
            contact_created=contact_created,
            lead_created=lead_created,
        )

    async def _duplicate_result(self, message: Message) -> ResolveResult:
        conversation = await self.conversation_repo.get_by_id(message.conversation_id)
        contact = await self.contact_repo.get_by_id(message.contact_id)
        lead = await self.lead_repo.get_by_id(message.lead_id) if message.lead_id else None
        return ResolveResult(
            contact=contact,
            lead=lead,
            conversation=conversation,
            message=message,
            was_duplicate=True,
        )

    async def _find_or_create_contact(self, channel: str, event: InboundEvent) -> tuple[Contact, bool]:
        """Find the contact by WhatsApp id, then by normalized address."""
        address = normalize_address(channel, event.from_address)

        contact = None
        if event.wa_id:
            contact = await self.contact_repo.get_by_wa_id(event.wa_id)
        if contact is None:
            contact = await self.contact_repo.get_by_address(address)

        if contact is not None:
            if event.from_name and not contact.display_name:
                contact.display_name = event.from_name
            if event.wa_id and not contact.wa_id:
                contact.wa_id = event.wa_id
            return contact, False

        contact = Contact(
            address=address,
            phone=address if channel in PHONE_CHANNELS else None,
            wa_id=event.wa_id,
            email=event.from_address.strip().lower() if channel == "email" else None,
            display_name=event.from_name,
            source=channel,
        )
        self.session.add(contact)
        await self.session.flush()
        logger.info(f"Created contact {contact.id} for {channel} address", extra={"contact_id": contact.id})
        return contact, True

    async def _find_or_create_lead(self, contact: Contact, channel: str) -> tuple[Lead, bool]:
        """Reuse the contact's recent open lead or open a new one."""
        created_after = utcnow() - timedelta(days=settings.lead_reuse_days)
        lead = await self.lead_repo.get_reusable_for_contact(contact.id, created_after)
        if lead is not None:
            return lead, False

        lead = Lead(
            contact_id=contact.id,
            stage=LeadStage.NEW.value,
            source=channel,
            autopilot_enabled=True,
        )
        self.session.add(lead)
        await self.session.flush()
        logger.info(f"Created lead {lead.id} for contact {contact.id}", extra={"lead_id": lead.id})
        return lead, True

    async def _upsert_conversation(
        self,
        contact: Contact,
        lead: Lead,
        channel: str,
        event: InboundEvent,
        now: datetime,
    ) -> Conversation:
        conversation = await self.conversation_repo.get_by_contact_channel(contact.id, channel)
        if conversation is None:
            conversation = Conversation(
                contact_id=contact.id,
                channel=channel,
                lead_id=lead.id,
                status="open",
                external_thread_id=event.external_thread_id,
                unread_count=0,
            )
            self.session.add(conversation)
            await self.session.flush()

        conversation.lead_id = lead.id
        conversation.status = "open"
        conversation.last_message_at = now
        conversation.last_inbound_at = now
        conversation.unread_count = (conversation.unread_count or 0) + 1
        if event.external_thread_id and not conversation.external_thread_id:
            conversation.external_thread_id = event.external_thread_id
        return conversation
