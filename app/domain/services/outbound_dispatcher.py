"""Outbound dispatcher: idempotency check, then send-or-suppress.

Every message leaving the system goes through ``OutboundDispatcher.send``,
whether typed by an operator, produced by the reply engine or fired by an
automation rule. Sends are never retried here; a failed or timed-out send
is stored as a FAILED message and reported to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import ChannelSendError
from app.core.idempotency import (
    content_hash,
    generate_idempotency_key,
    normalize_outbound_text,
    similarity_ratio,
)
from app.core.phone import normalize_channel, strip_address_prefix
from app.domain.services.inbound_normalizer import StatusUpdate
from app.infrastructure.channels.base import OutboundMedia, SendReceipt
from app.infrastructure.channels.factory import ChannelSenderFactory
from app.persistence.models.contact import Contact
from app.persistence.models.conversation import Conversation, Message, MessageDirection, MessageStatus, MessageType
from app.persistence.models.lead import Lead
from app.persistence.models.message_log import OutboundLogStatus
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.message_log_repository import OutboundMessageLogRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)

# Later receipts must not move a message back to an earlier status
_STATUS_RANK = {
    MessageStatus.PENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}


@dataclass
class DuplicateCheck:
    """Result of the content idempotency check."""

    is_duplicate: bool
    existing_message_id: int | None = None
    reason: str | None = None
    similarity: float | None = None


@dataclass
class DispatchResult:
    """Result of a dispatch attempt."""

    sent: bool
    was_duplicate: bool = False
    message_id: int | None = None
    provider_message_id: str | None = None
    error: str | None = None
    reason: str | None = None


def _with_failure(reason: str, existing: Message) -> str:
    """Flag a suppression whose matched message never reached the customer."""
    if existing.status != MessageStatus.FAILED.value:
        return reason
    return f"{reason}; that send failed: {existing.error or 'unknown error'}"


def auto_reply_dedupe_key(conversation_id: int, inbound_provider_message_id: str, channel: str) -> str:
    """Key allowing exactly one auto-reply per inbound message."""
    return generate_idempotency_key(
        f"conv:{conversation_id}",
        f"inbound:{inbound_provider_message_id}",
        f"channel:{normalize_channel(channel)}",
        "purpose:auto_reply",
    )


def manual_dedupe_key(conversation_id: int, client_key: str) -> str:
    """Key for an operator send carrying an Idempotency-Key header."""
    return generate_idempotency_key(f"conv:{conversation_id}", "purpose:manual", f"client:{client_key}")


class OutboundDispatcher:
    """Sends outbound messages with duplicate suppression."""

    def __init__(
        self,
        session: AsyncSession,
        sender_factory: ChannelSenderFactory | None = None,
    ) -> None:
        self.session = session
        self.sender_factory = sender_factory or ChannelSenderFactory()
        self.message_repo = MessageRepository(session)
        self.conversation_repo = ConversationRepository(session)
        self.outbound_log_repo = OutboundMessageLogRepository(session)

    async def check_duplicate(
        self,
        contact_id: int,
        lead_id: int | None,
        channel: str,
        text: str,
        now: datetime | None = None,
    ) -> DuplicateCheck:
        """Check recent outbound messages for identical or near-identical text.

        Args:
            contact_id: Contact ID
            lead_id: Lead ID, or None to match any lead of the contact
            channel: Channel tag
            text: Candidate message text
            now: Reference time (defaults to current time)

        Returns:
            DuplicateCheck describing the match, if any
        """
        if not normalize_outbound_text(text):
            return DuplicateCheck(is_duplicate=False)

        now = now or utcnow()
        window = settings.outbound_idempotency_window_minutes
        recent = await self.message_repo.list_recent_outbound(
            contact_id, lead_id, normalize_channel(channel), since=now - timedelta(minutes=window)
        )
        if not recent:
            return DuplicateCheck(is_duplicate=False)

        candidate_hash = content_hash(text)
        for existing in recent:
            existing_hash = existing.content_hash or content_hash(existing.body or "")
            if existing_hash == candidate_hash:
                minutes_ago = int((now - existing.created_at).total_seconds() // 60)
                return DuplicateCheck(
                    is_duplicate=True,
                    existing_message_id=existing.id,
                    reason=_with_failure(
                        f"Identical message sent {minutes_ago} minute(s) ago (message ID: {existing.id})", existing
                    ),
                    similarity=1.0,
                )

        latest = recent[0]
        similarity = similarity_ratio(normalize_outbound_text(text), normalize_outbound_text(latest.body or ""))
        if similarity > settings.outbound_similarity_threshold:
            minutes_ago = int((now - latest.created_at).total_seconds() // 60)
            return DuplicateCheck(
                is_duplicate=True,
                existing_message_id=latest.id,
                reason=_with_failure(
                    f"Very similar message ({similarity:.0%} match) sent {minutes_ago} minute(s) ago "
                    f"(message ID: {latest.id})",
                    latest,
                ),
                similarity=similarity,
            )

        return DuplicateCheck(is_duplicate=False, similarity=similarity)

    async def send(
        self,
        contact_id: int,
        lead_id: int | None,
        channel: str,
        text: str,
        *,
        conversation_id: int | None = None,
        dedupe_key: str | None = None,
        purpose: str = "manual",
        media: OutboundMedia | None = None,
        inbound_provider_message_id: str | None = None,
    ) -> DispatchResult:
        """Send a message unless it duplicates a recent one.

        Args:
            contact_id: Recipient contact
            lead_id: Lead the message belongs to, if any
            channel: Channel to send on
            text: Message text
            conversation_id: Conversation to attach to; looked up or created
                from (contact, channel) when omitted
            dedupe_key: Optional key; a second send with the same key is
                suppressed regardless of content
            purpose: auto_reply, manual or automation
            media: Optional media attachment
            inbound_provider_message_id: Inbound message this send answers

        Returns:
            DispatchResult. ``was_duplicate`` results carry the id of the
            message that caused the suppression.
        """
        channel = normalize_channel(channel)
        if not normalize_outbound_text(text) and media is None:
            return DispatchResult(sent=False, error="Message text is empty")

        check = await self.check_duplicate(contact_id, lead_id, channel, text)
        if check.is_duplicate:
            logger.warning(
                "[OUTBOUND_SUPPRESSED] Duplicate outbound message not sent",
                extra={
                    "contact_id": contact_id,
                    "lead_id": lead_id,
                    "channel": channel,
                    "purpose": purpose,
                    "existing_message_id": check.existing_message_id,
                    "reason": check.reason,
                },
            )
            return DispatchResult(
                sent=False,
                was_duplicate=True,
                message_id=check.existing_message_id,
                reason=check.reason,
            )

        contact = await self.session.get(Contact, contact_id)
        if contact is None:
            return DispatchResult(sent=False, error=f"Contact {contact_id} not found")
        to_address = strip_address_prefix(channel, contact.address)

        conversation_id = await self._resolve_conversation_id(contact_id, lead_id, channel, conversation_id)

        if dedupe_key:
            claimed = await self.outbound_log_repo.claim(
                dedupe_key,
                purpose=purpose,
                conversation_id=conversation_id,
                inbound_provider_message_id=inbound_provider_message_id,
            )
            if not claimed:
                existing_log = await self.outbound_log_repo.get_by_key(dedupe_key)
                logger.warning(
                    "[OUTBOUND_SUPPRESSED] Dedupe key already used",
                    extra={
                        "conversation_id": conversation_id,
                        "purpose": purpose,
                        "dedupe_key": dedupe_key,
                    },
                )
                return DispatchResult(
                    sent=False,
                    was_duplicate=True,
                    message_id=existing_log.message_id if existing_log else None,
                    reason="Send with this dedupe key already attempted",
                )

        receipt, error = await self._deliver(channel, to_address, text, media)

        now = utcnow()
        message = Message(
            conversation_id=conversation_id,
            contact_id=contact_id,
            lead_id=lead_id,
            direction=MessageDirection.OUTBOUND.value,
            channel=channel,
            type=media.kind if media else MessageType.TEXT.value,
            body=text,
            media_id=(media.media_id or media.url) if media else None,
            status=MessageStatus.SENT.value if receipt else MessageStatus.FAILED.value,
            provider_message_id=receipt.provider_message_id if receipt else None,
            content_hash=content_hash(text),
            error=error,
            raw_payload={"purpose": purpose, "provider": receipt.provider} if receipt else {"purpose": purpose},
            created_at=now,
        )
        self.session.add(message)
        await self.session.flush()

        if receipt:
            # Timestamps only; the conversation version is left alone so this
            # never conflicts with a concurrent state write.
            await self.session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(last_outbound_at=now, last_message_at=now)
                .execution_options(synchronize_session=False)
            )
            if lead_id is not None:
                await self.session.execute(
                    update(Lead)
                    .where(Lead.id == lead_id)
                    .values(last_outbound_at=now)
                    .execution_options(synchronize_session=False)
                )

        if dedupe_key:
            await self.outbound_log_repo.mark(
                dedupe_key,
                OutboundLogStatus.SENT if receipt else OutboundLogStatus.FAILED,
                message_id=message.id,
                provider_message_id=receipt.provider_message_id if receipt else None,
                error=error,
            )

        await self.session.commit()

        if receipt is None:
            return DispatchResult(sent=False, message_id=message.id, error=error)

        logger.info(
            f"Sent {channel} message {message.id} to contact {contact_id}",
            extra={
                "purpose": purpose,
                "provider_message_id": receipt.provider_message_id,
                "conversation_id": conversation_id,
            },
        )
        return DispatchResult(
            sent=True,
            message_id=message.id,
            provider_message_id=receipt.provider_message_id,
        )

    async def _deliver(
        self,
        channel: str,
        to_address: str,
        text: str,
        media: OutboundMedia | None,
    ) -> tuple[SendReceipt | None, str | None]:
        """Call the channel sender once. Returns (receipt, error)."""
        timeout = settings.channel_send_timeout_seconds
        try:
            sender = self.sender_factory.get_sender(channel)
            receipt = await asyncio.wait_for(sender.send(to_address, text, media), timeout=timeout)
            return receipt, None
        except asyncio.TimeoutError:
            error = f"Send timed out after {timeout}s; delivery outcome unknown"
            retryable = True
        except ChannelSendError as e:
            error = str(e)
            retryable = e.retryable
        except ValueError as e:
            # Provider not configured
            error = str(e)
            retryable = False

        logger.error(
            "[OUTBOUND_FAILED] Channel send failed",
            extra={"channel": channel, "error": error, "retryable": retryable},
        )
        return None, error

    async def _resolve_conversation_id(
        self,
        contact_id: int,
        lead_id: int | None,
        channel: str,
        conversation_id: int | None,
    ) -> int:
        if conversation_id is not None:
            return conversation_id

        conversation = await self.conversation_repo.get_by_contact_channel(contact_id, channel)
        if conversation is not None:
            return conversation.id

        conversation = Conversation(contact_id=contact_id, channel=channel, lead_id=lead_id, status="open")
        self.session.add(conversation)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            conversation = await self.conversation_repo.get_by_contact_channel(contact_id, channel)
            if conversation is None:
                raise
        return conversation.id

    async def apply_status_update(self, status_update: StatusUpdate) -> bool:
        """Apply a provider delivery receipt to the matching outbound message.

        Returns:
            True if a message was updated
        """
        message = await self.message_repo.get_by_provider_id(
            status_update.channel, status_update.provider_message_id
        )
        if message is None or message.direction != MessageDirection.OUTBOUND.value:
            return False

        new_status = status_update.status.value
        if new_status == MessageStatus.FAILED.value:
            message.status = new_status
            message.error = status_update.error or message.error
        elif _STATUS_RANK.get(new_status, 0) > _STATUS_RANK.get(message.status, -1):
            message.status = new_status
        else:
            return False

        await self.session.commit()
        logger.info(f"Message {message.id} status -> {new_status}")
        return True
