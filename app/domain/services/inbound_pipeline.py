"""Inbound pipeline: everything that happens to one webhook event.

    redis fast path -> durable dedup fence -> resolve identity
    -> event rules -> reply engine -> mark fence PROCESSED / FAILED

Webhook handlers call ``process_payload`` and always answer the provider
with 200; failures are recorded on the dedup fence and in the logs.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.request_context import set_conversation_context
from app.domain.automation.engine import AutomationEngine
from app.domain.services.auto_match_service import AutoMatchResolver
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.inbound_normalizer import InboundEvent, normalize, parse_status_updates
from app.domain.services.outbound_dispatcher import OutboundDispatcher
from app.domain.services.reply_engine import ReplyEngine
from app.infrastructure.channels.factory import ChannelSenderFactory
from app.infrastructure.redis import redis_client
from app.persistence.models.automation import RuleTrigger
from app.persistence.models.message_log import ProcessingStatus
from app.persistence.repositories.message_log_repository import InboundDedupRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class InboundResult:
    """Outcome for one inbound event."""

    provider_message_id: str
    status: str  # processed, duplicate, failed
    conversation_id: int | None = None
    lead_id: int | None = None
    reply_action: str | None = None
    error: str | None = None


@dataclass
class PayloadResult:
    """Outcome for one webhook body."""

    events: list[InboundResult]
    status_updates: int = 0

    @property
    def has_failures(self) -> bool:
        return any(event.status == "failed" for event in self.events)


class InboundPipeline:
    """Runs normalized inbound events through dedup, identity and replies."""

    def __init__(
        self,
        session: AsyncSession,
        sender_factory: ChannelSenderFactory | None = None,
        draft_generator: DraftGenerator | None = None,
    ):
        self.session = session
        self.dispatcher = OutboundDispatcher(session, sender_factory)
        self.draft_generator = draft_generator or DraftGenerator()
        self.resolver = AutoMatchResolver(session)
        self.reply_engine = ReplyEngine(session, dispatcher=self.dispatcher, draft_generator=self.draft_generator)
        self.automation = AutomationEngine(session, dispatcher=self.dispatcher, draft_generator=self.draft_generator)
        self.dedup_repo = InboundDedupRepository(session)

    async def process_payload(self, channel: str, payload: dict[str, Any]) -> PayloadResult:
        """Normalize a webhook body and process every event in it.

        Raises:
            NormalizationError: If the payload cannot be parsed
        """
        events = normalize(channel, payload)
        results = [await self.process_event(event) for event in events]

        applied = 0
        for status_update in parse_status_updates(channel, payload):
            if await self.dispatcher.apply_status_update(status_update):
                applied += 1

        return PayloadResult(events=results, status_updates=applied)

    async def process_event(self, event: InboundEvent) -> InboundResult:
        """Process one inbound event exactly once."""
        provider_id = event.provider_message_id
        redis_key = f"inbound:{event.channel}:{provider_id}"
        if not await redis_client.setnx(redis_key, "1", settings.webhook_dedup_ttl_seconds):
            logger.info(
                "[DUPLICATE_WEBHOOK] Redelivery dropped by fast path",
                extra={"channel": event.channel, "provider_message_id": provider_id},
            )
            return InboundResult(provider_message_id=provider_id, status="duplicate")

        if not await self.dedup_repo.claim(event.channel, provider_id):
            logger.info(
                "[DUPLICATE_WEBHOOK] Inbound event already received",
                extra={"channel": event.channel, "provider_message_id": provider_id},
            )
            return InboundResult(provider_message_id=provider_id, status="duplicate")

        try:
            result = await self._handle(event)
        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Inbound processing failed for {event.channel} message {provider_id}: {e}",
                exc_info=True,
                extra={"channel": event.channel, "provider_message_id": provider_id},
            )
            await self._mark(event, ProcessingStatus.FAILED, str(e))
            return InboundResult(provider_message_id=provider_id, status="failed", error=str(e))

        await self._mark(event, ProcessingStatus.PROCESSED)
        return result

    async def _handle(self, event: InboundEvent) -> InboundResult:
        resolved = await self.resolver.resolve(event)
        conversation_id = resolved.conversation.id if resolved.conversation else None
        lead_id = resolved.lead.id if resolved.lead else None
        lead_created = resolved.lead_created

        if resolved.was_duplicate:
            return InboundResult(
                provider_message_id=event.provider_message_id,
                status="duplicate",
                conversation_id=conversation_id,
                lead_id=lead_id,
            )

        set_conversation_context(conversation_id)
        event_context = {"conversation_id": conversation_id, "channel": event.channel, "text": event.text}

        if lead_id is not None:
            if lead_created:
                await self.automation.run_for_event(RuleTrigger.LEAD_CREATED, lead_id, event_context)
            await self.automation.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead_id, event_context)

        outcome = await self.reply_engine.handle_inbound(conversation_id, event.provider_message_id, event.text)

        if outcome.updated_fields and lead_id is not None:
            await self.automation.run_for_event(
                RuleTrigger.INFO_SHARED, lead_id, {**event_context, "fields": outcome.updated_fields}
            )

        return InboundResult(
            provider_message_id=event.provider_message_id,
            status="processed",
            conversation_id=conversation_id,
            lead_id=lead_id,
            reply_action=outcome.action.value,
        )

    async def _mark(self, event: InboundEvent, status: ProcessingStatus, error: str | None = None) -> None:
        try:
            await self.dedup_repo.mark(event.channel, event.provider_message_id, status, error)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Could not record {status.value} for {event.provider_message_id}: {e}")
