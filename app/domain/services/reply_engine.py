"""Reply engine: drives the reply state machine for each inbound message.

One inbound message produces at most one automated reply. The engine
checks three fences before sending: the per-inbound ReplyEngineLog row,
the processed-id history in the reply state, and the dispatcher's
``auto_reply`` dedupe key.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import utcnow
from app.core.exceptions import InboxError
from app.core.idempotency import generate_idempotency_key
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.field_extractor import FieldExtractor
from app.domain.services.outbound_dispatcher import OutboundDispatcher, auto_reply_dedupe_key
from app.domain.services.reply_state import (
    ReplyStage,
    ReplyState,
    Transition,
    apply_inbound,
    clear_stop,
    mark_processed,
    record_reply,
    set_stop,
    was_recently_asked,
)
from app.persistence.models.lead import Lead
from app.persistence.models.message_log import ReplyEngineLog
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.message_log_repository import ReplyEngineLogRepository
from app.settings import settings

logger = logging.getLogger(__name__)

# Stop keywords inside longer messages only count in short messages
_STOP_KEYWORD_MAX_WORDS = 4


class ReplyAction(str, enum.Enum):
    ASK = "ASK"
    CONFIRM = "CONFIRM"
    HANDOVER = "HANDOVER"
    STOP = "STOP"
    NONE = "NONE"


@dataclass
class ReplyOutcome:
    """What the engine decided and did for one inbound message."""

    action: ReplyAction
    sent: bool = False
    duplicate: bool = False
    reason: str | None = None
    template_key: str | None = None
    question_key: str | None = None
    reply_key: str | None = None
    message_id: int | None = None
    stage: ReplyStage | None = None
    stage_changed: bool = False
    updated_fields: list[str] = field(default_factory=list)


@dataclass
class _Plan:
    action: ReplyAction
    reason: str
    template_key: str | None = None
    question_key: str | None = None
    transition: Transition | None = None


class ReplyEngine:
    """Applies inbound messages to the reply state and sends the next reply."""

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: OutboundDispatcher | None = None,
        draft_generator: DraftGenerator | None = None,
        extractor: FieldExtractor | None = None,
    ):
        self.session = session
        self.dispatcher = dispatcher or OutboundDispatcher(session)
        self.draft_generator = draft_generator or DraftGenerator()
        self.extractor = extractor or FieldExtractor()
        self.conversation_repo = ConversationRepository(session)
        self.log_repo = ReplyEngineLogRepository(session)

    @staticmethod
    def required_fields(service_key: str | None) -> list[str]:
        """Fields to collect for a service; the defaults when none is known."""
        if service_key and service_key in settings.service_required_fields:
            return list(settings.service_required_fields[service_key])
        return list(settings.default_required_fields)

    @staticmethod
    def matched_stop_keyword(text: str) -> str | None:
        """Return the stop keyword the message invokes, if any."""
        normalized = re.sub(r"[^\w\s]", " ", (text or "").lower()).split()
        if not normalized:
            return None
        if len(normalized) == 1:
            return normalized[0] if normalized[0] in settings.stop_keywords else None
        if len(normalized) > _STOP_KEYWORD_MAX_WORDS:
            return None
        for keyword in settings.stop_keywords:
            if keyword in normalized:
                return keyword
        return None

    async def get_state(self, conversation_id: int) -> ReplyState | None:
        conversation = await self.conversation_repo.reload(conversation_id)
        if conversation is None:
            return None
        return ReplyState.from_dict(conversation.automation_memory)

    async def handle_inbound(self, conversation_id: int, inbound_message_id: str, text: str) -> ReplyOutcome:
        """Process one inbound message and send at most one reply.

        Args:
            conversation_id: Conversation the message arrived on
            inbound_message_id: Provider message id of the inbound message
            text: Inbound text (may be empty for media-only messages)

        Returns:
            ReplyOutcome describing the decision
        """
        if await self.log_repo.get_for_inbound(conversation_id, inbound_message_id):
            logger.info(
                "[REPLY_DUPLICATE] Inbound already handled by reply engine",
                extra={"conversation_id": conversation_id, "inbound_message_id": inbound_message_id},
            )
            return ReplyOutcome(action=ReplyAction.NONE, duplicate=True, reason="already handled")

        conversation = await self.conversation_repo.reload(conversation_id)
        if conversation is None:
            raise InboxError(f"Conversation {conversation_id} not found")
        contact_id = conversation.contact_id
        lead_id = conversation.lead_id
        channel = conversation.channel

        extracted = self.extractor.extract(text)
        stop_keyword = self.matched_stop_keyword(text)
        now = utcnow()

        def mutate(state: ReplyState) -> tuple[ReplyState, _Plan]:
            if state.has_processed(inbound_message_id):
                return state, _Plan(ReplyAction.NONE, "inbound already applied")

            if stop_keyword:
                state = set_stop(state, f"Customer sent '{stop_keyword}'", now, set_by="keyword")
                return mark_processed(state, inbound_message_id), _Plan(ReplyAction.STOP, "stop keyword")

            if state.is_stopped:
                return mark_processed(state, inbound_message_id), _Plan(ReplyAction.STOP, "automation stopped")

            service = state.service_key or (extracted["service"].value if "service" in extracted else None)
            transition = apply_inbound(
                state, inbound_message_id, text, extracted, required=self.required_fields(service)
            )
            plan = self._plan(transition)
            if plan.action == ReplyAction.HANDOVER:
                transition.state.stage = ReplyStage.DONE
                transition.state.next_question_key = None
            return transition.state, plan

        state, plan = await self._update_state(conversation_id, mutate)
        transition = plan.transition
        outcome = ReplyOutcome(
            action=plan.action,
            reason=plan.reason,
            template_key=plan.template_key,
            question_key=plan.question_key,
            stage=state.stage,
            stage_changed=transition.stage_changed if transition else False,
            updated_fields=list(transition.updated_fields) if transition else [],
        )

        if outcome.updated_fields and lead_id is not None:
            await self._sync_lead(lead_id, state)

        if plan.action in (ReplyAction.NONE, ReplyAction.STOP) or plan.template_key is None:
            if plan.action == ReplyAction.STOP:
                logger.info(
                    "[REPLY_STOPPED] Automated reply skipped",
                    extra={"conversation_id": conversation_id, "reason": plan.reason},
                )
            await self._log(conversation_id, inbound_message_id, outcome)
            return outcome

        draft = await self.draft_generator.generate(
            plan.template_key, state.collected, question_key=plan.question_key, inbound_text=text
        )

        if plan.action == ReplyAction.ASK and was_recently_asked(
            state, draft.text, now, settings.question_recent_minutes
        ):
            outcome.action = ReplyAction.NONE
            outcome.reason = "question recently asked"
            await self._log(conversation_id, inbound_message_id, outcome)
            return outcome

        reply_key = generate_idempotency_key(
            str(conversation_id), plan.question_key or plan.action.value, str(state.follow_up_step)
        )
        outcome.reply_key = reply_key
        if reply_key == state.last_outbound_reply_key:
            outcome.action = ReplyAction.NONE
            outcome.reason = "reply already sent"
            await self._log(conversation_id, inbound_message_id, outcome)
            return outcome

        result = await self.dispatcher.send(
            contact_id,
            lead_id,
            channel,
            draft.text,
            conversation_id=conversation_id,
            dedupe_key=auto_reply_dedupe_key(conversation_id, inbound_message_id, channel),
            purpose="auto_reply",
            inbound_provider_message_id=inbound_message_id,
        )
        outcome.sent = result.sent
        outcome.message_id = result.message_id
        if result.was_duplicate:
            outcome.reason = result.reason or "duplicate reply suppressed"
        elif not result.sent:
            outcome.reason = result.error

        if result.sent:
            question_text = draft.text if plan.action == ReplyAction.ASK else None
            sent_at = utcnow()
            await self._update_state(
                conversation_id,
                lambda current: (
                    record_reply(current, reply_key, plan.question_key, question_text, sent_at),
                    None,
                ),
            )

        await self._log(conversation_id, inbound_message_id, outcome)
        return outcome

    def _plan(self, transition: Transition) -> _Plan:
        state = transition.state
        if state.stage == ReplyStage.DONE:
            if transition.stage_changed:
                return _Plan(ReplyAction.HANDOVER, "details confirmed", "handover", transition=transition)
            return _Plan(ReplyAction.NONE, "conversation already handed over", transition=transition)

        if state.follow_up_step >= settings.max_follow_up_steps:
            return _Plan(ReplyAction.HANDOVER, "follow-up limit reached", "handover", transition=transition)

        if state.stage == ReplyStage.CONFIRMING:
            if transition.stage_changed or transition.updated_fields:
                return _Plan(ReplyAction.CONFIRM, "all required fields collected", "confirm", transition=transition)
            return _Plan(ReplyAction.NONE, "awaiting confirmation", transition=transition)

        if state.next_question_key:
            key = state.next_question_key
            return _Plan(ReplyAction.ASK, f"missing {key}", f"ask_{key}", key, transition=transition)
        if state.missing:
            return _Plan(ReplyAction.HANDOVER, "questions exhausted", "handover", transition=transition)
        return _Plan(ReplyAction.NONE, "nothing to ask", transition=transition)

    async def _update_state(
        self,
        conversation_id: int,
        mutate: Callable[[ReplyState], tuple[ReplyState, object]],
    ) -> tuple[ReplyState, object]:
        """Read-modify-write the reply state under the conversation version.

        A concurrent writer causes StaleDataError; the state is reloaded and
        ``mutate`` is applied once more to the fresh copy.
        """
        try:
            return await self._write_state(conversation_id, mutate)
        except StaleDataError:
            await self.session.rollback()

        logger.warning(
            "[REPLY_STATE_CONFLICT] Concurrent state update, retrying",
            extra={"conversation_id": conversation_id},
        )
        try:
            return await self._write_state(conversation_id, mutate)
        except StaleDataError:
            await self.session.rollback()
            raise

    async def _write_state(
        self,
        conversation_id: int,
        mutate: Callable[[ReplyState], tuple[ReplyState, object]],
    ) -> tuple[ReplyState, object]:
        conversation = await self.conversation_repo.reload(conversation_id)
        if conversation is None:
            raise InboxError(f"Conversation {conversation_id} not found")
        state, extra = mutate(ReplyState.from_dict(conversation.automation_memory))
        conversation.automation_memory = state.to_dict()
        await self.session.commit()
        return state, extra

    async def _sync_lead(self, lead_id: int, state: ReplyState) -> None:
        """Copy collected fields onto the lead."""
        lead = await self.session.get(Lead, lead_id)
        if lead is None:
            return
        data = dict(lead.data or {})
        data.update(state.collected)
        lead.data = data
        if state.service_key and not lead.service_key:
            lead.service_key = state.service_key
        await self.session.commit()

    async def _log(self, conversation_id: int, inbound_message_id: str, outcome: ReplyOutcome) -> None:
        self.session.add(ReplyEngineLog(
            conversation_id=conversation_id,
            inbound_message_id=inbound_message_id,
            action=outcome.action.value,
            template_key=outcome.template_key,
            question_key=outcome.question_key,
            reply_key=outcome.reply_key,
            reason=outcome.reason,
        ))
        try:
            await self.session.commit()
        except IntegrityError:
            # Another worker logged the same inbound first
            await self.session.rollback()

    async def set_stop(self, conversation_id: int, reason: str, set_by: str = "operator") -> ReplyState:
        """Halt automated replies on a conversation."""
        now = utcnow()
        state, _ = await self._update_state(conversation_id, lambda s: (set_stop(s, reason, now, set_by), None))
        logger.info(
            "[REPLY_STOPPED] Automation stopped",
            extra={"conversation_id": conversation_id, "reason": reason, "set_by": set_by},
        )
        return state

    async def clear_stop(self, conversation_id: int) -> ReplyState:
        """Resume automated replies. Only operators call this."""
        state, _ = await self._update_state(conversation_id, lambda s: (clear_stop(s), None))
        logger.info("Automation resumed", extra={"conversation_id": conversation_id})
        return state
