"""Tests for the reply engine."""

import pytest
from sqlalchemy import select

from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.outbound_dispatcher import OutboundDispatcher
from app.domain.services.reply_engine import ReplyAction, ReplyEngine
from app.domain.services.reply_state import ReplyStage
from app.persistence.models.message_log import ReplyEngineLog


@pytest.fixture
def engine(db_session, sender_factory):
    dispatcher = OutboundDispatcher(db_session, sender_factory)
    return ReplyEngine(db_session, dispatcher=dispatcher, draft_generator=DraftGenerator(None))


def _sent_texts(sender_factory) -> list[str]:
    return [call.args[1] for call in sender_factory.sender.send.await_args_list]


class TestConversationFlow:
    """Collect, confirm and hand over."""

    @pytest.mark.asyncio
    async def test_collects_then_confirms_then_hands_over(self, engine, db_session, sender_factory, make_conversation):
        _, lead, conversation = await make_conversation()

        first = await engine.handle_inbound(conversation.id, "m1", "Hi there")
        assert first.action == ReplyAction.ASK
        assert first.question_key == "name"
        assert first.sent is True

        second = await engine.handle_inbound(conversation.id, "m2", "My name is John Smith")
        assert second.action == ReplyAction.ASK
        assert second.question_key == "service"
        assert second.updated_fields == ["name"]

        third = await engine.handle_inbound(conversation.id, "m3", "I need a work permit")
        assert third.action == ReplyAction.CONFIRM
        assert third.stage == ReplyStage.CONFIRMING

        fourth = await engine.handle_inbound(conversation.id, "m4", "yes")
        assert fourth.action == ReplyAction.HANDOVER
        assert fourth.stage == ReplyStage.DONE

        assert _sent_texts(sender_factory) == [
            "Thanks for reaching out! May I have your full name, please?",
            "Which service are you interested in?",
            "Thanks John! Just to confirm: name: John Smith, service: visa. Is that correct?",
            "Thank you John! A member of our team will follow up with you shortly.",
        ]

        await db_session.refresh(lead)
        assert lead.data == {"name": "John Smith", "service": "visa"}
        assert lead.service_key == "visa"

        state = await engine.get_state(conversation.id)
        assert state.follow_up_step == 4
        assert state.asked_question_keys == ["name", "service"]

    @pytest.mark.asyncio
    async def test_replayed_inbound_sends_nothing(self, engine, db_session, sender_factory, make_conversation):
        _, _, conversation = await make_conversation()

        await engine.handle_inbound(conversation.id, "m1", "Hi there")
        replay = await engine.handle_inbound(conversation.id, "m1", "Hi there")

        assert replay.duplicate is True
        assert replay.action == ReplyAction.NONE
        assert sender_factory.sender.send.await_count == 1

        logs = (await db_session.execute(select(ReplyEngineLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].action == ReplyAction.ASK.value

    @pytest.mark.asyncio
    async def test_unanswered_question_leads_to_handover(self, engine, sender_factory, make_conversation):
        _, _, conversation = await make_conversation()

        await engine.handle_inbound(conversation.id, "m1", "hello")
        await engine.handle_inbound(conversation.id, "m2", "my name is Sara")
        third = await engine.handle_inbound(conversation.id, "m3", "ok")

        assert third.action == ReplyAction.HANDOVER
        assert third.reason == "questions exhausted"

    @pytest.mark.asyncio
    async def test_send_failure_does_not_advance_state(self, engine, sender_factory, make_conversation):
        from app.core.exceptions import ChannelSendError

        _, _, conversation = await make_conversation()
        sender_factory.sender.send.side_effect = ChannelSendError("provider down", retryable=True)

        outcome = await engine.handle_inbound(conversation.id, "m1", "Hi there")

        assert outcome.action == ReplyAction.ASK
        assert outcome.sent is False
        assert outcome.reason == "provider down"
        state = await engine.get_state(conversation.id)
        assert state.follow_up_step == 0
        assert state.asked_question_keys == []


class TestStop:
    """Stop keywords and operator stops."""

    @pytest.mark.asyncio
    async def test_stop_keyword_halts_replies(self, engine, sender_factory, make_conversation):
        _, _, conversation = await make_conversation()

        outcome = await engine.handle_inbound(conversation.id, "m1", "STOP")
        assert outcome.action == ReplyAction.STOP

        later = await engine.handle_inbound(conversation.id, "m2", "My name is John Smith")
        assert later.action == ReplyAction.STOP
        assert later.reason == "automation stopped"

        state = await engine.get_state(conversation.id)
        assert state.is_stopped is True
        assert state.stop.set_by == "keyword"
        sender_factory.sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_operator_stop_and_resume(self, engine, sender_factory, make_conversation):
        _, _, conversation = await make_conversation()

        await engine.set_stop(conversation.id, "VIP customer")
        stopped = await engine.handle_inbound(conversation.id, "m1", "Hi there")
        assert stopped.action == ReplyAction.STOP

        await engine.clear_stop(conversation.id)
        resumed = await engine.handle_inbound(conversation.id, "m2", "Hi again")
        assert resumed.action == ReplyAction.ASK
        assert sender_factory.sender.send.await_count == 1

    @pytest.mark.parametrize("text, keyword", [
        ("stop", "stop"),
        ("Please stop!", "stop"),
        ("I want a human", "human"),
        ("Stop by our office tomorrow to drop the passport copies", None),
        ("stopping", None),
        ("", None),
    ])
    def test_matched_stop_keyword(self, text, keyword):
        assert ReplyEngine.matched_stop_keyword(text) == keyword
