"""Tests for identity resolution of inbound events."""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.exceptions import IdentityConflictError
from app.domain.services.auto_match_service import AutoMatchResolver
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.inbound_normalizer import InboundEvent
from app.domain.services.inbound_pipeline import InboundPipeline
from app.persistence.database import Base
from app.persistence.models.contact import Contact
from app.persistence.models.conversation import Conversation, Message, MessageDirection
from app.persistence.models.lead import Lead, LeadStage


def _event(provider_id="wamid.1", channel="whatsapp", sender="447700900123", text="Hello", **kwargs):
    return InboundEvent(
        channel=channel,
        provider_message_id=provider_id,
        from_address=sender,
        text=text,
        received_at=datetime(2026, 3, 1, 9, 0),
        wa_id=sender if channel == "whatsapp" else None,
        **kwargs,
    )


async def _count(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestResolve:
    """Find-or-create behaviour."""

    @pytest.mark.asyncio
    async def test_first_message_creates_identity(self, db_session):
        resolver = AutoMatchResolver(db_session)

        result = await resolver.resolve(_event(from_name="Amira"))

        assert result.was_duplicate is False
        assert result.contact_created is True
        assert result.lead_created is True
        assert result.contact.address == "+447700900123"
        assert result.contact.display_name == "Amira"
        assert result.lead.stage == LeadStage.NEW.value
        assert result.conversation.channel == "whatsapp"
        assert result.conversation.lead_id == result.lead.id
        assert result.conversation.unread_count == 1
        assert result.message.body == "Hello"

    @pytest.mark.asyncio
    async def test_same_event_twice_is_a_noop(self, db_session):
        resolver = AutoMatchResolver(db_session)

        first = await resolver.resolve(_event())
        second = await resolver.resolve(_event())

        assert second.was_duplicate is True
        assert second.message.id == first.message.id
        assert second.conversation.id == first.conversation.id
        assert await _count(db_session, Contact) == 1
        assert await _count(db_session, Conversation) == 1
        assert await _count(db_session, Message) == 1

    @pytest.mark.asyncio
    async def test_follow_up_message_reuses_lead(self, db_session):
        resolver = AutoMatchResolver(db_session)

        first = await resolver.resolve(_event("wamid.1"))
        second = await resolver.resolve(_event("wamid.2", text="Still there?"))

        assert second.lead_created is False
        assert second.lead.id == first.lead.id
        assert second.conversation.unread_count == 2
        assert await _count(db_session, Message) == 2

    @pytest.mark.asyncio
    async def test_terminal_lead_is_not_reused(self, db_session):
        resolver = AutoMatchResolver(db_session)
        first = await resolver.resolve(_event("wamid.1"))
        first.lead.stage = LeadStage.COMPLETED_WON.value
        await db_session.commit()

        second = await resolver.resolve(_event("wamid.2"))

        assert second.lead_created is True
        assert second.lead.id != first.lead.id
        assert second.conversation.id == first.conversation.id
        assert second.conversation.lead_id == second.lead.id
        assert await _count(db_session, Lead) == 2

    @pytest.mark.asyncio
    async def test_phone_channels_share_a_contact(self, db_session):
        resolver = AutoMatchResolver(db_session)

        whatsapp = await resolver.resolve(_event("wamid.1"))
        sms = await resolver.resolve(_event("SM1", channel="sms", sender="+447700900123"))

        assert sms.contact.id == whatsapp.contact.id
        assert sms.conversation.id != whatsapp.conversation.id
        assert await _count(db_session, Contact) == 1

    @pytest.mark.asyncio
    async def test_handles_are_channel_scoped(self, db_session):
        resolver = AutoMatchResolver(db_session)

        ig = await resolver.resolve(_event("m1", channel="instagram", sender="12345"))
        fb = await resolver.resolve(_event("m2", channel="facebook", sender="12345"))

        assert ig.contact.address == "ig:12345"
        assert fb.contact.address == "fb:12345"
        assert ig.contact.id != fb.contact.id


class TestConflicts:
    """Unique-constraint races are retried once."""

    @pytest.mark.asyncio
    async def test_retries_after_integrity_error(self, db_session, monkeypatch):
        resolver = AutoMatchResolver(db_session)
        original = resolver._find_or_create_contact
        calls = []

        async def flaky(channel, event):
            calls.append(channel)
            if len(calls) == 1:
                raise IntegrityError("INSERT INTO contacts", {}, Exception("duplicate address"))
            return await original(channel, event)

        monkeypatch.setattr(resolver, "_find_or_create_contact", flaky)

        result = await resolver.resolve(_event())

        assert len(calls) == 2
        assert result.was_duplicate is False
        assert await _count(db_session, Contact) == 1

    @pytest.mark.asyncio
    async def test_second_conflict_raises(self, db_session, monkeypatch):
        resolver = AutoMatchResolver(db_session)

        async def always_conflicts(channel, event):
            raise IntegrityError("INSERT INTO contacts", {}, Exception("duplicate address"))

        monkeypatch.setattr(resolver, "_find_or_create_contact", always_conflicts)

        with pytest.raises(IdentityConflictError):
            await resolver.resolve(_event())


class TestConcurrentDelivery:
    """Redeliveries racing each other on separate connections."""

    @pytest.fixture
    async def session_factory(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inbox.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_simultaneous_deliveries_create_one_identity(self, session_factory, sender_factory):
        event = _event(provider_id="m1", sender="+1000", text="hello")

        async def deliver():
            async with session_factory() as session:
                pipeline = InboundPipeline(session, sender_factory, DraftGenerator(None))
                return await pipeline.process_event(event)

        results = await asyncio.gather(deliver(), deliver())

        assert sorted(result.status for result in results) == ["duplicate", "processed"]
        async with session_factory() as session:
            assert await _count(session, Contact) == 1
            assert await _count(session, Lead) == 1
            assert await _count(session, Conversation) == 1
            inbound = await session.execute(
                select(func.count()).select_from(Message).where(
                    Message.direction == MessageDirection.INBOUND.value
                )
            )
            assert inbound.scalar_one() == 1
