"""Pytest configuration and fixtures."""

import itertools
from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.infrastructure.channels.base import SendReceipt
from app.persistence.database import Base, get_db
from app.persistence.models import *  # noqa: F401, F403
from app.persistence.models.contact import Contact
from app.persistence.models.conversation import Conversation
from app.persistence.models.lead import Lead, LeadStage


class FakeSenderFactory:
    """Sender factory whose senders record calls instead of hitting providers."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.sender = AsyncMock()
        self.sender.send.side_effect = self._send
        self.channels: list[str] = []

    async def _send(self, to, text, media=None):
        return SendReceipt(provider_message_id=f"out-{next(self._ids)}", status="sent", provider="fake")

    def get_sender(self, channel: str):
        self.channels.append(channel)
        return self.sender


@pytest.fixture
async def db_session():
    """Create a test database session."""
    # Use in-memory SQLite for testing
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def sender_factory():
    return FakeSenderFactory()


@pytest.fixture
async def client(db_session, sender_factory):
    """Create a test client bound to the test session and fake senders."""
    from app.api.deps import get_draft_generator, get_sender_factory
    from app.domain.services.draft_generator import DraftGenerator
    from app.main import app

    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_sender_factory] = lambda: sender_factory
    app.dependency_overrides[get_draft_generator] = lambda: DraftGenerator(None)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def make_conversation(db_session):
    """Factory creating a contact, lead and conversation."""

    async def _make(
        address: str = "+15551230000",
        channel: str = "whatsapp",
        stage: str = LeadStage.NEW.value,
        created_at: datetime | None = None,
        **lead_fields,
    ) -> tuple[Contact, Lead, Conversation]:
        contact = Contact(address=address, phone=address if address.startswith("+") else None, source=channel)
        db_session.add(contact)
        await db_session.flush()

        lead_kwargs = {"contact_id": contact.id, "stage": stage, "source": channel, **lead_fields}
        if created_at is not None:
            lead_kwargs["created_at"] = created_at
        lead = Lead(**lead_kwargs)
        db_session.add(lead)
        await db_session.flush()

        conversation = Conversation(contact_id=contact.id, channel=channel, lead_id=lead.id, status="open")
        db_session.add(conversation)
        await db_session.commit()
        return contact, lead, conversation

    return _make
