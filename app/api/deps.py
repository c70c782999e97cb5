"""FastAPI dependencies for services and channel collaborators."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.automation.engine import AutomationEngine
from app.domain.automation.rule_service import AutomationRuleService
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.inbound_pipeline import InboundPipeline
from app.domain.services.outbound_dispatcher import OutboundDispatcher
from app.domain.services.reply_engine import ReplyEngine
from app.infrastructure.channels.base import MediaFetcher
from app.infrastructure.channels.factory import ChannelSenderFactory, get_media_fetcher
from app.llm.factory import get_llm_client
from app.persistence.database import get_db


def get_sender_factory() -> ChannelSenderFactory:
    return ChannelSenderFactory()


def get_draft_generator() -> DraftGenerator:
    """Draft generator backed by the configured LLM, or templates only."""
    return DraftGenerator(get_llm_client())


def get_fetcher() -> MediaFetcher:
    return get_media_fetcher()


def get_dispatcher(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender_factory: Annotated[ChannelSenderFactory, Depends(get_sender_factory)],
) -> OutboundDispatcher:
    return OutboundDispatcher(db, sender_factory)


def get_reply_engine(
    db: Annotated[AsyncSession, Depends(get_db)],
    dispatcher: Annotated[OutboundDispatcher, Depends(get_dispatcher)],
    draft_generator: Annotated[DraftGenerator, Depends(get_draft_generator)],
) -> ReplyEngine:
    return ReplyEngine(db, dispatcher=dispatcher, draft_generator=draft_generator)


def get_inbound_pipeline(
    db: Annotated[AsyncSession, Depends(get_db)],
    sender_factory: Annotated[ChannelSenderFactory, Depends(get_sender_factory)],
    draft_generator: Annotated[DraftGenerator, Depends(get_draft_generator)],
) -> InboundPipeline:
    return InboundPipeline(db, sender_factory=sender_factory, draft_generator=draft_generator)


def get_automation_engine(
    db: Annotated[AsyncSession, Depends(get_db)],
    dispatcher: Annotated[OutboundDispatcher, Depends(get_dispatcher)],
    draft_generator: Annotated[DraftGenerator, Depends(get_draft_generator)],
) -> AutomationEngine:
    return AutomationEngine(db, dispatcher=dispatcher, draft_generator=draft_generator)


def get_rule_service(db: Annotated[AsyncSession, Depends(get_db)]) -> AutomationRuleService:
    return AutomationRuleService(db)
