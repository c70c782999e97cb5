"""Operator endpoints for conversations: manual sends and automation control."""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_dispatcher, get_reply_engine
from app.domain.services.outbound_dispatcher import OutboundDispatcher, manual_dedupe_key
from app.domain.services.reply_engine import ReplyEngine
from app.persistence.database import get_db
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.message_repository import MessageRepository

logger = logging.getLogger(__name__)

router = APIRouter()


class StopRequest(BaseModel):
    """Stop automation request."""

    reason: str = Field(default="Stopped by operator", min_length=1, max_length=500)


class ManualSendRequest(BaseModel):
    """Manual outbound message request."""

    text: str = Field(..., min_length=1, max_length=4096)


class SendResponse(BaseModel):
    """Dispatch result."""

    sent: bool
    was_duplicate: bool
    message_id: int | None = None
    provider_message_id: str | None = None
    error: str | None = None
    reason: str | None = None


class MessageResponse(BaseModel):
    """Message response."""

    id: int
    direction: str
    channel: str
    type: str
    body: str | None
    status: str
    provider_message_id: str | None
    created_at: datetime

    class Config:
        from_attributes = True


async def _require_conversation(db: AsyncSession, conversation_id: int):
    conversation = await ConversationRepository(db).get_by_id(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.get("/{conversation_id}/state")
async def get_reply_state(
    conversation_id: int,
    engine: Annotated[ReplyEngine, Depends(get_reply_engine)],
) -> dict[str, Any]:
    """Current reply state of a conversation."""
    state = await engine.get_state(conversation_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return state.to_dict()


@router.post("/{conversation_id}/stop")
async def stop_automation(
    conversation_id: int,
    request: StopRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    engine: Annotated[ReplyEngine, Depends(get_reply_engine)],
) -> dict[str, Any]:
    """Halt automated replies on a conversation."""
    await _require_conversation(db, conversation_id)
    state = await engine.set_stop(conversation_id, request.reason, set_by="operator")
    return state.to_dict()


@router.delete("/{conversation_id}/stop")
async def resume_automation(
    conversation_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    engine: Annotated[ReplyEngine, Depends(get_reply_engine)],
) -> dict[str, Any]:
    """Clear the stop flag so automated replies resume."""
    await _require_conversation(db, conversation_id)
    state = await engine.clear_stop(conversation_id)
    return state.to_dict()


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    conversation_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: int = 50,
) -> list[MessageResponse]:
    await _require_conversation(db, conversation_id)
    messages = await MessageRepository(db).list_for_conversation(conversation_id, limit=limit)
    return [MessageResponse.model_validate(message) for message in messages]


@router.post("/{conversation_id}/messages", response_model=SendResponse)
async def send_manual_message(
    conversation_id: int,
    request: ManualSendRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    dispatcher: Annotated[OutboundDispatcher, Depends(get_dispatcher)],
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> SendResponse:
    """Send an operator message through the dispatcher.

    Suppressed duplicates return 200 with ``was_duplicate`` set; provider
    failures return 200 with ``sent`` false and the error.
    """
    conversation = await _require_conversation(db, conversation_id)
    contact_id, lead_id, channel = conversation.contact_id, conversation.lead_id, conversation.channel

    result = await dispatcher.send(
        contact_id,
        lead_id,
        channel,
        request.text,
        conversation_id=conversation_id,
        dedupe_key=manual_dedupe_key(conversation_id, idempotency_key) if idempotency_key else None,
        purpose="manual",
    )
    return SendResponse(
        sent=result.sent,
        was_duplicate=result.was_duplicate,
        message_id=result.message_id,
        provider_message_id=result.provider_message_id,
        error=result.error,
        reason=result.reason,
    )
