"""Durable dedup fences for inbound events, outbound sends and auto-replies."""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from app.core.clock import utcnow
from app.persistence.database import Base


class ProcessingStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class OutboundLogStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class InboundMessageDedup(Base):
    """Written before any identity work; a unique violation means redelivery."""

    __tablename__ = "inbound_message_dedup"
    __table_args__ = (
        UniqueConstraint("provider", "provider_message_id", name="uq_inbound_dedup_provider_message"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)
    provider_message_id = Column(String(255), nullable=False)
    processing_status = Column(String(20), nullable=False, default=ProcessingStatus.PROCESSING.value)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<InboundMessageDedup(provider={self.provider}, provider_message_id={self.provider_message_id})>"


class OutboundMessageLog(Base):
    """Pending-first record of a keyed send.

    The row is inserted as PENDING before the provider call, so a second
    attempt with the same key fails on the unique constraint.
    """

    __tablename__ = "outbound_message_logs"

    id = Column(Integer, primary_key=True, index=True)
    dedupe_key = Column(String(64), nullable=False, unique=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=True, index=True)
    inbound_provider_message_id = Column(String(255), nullable=True)
    purpose = Column(String(30), nullable=False)  # auto_reply, manual, automation
    status = Column(String(20), nullable=False, default=OutboundLogStatus.PENDING.value)
    provider_message_id = Column(String(255), nullable=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)


class ReplyEngineLog(Base):
    """Decision taken by the reply engine for one inbound message."""

    __tablename__ = "reply_engine_logs"
    __table_args__ = (
        UniqueConstraint("conversation_id", "inbound_message_id", name="uq_reply_log_conversation_inbound"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    inbound_message_id = Column(String(255), nullable=False)
    action = Column(String(20), nullable=False)
    template_key = Column(String(100), nullable=True)
    question_key = Column(String(100), nullable=True)
    reply_key = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
