"""Conversation and Message models."""

import enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from app.core.clock import utcnow
from app.persistence.database import Base


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    LOCATION = "location"
    UNKNOWN = "unknown"


class MessageStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class Conversation(Base):
    """One thread per (contact, channel).

    ``automation_memory`` holds the serialized reply state. ``version`` is
    bumped on every UPDATE so concurrent writers fail with StaleDataError
    instead of overwriting each other.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("contact_id", "channel", name="uq_conversation_contact_channel"),
    )

    id = Column(Integer, primary_key=True, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    channel = Column(String(50), nullable=False)  # whatsapp, instagram, facebook, email, webchat, sms
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="open")  # open, archived
    external_thread_id = Column(String(255), nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    last_inbound_at = Column(DateTime, nullable=True)
    last_outbound_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    automation_memory = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, contact_id={self.contact_id}, channel={self.channel})>"


class Message(Base):
    """Immutable record of one inbound or outbound message."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("channel", "provider_message_id", name="uq_message_channel_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    direction = Column(String(10), nullable=False)
    channel = Column(String(50), nullable=False)
    type = Column(String(20), nullable=False, default=MessageType.TEXT.value)
    body = Column(Text, nullable=True)
    media_id = Column(String(255), nullable=True)
    media_mime_type = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    content_hash = Column(String(64), nullable=True)
    error = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, conversation_id={self.conversation_id}, direction={self.direction})>"
