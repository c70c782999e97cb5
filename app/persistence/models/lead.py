"""Lead model."""

import enum

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, String

from app.core.clock import utcnow
from app.persistence.database import Base


class LeadStage(str, enum.Enum):
    """Pipeline stages, in rough pipeline order."""

    NEW = "NEW"
    CONTACTED = "CONTACTED"
    ENGAGED = "ENGAGED"
    QUALIFIED = "QUALIFIED"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED_WON = "COMPLETED_WON"
    COMPLETED_LOST = "COMPLETED_LOST"


class LeadPriority(str, enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


TERMINAL_STAGES = frozenset({LeadStage.COMPLETED_WON.value, LeadStage.COMPLETED_LOST.value})

# Stages that are never reused when a contact writes in again
NON_REUSABLE_STAGES = TERMINAL_STAGES | {LeadStage.ON_HOLD.value}


class Lead(Base):
    """A business opportunity tied to one contact.

    Leads are archived, never hard-deleted.
    """

    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    stage = Column(String(50), nullable=False, default=LeadStage.NEW.value, index=True)
    priority = Column(String(20), nullable=False, default=LeadPriority.NORMAL.value)
    ai_score = Column(Integer, nullable=True)
    service_key = Column(String(100), nullable=True)
    source = Column(String(50), nullable=True)
    next_follow_up_at = Column(DateTime, nullable=True, index=True)
    last_inbound_at = Column(DateTime, nullable=True)
    last_outbound_at = Column(DateTime, nullable=True)
    expiry_date = Column(Date, nullable=True, index=True)
    assigned_user_id = Column(Integer, nullable=True)
    autopilot_enabled = Column(Boolean, nullable=False, default=True)
    data = Column(JSON, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def __repr__(self) -> str:
        return f"<Lead(id={self.id}, contact_id={self.contact_id}, stage={self.stage})>"
