"""Task model."""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from app.core.clock import utcnow
from app.persistence.database import Base


class TaskType(str, enum.Enum):
    INTERNAL = "INTERNAL"
    AGENT = "AGENT"


class Task(Base):
    """Follow-up work item for a lead, usually created by an automation rule."""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_type = Column(String(20), nullable=False, default=TaskType.INTERNAL.value)
    status = Column(String(20), nullable=False, default="OPEN")  # OPEN, DONE
    due_at = Column(DateTime, nullable=True)
    assigned_user_id = Column(Integer, nullable=True)
    created_by_rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, lead_id={self.lead_id}, title={self.title})>"
