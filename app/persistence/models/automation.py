"""Automation rule and run log models."""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text

from app.core.clock import utcnow
from app.persistence.database import Base


class RuleTrigger(str, enum.Enum):
    """What fires a rule.

    The first group fires alongside inbound processing and lead changes,
    the second group is evaluated by the scheduled scan.
    """

    INBOUND_MESSAGE = "INBOUND_MESSAGE"
    LEAD_CREATED = "LEAD_CREATED"
    STAGE_CHANGE = "STAGE_CHANGE"
    INFO_SHARED = "INFO_SHARED"
    NO_ACTIVITY = "NO_ACTIVITY"
    NO_REPLY_SLA = "NO_REPLY_SLA"
    FOLLOWUP_DUE = "FOLLOWUP_DUE"
    FOLLOWUP_OVERDUE = "FOLLOWUP_OVERDUE"
    EXPIRY_WINDOW = "EXPIRY_WINDOW"

    @property
    def kind(self) -> str:
        return "EVENT" if self in EVENT_TRIGGERS else "SCHEDULED"


EVENT_TRIGGERS = frozenset({
    RuleTrigger.INBOUND_MESSAGE,
    RuleTrigger.LEAD_CREATED,
    RuleTrigger.STAGE_CHANGE,
    RuleTrigger.INFO_SHARED,
})


class RunStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class AutomationRule(Base):
    """Operator-defined trigger, conditions and ordered action list.

    ``conditions`` and ``actions`` are stored as JSON but validated against
    the rule schema before every save.
    """

    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    trigger = Column(String(50), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    conditions = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AutomationRule(id={self.id}, key={self.key}, trigger={self.trigger}, enabled={self.enabled})>"


class AutomationRunLog(Base):
    """One evaluation of a rule against a lead. Seeds the cooldown check."""

    __tablename__ = "automation_run_logs"

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    ran_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<AutomationRunLog(rule_id={self.rule_id}, lead_id={self.lead_id}, status={self.status})>"
