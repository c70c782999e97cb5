"""Database models."""

from app.persistence.models.automation import AutomationRule, AutomationRunLog, RuleTrigger, RunStatus
from app.persistence.models.contact import Contact
from app.persistence.models.conversation import (
    Conversation,
    Message,
    MessageDirection,
    MessageStatus,
    MessageType,
)
from app.persistence.models.lead import Lead, LeadPriority, LeadStage
from app.persistence.models.message_log import (
    InboundMessageDedup,
    OutboundLogStatus,
    OutboundMessageLog,
    ProcessingStatus,
    ReplyEngineLog,
)
from app.persistence.models.task import Task, TaskType

__all__ = [
    "AutomationRule",
    "AutomationRunLog",
    "RuleTrigger",
    "RunStatus",
    "Contact",
    "Conversation",
    "Message",
    "MessageDirection",
    "MessageStatus",
    "MessageType",
    "Lead",
    "LeadPriority",
    "LeadStage",
    "InboundMessageDedup",
    "OutboundLogStatus",
    "OutboundMessageLog",
    "ProcessingStatus",
    "ReplyEngineLog",
    "Task",
    "TaskType",
]
