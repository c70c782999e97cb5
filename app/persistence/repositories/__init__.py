"""Repository implementations."""

from app.persistence.repositories.automation_repository import (
    AutomationRuleRepository,
    AutomationRunLogRepository,
)
from app.persistence.repositories.base import BaseRepository
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.lead_repository import LeadRepository
from app.persistence.repositories.message_log_repository import (
    InboundDedupRepository,
    OutboundMessageLogRepository,
    ReplyEngineLogRepository,
)
from app.persistence.repositories.message_repository import MessageRepository
from app.persistence.repositories.task_repository import TaskRepository

__all__ = [
    "AutomationRuleRepository",
    "AutomationRunLogRepository",
    "BaseRepository",
    "ContactRepository",
    "ConversationRepository",
    "InboundDedupRepository",
    "LeadRepository",
    "MessageRepository",
    "OutboundMessageLogRepository",
    "ReplyEngineLogRepository",
    "TaskRepository",
]
