"""Executors for automation rule actions.

Each executor receives the validated action and an ``ActionContext`` and
returns a small dict describing what it did; the dicts end up in the run
log. Executors raise on failure, which marks the whole run as ERROR.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ChannelSendError
from app.core.phone import normalize_channel
from app.domain.automation.schemas import (
    AssignToUserAction,
    CreateTaskAction,
    RuleAction,
    SendAiReplyAction,
    SendMessageAction,
    SetNextFollowupAction,
    SetPriorityAction,
    StopAutomationAction,
    UpdateStageAction,
)
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.outbound_dispatcher import DispatchResult, OutboundDispatcher
from app.domain.services.reply_engine import ReplyEngine
from app.persistence.models.automation import AutomationRule
from app.persistence.models.conversation import Conversation
from app.persistence.models.lead import Lead
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.task_repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything an action may touch while a rule runs on one lead."""

    session: AsyncSession
    rule: AutomationRule
    lead: Lead
    now: datetime
    dispatcher: OutboundDispatcher
    reply_engine: ReplyEngine
    draft_generator: DraftGenerator
    conversation: Conversation | None = None
    event: dict[str, Any] = field(default_factory=dict)
    stage_changes: list[tuple[str, str]] = field(default_factory=list)


async def _target_conversation(ctx: ActionContext, channel: str | None) -> Conversation | None:
    if channel:
        channel = normalize_channel(channel)
        if ctx.conversation is not None and ctx.conversation.channel == channel:
            return ctx.conversation
        return await ConversationRepository(ctx.session).get_latest_for_lead(ctx.lead.id, channel)
    if ctx.conversation is not None:
        return ctx.conversation
    return await ConversationRepository(ctx.session).get_latest_for_lead(ctx.lead.id)


async def _is_stopped(ctx: ActionContext, conversation: Conversation) -> bool:
    # Re-read per send: an earlier action or another channel's conversation may be stopped
    state = await ctx.reply_engine.get_state(conversation.id)
    if state is not None and state.is_stopped:
        logger.info(
            "[AUTOMATION_STOPPED] Send skipped, conversation stopped",
            extra={"rule_id": ctx.rule.id, "lead_id": ctx.lead.id, "conversation_id": conversation.id},
        )
        return True
    return False


def _send_result(result: DispatchResult, conversation: Conversation) -> dict[str, Any]:
    if result.was_duplicate:
        return {"sent": False, "suppressed": True, "reason": result.reason, "message_id": result.message_id}
    if not result.sent:
        raise ChannelSendError(result.error or "Send failed")
    return {"sent": True, "message_id": result.message_id, "channel": conversation.channel}


async def send_message(action: SendMessageAction, ctx: ActionContext) -> dict[str, Any]:
    conversation = await _target_conversation(ctx, action.channel)
    if conversation is None:
        return {"sent": False, "reason": "no conversation for lead"}
    if await _is_stopped(ctx, conversation):
        return {"sent": False, "skipped": "automation stopped", "conversation_id": conversation.id}
    result = await ctx.dispatcher.send(
        conversation.contact_id,
        ctx.lead.id,
        conversation.channel,
        action.text,
        conversation_id=conversation.id,
        purpose="automation",
    )
    return _send_result(result, conversation)


async def send_ai_reply(action: SendAiReplyAction, ctx: ActionContext) -> dict[str, Any]:
    conversation = await _target_conversation(ctx, action.channel)
    if conversation is None:
        return {"sent": False, "reason": "no conversation for lead"}
    if await _is_stopped(ctx, conversation):
        return {"sent": False, "skipped": "automation stopped", "conversation_id": conversation.id}
    collected = {k: str(v) for k, v in (ctx.lead.data or {}).items()}
    if ctx.lead.service_key and "service" not in collected:
        collected["service"] = ctx.lead.service_key
    draft = await ctx.draft_generator.generate(
        action.template_key, collected, inbound_text=ctx.event.get("text")
    )
    result = await ctx.dispatcher.send(
        conversation.contact_id,
        ctx.lead.id,
        conversation.channel,
        draft.text,
        conversation_id=conversation.id,
        purpose="automation",
    )
    outcome = _send_result(result, conversation)
    outcome["draft_source"] = draft.source
    return outcome


async def create_task(action: CreateTaskAction, ctx: ActionContext) -> dict[str, Any]:
    task = await TaskRepository(ctx.session).create(
        commit=False,
        lead_id=ctx.lead.id,
        title=action.title,
        description=action.description,
        task_type=action.task_type.value,
        due_at=ctx.now + timedelta(minutes=action.due_in_minutes) if action.due_in_minutes is not None else None,
        assigned_user_id=ctx.lead.assigned_user_id,
        created_by_rule_id=ctx.rule.id,
    )
    return {"task_id": task.id}


async def set_next_followup(action: SetNextFollowupAction, ctx: ActionContext) -> dict[str, Any]:
    ctx.lead.next_follow_up_at = ctx.now + timedelta(minutes=action.in_minutes)
    return {"next_follow_up_at": ctx.lead.next_follow_up_at.isoformat()}


async def update_stage(action: UpdateStageAction, ctx: ActionContext) -> dict[str, Any]:
    previous = ctx.lead.stage
    new = action.stage.value
    if previous == new:
        return {"changed": False, "stage": new}
    ctx.lead.stage = new
    ctx.stage_changes.append((previous, new))
    return {"changed": True, "from": previous, "to": new}


async def set_priority(action: SetPriorityAction, ctx: ActionContext) -> dict[str, Any]:
    ctx.lead.priority = action.priority.value
    return {"priority": action.priority.value}


async def assign_to_user(action: AssignToUserAction, ctx: ActionContext) -> dict[str, Any]:
    ctx.lead.assigned_user_id = action.user_id
    return {"assigned_user_id": action.user_id}


async def stop_automation(action: StopAutomationAction, ctx: ActionContext) -> dict[str, Any]:
    # Pending lead changes must land before the state write reloads the conversation
    await ctx.session.flush()
    conversation = await _target_conversation(ctx, None)
    if conversation is None:
        return {"stopped": False, "reason": "no conversation for lead"}
    await ctx.reply_engine.set_stop(conversation.id, action.reason, set_by="rule")
    return {"stopped": True, "conversation_id": conversation.id}


ActionExecutor = Callable[[Any, ActionContext], Awaitable[dict[str, Any]]]

EXECUTORS: dict[str, ActionExecutor] = {
    "send_message": send_message,
    "send_ai_reply": send_ai_reply,
    "create_task": create_task,
    "set_next_followup": set_next_followup,
    "update_stage": update_stage,
    "set_priority": set_priority,
    "assign_to_user": assign_to_user,
    "stop_automation": stop_automation,
}


async def execute_action(action: RuleAction, ctx: ActionContext) -> dict[str, Any]:
    """Run one action and return its result record."""
    result = await EXECUTORS[action.type](action, ctx)
    logger.info(
        f"Automation action {action.type} executed",
        extra={"rule_id": ctx.rule.id, "lead_id": ctx.lead.id, "action_type": action.type},
    )
    return {"type": action.type, **result}
