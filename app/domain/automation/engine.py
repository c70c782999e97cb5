"""Automation rule engine.

Event rules run alongside inbound processing; scheduled rules run from the
worker endpoint against a scan of qualifying leads. Every evaluation of a
rule against a lead writes exactly one AutomationRunLog row, and that log
is what the cooldown check reads.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import RuleValidationError
from app.domain.automation.actions import ActionContext, execute_action
from app.domain.automation.schemas import (
    SENDING_ACTION_TYPES,
    RuleConditions,
    parse_actions,
    parse_conditions,
)
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.outbound_dispatcher import OutboundDispatcher
from app.domain.services.reply_engine import ReplyEngine
from app.domain.services.reply_state import ReplyState
from app.infrastructure.channels.factory import ChannelSenderFactory
from app.persistence.models.automation import (
    EVENT_TRIGGERS,
    AutomationRule,
    AutomationRunLog,
    RuleTrigger,
    RunStatus,
)
from app.persistence.models.conversation import Conversation
from app.persistence.models.lead import Lead
from app.persistence.repositories.automation_repository import (
    AutomationRuleRepository,
    AutomationRunLogRepository,
)
from app.persistence.repositories.conversation_repository import ConversationRepository
from app.persistence.repositories.lead_repository import LeadRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class RuleRunResult:
    """Outcome of one rule evaluated against one lead."""

    rule_id: int
    lead_id: int
    status: RunStatus
    reason: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ScheduledRunResult:
    """Summary of a scheduled scan."""

    rules_run: int = 0
    leads_processed: int = 0
    actions_executed: int = 0
    errors: list[str] = field(default_factory=list)


class AutomationEngine:
    """Evaluates automation rules and executes their actions."""

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: OutboundDispatcher | None = None,
        draft_generator: DraftGenerator | None = None,
        sender_factory: ChannelSenderFactory | None = None,
    ):
        self.session = session
        self.dispatcher = dispatcher or OutboundDispatcher(session, sender_factory)
        self.draft_generator = draft_generator or DraftGenerator()
        self.reply_engine = ReplyEngine(session, dispatcher=self.dispatcher, draft_generator=self.draft_generator)
        self.rule_repo = AutomationRuleRepository(session)
        self.run_log_repo = AutomationRunLogRepository(session)
        self.lead_repo = LeadRepository(session)
        self.conversation_repo = ConversationRepository(session)

    async def run_for_event(
        self,
        trigger: RuleTrigger,
        lead_id: int,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[RuleRunResult]:
        """Run all enabled rules for an event trigger against one lead.

        Args:
            trigger: One of the EVENT triggers
            lead_id: Lead the event concerns
            context: Event details (``conversation_id``, ``channel``, ``text``)
            now: Evaluation time (defaults to current time)

        Returns:
            One result per rule evaluated
        """
        if trigger not in EVENT_TRIGGERS:
            raise ValueError(f"{trigger.value} is not an event trigger")

        now = now or utcnow()
        context = dict(context or {})
        rules = await self.rule_repo.list_enabled([trigger])
        rule_ids = [rule.id for rule in rules]

        results: list[RuleRunResult] = []
        stage_changes: list[tuple[str, str]] = []
        for rule_id in rule_ids:
            result, changes = await self._run_isolated(rule_id, lead_id, context, now)
            if result is not None:
                results.append(result)
            stage_changes.extend(changes)

        # Stage changes made by actions fire STAGE_CHANGE rules once, without cascading further
        if stage_changes and trigger != RuleTrigger.STAGE_CHANGE:
            previous, current = stage_changes[0][0], stage_changes[-1][1]
            stage_rules = await self.rule_repo.list_enabled([RuleTrigger.STAGE_CHANGE])
            stage_context = {**context, "previous_stage": previous, "stage": current}
            for rule_id in [rule.id for rule in stage_rules]:
                result, _ = await self._run_isolated(rule_id, lead_id, stage_context, now)
                if result is not None:
                    results.append(result)

        return results

    async def run_scheduled(self, now: datetime | None = None) -> ScheduledRunResult:
        """Run every enabled scheduled rule against its qualifying leads."""
        now = now or utcnow()
        summary = ScheduledRunResult()
        scheduled = [trigger for trigger in RuleTrigger if trigger not in EVENT_TRIGGERS]
        rules = await self.rule_repo.list_enabled(scheduled)
        rule_specs = [(rule.id, rule.key, RuleTrigger(rule.trigger), rule.conditions) for rule in rules]

        for rule_id, rule_key, trigger, raw_conditions in rule_specs:
            try:
                conditions = parse_conditions(raw_conditions)
                leads = await self._candidates(trigger, conditions, now)
                lead_ids = [lead.id for lead in leads]
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Scheduled rule {rule_key} scan failed: {e}", exc_info=True)
                summary.errors.append(f"rule {rule_key}: {e}")
                continue

            summary.rules_run += 1
            for lead_id in lead_ids:
                result, _ = await self._run_isolated(rule_id, lead_id, {"trigger": trigger.value}, now)
                if result is None:
                    summary.errors.append(f"rule {rule_key} lead {lead_id}: lead or rule missing")
                    continue
                summary.leads_processed += 1
                if result.status == RunStatus.SUCCESS:
                    summary.actions_executed += len(result.actions)
                elif result.status == RunStatus.ERROR:
                    summary.errors.append(f"rule {rule_key} lead {lead_id}: {result.reason}")

        logger.info(
            "Scheduled automation run complete",
            extra={
                "rules_run": summary.rules_run,
                "leads_processed": summary.leads_processed,
                "actions_executed": summary.actions_executed,
                "error_count": len(summary.errors),
            },
        )
        return summary

    async def _run_isolated(
        self,
        rule_id: int,
        lead_id: int,
        context: dict[str, Any],
        now: datetime,
    ) -> tuple[RuleRunResult | None, list[tuple[str, str]]]:
        """Run one rule on one lead; failures are logged and recorded, never raised."""
        rule = await self.session.get(AutomationRule, rule_id, populate_existing=True)
        lead = await self.session.get(Lead, lead_id, populate_existing=True)
        if rule is None or lead is None:
            return None, []

        ctx_changes: list[tuple[str, str]] = []
        try:
            result = await self.run_rule_on_lead(rule, lead, context, now=now, stage_changes=ctx_changes)
            return result, ctx_changes
        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Automation rule {rule_id} failed for lead {lead_id}: {e}",
                exc_info=True,
                extra={"rule_id": rule_id, "lead_id": lead_id},
            )
            await self._write_log(rule_id, lead_id, RunStatus.ERROR, str(e), {"actions": []}, now)
            return RuleRunResult(rule_id=rule_id, lead_id=lead_id, status=RunStatus.ERROR, reason=str(e)), []

    async def run_rule_on_lead(
        self,
        rule: AutomationRule,
        lead: Lead,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
        stage_changes: list[tuple[str, str]] | None = None,
    ) -> RuleRunResult:
        """Evaluate one rule against one lead and execute its actions.

        Checks run in order: autopilot, stop flag, cooldown, conditions.
        A run log row is written whatever the outcome.

        Args:
            rule: Rule to evaluate
            lead: Lead to evaluate against
            context: Event details, if any
            now: Evaluation time (defaults to current time)
            stage_changes: Collects (from, to) stage changes made by actions

        Returns:
            RuleRunResult
        """
        now = now or utcnow()
        context = context or {}
        rule_id, lead_id = rule.id, lead.id

        try:
            conditions = parse_conditions(rule.conditions)
            actions = parse_actions(rule.actions)
        except RuleValidationError as e:
            return await self._finish(rule_id, lead_id, RunStatus.ERROR, f"invalid stored rule: {e.errors}", [], now)

        if not lead.autopilot_enabled:
            return await self._finish(rule_id, lead_id, RunStatus.SKIPPED, "autopilot disabled", [], now)

        conversation = await self._conversation_for(lead_id, context)

        if any(action.type in SENDING_ACTION_TYPES for action in actions) and conversation is not None:
            if ReplyState.from_dict(conversation.automation_memory).is_stopped:
                return await self._finish(rule_id, lead_id, RunStatus.SKIPPED, "automation stopped", [], now)

        cooldown = conditions.cooldown_minutes
        if cooldown is None:
            cooldown = settings.default_rule_cooldown_minutes
        if cooldown > 0:
            last = await self.run_log_repo.get_last_success(rule_id, lead_id, since=now - timedelta(minutes=cooldown))
            if last is not None:
                logger.info(
                    "[RULE_COOLDOWN] Rule skipped, fired recently",
                    extra={"rule_id": rule_id, "lead_id": lead_id, "last_run_at": last.ran_at},
                )
                return await self._finish(rule_id, lead_id, RunStatus.SKIPPED, "cooldown", [], now)

        failed = self.failed_condition(conditions, lead, conversation, context, now)
        if failed:
            return await self._finish(rule_id, lead_id, RunStatus.SKIPPED, f"condition not met: {failed}", [], now)

        ctx = ActionContext(
            session=self.session,
            rule=rule,
            lead=lead,
            now=now,
            dispatcher=self.dispatcher,
            reply_engine=self.reply_engine,
            draft_generator=self.draft_generator,
            conversation=conversation,
            event=context,
        )
        initial_stage = lead.stage
        executed: list[dict[str, Any]] = []
        for action in actions:
            try:
                executed.append(await execute_action(action, ctx))
            except Exception as e:
                await self.session.rollback()
                logger.error(
                    f"Automation action {action.type} failed for rule {rule_id} on lead {lead_id}: {e}",
                    exc_info=True,
                    extra={"rule_id": rule_id, "lead_id": lead_id, "action_type": action.type},
                )
                executed.append({"type": action.type, "error": str(e)})
                # Sends commit mid-run, so earlier actions may already be durable
                persisted = await self.session.get(Lead, lead_id, populate_existing=True)
                if stage_changes is not None and persisted is not None and persisted.stage != initial_stage:
                    stage_changes.append((initial_stage, persisted.stage))
                return await self._finish(rule_id, lead_id, RunStatus.ERROR, str(e), executed, now)

        if stage_changes is not None:
            stage_changes.extend(ctx.stage_changes)
        return await self._finish(rule_id, lead_id, RunStatus.SUCCESS, None, executed, now)

    def failed_condition(
        self,
        conditions: RuleConditions,
        lead: Lead,
        conversation: Conversation | None,
        context: dict[str, Any],
        now: datetime,
    ) -> str | None:
        """Name of the first condition the lead fails, or None if all pass."""
        if conditions.channels:
            channel = context.get("channel") or (conversation.channel if conversation else None)
            if channel not in conditions.channels:
                return "channels"

        if conditions.stages and lead.stage not in conditions.stages:
            return "stages"

        if conditions.keywords:
            text = (context.get("text") or "").lower()
            if not any(keyword in text for keyword in conditions.keywords):
                return "keywords"

        if conditions.only_hot and (lead.ai_score or 0) < settings.hot_lead_score:
            return "only_hot"

        if conditions.working_hours_only and not (
            settings.working_hours_start <= now.hour < settings.working_hours_end
        ):
            return "working_hours_only"

        if conditions.days_without_message is not None:
            last_activity = max(
                [ts for ts in (lead.last_inbound_at, lead.last_outbound_at, lead.created_at) if ts is not None]
            )
            if last_activity > now - timedelta(days=conditions.days_without_message):
                return "days_without_message"

        if conditions.hours_without_reply is not None:
            awaiting = lead.last_inbound_at is not None and (
                lead.last_outbound_at is None or lead.last_outbound_at < lead.last_inbound_at
            )
            if not awaiting or lead.last_inbound_at > now - timedelta(hours=conditions.hours_without_reply):
                return "hours_without_reply"

        if conditions.days_before_expiry is not None:
            today = now.date()
            if lead.expiry_date is None or not (
                today <= lead.expiry_date <= today + timedelta(days=conditions.days_before_expiry)
            ):
                return "days_before_expiry"

        return None

    async def _candidates(self, trigger: RuleTrigger, conditions: RuleConditions, now: datetime) -> list[Lead]:
        if trigger == RuleTrigger.NO_ACTIVITY:
            days = conditions.days_without_message or settings.no_activity_days
            return await self.lead_repo.list_inactive_since(now - timedelta(days=days))
        if trigger == RuleTrigger.NO_REPLY_SLA:
            hours = conditions.hours_without_reply or settings.no_reply_sla_hours
            return await self.lead_repo.list_awaiting_reply(now - timedelta(hours=hours))
        if trigger == RuleTrigger.FOLLOWUP_DUE:
            return await self.lead_repo.list_followup_due(now)
        if trigger == RuleTrigger.FOLLOWUP_OVERDUE:
            return await self.lead_repo.list_followup_due(
                now, overdue_before=now - timedelta(hours=settings.followup_overdue_hours)
            )
        if trigger == RuleTrigger.EXPIRY_WINDOW:
            days = conditions.days_before_expiry
            if days is None:
                days = settings.expiry_window_days
            today = now.date()
            return await self.lead_repo.list_expiring_between(today, today + timedelta(days=days))
        return []

    async def _conversation_for(self, lead_id: int, context: dict[str, Any]) -> Conversation | None:
        conversation_id = context.get("conversation_id")
        if conversation_id is not None:
            conversation = await self.conversation_repo.reload(conversation_id)
            if conversation is not None:
                return conversation
        return await self.conversation_repo.get_latest_for_lead(lead_id, context.get("channel"))

    async def _finish(
        self,
        rule_id: int,
        lead_id: int,
        status: RunStatus,
        reason: str | None,
        actions: list[dict[str, Any]],
        now: datetime,
    ) -> RuleRunResult:
        await self._write_log(rule_id, lead_id, status, reason, {"actions": actions}, now)
        if status != RunStatus.SKIPPED:
            logger.info(
                f"Automation rule {rule_id} {status.value.lower()} for lead {lead_id}",
                extra={"rule_id": rule_id, "lead_id": lead_id, "action_count": len(actions)},
            )
        return RuleRunResult(rule_id=rule_id, lead_id=lead_id, status=status, reason=reason, actions=actions)

    async def _write_log(
        self,
        rule_id: int,
        lead_id: int,
        status: RunStatus,
        reason: str | None,
        details: dict[str, Any],
        now: datetime,
    ) -> None:
        self.session.add(AutomationRunLog(
            rule_id=rule_id,
            lead_id=lead_id,
            status=status.value,
            reason=reason,
            details=details,
            ran_at=now,
        ))
        await self.session.commit()
