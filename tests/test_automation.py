"""Tests for automation rules: validation, cooldowns, conditions and isolation."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.core.clock import utcnow
from app.core.exceptions import ChannelSendError, RuleValidationError
from app.domain.automation.engine import AutomationEngine
from app.domain.automation.rule_service import AutomationRuleService
from app.domain.automation.schemas import validate_rule
from app.domain.services.draft_generator import DraftGenerator
from app.domain.services.outbound_dispatcher import OutboundDispatcher
from app.persistence.models.automation import AutomationRunLog, RuleTrigger, RunStatus
from app.persistence.models.conversation import Conversation
from app.persistence.models.lead import LeadPriority, LeadStage
from app.persistence.models.task import Task
from app.persistence.repositories.task_repository import TaskRepository


@pytest.fixture
def engine(db_session, sender_factory):
    dispatcher = OutboundDispatcher(db_session, sender_factory)
    return AutomationEngine(db_session, dispatcher=dispatcher, draft_generator=DraftGenerator(None))


@pytest.fixture
def rules(db_session):
    service = AutomationRuleService(db_session)

    async def _create(key, trigger="INBOUND_MESSAGE", actions=None, **conditions):
        return await service.create_rule({
            "key": key,
            "name": key.replace("_", " ").title(),
            "trigger": trigger,
            "conditions": conditions,
            "actions": actions or [{"type": "create_task", "title": "Call the customer"}],
        })

    return _create


def _context(conversation, text="hi"):
    return {"conversation_id": conversation.id, "channel": conversation.channel, "text": text}


class TestRuleValidation:
    """Rules are validated before they are stored."""

    def test_valid_rule(self):
        definition = validate_rule({
            "key": "welcome",
            "name": "Welcome",
            "trigger": "LEAD_CREATED",
            "conditions": {"channels": ["WhatsApp"], "keywords": [" Price "]},
            "actions": [{"type": "send_message", "text": "Welcome!"}],
        })

        assert definition.conditions.channels == ["whatsapp"]
        assert definition.conditions.keywords == ["price"]
        assert definition.actions[0].type == "send_message"

    def test_errors_are_collected(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule({
                "key": "Bad Key",
                "name": "Broken",
                "trigger": "INBOUND_MESSAGE",
                "conditions": {"stages": ["SOMEWHERE"]},
                "actions": [{"type": "launch_rocket"}],
            })

        locs = [error["loc"] for error in exc_info.value.errors]
        assert ["key"] in locs
        assert ["conditions", "stages"] in locs
        assert any(loc[0] == "actions" for loc in locs)

    def test_empty_actions_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule({"key": "noop", "name": "Noop", "trigger": "NO_ACTIVITY", "actions": []})

    def test_unknown_condition_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule({
                "key": "x",
                "name": "X",
                "trigger": "NO_ACTIVITY",
                "conditions": {"moon_phase": "full"},
                "actions": [{"type": "set_priority", "priority": "HIGH"}],
            })

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, rules):
        await rules("welcome")

        with pytest.raises(RuleValidationError) as exc_info:
            await rules("welcome")

        assert exc_info.value.errors[0]["loc"] == ["key"]


class TestCooldown:
    """A rule fires at most once per cooldown window per lead."""

    @pytest.mark.asyncio
    async def test_cooldown_skips_then_fires_again(self, engine, rules, db_session, make_conversation):
        _, lead, conversation = await make_conversation()
        rule = await rules("callback_task", cooldown_minutes=120)
        day = datetime(2026, 3, 2)

        first = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=day.replace(hour=10)
        )
        second = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=day.replace(hour=11)
        )
        third = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=day.replace(hour=12, minute=5)
        )

        assert first[0].status == RunStatus.SUCCESS
        assert second[0].status == RunStatus.SKIPPED
        assert second[0].reason == "cooldown"
        assert third[0].status == RunStatus.SUCCESS

        logs = (await db_session.execute(
            select(AutomationRunLog).where(AutomationRunLog.rule_id == rule.id).order_by(AutomationRunLog.id)
        )).scalars().all()
        assert [log.status for log in logs] == ["SUCCESS", "SKIPPED", "SUCCESS"]

        tasks = (await db_session.execute(select(Task))).scalars().all()
        assert len(tasks) == 2
        assert tasks[0].created_by_rule_id == rule.id

    @pytest.mark.asyncio
    async def test_cooldown_is_per_lead(self, engine, rules, make_conversation):
        _, lead_a, conv_a = await make_conversation(address="+15550000001")
        _, lead_b, conv_b = await make_conversation(address="+15550000002")
        await rules("callback_task", cooldown_minutes=120)
        now = datetime(2026, 3, 2, 10, 0)

        await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead_a.id, _context(conv_a), now=now)
        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead_b.id, _context(conv_b), now=now)

        assert results[0].status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_fires_exactly_when_cooldown_ends(self, engine, rules, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("callback_task", cooldown_minutes=60)
        start = datetime(2026, 3, 2, 10, 0)

        first = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=start)
        early = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=start + timedelta(minutes=59)
        )
        on_time = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=start + timedelta(minutes=60)
        )

        assert first[0].status == RunStatus.SUCCESS
        assert early[0].reason == "cooldown"
        assert on_time[0].status == RunStatus.SUCCESS


class TestConditions:
    """Conditions and pre-checks."""

    @pytest.mark.asyncio
    async def test_keyword_condition(self, engine, rules, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("pricing", keywords=["price"])

        miss = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation, "hello"))
        hit = await engine.run_for_event(
            RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation, "What is the PRICE?")
        )

        assert miss[0].status == RunStatus.SKIPPED
        assert miss[0].reason == "condition not met: keywords"
        assert hit[0].status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_channel_condition(self, engine, rules, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("email_only", channels=["email"])

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert results[0].reason == "condition not met: channels"

    @pytest.mark.asyncio
    async def test_autopilot_disabled_skips(self, engine, rules, make_conversation):
        _, lead, conversation = await make_conversation(autopilot_enabled=False)
        await rules("callback_task")

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert results[0].status == RunStatus.SKIPPED
        assert results[0].reason == "autopilot disabled"

    @pytest.mark.asyncio
    async def test_stopped_conversation_skips_sending_rules(self, engine, rules, sender_factory, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("nudge", actions=[{"type": "send_message", "text": "Are you still there?"}])
        await engine.reply_engine.set_stop(conversation.id, "customer asked for a human")

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert results[0].reason == "automation stopped"
        sender_factory.sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_event_trigger_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.run_for_event(RuleTrigger.NO_ACTIVITY, 1)


class TestActions:
    """Action execution."""

    @pytest.mark.asyncio
    async def test_send_message_and_lead_updates(self, engine, rules, db_session, sender_factory, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("triage", actions=[
            {"type": "send_message", "text": "Thanks, an advisor will call you today."},
            {"type": "set_priority", "priority": "HIGH"},
            {"type": "assign_to_user", "user_id": 42},
            {"type": "set_next_followup", "in_minutes": 90},
        ])
        now = utcnow()

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation), now=now)

        assert results[0].status == RunStatus.SUCCESS
        assert [action["type"] for action in results[0].actions] == [
            "send_message", "set_priority", "assign_to_user", "set_next_followup",
        ]
        assert results[0].actions[0]["sent"] is True
        assert sender_factory.sender.send.await_args.args[1] == "Thanks, an advisor will call you today."

        await db_session.refresh(lead)
        assert lead.priority == LeadPriority.HIGH.value
        assert lead.assigned_user_id == 42
        assert lead.next_follow_up_at == now + timedelta(minutes=90)

    @pytest.mark.asyncio
    async def test_stage_change_fires_stage_rules_once(self, engine, rules, db_session, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("mark_contacted", actions=[{"type": "update_stage", "stage": "CONTACTED"}])
        await rules("contacted_task", trigger="STAGE_CHANGE", stages=["CONTACTED"])

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert [result.status for result in results] == [RunStatus.SUCCESS, RunStatus.SUCCESS]
        await db_session.refresh(lead)
        assert lead.stage == LeadStage.CONTACTED.value
        tasks = await TaskRepository(db_session).list_open_for_lead(lead.id)
        assert len(tasks) == 1

    @pytest.mark.asyncio
    async def test_stop_automation_action(self, engine, rules, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("halt", actions=[{"type": "stop_automation", "reason": "lost lead"}])

        await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        state = await engine.reply_engine.get_state(conversation.id)
        assert state.is_stopped is True
        assert state.stop.set_by == "rule"

    @pytest.mark.asyncio
    async def test_send_after_stop_action_is_skipped(self, engine, rules, sender_factory, make_conversation):
        _, lead, conversation = await make_conversation()
        await rules("halt_and_notify", actions=[
            {"type": "stop_automation", "reason": "handed to sales"},
            {"type": "send_message", "text": "A colleague will be in touch."},
        ])

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert results[0].status == RunStatus.SUCCESS
        assert results[0].actions[1]["sent"] is False
        assert results[0].actions[1]["skipped"] == "automation stopped"
        sender_factory.sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_to_stopped_conversation_on_other_channel_is_skipped(
        self, engine, rules, db_session, sender_factory, make_conversation
    ):
        contact, lead, whatsapp = await make_conversation()
        sms = Conversation(contact_id=contact.id, channel="sms", lead_id=lead.id, status="open")
        db_session.add(sms)
        await db_session.commit()
        await engine.reply_engine.set_stop(sms.id, "customer replied STOP")
        await rules("sms_nudge", actions=[{"type": "send_message", "channel": "sms", "text": "Still interested?"}])

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(whatsapp))

        assert results[0].actions[0]["skipped"] == "automation stopped"
        assert results[0].actions[0]["conversation_id"] == sms.id
        sender_factory.sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_send_keeps_earlier_stage_change(
        self, engine, rules, db_session, sender_factory, make_conversation
    ):
        _, lead, conversation = await make_conversation()
        contact_rule = await rules("contact_and_nudge", actions=[
            {"type": "update_stage", "stage": "CONTACTED"},
            {"type": "send_message", "text": "We have moved your enquiry forward."},
        ])
        await rules("contacted_task", trigger="STAGE_CHANGE", stages=["CONTACTED"])
        sender_factory.sender.send.side_effect = ChannelSendError("provider down", retryable=True)

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert [result.status for result in results] == [RunStatus.ERROR, RunStatus.SUCCESS]
        await db_session.refresh(lead)
        assert lead.stage == LeadStage.CONTACTED.value
        tasks = await TaskRepository(db_session).list_open_for_lead(lead.id)
        assert len(tasks) == 1

        error_log = (await db_session.execute(
            select(AutomationRunLog).where(AutomationRunLog.rule_id == contact_rule.id)
        )).scalar_one()
        assert [action["type"] for action in error_log.details["actions"]] == ["update_stage", "send_message"]
        assert error_log.details["actions"][1]["error"] == "provider down"


class TestIsolation:
    """One failing rule does not affect the others."""

    @pytest.mark.asyncio
    async def test_failing_rule_is_logged_and_others_run(
        self, engine, rules, db_session, sender_factory, make_conversation
    ):
        _, lead, conversation = await make_conversation()
        broken = await rules("nudge", actions=[{"type": "send_message", "text": "Still interested?"}])
        await rules("callback_task")
        sender_factory.sender.send.side_effect = ChannelSendError("provider down", retryable=True)

        results = await engine.run_for_event(RuleTrigger.INBOUND_MESSAGE, lead.id, _context(conversation))

        assert [result.status for result in results] == [RunStatus.ERROR, RunStatus.SUCCESS]
        assert results[0].reason == "provider down"

        error_log = (await db_session.execute(
            select(AutomationRunLog).where(AutomationRunLog.rule_id == broken.id)
        )).scalar_one()
        assert error_log.status == RunStatus.ERROR.value


class TestScheduledRun:
    """Scheduled scans."""

    @pytest.mark.asyncio
    async def test_no_activity_rule(self, engine, rules, db_session, make_conversation):
        now = utcnow()
        _, stale, _ = await make_conversation(address="+15550000001", created_at=now - timedelta(days=5))
        _, fresh, _ = await make_conversation(address="+15550000002")
        await rules(
            "stale_leads",
            trigger="NO_ACTIVITY",
            actions=[{"type": "set_priority", "priority": "LOW"}],
            days_without_message=3,
        )

        summary = await engine.run_scheduled(now=now)

        assert summary.rules_run == 1
        assert summary.leads_processed == 1
        assert summary.actions_executed == 1
        assert summary.errors == []

        await db_session.refresh(stale)
        await db_session.refresh(fresh)
        assert stale.priority == LeadPriority.LOW.value
        assert fresh.priority == LeadPriority.NORMAL.value

    @pytest.mark.asyncio
    async def test_followup_due_rule(self, engine, rules, db_session, make_conversation):
        now = utcnow()
        _, due, _ = await make_conversation(address="+15550000001", next_follow_up_at=now - timedelta(minutes=5))
        await make_conversation(address="+15550000002", next_follow_up_at=now + timedelta(hours=1))
        await rules("due_task", trigger="FOLLOWUP_DUE")

        summary = await engine.run_scheduled(now=now)

        assert summary.leads_processed == 1
        tasks = (await db_session.execute(select(Task))).scalars().all()
        assert [task.lead_id for task in tasks] == [due.id]
