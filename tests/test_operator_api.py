"""Tests for operator and worker endpoints."""

from datetime import timedelta

import pytest

from app.core.clock import utcnow

API = "/api/v1"

RULE = {
    "key": "hot_lead_task",
    "name": "Hot lead task",
    "trigger": "INBOUND_MESSAGE",
    "conditions": {"keywords": ["urgent"]},
    "actions": [{"type": "create_task", "title": "Call back", "due_in_minutes": 30}],
}


class TestAutomationRulesApi:
    """Rule management."""

    @pytest.mark.asyncio
    async def test_create_list_and_toggle(self, client):
        created = await client.post(f"{API}/automation/rules", json=RULE)
        assert created.status_code == 201
        rule = created.json()
        assert rule["key"] == "hot_lead_task"
        assert rule["conditions"]["keywords"] == ["urgent"]

        listed = await client.get(f"{API}/automation/rules")
        assert [r["key"] for r in listed.json()] == ["hot_lead_task"]

        disabled = await client.post(f"{API}/automation/rules/{rule['id']}/disable")
        assert disabled.json()["enabled"] is False
        enabled = await client.post(f"{API}/automation/rules/{rule['id']}/enable")
        assert enabled.json()["enabled"] is True

    @pytest.mark.asyncio
    async def test_invalid_rule_returns_422(self, client):
        response = await client.post(
            f"{API}/automation/rules",
            json={**RULE, "actions": [{"type": "set_priority", "priority": "EXTREME"}]},
        )

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"][0] == "actions"

    @pytest.mark.asyncio
    async def test_toggle_unknown_rule(self, client):
        response = await client.post(f"{API}/automation/rules/999/enable")

        assert response.status_code == 404


class TestConversationsApi:
    """Manual sends and stop control."""

    @pytest.mark.asyncio
    async def test_manual_send_with_idempotency_key(self, client, sender_factory, make_conversation):
        _, _, conversation = await make_conversation()
        url = f"{API}/conversations/{conversation.id}/messages"

        first = await client.post(url, json={"text": "Your visa is ready"}, headers={"Idempotency-Key": "op-1"})
        retry = await client.post(url, json={"text": "Your visa is ready"}, headers={"Idempotency-Key": "op-1"})

        assert first.json()["sent"] is True
        assert retry.json()["was_duplicate"] is True
        assert retry.json()["message_id"] == first.json()["message_id"]
        assert sender_factory.sender.send.await_count == 1

        messages = await client.get(url)
        assert [m["body"] for m in messages.json()] == ["Your visa is ready"]

    @pytest.mark.asyncio
    async def test_stop_and_resume(self, client, make_conversation):
        _, _, conversation = await make_conversation()
        base = f"{API}/conversations/{conversation.id}"

        stopped = await client.post(f"{base}/stop", json={"reason": "customer called in"})
        assert stopped.json()["stop"]["enabled"] is True
        assert stopped.json()["stop"]["reason"] == "customer called in"

        state = await client.get(f"{base}/state")
        assert state.json()["stop"]["setBy"] == "operator"

        resumed = await client.delete(f"{base}/stop")
        assert resumed.json()["stop"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, client):
        assert (await client.get(f"{API}/conversations/999/state")).status_code == 404
        assert (await client.post(f"{API}/conversations/999/messages", json={"text": "hi"})).status_code == 404


class TestWorkerEndpoints:
    """Scheduler and event producers."""

    @pytest.mark.asyncio
    async def test_run_scheduled(self, client, make_conversation):
        await make_conversation(next_follow_up_at=utcnow() - timedelta(minutes=1))
        await client.post(f"{API}/automation/rules", json={**RULE, "key": "due", "trigger": "FOLLOWUP_DUE", "conditions": {}})

        response = await client.post("/workers/automation/run-scheduled")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["leads_processed"] == 1
        assert body["actions_executed"] == 1

    @pytest.mark.asyncio
    async def test_run_event(self, client, make_conversation):
        _, lead, conversation = await make_conversation()
        await client.post(f"{API}/automation/rules", json=RULE)

        response = await client.post("/workers/automation/run-event", json={
            "trigger": "INBOUND_MESSAGE",
            "lead_id": lead.id,
            "context": {"conversation_id": conversation.id, "text": "this is URGENT"},
        })

        results = response.json()["results"]
        assert results[0]["status"] == "SUCCESS"
        assert results[0]["actions"][0]["type"] == "create_task"

    @pytest.mark.asyncio
    async def test_run_event_with_scheduled_trigger_is_skipped(self, client):
        response = await client.post("/workers/automation/run-event", json={"trigger": "NO_ACTIVITY", "lead_id": 1})

        assert response.json() == {"status": "skipped", "reason": "not_an_event_trigger"}
