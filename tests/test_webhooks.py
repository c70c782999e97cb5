"""Tests for inbound webhook endpoints."""

import hashlib
import hmac
import json

import pytest
from sqlalchemy import select
from twilio.request_validator import RequestValidator

from app.persistence.models.conversation import Message, MessageDirection
from app.persistence.models.message_log import InboundMessageDedup, ProcessingStatus
from app.settings import settings

WEBHOOKS = "/api/v1/webhooks"


def _whatsapp_body(message_id="wamid.HBg1", text="Hi, I need help", sender="447700900123"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": "pn-1"},
                    "contacts": [{"wa_id": sender, "profile": {"name": "Amira"}}],
                    "messages": [{
                        "from": sender,
                        "id": message_id,
                        "timestamp": "1700000000",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestWhatsAppWebhook:
    """End to end through the inbound pipeline."""

    @pytest.mark.asyncio
    async def test_inbound_message_is_stored_and_answered(self, client, db_session, sender_factory):
        response = await client.post(f"{WEBHOOKS}/whatsapp", json=_whatsapp_body())

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "processed": 1, "duplicate": 0, "failed": 0, "status_updates": 0}

        messages = (await db_session.execute(select(Message).order_by(Message.id))).scalars().all()
        assert [m.direction for m in messages] == [MessageDirection.INBOUND.value, MessageDirection.OUTBOUND.value]
        assert messages[0].body == "Hi, I need help"
        assert sender_factory.channels == ["whatsapp"]
        assert sender_factory.sender.send.await_args.args[0] == "+447700900123"

        fence = (await db_session.execute(select(InboundMessageDedup))).scalar_one()
        assert fence.processing_status == ProcessingStatus.PROCESSED.value

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_without_side_effects(self, client, db_session, sender_factory):
        await client.post(f"{WEBHOOKS}/whatsapp", json=_whatsapp_body())
        response = await client.post(f"{WEBHOOKS}/whatsapp", json=_whatsapp_body())

        assert response.status_code == 200
        assert response.json()["duplicate"] == 1
        assert sender_factory.sender.send.await_count == 1

        messages = (await db_session.execute(select(Message))).scalars().all()
        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_status_callback(self, client, sender_factory):
        await client.post(f"{WEBHOOKS}/whatsapp", json=_whatsapp_body())
        receipt = {"entry": [{"changes": [{"value": {"statuses": [
            {"id": "out-1", "status": "delivered", "timestamp": "1700000100"},
        ]}}]}]}

        response = await client.post(f"{WEBHOOKS}/whatsapp", json=receipt)

        assert response.json()["status_updates"] == 1

    @pytest.mark.asyncio
    async def test_malformed_json_still_returns_200(self, client):
        response = await client.post(
            f"{WEBHOOKS}/whatsapp", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "error", "detail": "malformed JSON"}

    @pytest.mark.asyncio
    async def test_unparseable_payload_returns_200_with_error(self, client):
        body = _whatsapp_body()
        del body["entry"][0]["changes"][0]["value"]["messages"][0]["from"]

        response = await client.post(f"{WEBHOOKS}/whatsapp", json=body)

        assert response.status_code == 200
        assert response.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_unknown_channel(self, client):
        response = await client.post(f"{WEBHOOKS}/pager", json={})

        assert response.status_code == 404


class TestSignatures:
    """Provider authentication."""

    @pytest.mark.asyncio
    async def test_meta_signature_required_when_secret_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "meta_app_secret", "app-secret")
        body = json.dumps(_whatsapp_body()).encode()

        rejected = await client.post(
            f"{WEBHOOKS}/whatsapp", content=body, headers={"Content-Type": "application/json"}
        )
        accepted = await client.post(
            f"{WEBHOOKS}/whatsapp",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": _sign(body, "app-secret")},
        )

        assert rejected.status_code == 403
        assert accepted.status_code == 200
        assert accepted.json()["processed"] == 1

    @pytest.mark.asyncio
    async def test_relay_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "webhook_shared_token", "relay-token")
        payload = {"from": "Jane <jane@example.com>", "subject": "Hello", "message_id": "<1@mail>"}

        rejected = await client.post(f"{WEBHOOKS}/email", json=payload)
        accepted = await client.post(f"{WEBHOOKS}/email", json=payload, headers={"X-Webhook-Token": "relay-token"})

        assert rejected.status_code == 403
        assert accepted.status_code == 200

    @pytest.mark.asyncio
    async def test_meta_verification_handshake(self, client, monkeypatch):
        monkeypatch.setattr(settings, "meta_verify_token", "verify-me")

        ok = await client.get(
            f"{WEBHOOKS}/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
        )
        bad = await client.get(
            f"{WEBHOOKS}/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1158201444"},
        )

        assert ok.status_code == 200
        assert ok.text == "1158201444"
        assert bad.status_code == 403


class TestSmsWebhook:
    """Twilio form webhook."""

    @pytest.mark.asyncio
    async def test_returns_empty_twiml(self, client, db_session, monkeypatch):
        monkeypatch.setattr(settings, "twilio_auth_token", None)

        response = await client.post(f"{WEBHOOKS}/sms", data={
            "From": "+15551234567",
            "To": "+15550001111",
            "Body": "Hello",
            "MessageSid": "SM0001",
            "NumMedia": "0",
        })

        assert response.status_code == 200
        assert "<Response></Response>" in response.text
        assert response.headers["content-type"].startswith("application/xml")

        inbound = (await db_session.execute(
            select(Message).where(Message.direction == MessageDirection.INBOUND.value)
        )).scalar_one()
        assert inbound.provider_message_id == "SM0001"
        assert inbound.channel == "sms"

    @pytest.mark.asyncio
    async def test_signature_checked_against_request_url(self, client, monkeypatch):
        monkeypatch.setattr(settings, "twilio_auth_token", "twilio-token")
        monkeypatch.setattr(settings, "environment", "production")
        params = {"From": "+15551234567", "Body": "Hello", "MessageSid": "SM0002", "NumMedia": "0"}
        signature = RequestValidator("twilio-token").compute_signature(f"http://testserver{WEBHOOKS}/sms", params)

        forged = await client.post(f"{WEBHOOKS}/sms", data=params, headers={"X-Twilio-Signature": "bogus"})
        signed = await client.post(f"{WEBHOOKS}/sms", data=params, headers={"X-Twilio-Signature": signature})

        assert forged.status_code == 403
        assert signed.status_code == 200
