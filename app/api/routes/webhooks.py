"""Inbound webhook endpoints for all channels.

Providers get a 200 for anything past signature checks, including
payloads we fail to process; failures are logged and recorded on the
inbound dedup fence instead of triggering provider retry storms.
"""

import hashlib
import hmac
import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, Response
from twilio.request_validator import RequestValidator

from app.api.deps import get_inbound_pipeline
from app.core.exceptions import NormalizationError
from app.core.phone import normalize_channel
from app.domain.services.inbound_normalizer import SUPPORTED_CHANNELS
from app.domain.services.inbound_pipeline import InboundPipeline, PayloadResult
from app.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()

META_CHANNELS = frozenset({"whatsapp", "instagram", "facebook"})
RELAY_CHANNELS = frozenset({"email", "webchat"})

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def verify_meta_signature(raw_body: bytes, signature_header: str | None, app_secret: str) -> bool:
    """Check an X-Hub-Signature-256 header against the raw request body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.removeprefix("sha256="))


async def _validate_twilio_signature(request: Request, params: dict[str, Any], auth_token: str) -> bool:
    """Validate Twilio webhook signature.

    Args:
        request: FastAPI request
        params: Form parameters as received
        auth_token: Twilio auth token

    Returns:
        True if signature is valid, False otherwise
    """
    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        return False
    validator = RequestValidator(auth_token)
    return validator.validate(str(request.url), params, signature)


def _summary(result: PayloadResult) -> dict[str, Any]:
    counts = {"processed": 0, "duplicate": 0, "failed": 0}
    for event in result.events:
        counts[event.status] = counts.get(event.status, 0) + 1
    return {
        "status": "error" if result.has_failures else "ok",
        **counts,
        "status_updates": result.status_updates,
    }


@router.get("/meta")
async def verify_meta_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """Meta subscription handshake: echo the challenge when the token matches."""
    if (
        hub_mode == "subscribe"
        and settings.meta_verify_token
        and hub_verify_token
        and hmac.compare_digest(hub_verify_token, settings.meta_verify_token)
    ):
        logger.info("Meta webhook verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Meta webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/sms")
async def inbound_sms_webhook(
    request: Request,
    pipeline: Annotated[InboundPipeline, Depends(get_inbound_pipeline)],
) -> Response:
    """Handle inbound SMS webhook from Twilio.

    Returns:
        Empty TwiML; replies go out through the dispatcher, not TwiML
    """
    form_data = await request.form()
    params = {key: form_data[key] for key in form_data}

    if settings.twilio_auth_token:
        is_valid = await _validate_twilio_signature(request, params, settings.twilio_auth_token)
        if not is_valid:
            if settings.environment == "production":
                logger.warning("Invalid Twilio signature")
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
            logger.warning("Invalid Twilio signature (ignored outside production)")

    try:
        result = await pipeline.process_payload("sms", params)
        logger.info("SMS webhook handled", extra=_summary(result))
    except NormalizationError as e:
        logger.warning(f"Rejected SMS webhook payload: {e}")
    except Exception as e:
        logger.error(f"Error processing SMS webhook: {e}", exc_info=True)

    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/{channel}")
async def inbound_channel_webhook(
    channel: str,
    request: Request,
    pipeline: Annotated[InboundPipeline, Depends(get_inbound_pipeline)],
) -> dict[str, Any]:
    """Handle inbound webhook for a JSON channel.

    Meta channels must carry a valid X-Hub-Signature-256 when an app
    secret is configured; relay channels must carry the shared token
    when one is configured.
    """
    channel = normalize_channel(channel)
    if channel not in SUPPORTED_CHANNELS or channel == "sms":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown channel: {channel}")

    raw_body = await request.body()

    if channel in META_CHANNELS and settings.meta_app_secret:
        if not verify_meta_signature(raw_body, request.headers.get("X-Hub-Signature-256"), settings.meta_app_secret):
            logger.warning(f"Invalid Meta signature on {channel} webhook")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    if channel in RELAY_CHANNELS and settings.webhook_shared_token:
        token = request.headers.get("X-Webhook-Token", "")
        if not hmac.compare_digest(token, settings.webhook_shared_token):
            logger.warning(f"Invalid shared token on {channel} webhook")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")

    try:
        payload = json.loads(raw_body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(f"Malformed JSON on {channel} webhook")
        return {"status": "error", "detail": "malformed JSON"}

    try:
        result = await pipeline.process_payload(channel, payload)
    except NormalizationError as e:
        logger.warning(f"Rejected {channel} webhook payload: {e}")
        return {"status": "error", "detail": str(e)}
    except Exception as e:
        logger.error(f"Error processing {channel} webhook: {e}", exc_info=True)
        return {"status": "error", "detail": "processing failed"}

    summary = _summary(result)
    logger.info(f"{channel} webhook handled", extra=summary)
    return summary
