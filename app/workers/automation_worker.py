"""Automation worker endpoints, called by the scheduler and by producers of lead events."""

import logging
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError

from app.api.deps import get_automation_engine
from app.domain.automation.engine import AutomationEngine
from app.persistence.models.automation import EVENT_TRIGGERS, RuleTrigger

logger = logging.getLogger(__name__)

router = APIRouter()


class RunEventPayload(BaseModel):
    """Payload for an event-triggered rule run."""

    trigger: RuleTrigger
    lead_id: int
    context: dict[str, Any] = Field(default_factory=dict)


@router.post("/automation/run-scheduled")
async def run_scheduled(
    engine: Annotated[AutomationEngine, Depends(get_automation_engine)],
) -> dict[str, Any]:
    """Run all scheduled rules once.

    Returns 503 when the database is unreachable so the scheduler retries.
    """
    try:
        result = await engine.run_scheduled()
    except OperationalError as e:
        logger.error(f"Scheduled automation run failed, storage unavailable: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable") from e

    return {"status": "completed", **asdict(result)}


@router.post("/automation/run-event")
async def run_event(
    payload: RunEventPayload,
    engine: Annotated[AutomationEngine, Depends(get_automation_engine)],
) -> dict[str, Any]:
    """Run the rules for one lead event."""
    if payload.trigger not in EVENT_TRIGGERS:
        return {"status": "skipped", "reason": "not_an_event_trigger"}

    try:
        results = await engine.run_for_event(payload.trigger, payload.lead_id, payload.context)
    except OperationalError as e:
        logger.error(f"Event automation run failed, storage unavailable: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable") from e

    return {
        "status": "completed",
        "results": [
            {
                "rule_id": r.rule_id,
                "lead_id": r.lead_id,
                "status": r.status.value,
                "reason": r.reason,
                "actions": r.actions,
            }
            for r in results
        ],
    }
