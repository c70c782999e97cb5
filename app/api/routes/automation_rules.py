"""Operator endpoints for automation rules."""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict

from app.api.deps import get_rule_service
from app.core.exceptions import RuleValidationError
from app.domain.automation.rule_service import AutomationRuleService

logger = logging.getLogger(__name__)

router = APIRouter()


class AutomationRuleResponse(BaseModel):
    """Automation rule response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    name: str
    trigger: str
    enabled: bool
    conditions: dict[str, Any]
    actions: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


@router.get("", response_model=list[AutomationRuleResponse])
async def list_rules(
    service: Annotated[AutomationRuleService, Depends(get_rule_service)],
) -> list[AutomationRuleResponse]:
    """List all automation rules."""
    rules = await service.list_rules()
    return [AutomationRuleResponse.model_validate(rule) for rule in rules]


@router.post("", response_model=AutomationRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    service: Annotated[AutomationRuleService, Depends(get_rule_service)],
    data: Annotated[dict[str, Any], Body()],
) -> AutomationRuleResponse:
    """Create a rule. Invalid conditions or actions are rejected with 422."""
    try:
        rule = await service.create_rule(data)
    except RuleValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors) from e
    return AutomationRuleResponse.model_validate(rule)


async def _toggle(service: AutomationRuleService, rule_id: int, enabled: bool) -> AutomationRuleResponse:
    rule = await service.set_enabled(rule_id, enabled)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return AutomationRuleResponse.model_validate(rule)


@router.post("/{rule_id}/enable", response_model=AutomationRuleResponse)
async def enable_rule(
    rule_id: int,
    service: Annotated[AutomationRuleService, Depends(get_rule_service)],
) -> AutomationRuleResponse:
    return await _toggle(service, rule_id, True)


@router.post("/{rule_id}/disable", response_model=AutomationRuleResponse)
async def disable_rule(
    rule_id: int,
    service: Annotated[AutomationRuleService, Depends(get_rule_service)],
) -> AutomationRuleResponse:
    return await _toggle(service, rule_id, False)
