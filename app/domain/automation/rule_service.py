"""Operator-facing management of automation rules."""

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import RuleValidationError
from app.domain.automation.schemas import RuleDefinition, dump_actions, validate_rule
from app.persistence.models.automation import AutomationRule
from app.persistence.repositories.automation_repository import AutomationRuleRepository

logger = logging.getLogger(__name__)


class AutomationRuleService:
    """Creates and toggles rules. Nothing is saved without validation."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = AutomationRuleRepository(session)

    async def list_rules(self) -> list[AutomationRule]:
        return await self.repo.list(limit=1000)

    async def create_rule(self, data: dict[str, Any]) -> AutomationRule:
        """Validate and store a new rule.

        Raises:
            RuleValidationError: If the definition is invalid or the key is taken
        """
        definition: RuleDefinition = validate_rule(data)
        if await self.repo.get_by_key(definition.key):
            raise RuleValidationError([
                {"loc": ["key"], "msg": f"rule key '{definition.key}' already exists", "type": "value_error"}
            ])

        try:
            rule = await self.repo.create(
                key=definition.key,
                name=definition.name,
                trigger=definition.trigger.value,
                enabled=definition.enabled,
                conditions=definition.conditions.model_dump(mode="json", exclude_none=True),
                actions=dump_actions(definition.actions),
            )
        except IntegrityError as e:
            await self.session.rollback()
            raise RuleValidationError([
                {"loc": ["key"], "msg": f"rule key '{definition.key}' already exists", "type": "value_error"}
            ]) from e

        logger.info(f"Created automation rule {rule.key}", extra={"rule_id": rule.id, "trigger": rule.trigger})
        return rule

    async def set_enabled(self, rule_id: int, enabled: bool) -> AutomationRule | None:
        """Enable or disable a rule. Returns None if it does not exist."""
        rule = await self.repo.update(rule_id, enabled=enabled)
        if rule is not None:
            logger.info(
                f"Automation rule {rule.key} {'enabled' if enabled else 'disabled'}",
                extra={"rule_id": rule.id},
            )
        return rule
