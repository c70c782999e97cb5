"""Automation rule and run log repositories."""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.automation import AutomationRule, AutomationRunLog, RunStatus
from app.persistence.repositories.base import BaseRepository


class AutomationRuleRepository(BaseRepository[AutomationRule]):
    """Repository for AutomationRule entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(AutomationRule, session)

    async def get_by_key(self, key: str) -> AutomationRule | None:
        stmt = select(AutomationRule).where(AutomationRule.key == key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_enabled(self, triggers: Iterable[str]) -> list[AutomationRule]:
        """Enabled rules for the given triggers, in creation order."""
        stmt = (
            select(AutomationRule)
            .where(
                AutomationRule.enabled.is_(True),
                AutomationRule.trigger.in_([getattr(t, "value", t) for t in triggers]),
            )
            .order_by(AutomationRule.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class AutomationRunLogRepository(BaseRepository[AutomationRunLog]):
    """Repository for AutomationRunLog entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(AutomationRunLog, session)

    async def get_last_success(
        self, rule_id: int, lead_id: int, since: datetime | None = None
    ) -> AutomationRunLog | None:
        """Most recent successful run of a rule for a lead.

        Args:
            rule_id: Rule ID
            lead_id: Lead ID
            since: Only runs strictly after this time count

        Returns:
            Run log or None
        """
        stmt = select(AutomationRunLog).where(
            AutomationRunLog.rule_id == rule_id,
            AutomationRunLog.lead_id == lead_id,
            AutomationRunLog.status == RunStatus.SUCCESS.value,
        )
        if since is not None:
            stmt = stmt.where(AutomationRunLog.ran_at > since)
        stmt = stmt.order_by(AutomationRunLog.ran_at.desc(), AutomationRunLog.id.desc()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_lead(self, lead_id: int, rule_id: int | None = None) -> list[AutomationRunLog]:
        stmt = select(AutomationRunLog).where(AutomationRunLog.lead_id == lead_id)
        if rule_id is not None:
            stmt = stmt.where(AutomationRunLog.rule_id == rule_id)
        stmt = stmt.order_by(AutomationRunLog.ran_at, AutomationRunLog.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
