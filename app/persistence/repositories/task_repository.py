"""Task repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.task import Task
from app.persistence.repositories.base import BaseRepository


class TaskRepository(BaseRepository[Task]):
    """Repository for Task entities."""

    def __init__(self, session: AsyncSession):
        super().__init__(Task, session)

    async def list_open_for_lead(self, lead_id: int) -> list[Task]:
        stmt = (
            select(Task)
            .where(Task.lead_id == lead_id, Task.status == "OPEN")
            .order_by(Task.due_at, Task.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
