"""Base repository with common queries."""

from typing import Any, Generic, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.database import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository with id-based query methods."""

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """Initialize repository with model and session."""
        self.model = model
        self.session = session

    async def get_by_id(self, id: int) -> ModelType | None:
        """Get entity by ID."""
        return await self.session.get(self.model, id)

    async def list(self, skip: int = 0, limit: int = 100, **filters: Any) -> list[ModelType]:
        """List entities matching equality filters."""
        stmt = select(self.model)

        for key, value in filters.items():
            if hasattr(self.model, key):
                stmt = stmt.where(getattr(self.model, key) == value)

        stmt = stmt.order_by(self.model.id).offset(skip).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, commit: bool = True, **data: Any) -> ModelType:
        """Create a new entity.

        Args:
            commit: Commit immediately; when False the row is only flushed so
                the caller controls the transaction
            data: Column values

        Returns:
            The persisted entity
        """
        instance = self.model(**data)
        self.session.add(instance)
        if commit:
            await self.session.commit()
            await self.session.refresh(instance)
        else:
            await self.session.flush()
        return instance

    async def update(self, id: int, **data: Any) -> ModelType | None:
        """Update entity fields and commit."""
        instance = await self.get_by_id(id)
        if instance is None:
            return None

        for key, value in data.items():
            setattr(instance, key, value)

        await self.session.commit()
        await self.session.refresh(instance)
        return instance
