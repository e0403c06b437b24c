"""
Base Repository for MagnetHub Billing

Generic async repository bound to a caller-owned session. The caller's
session is the transaction boundary, so several repositories can take part
in one atomic unit of work.
"""

from typing import TypeVar, Generic, Optional, Type, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with the reads and inserts shared by all tables.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    async def _get_model(self, id: Any) -> Optional[ModelType]:
        """
        Load a row by primary key, bypassing the identity map.

        Conditional UPDATE statements do not synchronize the session, so
        reads always repopulate from the database.
        """
        stmt = (
            select(self._model)
            .where(self._model.id == id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _add(self, db_obj: ModelType) -> ModelType:
        """Insert a new row and flush so constraint violations surface here."""
        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return db_obj
