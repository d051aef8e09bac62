"""
Base Repository Pattern Implementation
Infinibuy Trading Core

Provides the shared async persistence helpers. Repositories flush but
never commit: the surrounding get_db_context() owns the transaction, so
a position update and the order records it produces land together.
"""

from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from infinibuy.db.base import Base


ModelType = TypeVar("ModelType", bound=Base)


class PaginationParams(BaseModel):
    """Pagination parameters."""
    page: int = 1
    page_size: int = 50

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel):
    """Paginated response wrapper."""
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository; subclasses add the queries their model needs.

    Type Parameters:
        ModelType: SQLAlchemy model class
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def get(self, id: int) -> Optional[ModelType]:
        """Get a single record by primary key."""
        return await self.session.get(self.model, id)

    async def add(self, obj: ModelType) -> ModelType:
        """Add a new record and flush so it receives its primary key."""
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def add_all(self, objs: List[ModelType]) -> List[ModelType]:
        """Add several records in one flush."""
        self.session.add_all(objs)
        await self.session.flush()
        return objs


__all__ = [
    "BaseRepository",
    "PaginationParams",
    "PaginatedResponse",
]
