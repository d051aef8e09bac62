"""
Trading Repository
Infinibuy Trading Core

Data access layer for positions, order records and execution logs.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from infinibuy.db.repository import BaseRepository, PaginatedResponse, PaginationParams
from infinibuy.db.models.trading import (
    ExecutionLog,
    OrderRecord,
    OrderSide,
    OrderStatus,
    Position,
    PositionStatus,
    StrategyType,
)


class PositionRepository(BaseRepository[Position]):
    """Repository for positions."""

    def __init__(self, session: AsyncSession):
        super().__init__(Position, session)

    async def list_eligible(
        self,
        strategy: StrategyType,
        status: PositionStatus = PositionStatus.BUYING,
        auto_enabled: bool = True,
        user_id: Optional[int] = None,
    ) -> List[Position]:
        """Positions a scheduled job should consider, oldest first."""
        conditions = [
            self.model.strategy == strategy.value,
            self.model.status == status.value,
            self.model.auto_enabled == auto_enabled,
        ]
        if user_id is not None:
            conditions.append(self.model.user_id == user_id)

        result = await self.session.execute(
            select(self.model).where(and_(*conditions)).order_by(self.model.id)
        )
        return list(result.scalars().all())

    async def list_with_holdings(
        self,
        strategy: Optional[StrategyType] = None,
    ) -> List[Position]:
        """Buying positions that currently hold shares."""
        query = select(self.model).where(
            and_(
                self.model.status == PositionStatus.BUYING.value,
                self.model.total_quantity > 0,
            )
        )
        if strategy is not None:
            query = query.where(self.model.strategy == strategy.value)

        result = await self.session.execute(query.order_by(self.model.id))
        return list(result.scalars().all())

    async def list_by_user(self, user_id: int) -> List[Position]:
        result = await self.session.execute(
            select(self.model).where(self.model.user_id == user_id).order_by(self.model.id)
        )
        return list(result.scalars().all())


class OrderRecordRepository(BaseRepository[OrderRecord]):
    """Repository for order records."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrderRecord, session)

    async def count_buys_since(self, position_id: int, since: datetime) -> int:
        """Count buy records for a position created at or after `since`."""
        result = await self.session.execute(
            select(func.count())
            .select_from(self.model)
            .where(
                and_(
                    self.model.position_id == position_id,
                    self.model.type == OrderSide.BUY.value,
                    self.model.created_at >= since,
                )
            )
        )
        return result.scalar() or 0

    async def list_pending(
        self,
        order_type: Optional[str] = None,
        strategies: Optional[Iterable[StrategyType]] = None,
        position_id: Optional[int] = None,
        require_order_id: bool = True,
    ) -> List[OrderRecord]:
        """
        Pending records with their position loaded.

        Args:
            order_type: Restrict to limit or loc orders
            strategies: Restrict to positions running these strategies
            position_id: Restrict to one position
            require_order_id: Skip records the venue never acknowledged
        """
        query = (
            select(self.model)
            .options(selectinload(self.model.position))
            .where(self.model.order_status == OrderStatus.PENDING.value)
        )
        if order_type is not None:
            query = query.where(self.model.order_type == order_type)
        if require_order_id:
            query = query.where(self.model.order_id.is_not(None))
        if position_id is not None:
            query = query.where(self.model.position_id == position_id)
        if strategies is not None:
            names = [s.value for s in strategies]
            query = query.join(Position).where(Position.strategy.in_(names))

        result = await self.session.execute(query.order_by(self.model.id))
        return list(result.scalars().all())

    async def list_for_position(
        self,
        position_id: int,
        type: Optional[OrderSide] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
    ) -> List[OrderRecord]:
        """Most recent records for a position."""
        query = select(self.model).where(self.model.position_id == position_id)
        if type is not None:
            query = query.where(self.model.type == type.value)
        if status is not None:
            query = query.where(self.model.order_status == status.value)

        result = await self.session.execute(
            query.order_by(self.model.created_at.desc(), self.model.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def mark_filled(
        self,
        record: OrderRecord,
        price: float,
        quantity: int,
        filled_at: datetime,
    ) -> OrderRecord:
        """Move a pending record to filled with the venue's price and quantity."""
        if record.status.is_terminal:
            return record
        record.order_status = OrderStatus.FILLED.value
        record.price = price
        record.quantity = quantity
        record.amount = round(price * quantity, 2)
        record.filled_at = filled_at
        await self.session.flush()
        return record

    async def mark_terminal(
        self,
        record: OrderRecord,
        status: OrderStatus,
        reason: Optional[str] = None,
    ) -> OrderRecord:
        """Move a pending record to unfilled or cancelled. Terminal records are left alone."""
        if record.status.is_terminal:
            return record
        record.order_status = status.value
        record.status_reason = reason
        await self.session.flush()
        return record

    async def realized_profit(self, position_ids: List[int]) -> float:
        """Sum of profit over sell records that did not fail."""
        if not position_ids:
            return 0.0
        result = await self.session.execute(
            select(func.coalesce(func.sum(self.model.profit), 0.0)).where(
                and_(
                    self.model.position_id.in_(position_ids),
                    self.model.type == OrderSide.SELL.value,
                    self.model.order_status.in_(
                        [OrderStatus.PENDING.value, OrderStatus.FILLED.value]
                    ),
                )
            )
        )
        return float(result.scalar() or 0.0)


class ExecutionLogRepository(BaseRepository[ExecutionLog]):
    """Repository for the execution log."""

    def __init__(self, session: AsyncSession):
        super().__init__(ExecutionLog, session)

    async def append(
        self,
        job_type: str,
        status: str,
        message: str,
        position_id: Optional[int] = None,
        ticker: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ExecutionLog:
        return await self.add(
            ExecutionLog(
                job_type=job_type,
                status=status,
                message=message,
                position_id=position_id,
                ticker=ticker,
                details=details,
                error_message=error_message,
            )
        )

    async def query(
        self,
        pagination: PaginationParams,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        position_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PaginatedResponse:
        """Filtered, newest-first page of log entries."""
        conditions = []
        if job_type is not None:
            conditions.append(self.model.job_type == job_type)
        if status is not None:
            conditions.append(self.model.status == status)
        if position_id is not None:
            conditions.append(self.model.position_id == position_id)
        if start is not None:
            conditions.append(self.model.created_at >= start)
        if end is not None:
            conditions.append(self.model.created_at <= end)

        query = select(self.model)
        count_query = select(func.count()).select_from(self.model)
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = (await self.session.execute(count_query)).scalar() or 0

        result = await self.session.execute(
            query.order_by(self.model.created_at.desc(), self.model.id.desc())
            .offset(pagination.offset)
            .limit(pagination.page_size)
        )
        items = list(result.scalars().all())

        total_pages = (total + pagination.page_size - 1) // pagination.page_size
        return PaginatedResponse(
            items=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=total_pages,
            has_next=pagination.page < total_pages,
            has_prev=pagination.page > 1,
        )

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete entries created before cutoff. Returns rows removed."""
        result = await self.session.execute(
            delete(self.model).where(self.model.created_at < cutoff)
        )
        return result.rowcount or 0
