"""
Position Service
Infinibuy Trading Core

Lifecycle changes a user can make to a position outside the scheduled
jobs, plus an account summary.
"""

from typing import Any, Dict

from loguru import logger

from infinibuy.core.exceptions import PositionStateError
from infinibuy.db.models.trading import Position, PositionStatus
from infinibuy.db.repositories import OrderRecordRepository, PositionRepository
from infinibuy.db.session import SessionFactory, get_db_context


class PositionService:
    def __init__(self, session_factory: SessionFactory = get_db_context):
        self._session_factory = session_factory

    async def _transition(self, position_id: int, expected: PositionStatus, target: PositionStatus) -> Position:
        async with self._session_factory() as session:
            position = await PositionRepository(session).get(position_id)
            if position is None:
                raise PositionStateError(f"Position {position_id} not found")
            if position.status != expected.value:
                raise PositionStateError(
                    f"{position.ticker}: cannot move from {position.status} to {target.value}",
                    {"position_id": position_id, "status": position.status},
                )
            position.status = target.value
        logger.info(f"{position.ticker}: {expected.value} -> {target.value}")
        return position

    async def stop(self, position_id: int) -> Position:
        """Stop scheduled trading. Pending orders are left to reconciliation."""
        return await self._transition(position_id, PositionStatus.BUYING, PositionStatus.STOPPED)

    async def resume(self, position_id: int) -> Position:
        return await self._transition(position_id, PositionStatus.STOPPED, PositionStatus.BUYING)

    async def summary(self, user_id: int) -> Dict[str, Any]:
        async with self._session_factory() as session:
            positions = await PositionRepository(session).list_by_user(user_id)
            realized = await OrderRecordRepository(session).realized_profit([p.id for p in positions])

        counts = {status.value: 0 for status in PositionStatus}
        for position in positions:
            counts[position.status] = counts.get(position.status, 0) + 1

        return {
            "user_id": user_id,
            "total_positions": len(positions),
            "by_status": counts,
            "total_invested": round(sum(p.total_invested for p in positions if p.status == PositionStatus.BUYING.value), 2),
            "realized_profit": round(realized, 2),
        }
