"""
Repositories Package
Infinibuy Trading Core
"""

from infinibuy.db.repositories.trading import (
    ExecutionLogRepository,
    OrderRecordRepository,
    PositionRepository,
)

__all__ = [
    "PositionRepository",
    "OrderRecordRepository",
    "ExecutionLogRepository",
]
