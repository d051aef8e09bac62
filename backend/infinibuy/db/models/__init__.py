"""
Database Models Package
Infinibuy Trading Core

Exports all SQLAlchemy models for the application.
"""

from infinibuy.db.base import Base

from infinibuy.db.models.trading import (
    Position,
    OrderRecord,
    ExecutionLog,
    StrategyType,
    PositionStatus,
    BuyCondition,
    VRStyle,
    OrderSide,
    OrderType,
    OrderStatus,
    OrderSubType,
    JobType,
    JobStatus,
)

__all__ = [
    "Base",
    "Position",
    "OrderRecord",
    "ExecutionLog",
    "StrategyType",
    "PositionStatus",
    "BuyCondition",
    "VRStyle",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "OrderSubType",
    "JobType",
    "JobStatus",
]
