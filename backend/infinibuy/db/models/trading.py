"""
Domain Models - Positions, Order Records, Execution Logs
Infinibuy Trading Core

SQLAlchemy models for:
- Positions (one per tracked ticker + strategy)
- Order records (every order the core places)
- Execution logs (append-only scheduler journal)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, Boolean, Text, ForeignKey, Index, JSON
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from infinibuy.db.base import Base, Money, UTCDateTime, utcnow


class StrategyType(str, Enum):
    BASIC = "basic"
    LOC_SPLIT = "loc_split"
    VALUE_REBALANCE = "value_rebalance"
    GRID = "grid"


class PositionStatus(str, Enum):
    BUYING = "buying"
    COMPLETED = "completed"
    STOPPED = "stopped"


class BuyCondition(str, Enum):
    DAILY = "daily"
    LOC = "loc"
    WATERFALL = "waterfall"
    LOC_WATERFALL = "loc_waterfall"


class VRStyle(str, Enum):
    DEPOSIT = "deposit"
    HOLD = "hold"
    WITHDRAW = "withdraw"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    LIMIT = "limit"
    LOC = "loc"


class OrderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    UNFILLED = "unfilled"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class OrderSubType(str, Enum):
    FIRST_HALF_A = "first_half_a"
    FIRST_HALF_B = "first_half_b"
    SECOND_HALF = "second_half"
    SELL_A = "sell_a"
    SELL_B = "sell_b"
    TAKE_PROFIT = "take_profit"
    VR_BUY = "vr_buy"
    VR_SELL = "vr_sell"


class JobType(str, Enum):
    BASIC_BUY = "basic_buy"
    LOC_BUY = "loc_buy"
    VR_CYCLE = "vr_cycle"
    VR_ORDER = "vr_order"
    PRICE_CHECK = "price_check"
    ORDER_CHECK = "order_check"
    LOG_PRUNE = "log_prune"


class JobStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"


class Position(Base):
    """
    A tracked instrument under one strategy.

    Mutated once per successful scheduled cycle and corrected by
    reconciliation when fills differ from the optimistic assumption.
    """
    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    exchange: Mapped[str] = mapped_column(String(10), default="NAS")  # NAS, NYS, AMS

    strategy: Mapped[str] = mapped_column(String(20), default=StrategyType.BASIC.value)
    status: Mapped[str] = mapped_column(String(20), default=PositionStatus.BUYING.value)
    auto_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Split-buy parameters
    buy_amount: Mapped[float] = mapped_column(Money, default=0.0)
    total_rounds: Mapped[int] = mapped_column(Integer, default=40)
    target_profit: Mapped[float] = mapped_column(Money, default=10.0)  # percent
    buy_condition: Mapped[str] = mapped_column(String(20), default=BuyCondition.DAILY.value)

    # Running state
    current_round: Mapped[int] = mapped_column(Integer, default=0)
    total_invested: Mapped[float] = mapped_column(Money, default=0.0)
    total_quantity: Mapped[int] = mapped_column(Integer, default=0)
    avg_price: Mapped[float] = mapped_column(Money, default=0.0)

    # Value-rebalancing parameters
    vr_value: Mapped[Optional[float]] = mapped_column(Money)
    vr_pool: Mapped[Optional[float]] = mapped_column(Money)
    vr_gradient: Mapped[Optional[int]] = mapped_column(Integer)
    vr_style: Mapped[Optional[str]] = mapped_column(String(10))
    vr_band_percent: Mapped[Optional[float]] = mapped_column(Money)
    vr_deposit_amount: Mapped[Optional[float]] = mapped_column(Money)
    vr_cycle_weeks: Mapped[Optional[int]] = mapped_column(Integer)
    vr_cycle_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    vr_last_cycle: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    records: Mapped[List["OrderRecord"]] = relationship(back_populates="position")

    __table_args__ = (
        Index('idx_positions_eligible', 'status', 'auto_enabled', 'strategy'),
        Index('idx_positions_user', 'user_id'),
    )

    def __repr__(self) -> str:
        return f"<Position {self.id} {self.ticker} {self.strategy} round={self.current_round}/{self.total_rounds}>"


class OrderRecord(Base):
    """
    One order placed at the venue.

    Created pending at placement; moved exactly once into a terminal
    status by reconciliation.
    """
    __tablename__ = "order_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_id: Mapped[int] = mapped_column(Integer, ForeignKey("positions.id"), nullable=False)

    type: Mapped[str] = mapped_column(String(10), nullable=False)  # buy, sell
    round: Mapped[Optional[int]] = mapped_column(Integer)
    price: Mapped[float] = mapped_column(Money, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[float] = mapped_column(Money, nullable=False)
    profit: Mapped[Optional[float]] = mapped_column(Money)
    profit_percent: Mapped[Optional[float]] = mapped_column(Money)

    order_type: Mapped[str] = mapped_column(String(10), default=OrderType.LIMIT.value)
    sub_type: Mapped[Optional[str]] = mapped_column(String(20))
    target_price: Mapped[Optional[float]] = mapped_column(Money)
    order_id: Mapped[Optional[str]] = mapped_column(String(50))  # venue-assigned
    order_status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value)
    status_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Value-rebalancing ladder tags
    vr_order_index: Mapped[Optional[int]] = mapped_column(Integer)
    vr_band_min: Mapped[Optional[float]] = mapped_column(Money)
    vr_band_max: Mapped[Optional[float]] = mapped_column(Money)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    filled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    position: Mapped["Position"] = relationship(back_populates="records")

    __table_args__ = (
        Index('idx_records_position_type_created', 'position_id', 'type', 'created_at'),
        Index('idx_records_status', 'order_status'),
        Index('idx_records_order_id', 'order_id'),
    )

    @property
    def status(self) -> OrderStatus:
        return OrderStatus(self.order_status)

    def __repr__(self) -> str:
        return f"<OrderRecord {self.id} {self.type} {self.quantity}@{self.price} {self.order_status}>"


class ExecutionLog(Base):
    """Append-only journal of scheduler and reconciliation activity."""
    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    position_id: Mapped[Optional[int]] = mapped_column(Integer)
    ticker: Mapped[Optional[str]] = mapped_column(String(20))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index('idx_execution_logs_type_created', 'job_type', 'created_at'),
        Index('idx_execution_logs_position', 'position_id'),
    )
