"""
Strategy Framework
Infinibuy Trading Core

Shared pieces for the split-buy strategies:
- cent rounding helpers
- OrderIntent (what a strategy wants placed)
- StrategyResult (what happened to one position)
- BaseStrategy (persistence, events, notifications and log plumbing)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from infinibuy.brokers.base import BaseVenueClient, OrderResult
from infinibuy.core.events import EventBus, EventType, OrderEvent, get_event_bus_sync
from infinibuy.db.models.trading import (
    JobStatus,
    JobType,
    OrderRecord,
    OrderSide,
    OrderStatus,
    OrderSubType,
    OrderType,
    Position,
)
from infinibuy.db.repositories import OrderRecordRepository
from infinibuy.db.session import SessionFactory, get_db_context
from infinibuy.services.execution_log import ExecutionLogService
from infinibuy.services.market_calendar import et_day_start
from infinibuy.services.notifier import NotificationMessage, Notifier, notify_safely


CENT = Decimal("0.01")


def round_cents(value: float) -> float:
    """Round half-up to USD cents."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def ceil_cents(value: float) -> float:
    """Round up to two decimals."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_CEILING))


def average_price(invested: float, quantity: int) -> float:
    return invested / quantity if quantity > 0 else 0.0


class StrategyAction(str, Enum):
    BOUGHT = "bought"
    SOLD = "sold"
    ORDERED = "ordered"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    NOT_BUYING = "not_buying"
    MAX_ROUNDS_REACHED = "max_rounds_reached"
    ALREADY_BOUGHT_TODAY = "already_bought_today"
    CONDITION_NOT_MET = "condition_not_met"
    QUANTITY_TOO_SMALL = "quantity_too_small"
    NO_HOLDINGS = "no_holdings"
    TARGET_NOT_REACHED = "target_not_reached"
    NOT_INITIALIZED = "not_initialized"
    CYCLE_NOT_DUE = "cycle_not_due"


@dataclass
class OrderIntent:
    """One order a strategy wants placed."""
    side: OrderSide
    order_type: OrderType
    price: float
    quantity: int
    amount: float  # amount assumed spent/received if fully filled
    sub_type: Optional[OrderSubType] = None
    vr_order_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "order_type": self.order_type.value,
            "price": self.price,
            "quantity": self.quantity,
            "amount": self.amount,
            "sub_type": self.sub_type.value if self.sub_type else None,
            "vr_order_index": self.vr_order_index,
        }


@dataclass
class StrategyResult:
    """Outcome of one strategy invocation for one position."""
    position_id: int
    ticker: str
    action: StrategyAction
    message: str
    orders: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def executed(self) -> bool:
        return self.action != StrategyAction.SKIPPED

    @property
    def skip_reason(self) -> Optional[str]:
        return self.details.get("skip_reason")

    @classmethod
    def skipped(cls, position: Position, reason: SkipReason, message: str, **details: Any) -> "StrategyResult":
        return cls(
            position_id=position.id,
            ticker=position.ticker,
            action=StrategyAction.SKIPPED,
            message=message,
            details={"skip_reason": reason.value, **details},
        )


class BaseStrategy:
    """
    Plumbing shared by every strategy.

    Each public operation opens one session from session_factory so the
    position update and the order records it produces commit together.
    Logging, events and notifications happen after the commit.
    """

    job_type: JobType = JobType.BASIC_BUY

    def __init__(
        self,
        session_factory: SessionFactory = get_db_context,
        execution_log: Optional[ExecutionLogService] = None,
        notifier: Optional[Notifier] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._session_factory = session_factory
        self.execution_log = execution_log or ExecutionLogService(session_factory)
        self.notifier = notifier
        self.event_bus = event_bus or get_event_bus_sync()

    @staticmethod
    async def buys_today(session: AsyncSession, position_id: int, now: datetime) -> int:
        """Buy records created since 00:00 ET of the current market date."""
        return await OrderRecordRepository(session).count_buys_since(position_id, et_day_start(now))

    @staticmethod
    async def place(client: BaseVenueClient, position: Position, intent: OrderIntent) -> OrderResult:
        return await client.place_order(
            intent.side,
            position.ticker,
            intent.quantity,
            intent.price,
            position.exchange,
            intent.order_type,
        )

    @staticmethod
    def build_record(
        position: Position,
        intent: OrderIntent,
        result: OrderResult,
        round: Optional[int] = None,
        now: Optional[datetime] = None,
        **extra: Any,
    ) -> OrderRecord:
        return OrderRecord(
            position_id=position.id,
            type=intent.side.value,
            round=round,
            price=intent.price,
            quantity=intent.quantity,
            amount=intent.amount,
            order_type=intent.order_type.value,
            sub_type=intent.sub_type.value if intent.sub_type else None,
            target_price=intent.price,
            order_id=result.order_id,
            order_status=OrderStatus.PENDING.value,
            vr_order_index=intent.vr_order_index,
            created_at=now or datetime.now(timezone.utc),
            **extra,
        )

    async def publish_orders(self, position: Position, records: List[OrderRecord]) -> None:
        for record in records:
            try:
                await self.event_bus.publish(
                    OrderEvent(
                        event_type=EventType.ORDER_PLACED,
                        position_id=position.id,
                        ticker=position.ticker,
                        side=record.type,
                        order_type=record.order_type,
                        quantity=record.quantity,
                        price=record.price,
                        status=record.order_status,
                        venue_order_id=record.order_id,
                    )
                )
            except Exception as e:
                logger.warning(f"Failed to publish order event for {position.ticker}: {e}")

    async def notify(self, user_id: int, title: str, body: str, tag: Optional[str] = None, **metadata: Any) -> None:
        await notify_safely(self.notifier, user_id, NotificationMessage(title=title, body=body, tag=tag, metadata=metadata))

    async def log_result(self, result: StrategyResult, job_type: Optional[JobType] = None) -> None:
        await self.execution_log.append(
            job_type or self.job_type,
            JobStatus.SKIPPED if result.action == StrategyAction.SKIPPED else JobStatus.COMPLETED,
            result.message,
            position_id=result.position_id,
            ticker=result.ticker,
            details={"orders": result.orders, **result.details},
        )
