"""
Reconciliation Engine
Infinibuy Trading Core

Matches locally pending order records against what the venue reports
and corrects the optimistic position state the strategies wrote at
placement time.

Per record:
- filled at the venue      -> filled with the real price/qty; position corrected
- cancelled at the venue   -> cancelled; optimistic contribution reversed
- still open at the venue  -> left pending
- absent past its expiry   -> unfilled with a best-effort reason; reversed

Expiry: a post-close LOC pass expires immediately, other LOC orders after
loc_expiry_hours, limit orders after limit_expiry_days.

Records move into a terminal status exactly once; terminal records are
never touched again.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from loguru import logger

from infinibuy.brokers.base import BaseVenueClient, VenueOrder
from infinibuy.core.config import ReconciliationSettings, settings
from infinibuy.core.events import EventBus, EventType, OrderEvent, get_event_bus_sync
from infinibuy.core.exceptions import (
    CredentialMissingError,
    ReconciliationMismatchError,
    TokenIssuanceThrottledError,
)
from infinibuy.db.models.trading import (
    JobStatus,
    JobType,
    OrderRecord,
    OrderSide,
    OrderStatus,
    OrderSubType,
    OrderType,
    Position,
    PositionStatus,
    StrategyType,
)
from infinibuy.db.repositories import OrderRecordRepository, PositionRepository
from infinibuy.db.session import SessionFactory, get_db_context
from infinibuy.services.credentials import VenueSessionManager
from infinibuy.services.error_handler import ErrorHandler, get_error_handler
from infinibuy.services.execution_log import ExecutionLogService
from infinibuy.services.market_calendar import KST
from infinibuy.strategies.base import average_price, round_cents


# Value-rebalancing ladders are synced by their own strategy.
RECONCILED_STRATEGIES = (StrategyType.BASIC, StrategyType.LOC_SPLIT)


class Outcome(str, Enum):
    FILLED = "filled"
    PENDING = "pending"
    UNFILLED = "unfilled"
    CANCELLED = "cancelled"
    NOOP = "noop"


@dataclass
class RecordOutcome:
    record_id: int
    position_id: int
    ticker: str
    order_id: Optional[str]
    outcome: Outcome
    message: str
    side: str = ""
    order_type: str = ""
    quantity: int = 0
    price: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconciliationSummary:
    checked: int = 0
    filled: int = 0
    pending: int = 0
    unfilled: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: List[RecordOutcome] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        self.checked += 1
        self.outcomes.append(outcome)
        if outcome.outcome == Outcome.FILLED:
            self.filled += 1
        elif outcome.outcome == Outcome.PENDING:
            self.pending += 1
        elif outcome.outcome == Outcome.UNFILLED:
            self.unfilled += 1
        elif outcome.outcome == Outcome.CANCELLED:
            self.cancelled += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "filled": self.filled,
            "pending": self.pending,
            "unfilled": self.unfilled,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class _PendingRef:
    """What grouping needs to know about a record, detached from its session."""
    record_id: int
    user_id: int
    created_at: datetime


def _reverse_buy(position: Position, record: OrderRecord) -> None:
    position.total_invested = round_cents(max(0.0, position.total_invested - record.amount))
    position.total_quantity = max(0, position.total_quantity - record.quantity)
    position.avg_price = average_price(position.total_invested, position.total_quantity)


def _restore_take_profit(position: Position, record: OrderRecord) -> None:
    """Undo the liquidation a take-profit sell assumed."""
    cost = record.amount - (record.profit or 0.0)
    position.total_quantity = position.total_quantity + record.quantity
    position.total_invested = round_cents(position.total_invested + cost)
    position.avg_price = average_price(position.total_invested, position.total_quantity)
    if position.status == PositionStatus.COMPLETED.value:
        position.status = PositionStatus.BUYING.value
        position.completed_at = None


class ReconciliationEngine:
    """
    Usage:
        engine = ReconciliationEngine(sessions)
        summary = await engine.reconcile(order_type=OrderType.LOC, post_close=True)
    """

    def __init__(
        self,
        sessions: VenueSessionManager,
        session_factory: SessionFactory = get_db_context,
        execution_log: Optional[ExecutionLogService] = None,
        error_handler: Optional[ErrorHandler] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[ReconciliationSettings] = None,
    ):
        self.sessions = sessions
        self._session_factory = session_factory
        self.execution_log = execution_log or ExecutionLogService(session_factory)
        self.error_handler = error_handler or get_error_handler()
        self.event_bus = event_bus or get_event_bus_sync()
        self.config = config or settings.reconciliation

    async def _load_pending(
        self,
        order_type: Optional[OrderType],
        strategies: Iterable[StrategyType],
    ) -> Dict[int, List[_PendingRef]]:
        async with self._session_factory() as session:
            records = await OrderRecordRepository(session).list_pending(
                order_type=order_type.value if order_type else None,
                strategies=strategies,
            )
            groups: Dict[int, List[_PendingRef]] = defaultdict(list)
            for record in records:
                groups[record.position.user_id].append(
                    _PendingRef(record.id, record.position.user_id, record.created_at)
                )
        return groups

    async def reconcile(
        self,
        order_type: Optional[OrderType] = None,
        strategies: Iterable[StrategyType] = RECONCILED_STRATEGIES,
        post_close: bool = False,
        now: Optional[datetime] = None,
    ) -> ReconciliationSummary:
        """
        Reconcile every pending record matching the filters.

        Records are grouped by account so each account's venue listings
        are fetched once.
        """
        now = now or datetime.now(timezone.utc)
        summary = ReconciliationSummary()
        groups = await self._load_pending(order_type, strategies)
        if not groups:
            return summary

        total = sum(len(refs) for refs in groups.values())
        logger.info(f"Reconciling {total} pending records across {len(groups)} accounts (post_close={post_close})")

        for index, (user_id, refs) in enumerate(groups.items()):
            if index:
                await asyncio.sleep(self.config.group_delay_seconds)
            await self._reconcile_group(user_id, refs, post_close, now, summary)

        logger.info(f"Reconciliation finished: {summary.to_dict()}")
        return summary

    async def _reconcile_group(
        self,
        user_id: int,
        refs: List[_PendingRef],
        post_close: bool,
        now: datetime,
        summary: ReconciliationSummary,
    ) -> None:
        try:
            client = await self.sessions.get_client(user_id, now)
        except (CredentialMissingError, TokenIssuanceThrottledError) as e:
            logger.warning(f"Skipping reconciliation for user {user_id}: {e}")
            summary.skipped += len(refs)
            return
        except Exception as e:
            await self.error_handler.handle_error(e, context={"user_id": user_id, "job": JobType.ORDER_CHECK.value})
            summary.errors += len(refs)
            return

        order_dates = {ref.created_at.astimezone(KST).date() for ref in refs}
        try:
            history = await client.get_filled_orders(dates=order_dates)
            open_orders = await client.get_pending_orders()
        except Exception as e:
            await self.error_handler.handle_error(e, context={"user_id": user_id, "job": JobType.ORDER_CHECK.value})
            summary.errors += len(refs)
            return

        venue_orders = {order.order_id: order for order in history}
        open_ids = {order.order_id for order in open_orders}

        for ref in refs:
            try:
                outcome = await self._reconcile_record(ref.record_id, venue_orders, open_ids, client, post_close, now)
            except Exception as e:
                await self.error_handler.handle_error(e, context={"record_id": ref.record_id, "user_id": user_id})
                summary.errors += 1
                continue
            if outcome.outcome == Outcome.NOOP:
                continue
            summary.add(outcome)
            await self._record_outcome(outcome)

    def _is_expired(self, record: OrderRecord, post_close: bool, now: datetime) -> bool:
        age = now - record.created_at
        if record.order_type == OrderType.LOC.value:
            return post_close or age >= timedelta(hours=self.config.loc_expiry_hours)
        return age >= timedelta(days=self.config.limit_expiry_days)

    async def _closing_price(self, client: BaseVenueClient, position: Position) -> Optional[float]:
        try:
            quote = await asyncio.wait_for(
                client.get_price(position.ticker, position.exchange),
                timeout=self.config.close_price_timeout_seconds,
            )
            return quote.current_price
        except Exception as e:
            logger.debug(f"{position.ticker}: closing price unavailable - {e}")
            return None

    @staticmethod
    def _expiry_reason(record: OrderRecord, close_price: Optional[float]) -> str:
        if close_price is None:
            return "not found at venue"
        if record.type == OrderSide.BUY.value and record.price < close_price:
            return f"buy at {record.price:.2f} below close {close_price:.2f}"
        if record.type == OrderSide.SELL.value and record.price > close_price:
            return f"sell at {record.price:.2f} above close {close_price:.2f}"
        return f"not found at venue (close {close_price:.2f})"

    async def _reconcile_record(
        self,
        record_id: int,
        venue_orders: Dict[str, VenueOrder],
        open_ids: Set[str],
        client: BaseVenueClient,
        post_close: bool,
        now: datetime,
    ) -> RecordOutcome:
        async with self._session_factory() as session:
            records = OrderRecordRepository(session)
            record = await records.get(record_id)
            position = await PositionRepository(session).get(record.position_id)

            def outcome(kind: Outcome, message: str, **details: Any) -> RecordOutcome:
                return RecordOutcome(
                    record_id=record.id,
                    position_id=position.id,
                    ticker=position.ticker,
                    order_id=record.order_id,
                    outcome=kind,
                    message=message,
                    side=record.type,
                    order_type=record.order_type,
                    quantity=record.quantity,
                    price=record.price,
                    details=details,
                )

            if record.status.is_terminal:
                return outcome(Outcome.NOOP, "already terminal")

            venue = venue_orders.get(record.order_id)
            if venue is not None and venue.is_filled:
                details = self._apply_fill(position, record, venue, now)
                await records.mark_filled(record, venue.filled_price or record.price, venue.filled_qty, now)
                return outcome(
                    Outcome.FILLED,
                    f"{position.ticker}: {record.type} {venue.filled_qty}@{record.price} filled",
                    **details,
                )

            if venue is not None and venue.cancelled:
                self._reverse(position, record)
                await records.mark_terminal(record, OrderStatus.CANCELLED, "cancelled at venue")
                return outcome(Outcome.CANCELLED, f"{position.ticker}: order {record.order_id} cancelled at venue")

            if record.order_id in open_ids:
                return outcome(Outcome.PENDING, f"{position.ticker}: order {record.order_id} still awaiting fill")

            if not self._is_expired(record, post_close, now):
                return outcome(Outcome.PENDING, f"{position.ticker}: order {record.order_id} not reported yet")

            close_price = await self._closing_price(client, position)
            reason = self._expiry_reason(record, close_price)
            self._reverse(position, record)
            await records.mark_terminal(record, OrderStatus.UNFILLED, reason)
            result = outcome(
                Outcome.UNFILLED,
                f"{position.ticker}: order {record.order_id} expired - {reason}",
                close_price=close_price,
            )

        await self.error_handler.handle_error(
            ReconciliationMismatchError(record.order_id, reason),
            context={"record_id": record.id, "position_id": position.id},
        )
        return result

    @staticmethod
    def _reverse(position: Position, record: OrderRecord) -> None:
        """Back out what placement assumed for an order that will never fill."""
        if record.type == OrderSide.BUY.value:
            _reverse_buy(position, record)
        elif record.sub_type == OrderSubType.TAKE_PROFIT.value:
            _restore_take_profit(position, record)

    @staticmethod
    def _apply_fill(position: Position, record: OrderRecord, venue: VenueOrder, now: datetime) -> Dict[str, Any]:
        """Swap the assumed amount/quantity for what actually filled."""
        fill_price = venue.filled_price or record.price
        actual_amount = round_cents(fill_price * venue.filled_qty)

        if record.type == OrderSide.BUY.value:
            position.total_invested = round_cents(position.total_invested - record.amount + actual_amount)
            position.total_quantity = position.total_quantity - record.quantity + venue.filled_qty
            position.avg_price = average_price(position.total_invested, position.total_quantity)
            return {"assumed_amount": record.amount, "actual_amount": actual_amount}

        if record.sub_type == OrderSubType.TAKE_PROFIT.value:
            cost = record.amount - (record.profit or 0.0)
        else:
            # Split sells were not applied at placement.
            cost = round_cents(position.avg_price * venue.filled_qty)
            position.total_quantity = max(0, position.total_quantity - venue.filled_qty)
            position.total_invested = round_cents(max(0.0, position.total_invested - cost))
            if position.total_quantity == 0:
                position.total_invested = 0.0
                position.avg_price = 0.0
                position.status = PositionStatus.COMPLETED.value
                position.completed_at = now

        record.profit = round_cents(actual_amount - cost)
        record.profit_percent = round_cents(record.profit / cost * 100) if cost > 0 else 0.0
        return {"actual_amount": actual_amount, "profit": record.profit}

    async def _record_outcome(self, outcome: RecordOutcome) -> None:
        status = JobStatus.SKIPPED if outcome.outcome == Outcome.PENDING else JobStatus.COMPLETED
        await self.execution_log.append(
            JobType.ORDER_CHECK,
            status,
            outcome.message,
            position_id=outcome.position_id,
            ticker=outcome.ticker,
            details={"record_id": outcome.record_id, "order_id": outcome.order_id, "outcome": outcome.outcome.value, **outcome.details},
        )

        event_type = {
            Outcome.FILLED: EventType.ORDER_FILLED,
            Outcome.UNFILLED: EventType.ORDER_UNFILLED,
            Outcome.CANCELLED: EventType.ORDER_CANCELLED,
        }.get(outcome.outcome)
        if event_type is None:
            return
        try:
            await self.event_bus.publish(
                OrderEvent(
                    event_type=event_type,
                    position_id=outcome.position_id,
                    ticker=outcome.ticker,
                    side=outcome.side,
                    order_type=outcome.order_type,
                    quantity=outcome.quantity,
                    price=outcome.price,
                    status=outcome.outcome.value,
                    venue_order_id=outcome.order_id,
                )
            )
        except Exception as e:
            logger.warning(f"Failed to publish reconciliation event for {outcome.ticker}: {e}")
