"""
LOC Split-Accumulation Strategy
Infinibuy Trading Core

Accumulates a position over totalRounds limit-on-close buys, split into
a first and a second half:

    T          = ceil2(investedAfterThisBuy / buyAmount)
    locPercent = max(0, (10 - T/2) x (40 / totalRounds))

First half (nextRound < totalRounds/2), two LOC legs of buyAmount/2:
    A: avgPrice - 0.01
    B: avgPrice x (1 + locPercent%)
Second half, one LOC leg of buyAmount:
    avgPrice x (1 - locPercent%) - 0.01

Sells placed after the buy, for shares already held:
    A: 1/4 via LOC at avgPrice x (1 + locPercent%)
    B: 3/4 via limit at avgPrice x 1.10

LOC orders settle only at the close, so the position is updated as if
every leg filled; reconciliation corrects it afterwards.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from infinibuy.brokers.base import BaseVenueClient
from infinibuy.core.exceptions import PositionStateError, StrategyExecutionError, TradingError
from infinibuy.db.models.trading import (
    JobType,
    OrderRecord,
    OrderSide,
    OrderSubType,
    OrderType,
    Position,
    PositionStatus,
)
from infinibuy.db.repositories import OrderRecordRepository, PositionRepository
from infinibuy.strategies.base import (
    BaseStrategy,
    OrderIntent,
    SkipReason,
    StrategyAction,
    StrategyResult,
    average_price,
    ceil_cents,
    round_cents,
)


CANONICAL_ROUNDS = 40
SELL_B_MULTIPLIER = 1.10
CROSSING_OFFSET = 0.01


def calculate_t(total_invested: float, buy_amount: float) -> float:
    """Accumulated investment in units of buy_amount, rounded up to 2 decimals."""
    if buy_amount <= 0:
        return 0.0
    return ceil_cents(total_invested / buy_amount)


def calculate_loc_percent(t: float, total_rounds: int = CANONICAL_ROUNDS) -> float:
    return max(0.0, (10 - t / 2) * (CANONICAL_ROUNDS / total_rounds))


def is_first_half(next_round: int, total_rounds: int) -> bool:
    return next_round < total_rounds / 2


@dataclass
class LegPlan:
    t: float
    loc_percent: float
    first_half: bool
    legs: List[OrderIntent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "t": self.t,
            "loc_percent": round(self.loc_percent, 4),
            "first_half": self.first_half,
            "legs": [leg.to_dict() for leg in self.legs],
        }


def _buy_leg(price: float, amount: float, sub_type: OrderSubType) -> Optional[OrderIntent]:
    price = round_cents(price)
    if price <= 0:
        return None
    quantity = math.floor(amount / price)
    if quantity < 1:
        return None
    return OrderIntent(
        side=OrderSide.BUY,
        order_type=OrderType.LOC,
        price=price,
        quantity=quantity,
        amount=amount,
        sub_type=sub_type,
    )


def plan_buy_legs(position: Position, current_price: float) -> LegPlan:
    """
    Buy legs for the next round.

    current_price stands in for the average on the first buy. Legs that
    would buy less than one share are dropped.
    """
    avg = position.avg_price if position.avg_price > 0 else current_price
    t = calculate_t(position.total_invested + position.buy_amount, position.buy_amount)
    loc_percent = calculate_loc_percent(t, position.total_rounds)
    first_half = is_first_half(position.current_round + 1, position.total_rounds)

    if first_half:
        half = position.buy_amount / 2
        candidates = [
            _buy_leg(avg - CROSSING_OFFSET, half, OrderSubType.FIRST_HALF_A),
            _buy_leg(avg * (1 + loc_percent / 100), half, OrderSubType.FIRST_HALF_B),
        ]
    else:
        candidates = [
            _buy_leg(avg * (1 - loc_percent / 100) - CROSSING_OFFSET, position.buy_amount, OrderSubType.SECOND_HALF),
        ]

    return LegPlan(t, loc_percent, first_half, [leg for leg in candidates if leg is not None])


def plan_sell_legs(
    quantity: int,
    avg_price: float,
    total_invested: float,
    buy_amount: float,
    total_rounds: int = CANONICAL_ROUNDS,
) -> LegPlan:
    """Quarter via LOC at the loc line, three quarters via limit at +10%."""
    t = calculate_t(total_invested, buy_amount)
    loc_percent = calculate_loc_percent(t, total_rounds)
    plan = LegPlan(t, loc_percent, first_half=False)
    if quantity <= 0 or avg_price <= 0:
        return plan

    quantity_a = math.floor(quantity / 4)
    quantity_b = math.floor(quantity * 3 / 4)
    price_a = round_cents(avg_price * (1 + loc_percent / 100))
    price_b = round_cents(avg_price * SELL_B_MULTIPLIER)

    if quantity_a >= 1:
        plan.legs.append(OrderIntent(
            side=OrderSide.SELL,
            order_type=OrderType.LOC,
            price=price_a,
            quantity=quantity_a,
            amount=round_cents(price_a * quantity_a),
            sub_type=OrderSubType.SELL_A,
        ))
    if quantity_b >= 1:
        plan.legs.append(OrderIntent(
            side=OrderSide.SELL,
            order_type=OrderType.LIMIT,
            price=price_b,
            quantity=quantity_b,
            amount=round_cents(price_b * quantity_b),
            sub_type=OrderSubType.SELL_B,
        ))
    return plan


class LocSplitStrategy(BaseStrategy):
    """
    Usage:
        strategy = LocSplitStrategy(notifier=notifier)
        result = await strategy.execute_buy(position.id, client)
    """

    job_type = JobType.LOC_BUY

    async def _place_legs(
        self,
        client: BaseVenueClient,
        position: Position,
        legs: List[OrderIntent],
        round: Optional[int],
        now: datetime,
    ) -> List[OrderRecord]:
        """Place each leg on its own; a failing leg is logged and skipped."""
        placed = []
        for leg in legs:
            try:
                order = await self.place(client, position, leg)
            except TradingError as e:
                logger.error(f"{position.ticker}: {leg.sub_type.value} {leg.side.value} failed - {e}")
                continue
            placed.append(self.build_record(position, leg, order, round=round, now=now))
        return placed

    async def execute_buy(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
    ) -> StrategyResult:
        """
        Place today's buy legs, then the sell legs for shares already held.

        Raises:
            StrategyExecutionError: every buy leg failed
        """
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            positions = PositionRepository(session)
            records = OrderRecordRepository(session)

            position = await positions.get(position_id)
            if position is None:
                raise PositionStateError(f"Position {position_id} not found")
            if position.status != PositionStatus.BUYING.value:
                return StrategyResult.skipped(position, SkipReason.NOT_BUYING, f"{position.ticker}: status {position.status}")
            if position.current_round >= position.total_rounds:
                return StrategyResult.skipped(
                    position,
                    SkipReason.MAX_ROUNDS_REACHED,
                    f"{position.ticker}: max rounds reached ({position.current_round}/{position.total_rounds})",
                )
            if await self.buys_today(session, position.id, now) > 0:
                return StrategyResult.skipped(position, SkipReason.ALREADY_BOUGHT_TODAY, f"{position.ticker}: already bought today")

            quote = await client.get_price(position.ticker, position.exchange)
            plan = plan_buy_legs(position, quote.current_price)
            if not plan.legs:
                return StrategyResult.skipped(
                    position,
                    SkipReason.QUANTITY_TOO_SMALL,
                    f"{position.ticker}: no buy leg reaches one share",
                    current_price=quote.current_price,
                )

            next_round = position.current_round + 1
            buy_records = await self._place_legs(client, position, plan.legs, next_round, now)
            if not buy_records:
                raise StrategyExecutionError(
                    f"{position.ticker}: all {len(plan.legs)} buy legs failed",
                    {"position_id": position.id},
                )

            held_before = position.total_quantity
            bought_quantity = sum(r.quantity for r in buy_records)
            bought_amount = sum(r.amount for r in buy_records)

            position.current_round = next_round
            position.total_invested = position.total_invested + bought_amount
            position.total_quantity = position.total_quantity + bought_quantity
            position.avg_price = average_price(position.total_invested, position.total_quantity)

            await records.add_all(buy_records)
            user_id = position.user_id

        logger.info(
            f"{position.ticker}: round {next_round} T={plan.t:.2f} loc={plan.loc_percent:.2f}% "
            f"{len(buy_records)} LOC buys, {bought_quantity} shares"
        )
        await self.publish_orders(position, buy_records)

        sell_records = await self._place_sells(position.id, client, held_before, now)

        result = StrategyResult(
            position_id=position.id,
            ticker=position.ticker,
            action=StrategyAction.BOUGHT,
            message=f"{position.ticker}: round {next_round} {len(buy_records)} LOC buys, {len(sell_records)} sells",
            orders=[self._record_dict(r) for r in buy_records + sell_records],
            details={
                "round": next_round,
                "t": plan.t,
                "loc_percent": round(plan.loc_percent, 4),
                "first_half": plan.first_half,
                "bought_quantity": bought_quantity,
                "bought_amount": bought_amount,
            },
        )
        await self.log_result(result)
        await self.notify(
            user_id,
            f"{position.ticker} LOC orders placed",
            f"Round {next_round}: {bought_quantity} shares across {len(buy_records)} buy legs",
            tag=f"loc-{position.ticker}",
            position_id=position.id,
        )
        return result

    async def _place_sells(
        self,
        position_id: int,
        client: BaseVenueClient,
        held_quantity: int,
        now: datetime,
    ) -> List[OrderRecord]:
        """
        Sell legs for shares held before today's buy.

        Failures here never undo the buy that preceded them.
        """
        if held_quantity <= 0:
            return []
        try:
            async with self._session_factory() as session:
                position = await PositionRepository(session).get(position_id)
                plan = plan_sell_legs(
                    held_quantity,
                    position.avg_price,
                    position.total_invested,
                    position.buy_amount,
                    position.total_rounds,
                )
                sell_records = await self._place_legs(client, position, plan.legs, None, now)
                if sell_records:
                    await OrderRecordRepository(session).add_all(sell_records)
        except Exception as e:
            logger.error(f"Position {position_id}: sell legs failed - {e}")
            return []

        if plan.legs and not sell_records:
            logger.warning(f"{position.ticker}: every sell leg failed")
        await self.publish_orders(position, sell_records)
        return sell_records

    @staticmethod
    def _record_dict(record: OrderRecord) -> Dict[str, Any]:
        return {
            "side": record.type,
            "order_type": record.order_type,
            "sub_type": record.sub_type,
            "price": record.price,
            "quantity": record.quantity,
            "amount": record.amount,
            "order_id": record.order_id,
        }

    async def get_status(self, position_id: int, current_price: Optional[float] = None) -> Dict[str, Any]:
        """Read-only preview of the next buy and sell legs."""
        async with self._session_factory() as session:
            position = await PositionRepository(session).get(position_id)
            if position is None:
                raise PositionStateError(f"Position {position_id} not found")

            buy_plan = plan_buy_legs(position, current_price or position.avg_price)
            sell_plan = plan_sell_legs(
                position.total_quantity,
                position.avg_price,
                position.total_invested,
                position.buy_amount,
                position.total_rounds,
            )
            can_buy = position.current_round < position.total_rounds
            return {
                "position_id": position.id,
                "ticker": position.ticker,
                "current_round": position.current_round,
                "total_rounds": position.total_rounds,
                "half_round": position.total_rounds / 2,
                "first_half": buy_plan.first_half,
                "t": sell_plan.t,
                "loc_percent": round(sell_plan.loc_percent, 4),
                "avg_price": position.avg_price,
                "total_invested": position.total_invested,
                "total_quantity": position.total_quantity,
                "next_buy_legs": [leg.to_dict() for leg in buy_plan.legs] if can_buy else [],
                "sell_legs": [leg.to_dict() for leg in sell_plan.legs],
            }
