"""
Basic Conditional Strategy
Infinibuy Trading Core

One limit buy of buyAmount per trading day while the buy condition
holds, and a single take-profit sell of all holdings once the price
reaches avgPrice x (1 + targetProfit%).

Buy conditions:
- daily: always
- loc: currentPrice <= previousClose
- waterfall: first round, or currentPrice <= avgPrice x 0.95
- loc_waterfall: first round checks loc only; later rounds need both
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from infinibuy.brokers.base import BaseVenueClient
from infinibuy.core.events import BaseEvent, EventType
from infinibuy.core.exceptions import PositionStateError
from infinibuy.db.models.trading import (
    BuyCondition,
    JobType,
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
    round_cents,
)


WATERFALL_THRESHOLD = 0.95


@dataclass
class ConditionCheck:
    result: bool
    reason: str


def evaluate_buy_condition(
    condition: BuyCondition,
    current_price: float,
    previous_close: float,
    avg_price: float,
    current_round: int,
) -> ConditionCheck:
    """Decide whether today's buy should go ahead."""
    condition = BuyCondition(condition)
    loc_ok = current_price <= previous_close
    first_round = current_round == 0
    waterfall_line = avg_price * WATERFALL_THRESHOLD

    if condition == BuyCondition.DAILY:
        return ConditionCheck(True, "daily buy")

    if condition == BuyCondition.LOC:
        if loc_ok:
            return ConditionCheck(True, f"price {current_price} <= previous close {previous_close}")
        return ConditionCheck(False, f"price {current_price} > previous close {previous_close}")

    if condition == BuyCondition.WATERFALL:
        if first_round:
            return ConditionCheck(True, "first round")
        if current_price <= waterfall_line:
            return ConditionCheck(True, f"price {current_price} <= avg-5% {waterfall_line:.2f}")
        return ConditionCheck(False, f"price {current_price} > avg-5% {waterfall_line:.2f}")

    # loc_waterfall
    if first_round:
        if loc_ok:
            return ConditionCheck(True, "first round, loc satisfied")
        return ConditionCheck(False, "loc not satisfied")
    if not loc_ok:
        return ConditionCheck(False, "loc not satisfied")
    if current_price > waterfall_line:
        return ConditionCheck(False, "waterfall not satisfied")
    return ConditionCheck(True, "loc and waterfall satisfied")


def calculate_buy(buy_amount: float, current_price: float) -> int:
    """Whole shares purchasable with buy_amount."""
    if current_price <= 0:
        return 0
    return math.floor(buy_amount / current_price)


def check_take_profit(position: Position, current_price: float) -> bool:
    if position.total_quantity <= 0 or position.avg_price <= 0:
        return False
    return current_price >= position.avg_price * (1 + position.target_profit / 100)


class BasicStrategy(BaseStrategy):
    """
    Usage:
        strategy = BasicStrategy(notifier=notifier)
        result = await strategy.execute_buy(position.id, client)
    """

    job_type = JobType.BASIC_BUY

    async def execute_buy(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
    ) -> StrategyResult:
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
            current_price = quote.current_price
            previous_close = quote.prev_close or current_price

            check = evaluate_buy_condition(
                position.buy_condition,
                current_price,
                previous_close,
                position.avg_price,
                position.current_round,
            )
            if not check.result:
                return StrategyResult.skipped(
                    position,
                    SkipReason.CONDITION_NOT_MET,
                    f"{position.ticker}: buy condition not met - {check.reason}",
                    current_price=current_price,
                    previous_close=previous_close,
                )

            quantity = calculate_buy(position.buy_amount, current_price)
            if quantity < 1:
                return StrategyResult.skipped(
                    position,
                    SkipReason.QUANTITY_TOO_SMALL,
                    f"{position.ticker}: {position.buy_amount} buys no shares at {current_price}",
                    current_price=current_price,
                )

            spend = round_cents(quantity * current_price)
            intent = OrderIntent(
                side=OrderSide.BUY,
                order_type=OrderType.LIMIT,
                price=current_price,
                quantity=quantity,
                amount=spend,
            )
            order = await self.place(client, position, intent)

            next_round = position.current_round + 1
            position.current_round = next_round
            position.total_invested = position.total_invested + spend
            position.total_quantity = position.total_quantity + quantity
            position.avg_price = average_price(position.total_invested, position.total_quantity)

            record = await records.add(self.build_record(position, intent, order, round=next_round, now=now))
            user_id = position.user_id

        logger.info(
            f"{position.ticker}: round {next_round} buy {quantity}@{current_price} "
            f"(order {order.order_id}, avg {position.avg_price:.2f})"
        )
        result = StrategyResult(
            position_id=position.id,
            ticker=position.ticker,
            action=StrategyAction.BOUGHT,
            message=f"{position.ticker}: round {next_round} buy {quantity} shares at {current_price}",
            orders=[{**intent.to_dict(), "order_id": order.order_id}],
            details={
                "round": next_round,
                "condition": check.reason,
                "spend": spend,
                "avg_price": position.avg_price,
            },
        )
        await self.publish_orders(position, [record])
        await self.log_result(result)
        await self.notify(
            user_id,
            f"{position.ticker} buy order placed",
            f"Round {next_round}: {quantity} shares at ${current_price:.2f}",
            tag=f"buy-{position.ticker}",
            position_id=position.id,
        )
        return result

    async def execute_take_profit(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
    ) -> StrategyResult:
        """Sell all holdings in one limit order once the target is reached."""
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            positions = PositionRepository(session)
            records = OrderRecordRepository(session)

            position = await positions.get(position_id)
            if position is None:
                raise PositionStateError(f"Position {position_id} not found")
            if position.status != PositionStatus.BUYING.value:
                return StrategyResult.skipped(position, SkipReason.NOT_BUYING, f"{position.ticker}: status {position.status}")
            if position.total_quantity <= 0:
                return StrategyResult.skipped(position, SkipReason.NO_HOLDINGS, f"{position.ticker}: nothing to sell")

            quote = await client.get_price(position.ticker, position.exchange)
            current_price = quote.current_price
            target_price = position.avg_price * (1 + position.target_profit / 100)

            if not check_take_profit(position, current_price):
                return StrategyResult.skipped(
                    position,
                    SkipReason.TARGET_NOT_REACHED,
                    f"{position.ticker}: {current_price} below target {target_price:.2f}",
                    current_price=current_price,
                    target_price=round_cents(target_price),
                )

            quantity = position.total_quantity
            invested = position.total_invested
            proceeds = round_cents(current_price * quantity)
            profit = round_cents(proceeds - invested)
            profit_percent = round_cents(profit / invested * 100) if invested > 0 else 0.0

            intent = OrderIntent(
                side=OrderSide.SELL,
                order_type=OrderType.LIMIT,
                price=current_price,
                quantity=quantity,
                amount=proceeds,
                sub_type=OrderSubType.TAKE_PROFIT,
            )
            order = await self.place(client, position, intent)

            record = await records.add(
                self.build_record(
                    position,
                    intent,
                    order,
                    round=position.current_round,
                    now=now,
                    profit=profit,
                    profit_percent=profit_percent,
                )
            )

            position.total_quantity = 0
            position.total_invested = 0.0
            position.avg_price = 0.0
            position.current_round = 0
            position.status = PositionStatus.COMPLETED.value
            position.completed_at = now
            user_id = position.user_id

        logger.info(f"{position.ticker}: take profit {quantity}@{current_price}, profit {profit} ({profit_percent}%)")
        result = StrategyResult(
            position_id=position.id,
            ticker=position.ticker,
            action=StrategyAction.SOLD,
            message=f"{position.ticker}: take profit {quantity} shares at {current_price}",
            orders=[{**intent.to_dict(), "order_id": order.order_id}],
            details={"profit": profit, "profit_percent": profit_percent, "target_price": round_cents(target_price)},
        )
        await self.publish_orders(position, [record])
        try:
            await self.event_bus.publish(
                BaseEvent(
                    event_type=EventType.POSITION_COMPLETED,
                    metadata={"position_id": position.id, "ticker": position.ticker, "profit": profit},
                )
            )
        except Exception as e:
            logger.warning(f"Failed to publish completion event for {position.ticker}: {e}")
        await self.log_result(result, JobType.PRICE_CHECK)
        await self.notify(
            user_id,
            f"{position.ticker} take profit",
            f"Sold {quantity} shares at ${current_price:.2f}, profit ${profit:.2f} ({profit_percent:.2f}%)",
            tag=f"sell-{position.ticker}",
            position_id=position.id,
        )
        return result

