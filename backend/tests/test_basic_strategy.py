"""
Tests for the basic conditional split-buy strategy.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from infinibuy.core.exceptions import PositionStateError, VenueRejectedError
from infinibuy.db.models.trading import (
    BuyCondition,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionStatus,
)
from infinibuy.db.repositories import OrderRecordRepository
from infinibuy.strategies.base import SkipReason, StrategyAction, ceil_cents, round_cents
from infinibuy.strategies.basic import (
    BasicStrategy,
    calculate_buy,
    check_take_profit,
    evaluate_buy_condition,
)

from conftest import make_quote


@pytest.fixture
def notifier():
    notifier = AsyncMock()
    notifier.send = AsyncMock()
    return notifier


@pytest.fixture
def strategy(session_factory, execution_log, notifier, mock_event_bus):
    return BasicStrategy(session_factory, execution_log, notifier, mock_event_bus)


async def records_for(session_factory, position_id):
    async with session_factory() as session:
        return await OrderRecordRepository(session).list_for_position(position_id)


class TestRounding:
    """Cent helpers."""

    def test_round_cents_half_up(self):
        assert round_cents(1.005) == 1.01
        assert round_cents(2.344) == 2.34

    def test_ceil_cents(self):
        assert ceil_cents(1.001) == 1.01
        assert ceil_cents(1.0) == 1.0


class TestBuyCondition:
    """Buy condition evaluation."""

    def test_daily_always(self):
        """daily buys regardless of price."""
        assert evaluate_buy_condition(BuyCondition.DAILY, 120, 100, 90, 5).result

    def test_loc(self):
        """loc needs price at or below the previous close."""
        assert evaluate_buy_condition(BuyCondition.LOC, 100, 100, 0, 0).result
        assert not evaluate_buy_condition(BuyCondition.LOC, 100.01, 100, 0, 0).result

    def test_waterfall(self):
        """waterfall buys the first round, then only 5% under average."""
        assert evaluate_buy_condition(BuyCondition.WATERFALL, 200, 100, 0, 0).result
        assert evaluate_buy_condition(BuyCondition.WATERFALL, 95, 100, 100, 3).result
        assert not evaluate_buy_condition(BuyCondition.WATERFALL, 96, 100, 100, 3).result

    def test_loc_waterfall(self):
        """loc_waterfall checks loc on the first round and both afterwards."""
        assert evaluate_buy_condition("loc_waterfall", 99, 100, 0, 0).result
        assert not evaluate_buy_condition("loc_waterfall", 101, 100, 0, 0).result
        assert evaluate_buy_condition("loc_waterfall", 90, 95, 100, 2).result
        assert not evaluate_buy_condition("loc_waterfall", 96, 97, 100, 2).result
        assert not evaluate_buy_condition("loc_waterfall", 90, 89, 100, 2).result


class TestSizing:
    """Quantity and take-profit arithmetic."""

    def test_calculate_buy(self):
        assert calculate_buy(1000, 51.23) == 19
        assert calculate_buy(50, 100) == 0
        assert calculate_buy(1000, 0) == 0

    def test_check_take_profit(self):
        position = Position(total_quantity=10, avg_price=100.0, target_profit=10.0)
        assert check_take_profit(position, 110.0)
        assert not check_take_profit(position, 109.99)
        assert not check_take_profit(Position(total_quantity=0, avg_price=100.0, target_profit=10.0), 200)


class TestExecuteBuy:
    """Daily buy execution."""

    @pytest.mark.asyncio
    async def test_buy_updates_position(self, strategy, create_position, get_position, mock_client, session_factory, notifier, trading_now):
        """A successful buy advances the round and records the order."""
        position = await create_position()

        result = await strategy.execute_buy(position.id, mock_client, trading_now)

        assert result.action == StrategyAction.BOUGHT
        assert result.details["round"] == 1
        mock_client.place_order.assert_awaited_once_with(
            OrderSide.BUY, "TQQQ", 10, 100.0, "NAS", OrderType.LIMIT
        )

        stored = await get_position(position.id)
        assert stored.current_round == 1
        assert stored.total_quantity == 10
        assert stored.total_invested == pytest.approx(1000.0)
        assert stored.avg_price == pytest.approx(100.0)

        records = await records_for(session_factory, position.id)
        assert len(records) == 1
        assert records[0].order_id == "ORD0001"
        assert records[0].status == OrderStatus.PENDING
        assert records[0].round == 1
        notifier.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_buy_writes_execution_log(self, strategy, create_position, mock_client, execution_log, trading_now):
        """The outcome is journaled."""
        position = await create_position()
        await strategy.execute_buy(position.id, mock_client, trading_now)

        page = await execution_log.query(position_id=position.id)
        assert page.total == 1
        assert page.items[0].job_type == "basic_buy"
        assert page.items[0].status == "completed"

    @pytest.mark.asyncio
    async def test_one_buy_per_day(self, strategy, create_position, mock_client, trading_now):
        """A second buy on the same market date is skipped; the next day is allowed."""
        position = await create_position()
        await strategy.execute_buy(position.id, mock_client, trading_now)

        again = await strategy.execute_buy(position.id, mock_client, trading_now + timedelta(hours=2))
        assert again.skip_reason == SkipReason.ALREADY_BOUGHT_TODAY.value

        tomorrow = await strategy.execute_buy(position.id, mock_client, trading_now + timedelta(days=1))
        assert tomorrow.action == StrategyAction.BOUGHT
        assert tomorrow.details["round"] == 2

    @pytest.mark.asyncio
    async def test_max_rounds(self, strategy, create_position, mock_client, trading_now):
        """No buy once every round is used."""
        position = await create_position(current_round=40)
        result = await strategy.execute_buy(position.id, mock_client, trading_now)
        assert result.skip_reason == SkipReason.MAX_ROUNDS_REACHED.value
        mock_client.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stopped_position(self, strategy, create_position, mock_client, trading_now):
        """Stopped positions are skipped."""
        position = await create_position(status=PositionStatus.STOPPED.value)
        result = await strategy.execute_buy(position.id, mock_client, trading_now)
        assert result.skip_reason == SkipReason.NOT_BUYING.value

    @pytest.mark.asyncio
    async def test_condition_not_met(self, strategy, create_position, mock_client, trading_now):
        """A loc position skips when the price is above the previous close."""
        mock_client.get_price.return_value = make_quote(100.0, prev_close=90.0)
        position = await create_position(buy_condition=BuyCondition.LOC.value)

        result = await strategy.execute_buy(position.id, mock_client, trading_now)

        assert result.skip_reason == SkipReason.CONDITION_NOT_MET.value
        mock_client.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quantity_too_small(self, strategy, create_position, mock_client, trading_now):
        """A buy amount below one share is skipped."""
        position = await create_position(buy_amount=50.0)
        result = await strategy.execute_buy(position.id, mock_client, trading_now)
        assert result.skip_reason == SkipReason.QUANTITY_TOO_SMALL.value

    @pytest.mark.asyncio
    async def test_missing_position(self, strategy, mock_client, trading_now):
        """Unknown ids raise."""
        with pytest.raises(PositionStateError):
            await strategy.execute_buy(999, mock_client, trading_now)

    @pytest.mark.asyncio
    async def test_rejected_order_leaves_state(self, strategy, create_position, get_position, mock_client, session_factory, trading_now):
        """A venue rejection propagates and nothing is written."""
        mock_client.place_order.side_effect = VenueRejectedError("insufficient funds", code="APBK0952")
        position = await create_position()

        with pytest.raises(VenueRejectedError):
            await strategy.execute_buy(position.id, mock_client, trading_now)

        stored = await get_position(position.id)
        assert stored.current_round == 0
        assert stored.total_quantity == 0
        assert await records_for(session_factory, position.id) == []


class TestTakeProfit:
    """Take-profit sells."""

    @pytest.mark.asyncio
    async def test_take_profit_completes_position(self, strategy, create_position, get_position, mock_client, session_factory, mock_event_bus, trading_now):
        """Reaching the target sells everything and completes the position."""
        mock_client.get_price.return_value = make_quote(111.0)
        position = await create_position(
            current_round=5, total_invested=1000.0, total_quantity=10, avg_price=100.0
        )

        result = await strategy.execute_take_profit(position.id, mock_client, trading_now)

        assert result.action == StrategyAction.SOLD
        assert result.details["profit"] == pytest.approx(110.0)
        assert result.details["profit_percent"] == pytest.approx(11.0)
        mock_client.place_order.assert_awaited_once_with(
            OrderSide.SELL, "TQQQ", 10, 111.0, "NAS", OrderType.LIMIT
        )

        stored = await get_position(position.id)
        assert stored.status == PositionStatus.COMPLETED.value
        assert stored.total_quantity == 0
        assert stored.current_round == 0
        assert stored.completed_at is not None

        records = await records_for(session_factory, position.id)
        assert records[0].sub_type == "take_profit"
        assert records[0].profit == pytest.approx(110.0)

    @pytest.mark.asyncio
    async def test_below_target(self, strategy, create_position, mock_client, trading_now):
        """Below avg x (1 + target) nothing is sold."""
        mock_client.get_price.return_value = make_quote(105.0)
        position = await create_position(total_invested=1000.0, total_quantity=10, avg_price=100.0)

        result = await strategy.execute_take_profit(position.id, mock_client, trading_now)

        assert result.skip_reason == SkipReason.TARGET_NOT_REACHED.value
        assert result.details["target_price"] == 110.0
        mock_client.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_holdings(self, strategy, create_position, mock_client, trading_now):
        """Empty positions have nothing to sell."""
        position = await create_position()
        result = await strategy.execute_take_profit(position.id, mock_client, trading_now)
        assert result.skip_reason == SkipReason.NO_HOLDINGS.value


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
