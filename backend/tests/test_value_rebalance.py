"""
Tests for the value-rebalancing strategy.
"""

from datetime import date, timedelta

import pytest

from infinibuy.brokers.base import VenueOrder
from infinibuy.core.exceptions import ValidationError, VenueRejectedError
from infinibuy.db.models.trading import OrderSide, OrderStatus, StrategyType
from infinibuy.db.repositories import OrderRecordRepository
from infinibuy.strategies.base import SkipReason, StrategyAction
from infinibuy.strategies.value_rebalance import (
    MAX_BUY_RUNGS,
    MAX_SELL_RUNGS,
    ValueRebalanceStrategy,
    build_buy_ladder,
    build_sell_ladder,
    calculate_band,
    calculate_next_v,
    default_gradient,
    pool_usage_rate,
    round3,
)


@pytest.fixture
def strategy(session_factory, execution_log, mock_event_bus):
    return ValueRebalanceStrategy(session_factory, execution_log, None, mock_event_bus)


@pytest.fixture
def create_vr_position(create_position):
    async def _create(**overrides):
        return await create_position(strategy=StrategyType.VALUE_REBALANCE.value, **overrides)
    return _create


@pytest.fixture
def initialized(strategy, create_vr_position, trading_now):
    """A hold-style position holding 10 shares at $100, V=1000, P=1000."""

    async def _create(style="hold", deposit_amount=0.0):
        position = await create_vr_position()
        await strategy.initialize(
            position.id,
            v=1000.0,
            pool=1000.0,
            style=style,
            deposit_amount=deposit_amount,
            initial_quantity=10,
            initial_avg_price=100.0,
            now=trading_now,
        )
        return position

    return _create


def venue_order(order_id, side, filled_qty=0, filled_price=0.0, cancelled=False):
    return VenueOrder(
        order_id=order_id,
        ticker="TQQQ",
        side=side,
        order_qty=1,
        order_price=filled_price,
        exchange="NASD",
        filled_qty=filled_qty,
        filled_price=filled_price,
        cancelled=cancelled,
    )


class TestFormulas:
    """Band, V and pool usage."""

    def test_round3(self):
        assert round3(77.27272) == 77.273
        assert round3(53.125) == 53.125

    def test_band(self):
        """The band is V +/- band percent."""
        band = calculate_band(1000.0)
        assert (band.min, band.max) == (850.0, 1150.0)
        assert band.classify(800) == "below_min"
        assert band.classify(1000) == "in_band"
        assert band.classify(1200) == "above_max"

    def test_custom_band(self):
        band = calculate_band(1000.0, 10)
        assert (band.min, band.max) == (900.0, 1100.0)

    def test_next_v(self):
        """V + P/G plus the deposit or minus the withdrawal."""
        assert calculate_next_v(1000, 500, 10, "hold") == 1050.0
        assert calculate_next_v(1000, 500, 10, "deposit", 100) == 1150.0
        assert calculate_next_v(1000, 500, 20, "withdraw", 100) == 925.0

    def test_pool_usage(self):
        assert pool_usage_rate("deposit") == 0.75
        assert pool_usage_rate("hold") == 0.5
        assert pool_usage_rate("withdraw") == 0.25
        assert pool_usage_rate(None) == 0.5

    def test_default_gradient(self):
        assert default_gradient("withdraw") == 20
        assert default_gradient("hold") == 10


class TestLadders:
    """Buy and sell ladders."""

    def test_buy_ladder_budget(self):
        """Rungs stop once the next one would exceed pool x usage."""
        rungs = build_buy_ladder(850.0, 10, 1000.0, 0.5)
        assert [r.index for r in rungs] == [1, 2, 3, 4, 5, 6, 7]
        assert rungs[0].price == 85.0
        assert rungs[1].price == 77.273
        assert rungs[6].price == 53.125
        assert sum(r.price for r in rungs) <= 500.0

    def test_buy_ladder_empty_position(self):
        """With no shares the first rung sits at bandMin."""
        assert build_buy_ladder(850.0, 0, 1000.0, 1.0)[0].price == 850.0

    def test_buy_ladder_min_price(self):
        """Rungs below $1 are never placed."""
        rungs = build_buy_ladder(5.0, 5, 1_000_000.0, 1.0)
        assert [r.price for r in rungs] == [1.0]

    def test_buy_ladder_cap(self):
        rungs = build_buy_ladder(100_000.0, 1, 1e9, 1.0)
        assert len(rungs) == MAX_BUY_RUNGS

    def test_sell_ladder(self):
        """Sells climb from bandMax/qty and keep one share."""
        rungs = build_sell_ladder(1150.0, 10)
        assert len(rungs) == 9
        assert rungs[0].price == 115.0
        assert rungs[-1].price == 575.0

    def test_sell_ladder_small(self):
        assert build_sell_ladder(1150.0, 1) == []
        assert build_sell_ladder(1150.0, 0) == []

    def test_sell_ladder_cap(self):
        assert len(build_sell_ladder(100_000.0, 500)) == MAX_SELL_RUNGS


class TestInitialize:
    """Setting V, P and G."""

    @pytest.mark.asyncio
    async def test_initialize(self, strategy, create_vr_position, get_position, execution_log, trading_now):
        """Initialization stores parameters and seeds holdings."""
        position = await create_vr_position()

        details = await strategy.initialize(
            position.id, v=1000.0, pool=1000.0, style="hold",
            initial_quantity=10, initial_avg_price=100.0, now=trading_now,
        )

        assert details["gradient"] == 10
        assert (details["band_min"], details["band_max"]) == (850.0, 1150.0)
        stored = await get_position(position.id)
        assert stored.vr_value == 1000.0
        assert stored.vr_style == "hold"
        assert stored.total_quantity == 10
        assert stored.total_invested == pytest.approx(1000.0)
        assert stored.vr_cycle_start == trading_now

        page = await execution_log.query(job_type="vr_cycle")
        assert page.total == 1

    @pytest.mark.asyncio
    async def test_bad_style(self, strategy, create_vr_position):
        position = await create_vr_position()
        with pytest.raises(ValidationError):
            await strategy.initialize(position.id, v=1000.0, pool=1000.0, style="yolo")

    @pytest.mark.asyncio
    async def test_bad_values(self, strategy, create_vr_position):
        position = await create_vr_position()
        with pytest.raises(ValidationError):
            await strategy.initialize(position.id, v=0, pool=1000.0, style="hold")
        with pytest.raises(ValidationError):
            await strategy.initialize(position.id, v=1000.0, pool=-1, style="hold")


class TestGenerateOrders:
    """Ladder placement."""

    @pytest.mark.asyncio
    async def test_not_initialized(self, strategy, create_vr_position, mock_client, trading_now):
        position = await create_vr_position()
        result = await strategy.generate_orders(position.id, mock_client, trading_now)
        assert result.skip_reason == SkipReason.NOT_INITIALIZED.value

    @pytest.mark.asyncio
    async def test_places_ladder(self, strategy, initialized, mock_client, session_factory, trading_now):
        """Seven buys and nine sells, each one share, tagged with its rung."""
        position = await initialized()

        result = await strategy.generate_orders(position.id, mock_client, trading_now)

        assert result.action == StrategyAction.ORDERED
        assert mock_client.place_order.await_count == 16
        async with session_factory() as session:
            records = await OrderRecordRepository(session).list_pending(position_id=position.id)
        buys = [r for r in records if r.type == "buy"]
        sells = [r for r in records if r.type == "sell"]
        assert len(buys) == 7
        assert len(sells) == 9
        assert all(r.quantity == 1 and r.order_type == "limit" for r in records)
        assert buys[0].vr_order_index == 1
        assert buys[0].vr_band_min == 850.0
        assert sells[0].sub_type == "vr_sell"

    @pytest.mark.asyncio
    async def test_rung_failures_tolerated(self, strategy, initialized, mock_client, trading_now):
        """Failed rungs are counted; the rest are recorded."""
        position = await initialized()
        good = mock_client.place_order.side_effect

        calls = {"n": 0}

        async def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] % 2 == 0:
                raise VenueRejectedError("rejected")
            return await good(*args, **kwargs)

        mock_client.place_order.side_effect = flaky
        result = await strategy.generate_orders(position.id, mock_client, trading_now)

        assert result.details["failed"] == 8
        assert len(result.orders) == 8


class TestCycle:
    """Cycle rollover."""

    @pytest.mark.asyncio
    async def test_not_due(self, strategy, initialized, mock_client, trading_now):
        position = await initialized()
        result = await strategy.execute_cycle(position.id, mock_client, trading_now + timedelta(days=1))
        assert result.skip_reason == SkipReason.CYCLE_NOT_DUE.value
        mock_client.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hold_cycle(self, strategy, initialized, get_position, mock_client, trading_now):
        """A due hold cycle grows V by P/G and places a fresh ladder."""
        position = await initialized()
        later = trading_now + timedelta(weeks=2)

        result = await strategy.execute_cycle(position.id, mock_client, later)

        assert result.action == StrategyAction.ORDERED
        stored = await get_position(position.id)
        assert stored.vr_value == 1100.0
        assert stored.vr_pool == 1000.0
        assert stored.vr_last_cycle == later
        assert stored.vr_cycle_start == later

    @pytest.mark.asyncio
    async def test_deposit_cycle(self, strategy, initialized, get_position, mock_client, trading_now):
        """Deposits go into the pool and into V."""
        position = await initialized(style="deposit", deposit_amount=100.0)

        await strategy.execute_cycle(position.id, mock_client, trading_now, force=True)

        stored = await get_position(position.id)
        assert stored.vr_pool == 1100.0
        assert stored.vr_value == 1210.0


class TestSync:
    """Applying ladder fills."""

    @pytest.mark.asyncio
    async def test_fills_and_cancellations(self, strategy, initialized, get_position, mock_client, session_factory, trading_now):
        """Buy and sell fills move pool, quantity and invested; cancels are closed."""
        position = await initialized()
        await strategy.generate_orders(position.id, mock_client, trading_now)
        mock_client.get_filled_orders.return_value = [
            venue_order("ORD0001", OrderSide.BUY, filled_qty=1, filled_price=85.0),
            venue_order("ORD0002", OrderSide.BUY, cancelled=True),
            venue_order("ORD0008", OrderSide.SELL, filled_qty=1, filled_price=115.0),
        ]

        summary = await strategy.sync_filled_orders(position.id, mock_client, trading_now + timedelta(hours=6))

        assert summary == {"position_id": position.id, "synced": 2, "cancelled": 1, "expired": 0}
        stored = await get_position(position.id)
        assert stored.total_quantity == 10
        assert stored.vr_pool == pytest.approx(1030.0)
        assert stored.total_invested == pytest.approx(986.36)

        async with session_factory() as session:
            records = await OrderRecordRepository(session).list_for_position(position.id, limit=100)
        by_order = {r.order_id: r for r in records}
        assert by_order["ORD0001"].status == OrderStatus.FILLED
        assert by_order["ORD0002"].status == OrderStatus.CANCELLED
        assert by_order["ORD0008"].profit == pytest.approx(16.36)
        assert by_order["ORD0003"].status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_nothing_pending(self, strategy, initialized, mock_client, trading_now):
        position = await initialized()
        summary = await strategy.sync_filled_orders(position.id, mock_client, trading_now)
        assert summary["synced"] == 0
        mock_client.get_filled_orders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history_queried_by_order_date(self, strategy, initialized, mock_client, trading_now):
        """Only the order date of the ladder is looked up, not every day since."""
        position = await initialized()
        await strategy.generate_orders(position.id, mock_client, trading_now)

        await strategy.sync_filled_orders(position.id, mock_client, trading_now + timedelta(hours=6))

        # 15:40 UTC on 4 March is 5 March in Seoul
        assert mock_client.get_filled_orders.await_args.kwargs["dates"] == {date(2025, 3, 5)}

    @pytest.mark.asyncio
    async def test_stale_rungs_expire(self, strategy, initialized, mock_client, session_factory, trading_now):
        """Rungs that never filled are closed as unfilled without scanning weeks of history."""
        position = await initialized()
        await strategy.generate_orders(position.id, mock_client, trading_now)
        async with session_factory() as session:
            placed = len(await OrderRecordRepository(session).list_pending(position_id=position.id))

        summary = await strategy.sync_filled_orders(position.id, mock_client, trading_now + timedelta(days=60))

        mock_client.get_filled_orders.assert_not_awaited()
        assert placed > 0
        assert summary == {"position_id": position.id, "synced": 0, "cancelled": 0, "expired": placed}
        async with session_factory() as session:
            repo = OrderRecordRepository(session)
            assert await repo.list_pending(position_id=position.id) == []
            records = await repo.list_for_position(position.id, limit=100)
        assert all(r.status == OrderStatus.UNFILLED for r in records)

    @pytest.mark.asyncio
    async def test_open_rung_kept_until_expiry(self, strategy, initialized, mock_client, session_factory, trading_now):
        """A rung absent from the history is left pending inside the expiry window."""
        position = await initialized()
        await strategy.generate_orders(position.id, mock_client, trading_now)

        early = await strategy.sync_filled_orders(position.id, mock_client, trading_now + timedelta(hours=12))
        late = await strategy.sync_filled_orders(position.id, mock_client, trading_now + timedelta(days=2))

        assert early["expired"] == 0
        assert late["expired"] > 0
        assert mock_client.get_filled_orders.await_count == 2


class TestStatusAndSettings:
    """Status preview and settings updates."""

    @pytest.mark.asyncio
    async def test_status(self, strategy, initialized, mock_client, trading_now):
        position = await initialized()
        status = await strategy.get_status(position.id, mock_client, trading_now)

        assert status["evaluation"] == 1000.0
        assert status["band_status"] == "in_band"
        assert status["next_v"] == 1100.0
        assert status["available_pool"] == 500.0
        assert status["days_until_next_cycle"] == 14
        assert len(status["buy_ladder"]) == 7
        assert len(status["sell_ladder"]) == 9

    @pytest.mark.asyncio
    async def test_status_without_price(self, strategy, initialized, mock_client, trading_now):
        """A failed quote leaves the price fields empty."""
        mock_client.get_price.side_effect = VenueRejectedError("no quote")
        position = await initialized()
        status = await strategy.get_status(position.id, mock_client, trading_now)
        assert status["current_price"] is None
        assert status["band_status"] is None

    @pytest.mark.asyncio
    async def test_update_settings(self, strategy, initialized):
        position = await initialized()
        settings = await strategy.update_settings(position.id, vr_pool=2000.0, vr_style="withdraw")
        assert settings["vr_pool"] == 2000.0
        assert settings["vr_style"] == "withdraw"

    @pytest.mark.asyncio
    async def test_update_unknown_setting(self, strategy, initialized):
        position = await initialized()
        with pytest.raises(ValidationError):
            await strategy.update_settings(position.id, ticker="SOXL")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
