"""
Value-Rebalancing Strategy
Infinibuy Trading Core

Keeps the evaluation (price x quantity) of a position inside a band
around a target value V, funded from a cash pool P:

    band       = [V x (1 - band%), V x (1 + band%)]
    next V     = V + P/G (+ deposit | - withdrawal)
    pool usage = deposit 0.75, hold 0.50, withdraw 0.25

Each cycle places a ladder of one-share limit orders. Buy rung n sits at
bandMin / (max(qty, 1) + n), the price at which holding qty+n+1 shares
would put the evaluation back at bandMin. Sell rung n sits at
bandMax / (qty - n), always leaving at least one share.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from loguru import logger

from infinibuy.brokers.base import BaseVenueClient
from infinibuy.core.config import settings
from infinibuy.core.exceptions import (
    PositionStateError,
    StrategyExecutionError,
    TradingError,
    ValidationError,
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
    VRStyle,
)
from infinibuy.db.repositories import OrderRecordRepository, PositionRepository
from infinibuy.services.market_calendar import KST
from infinibuy.strategies.base import (
    BaseStrategy,
    OrderIntent,
    SkipReason,
    StrategyAction,
    StrategyResult,
    average_price,
    round_cents,
)


MILLI = Decimal("0.001")

DEFAULT_BAND_PERCENT = 15.0
DEFAULT_CYCLE_WEEKS = 2
MAX_BUY_RUNGS = 100
MAX_SELL_RUNGS = 99
MIN_RUNG_PRICE = 1.0

POOL_USAGE_RATES = {
    VRStyle.DEPOSIT: 0.75,
    VRStyle.HOLD: 0.50,
    VRStyle.WITHDRAW: 0.25,
}

SETTING_FIELDS = {
    "vr_value",
    "vr_pool",
    "vr_gradient",
    "vr_style",
    "vr_band_percent",
    "vr_deposit_amount",
    "vr_cycle_weeks",
}


def round3(value: float) -> float:
    return float(Decimal(str(value)).quantize(MILLI, rounding=ROUND_HALF_UP))


@dataclass
class Band:
    min: float
    max: float

    def classify(self, evaluation: float) -> str:
        if evaluation < self.min:
            return "below_min"
        if evaluation > self.max:
            return "above_max"
        return "in_band"


def calculate_band(v: float, band_percent: float = DEFAULT_BAND_PERCENT) -> Band:
    return Band(
        min=round3(v * (1 - band_percent / 100)),
        max=round3(v * (1 + band_percent / 100)),
    )


def pool_usage_rate(style: Optional[str]) -> float:
    try:
        return POOL_USAGE_RATES[VRStyle(style)]
    except ValueError:
        return POOL_USAGE_RATES[VRStyle.HOLD]


def default_gradient(style: str) -> int:
    return 20 if VRStyle(style) == VRStyle.WITHDRAW else 10


def calculate_next_v(v: float, pool: float, gradient: int, style: str, deposit_amount: float = 0.0) -> float:
    """V + P/G, plus the deposit (deposit style) or minus the withdrawal."""
    next_v = v + pool / gradient
    style = VRStyle(style)
    if style == VRStyle.DEPOSIT:
        next_v += deposit_amount
    elif style == VRStyle.WITHDRAW:
        next_v -= deposit_amount
    return round3(next_v)


@dataclass
class LadderRung:
    index: int
    price: float
    quantity: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "price": self.price, "quantity": self.quantity}


def build_buy_ladder(band_min: float, quantity: int, pool: float, usage_rate: float) -> List[LadderRung]:
    """One-share buys below the band until the deployable pool runs out."""
    budget = pool * usage_rate
    rungs: List[LadderRung] = []
    used = 0.0
    base = max(quantity, 1)
    n = 0
    while used < budget and len(rungs) < MAX_BUY_RUNGS:
        price = round3(band_min / (base + n))
        if price < MIN_RUNG_PRICE or used + price > budget:
            break
        rungs.append(LadderRung(index=n + 1, price=price))
        used += price
        n += 1
    return rungs


def build_sell_ladder(band_max: float, quantity: int) -> List[LadderRung]:
    """One-share sells above the band, keeping at least one share."""
    rungs: List[LadderRung] = []
    for n in range(quantity - 1):
        if len(rungs) >= MAX_SELL_RUNGS:
            break
        rungs.append(LadderRung(index=n + 1, price=round3(band_max / (quantity - n))))
    return rungs


def _require_initialized(position: Position) -> None:
    if position.vr_value is None or position.vr_pool is None or not position.vr_style:
        raise PositionStateError(
            f"{position.ticker}: value rebalancing not initialized",
            {"position_id": position.id},
        )


def _cycle_due_at(position: Position) -> Optional[datetime]:
    if position.vr_cycle_start is None:
        return None
    return position.vr_cycle_start + timedelta(weeks=position.vr_cycle_weeks or DEFAULT_CYCLE_WEEKS)


class ValueRebalanceStrategy(BaseStrategy):
    """
    Usage:
        strategy = ValueRebalanceStrategy()
        await strategy.initialize(position.id, v=5000, pool=1000, style="hold")
        await strategy.generate_orders(position.id, client)
    """

    job_type = JobType.VR_ORDER

    async def _load(self, session, position_id: int) -> Position:
        position = await PositionRepository(session).get(position_id)
        if position is None:
            raise PositionStateError(f"Position {position_id} not found")
        return position

    async def initialize(
        self,
        position_id: int,
        v: float,
        pool: float,
        style: str,
        gradient: Optional[int] = None,
        deposit_amount: float = 0.0,
        band_percent: float = DEFAULT_BAND_PERCENT,
        cycle_weeks: int = DEFAULT_CYCLE_WEEKS,
        initial_quantity: int = 0,
        initial_avg_price: float = 0.0,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Set V, P and G and start the first cycle."""
        now = now or datetime.now(timezone.utc)
        try:
            style = VRStyle(style).value
        except ValueError:
            raise ValidationError(f"Unknown VR style: {style}")
        if v <= 0 or pool < 0:
            raise ValidationError("V must be positive and the pool non-negative", {"v": v, "pool": pool})

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            position.vr_value = v
            position.vr_pool = pool
            position.vr_style = style
            position.vr_gradient = gradient or default_gradient(style)
            position.vr_deposit_amount = deposit_amount
            position.vr_band_percent = band_percent
            position.vr_cycle_weeks = cycle_weeks
            position.vr_cycle_start = now
            position.status = PositionStatus.BUYING.value
            position.total_quantity = initial_quantity
            position.avg_price = initial_avg_price
            position.total_invested = round_cents(initial_quantity * initial_avg_price)
            ticker = position.ticker
            band = calculate_band(v, band_percent)

        details = {
            "v": v,
            "pool": pool,
            "gradient": gradient or default_gradient(style),
            "style": style,
            "band_min": band.min,
            "band_max": band.max,
        }
        logger.info(f"{ticker}: VR initialized V={v} P={pool} style={style}")
        await self.execution_log.append(
            JobType.VR_CYCLE,
            JobStatus.COMPLETED,
            f"{ticker}: value rebalancing initialized",
            position_id=position_id,
            ticker=ticker,
            details=details,
        )
        return details

    async def get_status(
        self,
        position_id: int,
        client: Optional[BaseVenueClient] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Band position, next V and the ladders the next cycle would place."""
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            _require_initialized(position)
            pending = [
                r for r in await OrderRecordRepository(session).list_pending(position_id=position_id)
                if r.vr_order_index is not None
            ]

        band = calculate_band(position.vr_value, position.vr_band_percent or DEFAULT_BAND_PERCENT)
        usage = pool_usage_rate(position.vr_style)

        current_price = None
        evaluation = None
        band_status = None
        if client is not None:
            try:
                quote = await client.get_price(position.ticker, position.exchange)
                current_price = quote.current_price
                evaluation = round_cents(current_price * position.total_quantity)
                band_status = band.classify(evaluation)
            except TradingError as e:
                logger.warning(f"{position.ticker}: price unavailable for VR status - {e}")

        days_until = 0
        if position.vr_cycle_start is not None:
            elapsed = (now - position.vr_cycle_start).days
            days_until = max(0, (position.vr_cycle_weeks or DEFAULT_CYCLE_WEEKS) * 7 - elapsed)

        return {
            "position_id": position.id,
            "ticker": position.ticker,
            "v": position.vr_value,
            "pool": position.vr_pool,
            "gradient": position.vr_gradient,
            "style": position.vr_style,
            "band_min": band.min,
            "band_max": band.max,
            "current_price": current_price,
            "evaluation": evaluation,
            "band_status": band_status,
            "next_v": calculate_next_v(
                position.vr_value,
                position.vr_pool,
                position.vr_gradient or default_gradient(position.vr_style),
                position.vr_style,
                position.vr_deposit_amount or 0.0,
            ),
            "pool_usage_rate": usage,
            "available_pool": round_cents(position.vr_pool * usage),
            "days_until_next_cycle": days_until,
            "buy_ladder": [r.to_dict() for r in build_buy_ladder(band.min, position.total_quantity, position.vr_pool, usage)],
            "sell_ladder": [r.to_dict() for r in build_sell_ladder(band.max, position.total_quantity)],
            "pending_orders": [
                {"id": r.id, "side": r.type, "price": r.price, "index": r.vr_order_index, "order_id": r.order_id}
                for r in pending
            ],
        }

    async def generate_orders(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
    ) -> StrategyResult:
        """
        Place the full buy and sell ladder as one-share limit orders.

        Raises:
            StrategyExecutionError: every rung failed
        """
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            if position.status != PositionStatus.BUYING.value:
                return StrategyResult.skipped(position, SkipReason.NOT_BUYING, f"{position.ticker}: status {position.status}")
            if position.vr_value is None or position.vr_pool is None or not position.vr_style:
                return StrategyResult.skipped(position, SkipReason.NOT_INITIALIZED, f"{position.ticker}: VR not initialized")

            band = calculate_band(position.vr_value, position.vr_band_percent or DEFAULT_BAND_PERCENT)
            intents = [
                OrderIntent(
                    side=OrderSide.BUY,
                    order_type=OrderType.LIMIT,
                    price=rung.price,
                    quantity=rung.quantity,
                    amount=round_cents(rung.price * rung.quantity),
                    sub_type=OrderSubType.VR_BUY,
                    vr_order_index=rung.index,
                )
                for rung in build_buy_ladder(band.min, position.total_quantity, position.vr_pool, pool_usage_rate(position.vr_style))
            ]
            intents += [
                OrderIntent(
                    side=OrderSide.SELL,
                    order_type=OrderType.LIMIT,
                    price=rung.price,
                    quantity=rung.quantity,
                    amount=round_cents(rung.price * rung.quantity),
                    sub_type=OrderSubType.VR_SELL,
                    vr_order_index=rung.index,
                )
                for rung in build_sell_ladder(band.max, position.total_quantity)
            ]
            if not intents:
                return StrategyResult.skipped(
                    position,
                    SkipReason.QUANTITY_TOO_SMALL,
                    f"{position.ticker}: no ladder rung fits the pool",
                    band_min=band.min,
                    band_max=band.max,
                )

            records: List[OrderRecord] = []
            failures = 0
            for intent in intents:
                try:
                    order = await self.place(client, position, intent)
                except TradingError as e:
                    failures += 1
                    logger.error(f"{position.ticker}: VR {intent.side.value} #{intent.vr_order_index} @{intent.price} failed - {e}")
                    continue
                records.append(
                    self.build_record(position, intent, order, now=now, vr_band_min=band.min, vr_band_max=band.max)
                )
            if not records:
                raise StrategyExecutionError(
                    f"{position.ticker}: all {len(intents)} VR orders failed",
                    {"position_id": position.id},
                )
            await OrderRecordRepository(session).add_all(records)
            user_id = position.user_id

        buys = sum(1 for r in records if r.type == OrderSide.BUY.value)
        sells = len(records) - buys
        result = StrategyResult(
            position_id=position.id,
            ticker=position.ticker,
            action=StrategyAction.ORDERED,
            message=f"{position.ticker}: VR ladder placed, {buys} buys / {sells} sells",
            orders=[
                {"side": r.type, "price": r.price, "index": r.vr_order_index, "order_id": r.order_id}
                for r in records
            ],
            details={"band_min": band.min, "band_max": band.max, "failed": failures},
        )
        logger.info(result.message + (f" ({failures} failed)" if failures else ""))
        await self.publish_orders(position, records)
        await self.log_result(result)
        await self.notify(
            user_id,
            f"{position.ticker} VR orders placed",
            f"{buys} buys from ${band.min:,.2f}, {sells} sells from ${band.max:,.2f}",
            tag=f"vr-{position.ticker}",
            position_id=position.id,
        )
        return result

    async def execute_cycle(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> StrategyResult:
        """
        Roll the cycle: apply the deposit or withdrawal, recompute V and
        place a fresh ladder. Earlier ladder orders stay open.
        """
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            if position.status != PositionStatus.BUYING.value:
                return StrategyResult.skipped(position, SkipReason.NOT_BUYING, f"{position.ticker}: status {position.status}")
            if position.vr_value is None or position.vr_pool is None or not position.vr_style:
                return StrategyResult.skipped(position, SkipReason.NOT_INITIALIZED, f"{position.ticker}: VR not initialized")

            due_at = _cycle_due_at(position)
            if not force and due_at is not None and now < due_at:
                return StrategyResult.skipped(
                    position,
                    SkipReason.CYCLE_NOT_DUE,
                    f"{position.ticker}: next VR cycle due {due_at.date()}",
                    due_at=due_at.isoformat(),
                )

            previous_v = position.vr_value
            deposit = position.vr_deposit_amount or 0.0
            style = VRStyle(position.vr_style)
            pool = position.vr_pool
            if style == VRStyle.DEPOSIT:
                pool = pool + deposit
            elif style == VRStyle.WITHDRAW:
                pool = max(0.0, pool - deposit)

            new_v = calculate_next_v(
                previous_v,
                pool,
                position.vr_gradient or default_gradient(style.value),
                style.value,
                deposit,
            )
            position.vr_pool = round_cents(pool)
            position.vr_value = new_v
            position.vr_cycle_start = now
            position.vr_last_cycle = now
            ticker = position.ticker

        logger.info(f"{ticker}: VR cycle V {previous_v} -> {new_v}, pool {pool:.2f}")
        await self.execution_log.append(
            JobType.VR_CYCLE,
            JobStatus.COMPLETED,
            f"{ticker}: VR cycle V {previous_v} -> {new_v}",
            position_id=position_id,
            ticker=ticker,
            details={"previous_v": previous_v, "v": new_v, "pool": round_cents(pool), "style": style.value},
        )
        return await self.generate_orders(position_id, client, now=now)

    async def sync_filled_orders(
        self,
        position_id: int,
        client: BaseVenueClient,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Apply venue fills of pending ladder orders to pool, quantity and invested."""
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            records_repo = OrderRecordRepository(session)
            pending = [
                r for r in await records_repo.list_pending(position_id=position_id)
                if r.vr_order_index is not None
            ]
            if not pending:
                return {"position_id": position_id, "synced": 0, "cancelled": 0, "expired": 0}

            # Only order dates inside the lookback are queried; older rungs can only expire
            today = now.astimezone(KST).date()
            earliest = today - timedelta(days=settings.venue.fill_lookback_days - 1)
            order_dates = {r.created_at.astimezone(KST).date() for r in pending}
            order_dates = {d for d in order_dates if d >= earliest}
            venue_orders = {}
            if order_dates:
                venue_orders = {o.order_id: o for o in await client.get_filled_orders(dates=order_dates)}
            expiry = timedelta(days=settings.reconciliation.limit_expiry_days)

            synced = 0
            cancelled = 0
            expired = 0
            for record in pending:
                venue = venue_orders.get(record.order_id)
                if venue is None or not venue.is_filled:
                    if venue is not None and venue.cancelled:
                        await records_repo.mark_terminal(record, OrderStatus.CANCELLED, "cancelled at venue")
                        cancelled += 1
                    elif now - record.created_at >= expiry:
                        await records_repo.mark_terminal(record, OrderStatus.UNFILLED, "day limit order expired unfilled")
                        expired += 1
                    continue

                fill_price = venue.filled_price or record.price
                fill_amount = round_cents(fill_price * venue.filled_qty)
                if record.type == OrderSide.BUY.value:
                    position.vr_pool = position.vr_pool - fill_amount
                    position.total_quantity = position.total_quantity + venue.filled_qty
                    position.total_invested = position.total_invested + fill_amount
                else:
                    cost = position.avg_price * venue.filled_qty
                    position.vr_pool = position.vr_pool + fill_amount
                    position.total_quantity = position.total_quantity - venue.filled_qty
                    position.total_invested = position.total_invested - cost
                    record.profit = round_cents(fill_amount - cost)

                position.vr_pool = round_cents(max(0.0, position.vr_pool))
                position.total_quantity = max(0, position.total_quantity)
                position.total_invested = round_cents(max(0.0, position.total_invested))
                position.avg_price = average_price(position.total_invested, position.total_quantity)

                await records_repo.mark_filled(record, fill_price, venue.filled_qty, now)
                synced += 1
            ticker = position.ticker

        if synced or cancelled or expired:
            logger.info(f"{ticker}: VR sync applied {synced} fills, {cancelled} cancellations, {expired} expired")
            await self.execution_log.append(
                JobType.ORDER_CHECK,
                JobStatus.COMPLETED,
                f"{ticker}: {synced} VR fills applied",
                position_id=position_id,
                ticker=ticker,
                details={"synced": synced, "cancelled": cancelled, "expired": expired},
            )
        return {"position_id": position_id, "synced": synced, "cancelled": cancelled, "expired": expired}

    async def update_settings(self, position_id: int, **changes: Any) -> Dict[str, Any]:
        """Change any subset of the VR parameters."""
        unknown = set(changes) - SETTING_FIELDS
        if unknown:
            raise ValidationError(f"Unknown VR settings: {', '.join(sorted(unknown))}")
        if "vr_style" in changes:
            try:
                changes["vr_style"] = VRStyle(changes["vr_style"]).value
            except ValueError:
                raise ValidationError(f"Unknown VR style: {changes['vr_style']}")

        async with self._session_factory() as session:
            position = await self._load(session, position_id)
            for name, value in changes.items():
                if value is not None:
                    setattr(position, name, value)
            return {name: getattr(position, name) for name in sorted(SETTING_FIELDS)}
