"""
Grid Level Generator
Infinibuy Trading Core

Builds a self-sustaining ladder of paired buy/sell levels between a
lower and an upper price. Every buy level sells one step up; every sell
level buys back one step down. Filling a level re-arms its partner.

Prices snap to a magnitude-dependent tick table.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional, Tuple

from loguru import logger

from infinibuy.core.exceptions import ValidationError
from infinibuy.db.models.trading import OrderSide


# (lower bound, tick) from the top down
TICK_TABLE: List[Tuple[float, str]] = [
    (2_000_000, "1000"),
    (1_000_000, "1000"),
    (500_000, "500"),
    (100_000, "100"),
    (50_000, "50"),
    (10_000, "10"),
    (5_000, "5"),
    (1_000, "1"),
    (100, "1"),
    (10, "0.1"),
    (1, "0.01"),
    (0.1, "0.001"),
    (0.01, "0.0001"),
]
SMALLEST_TICK = "0.00001"


class GridLevelStatus(str, Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    FILLED = "filled"
    INACTIVE = "inactive"


@dataclass
class GridLevel:
    price: float
    type: OrderSide
    status: GridLevelStatus
    sell_price: Optional[float] = None  # buy levels: where the bought unit is sold
    buy_price: Optional[float] = None  # sell levels: where the sold unit is bought back
    order_id: Optional[str] = None


def get_tick_size(price: float) -> Decimal:
    for lower, tick in TICK_TABLE:
        if price >= lower:
            return Decimal(tick)
    return Decimal(SMALLEST_TICK)


def round_to_tick(price: float) -> float:
    """Snap to the nearest tick, halves rounding up."""
    tick = get_tick_size(price)
    steps = (Decimal(str(price)) / tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return float(steps * tick)


def calculate_geometric_prices(lower: float, upper: float, percent_step: float) -> List[float]:
    """
    lower, lower x m, lower x m^2 ... up to upper, snapped to ticks.

    A snapped value not strictly above the previous one is dropped.
    """
    multiplier = 1 + percent_step / 100
    prices: List[float] = []
    price = lower
    while price <= upper:
        snapped = round_to_tick(price)
        if not prices or snapped > prices[-1]:
            prices.append(snapped)
        price *= multiplier
    return prices


def calculate_grid_prices(
    lower: float,
    upper: float,
    grid_count: int,
    percent_step: Optional[float] = None,
) -> List[float]:
    """
    Price points of the ladder.

    With percent_step, a geometric sequence plus one point above upper so
    the top buy level has somewhere to sell. Otherwise grid_count + 2
    evenly spaced points.
    """
    if lower <= 0 or upper <= lower:
        raise ValidationError("Grid bounds must satisfy 0 < lower < upper", {"lower": lower, "upper": upper})

    if percent_step and percent_step > 0:
        prices = calculate_geometric_prices(lower, upper, percent_step)
        top = round_to_tick(prices[-1] * (1 + percent_step / 100))
        if top > prices[-1]:
            prices.append(top)
        return prices

    if grid_count < 1:
        raise ValidationError("Grid count must be at least 1", {"grid_count": grid_count})
    spacing = (upper - lower) / grid_count
    return [round_to_tick(lower + spacing * i) for i in range(grid_count + 2)]


def build_grid_levels(prices: List[float]) -> List[GridLevel]:
    """Pair consecutive prices into an armed buy and a dormant sell."""
    levels: List[GridLevel] = []
    for buy_price, sell_price in zip(prices, prices[1:]):
        levels.append(GridLevel(
            price=buy_price,
            type=OrderSide.BUY,
            status=GridLevelStatus.AVAILABLE,
            sell_price=sell_price,
        ))
        levels.append(GridLevel(
            price=sell_price,
            type=OrderSide.SELL,
            status=GridLevelStatus.INACTIVE,
            buy_price=buy_price,
        ))
    logger.debug(f"Built {len(levels)} grid levels over {len(prices)} prices")
    return levels


def find_executable_levels(
    levels: List[GridLevel],
    current_price: float,
) -> Tuple[Optional[GridLevel], Optional[GridLevel]]:
    """Highest available buy at or below the price, lowest available sell at or above it."""
    buys = [
        level for level in levels
        if level.type == OrderSide.BUY and level.status == GridLevelStatus.AVAILABLE and level.price <= current_price
    ]
    sells = [
        level for level in levels
        if level.type == OrderSide.SELL and level.status == GridLevelStatus.AVAILABLE and level.price >= current_price
    ]
    buy = max(buys, key=lambda level: level.price) if buys else None
    sell = min(sells, key=lambda level: level.price) if sells else None
    return buy, sell


def activate_opposite_level(levels: List[GridLevel], filled: GridLevel) -> List[GridLevel]:
    """
    Mark `filled` as filled and re-arm its partner.

    Returns the levels that were activated.
    """
    filled.status = GridLevelStatus.FILLED
    if filled.type == OrderSide.BUY and filled.sell_price is not None:
        target_type, target_price = OrderSide.SELL, filled.sell_price
    elif filled.type == OrderSide.SELL and filled.buy_price is not None:
        target_type, target_price = OrderSide.BUY, filled.buy_price
    else:
        return []

    activated = []
    for level in levels:
        if level.type == target_type and level.price == target_price and level is not filled:
            level.status = GridLevelStatus.AVAILABLE
            activated.append(level)
    if activated:
        logger.debug(f"Activated {target_type.value} level at {target_price}")
    return activated
