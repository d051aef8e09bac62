"""
Strategy Engines
Infinibuy Trading Core

- BasicStrategy: conditional daily limit buys with take profit
- LocSplitStrategy: 40-round LOC split accumulation
- ValueRebalanceStrategy: value band ladders funded from a cash pool
- grid: tick-snapped grid level generator
"""

from infinibuy.strategies.base import (
    BaseStrategy,
    OrderIntent,
    SkipReason,
    StrategyAction,
    StrategyResult,
)
from infinibuy.strategies.basic import BasicStrategy
from infinibuy.strategies.loc_split import LocSplitStrategy
from infinibuy.strategies.value_rebalance import ValueRebalanceStrategy


__all__ = [
    "BaseStrategy",
    "OrderIntent",
    "SkipReason",
    "StrategyAction",
    "StrategyResult",
    "BasicStrategy",
    "LocSplitStrategy",
    "ValueRebalanceStrategy",
]
