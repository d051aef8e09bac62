"""
Execution Module

- TradingScheduler: cron triggers, calendar gates, per-account fan-out
- ReconciliationEngine: venue fills against pending order records
"""

from infinibuy.execution.reconciliation import (
    ReconciliationEngine,
    ReconciliationSummary,
)
from infinibuy.execution.scheduler import JobRun, TradingScheduler


__all__ = [
    "ReconciliationEngine",
    "ReconciliationSummary",
    "JobRun",
    "TradingScheduler",
]
