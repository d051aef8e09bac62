"""
Trading Scheduler
Infinibuy Trading Core

Cron-driven orchestration of the strategies and reconciliation on
APScheduler, anchored in KST:

- basic buy          daily, US open days
- LOC buy            daily, regular days; a separate trigger on early-close days
- price check        every N minutes during market hours (take profit)
- limit reconcile    every N minutes during market hours
- LOC reconcile      after the regular close; a separate pass after an early close
- VR cycles          daily, US open days
- log prune          daily

Every trigger gates on the calendar for the US market date of the
instant it fires. All jobs can also be run by hand.

Per job, positions are grouped by account. Each group gets one venue
client; groups run through a semaphore of width account_concurrency and
positions inside a group run one at a time with a pacing delay. A
failing position is logged and the batch continues.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from infinibuy.brokers.base import BaseVenueClient
from infinibuy.core.config import SchedulerSettings, settings
from infinibuy.core.events import BaseEvent, EventBus, EventType, get_event_bus_sync
from infinibuy.core.exceptions import (
    CredentialMissingError,
    TokenIssuanceThrottledError,
    ValidationError,
)
from infinibuy.db.models.trading import (
    JobStatus,
    JobType,
    OrderType,
    Position,
    StrategyType,
)
from infinibuy.db.repositories import OrderRecordRepository, PositionRepository
from infinibuy.db.session import SessionFactory, get_db_context
from infinibuy.execution.reconciliation import ReconciliationEngine, ReconciliationSummary
from infinibuy.services.credentials import VenueSessionManager
from infinibuy.services.error_handler import (
    ErrorHandler,
    ErrorSeverity,
    get_error_handler,
    with_error_handling,
)
from infinibuy.services.execution_log import ExecutionLogService
from infinibuy.services.market_calendar import (
    et_day_start,
    is_early_close,
    is_market_hours,
    is_open,
    market_date,
)
from infinibuy.services.notifier import Notifier
from infinibuy.strategies.base import StrategyResult
from infinibuy.strategies.basic import BasicStrategy
from infinibuy.strategies.loc_split import LocSplitStrategy
from infinibuy.strategies.value_rebalance import ValueRebalanceStrategy


PositionHandler = Callable[[int, BaseVenueClient, datetime], Awaitable[StrategyResult]]

RUNTIME_FIELDS = {
    "auto_buy_enabled",
    "auto_sell_enabled",
    "price_check_interval_minutes",
    "order_check_interval_minutes",
    "account_concurrency",
}


def _hour_minute(value: str) -> Dict[str, int]:
    hour, minute = value.split(":")
    return {"hour": int(hour), "minute": int(minute)}


@dataclass
class JobRun:
    """Tally of one job invocation."""
    job_type: JobType
    started_at: datetime
    processed: int = 0
    executed: int = 0
    skipped: int = 0
    errors: int = 0
    gated: Optional[str] = None
    results: List[StrategyResult] = field(default_factory=list)

    def record(self, result: StrategyResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.executed:
            self.executed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type.value,
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "executed": self.executed,
            "skipped": self.skipped,
            "errors": self.errors,
            "gated": self.gated,
        }


class TradingScheduler:
    """
    Usage:
        scheduler = TradingScheduler(sessions, notifier=notifier)
        scheduler.start()
        ...
        await scheduler.run_basic_buy(force=True)
    """

    def __init__(
        self,
        sessions: VenueSessionManager,
        session_factory: SessionFactory = get_db_context,
        execution_log: Optional[ExecutionLogService] = None,
        notifier: Optional[Notifier] = None,
        error_handler: Optional[ErrorHandler] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[SchedulerSettings] = None,
        reconciliation: Optional[ReconciliationEngine] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sessions = sessions
        self._session_factory = session_factory
        self.execution_log = execution_log or ExecutionLogService(session_factory)
        self.error_handler = error_handler or get_error_handler()
        self.event_bus = event_bus or get_event_bus_sync()
        self.config = config or settings.scheduler
        self._sleep = sleep

        strategy_kwargs = dict(
            session_factory=session_factory,
            execution_log=self.execution_log,
            notifier=notifier,
            event_bus=self.event_bus,
        )
        self.basic = BasicStrategy(**strategy_kwargs)
        self.loc = LocSplitStrategy(**strategy_kwargs)
        self.vr = ValueRebalanceStrategy(**strategy_kwargs)
        self.reconciliation = reconciliation or ReconciliationEngine(
            sessions,
            session_factory=session_factory,
            execution_log=self.execution_log,
            error_handler=self.error_handler,
            event_bus=self.event_bus,
        )

        self.scheduler = AsyncIOScheduler(timezone=self.config.timezone)
        self._jobs_registered = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def register_jobs(self) -> None:
        """Add every cron trigger. Safe to call again after a config change."""
        c = self.config
        jobs = [
            ("basic_buy", self._basic_buy_job, CronTrigger(**_hour_minute(c.basic_buy_time)), "Basic daily buy"),
            ("loc_buy", self._loc_buy_job, CronTrigger(**_hour_minute(c.loc_buy_time)), "LOC split buy"),
            (
                "loc_buy_early_close",
                self._loc_buy_early_close_job,
                CronTrigger(**_hour_minute(c.loc_early_close_buy_time)),
                "LOC split buy (early close)",
            ),
            (
                "price_check",
                self._price_check_job,
                CronTrigger(minute=f"*/{c.price_check_interval_minutes}", hour=c.market_hours),
                "Take-profit sweep",
            ),
            (
                "order_check",
                self._limit_reconciliation_job,
                CronTrigger(minute=f"*/{c.order_check_interval_minutes}", hour=c.market_hours),
                "Limit order reconciliation",
            ),
            (
                "loc_reconcile",
                self._loc_reconciliation_job,
                CronTrigger(**_hour_minute(c.post_close_reconcile_time)),
                "LOC reconciliation after close",
            ),
            (
                "loc_reconcile_early_close",
                self._loc_reconciliation_early_close_job,
                CronTrigger(**_hour_minute(c.early_close_reconcile_time)),
                "LOC reconciliation after early close",
            ),
            ("vr_cycle", self._vr_cycle_job, CronTrigger(**_hour_minute(c.vr_cycle_time)), "Value-rebalancing cycles"),
            ("log_prune", self.run_log_prune, CronTrigger(**_hour_minute(c.log_prune_time)), "Execution log prune"),
        ]
        for job_id, func, trigger, name in jobs:
            self.scheduler.add_job(
                func,
                trigger,
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self._jobs_registered = True
        logger.info(f"Registered {len(jobs)} scheduler jobs ({c.timezone})")

    def start(self) -> None:
        if self.is_running:
            return
        if not self._jobs_registered:
            self.register_jobs()
        self.scheduler.start()
        logger.info("Trading scheduler started")

    def shutdown(self) -> None:
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            logger.info("Trading scheduler stopped")

    # =========================================================================
    # Cron entry points (gated)
    # =========================================================================

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _basic_buy_job(self) -> None:
        await self.run_basic_buy()

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _loc_buy_job(self) -> None:
        await self.run_loc_buy(early_close=False)

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _loc_buy_early_close_job(self) -> None:
        await self.run_loc_buy(early_close=True)

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _price_check_job(self) -> None:
        await self.run_price_check()

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _vr_cycle_job(self) -> None:
        await self.run_vr_cycles()

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _limit_reconciliation_job(self) -> None:
        now = self._now()
        if not is_market_hours(now):
            return
        await self.run_reconciliation(order_type=OrderType.LIMIT, now=now)

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _loc_reconciliation_job(self) -> None:
        now = self._now()
        d = market_date(now)
        if not is_open(d) or is_early_close(d):
            logger.debug(f"LOC reconciliation gated off for {d}")
            return
        await self.run_reconciliation(order_type=OrderType.LOC, post_close=True, now=now)

    @with_error_handling(severity=ErrorSeverity.CRITICAL, reraise=False, handler_attr="error_handler")
    async def _loc_reconciliation_early_close_job(self) -> None:
        now = self._now()
        d = market_date(now)
        if not is_open(d) or not is_early_close(d):
            return
        await self.run_reconciliation(order_type=OrderType.LOC, post_close=True, now=now)

    # =========================================================================
    # Shared machinery
    # =========================================================================

    async def _gate_skip(self, run: JobRun, reason: str) -> JobRun:
        run.gated = reason
        logger.info(f"{run.job_type.value} skipped: {reason}")
        await self.execution_log.append(run.job_type, JobStatus.SKIPPED, reason)
        return run

    async def _finish(self, run: JobRun) -> JobRun:
        message = (
            f"{run.job_type.value}: {run.processed} processed, {run.executed} executed, "
            f"{run.skipped} skipped, {run.errors} errors"
        )
        logger.info(message)
        await self.execution_log.append(
            run.job_type,
            JobStatus.ERROR if run.errors and not run.executed else JobStatus.COMPLETED,
            message,
            details=run.to_dict(),
        )
        try:
            await self.event_bus.publish(BaseEvent(event_type=EventType.JOB_COMPLETED, metadata=run.to_dict()))
        except Exception as e:
            logger.warning(f"Failed to publish job completion for {run.job_type.value}: {e}")
        return run

    async def _position_failed(self, run: JobRun, position: Position, error: Exception) -> None:
        run.errors += 1
        await self.error_handler.handle_error(
            error,
            context={"job": run.job_type.value, "position_id": position.id, "ticker": position.ticker},
        )
        await self.execution_log.append(
            run.job_type,
            JobStatus.ERROR,
            f"{position.ticker}: {type(error).__name__}",
            position_id=position.id,
            ticker=position.ticker,
            error_message=str(error),
        )

    async def _run_per_account(
        self,
        run: JobRun,
        positions: List[Position],
        handler: PositionHandler,
        delay: float,
        now: datetime,
    ) -> None:
        groups: Dict[int, List[Position]] = defaultdict(list)
        for position in positions:
            groups[position.user_id].append(position)

        semaphore = asyncio.Semaphore(max(1, self.config.account_concurrency))

        async def process(user_id: int, group: List[Position]) -> None:
            async with semaphore:
                try:
                    client = await self.sessions.get_client(user_id, now)
                except TokenIssuanceThrottledError as e:
                    run.skipped += len(group)
                    logger.info(f"{run.job_type.value}: user {user_id} skipped - {e}")
                    await self.execution_log.append(run.job_type, JobStatus.SKIPPED, str(e), details={"user_id": user_id})
                    return
                except CredentialMissingError as e:
                    run.skipped += len(group)
                    logger.warning(f"{run.job_type.value}: {e}")
                    await self.execution_log.append(run.job_type, JobStatus.SKIPPED, str(e), details={"user_id": user_id})
                    return
                except Exception as e:
                    for position in group:
                        await self._position_failed(run, position, e)
                    return

                for index, position in enumerate(group):
                    if index:
                        await self._sleep(delay)
                    try:
                        run.record(await handler(position.id, client, now))
                    except Exception as e:
                        await self._position_failed(run, position, e)

        await asyncio.gather(*(process(user_id, group) for user_id, group in groups.items()))

    async def _eligible(self, strategy: StrategyType) -> List[Position]:
        async with self._session_factory() as session:
            return await PositionRepository(session).list_eligible(strategy)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def run_basic_buy(self, now: Optional[datetime] = None, force: bool = False) -> JobRun:
        """Daily buy for every eligible basic position."""
        now = now or self._now()
        run = JobRun(JobType.BASIC_BUY, now)
        if not self.config.auto_buy_enabled and not force:
            return await self._gate_skip(run, "auto buy disabled")
        if not is_open(market_date(now)) and not force:
            return await self._gate_skip(run, f"{market_date(now)} is not a US trading day")

        positions = await self._eligible(StrategyType.BASIC)
        await self._run_per_account(
            run,
            positions,
            lambda pid, client, at: self.basic.execute_buy(pid, client, now=at),
            self.config.basic_position_delay_seconds,
            now,
        )
        return await self._finish(run)

    async def run_loc_buy(
        self,
        early_close: bool = False,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> JobRun:
        """
        Daily LOC split buy.

        The regular trigger stands down on early-close days and the
        early-close trigger only runs on them, so each day runs once.
        """
        now = now or self._now()
        run = JobRun(JobType.LOC_BUY, now)
        d = market_date(now)
        if not force:
            if not self.config.auto_buy_enabled:
                return await self._gate_skip(run, "auto buy disabled")
            if not is_open(d):
                return await self._gate_skip(run, f"{d} is not a US trading day")
            if early_close and not is_early_close(d):
                return await self._gate_skip(run, f"{d} is not an early-close day")
            if not early_close and is_early_close(d):
                return await self._gate_skip(run, f"{d} is an early-close day")

        positions = await self._eligible(StrategyType.LOC_SPLIT)
        await self._run_per_account(
            run,
            positions,
            lambda pid, client, at: self.loc.execute_buy(pid, client, now=at),
            self.config.loc_position_delay_seconds,
            now,
        )
        return await self._finish(run)

    async def run_price_check(self, now: Optional[datetime] = None, force: bool = False) -> JobRun:
        """Take-profit sweep over basic positions holding shares."""
        now = now or self._now()
        run = JobRun(JobType.PRICE_CHECK, now)
        if not force:
            if not self.config.auto_sell_enabled:
                return run
            if not is_market_hours(now):
                return run

        async with self._session_factory() as session:
            positions = await PositionRepository(session).list_with_holdings(StrategyType.BASIC)
        positions = [p for p in positions if p.auto_enabled]
        if not positions:
            return run

        await self._run_per_account(
            run,
            positions,
            lambda pid, client, at: self.basic.execute_take_profit(pid, client, now=at),
            self.config.sweep_position_delay_seconds,
            now,
        )
        if run.executed or run.errors:
            await self._finish(run)
        return run

    async def run_reconciliation(
        self,
        order_type: Optional[OrderType] = None,
        post_close: bool = False,
        now: Optional[datetime] = None,
    ) -> ReconciliationSummary:
        now = now or self._now()
        try:
            summary = await self.reconciliation.reconcile(order_type=order_type, post_close=post_close, now=now)
        except Exception as e:
            await self.error_handler.handle_error(e, context={"job": JobType.ORDER_CHECK.value})
            await self.execution_log.append(
                JobType.ORDER_CHECK,
                JobStatus.ERROR,
                "reconciliation aborted",
                error_message=str(e),
            )
            return ReconciliationSummary(errors=1)

        if summary.checked or summary.errors:
            label = order_type.value if order_type else "all"
            await self.execution_log.append(
                JobType.ORDER_CHECK,
                JobStatus.COMPLETED,
                f"{label} reconciliation: {summary.filled} filled, {summary.unfilled} unfilled, "
                f"{summary.cancelled} cancelled, {summary.pending} pending",
                details={"post_close": post_close, **summary.to_dict()},
            )
        return summary

    async def run_vr_cycles(self, now: Optional[datetime] = None, force: bool = False) -> JobRun:
        """Sync ladder fills, then roll every value-rebalancing position whose cycle is due."""
        now = now or self._now()
        run = JobRun(JobType.VR_CYCLE, now)
        if not force and not is_open(market_date(now)):
            return await self._gate_skip(run, f"{market_date(now)} is not a US trading day")

        async def cycle(position_id: int, client: BaseVenueClient, at: datetime) -> StrategyResult:
            await self.vr.sync_filled_orders(position_id, client, now=at)
            return await self.vr.execute_cycle(position_id, client, now=at)

        positions = await self._eligible(StrategyType.VALUE_REBALANCE)
        await self._run_per_account(run, positions, cycle, self.config.sweep_position_delay_seconds, now)
        return await self._finish(run)

    async def run_log_prune(self, now: Optional[datetime] = None) -> int:
        try:
            return await self.execution_log.prune(settings.logging.execution_log_retention_days, now=now)
        except Exception as e:
            await self.error_handler.handle_error(e, context={"job": JobType.LOG_PRUNE.value})
            return 0

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return {
            "is_running": self.is_running,
            "config": self.config.model_dump(),
            "jobs": jobs,
        }

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        """Change runtime flags and intervals; interval triggers are rebuilt."""
        unknown = set(changes) - RUNTIME_FIELDS
        if unknown:
            raise ValidationError(f"Unknown scheduler settings: {', '.join(sorted(unknown))}")
        for key in ("price_check_interval_minutes", "order_check_interval_minutes", "account_concurrency"):
            if key in changes and int(changes[key]) < 1:
                raise ValidationError(f"{key} must be at least 1")

        self.config = self.config.model_copy(update=changes)
        if self._jobs_registered:
            self.register_jobs()
        logger.info(f"Scheduler config updated: {changes}")
        return self.config.model_dump()

    async def get_diagnostics(self, user_id: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Why each basic or LOC position would or would not buy today. Read-only."""
        now = now or self._now()
        d = market_date(now)
        market_day = is_open(d)

        async with self._session_factory() as session:
            positions_repo = PositionRepository(session)
            records = OrderRecordRepository(session)
            positions = []
            for strategy in (StrategyType.BASIC, StrategyType.LOC_SPLIT):
                positions += await positions_repo.list_eligible(strategy, user_id=user_id)

            diagnostics = []
            for position in positions:
                today_buys = await records.count_buys_since(position.id, et_day_start(now))
                has_credential = await self.sessions.store.get_credential(position.user_id) is not None
                max_rounds = position.current_round >= position.total_rounds

                if not market_day:
                    skip_reason = "not a US trading day"
                elif max_rounds:
                    skip_reason = "max rounds reached"
                elif today_buys > 0:
                    skip_reason = "already bought today"
                elif not has_credential:
                    skip_reason = "no venue credential"
                else:
                    skip_reason = None

                diagnostics.append({
                    "position_id": position.id,
                    "ticker": position.ticker,
                    "strategy": position.strategy,
                    "current_round": position.current_round,
                    "total_rounds": position.total_rounds,
                    "buy_condition": position.buy_condition,
                    "checks": {
                        "max_rounds_reached": max_rounds,
                        "already_bought_today": today_buys > 0,
                        "today_buy_count": today_buys,
                        "has_credential": has_credential,
                        "has_valid_token": self.sessions.has_valid_token(position.user_id, now),
                        "is_market_day": market_day,
                    },
                    "can_buy": skip_reason is None,
                    "skip_reason": skip_reason,
                })

        return {
            "market_date": d.isoformat(),
            "is_market_day": market_day,
            "is_early_close": is_early_close(d),
            "auto_buy_enabled": self.config.auto_buy_enabled,
            "positions": diagnostics,
        }
