"""
Execution Log Service
Infinibuy Trading Core

Append-only journal of what scheduled jobs and reconciliation did.
Each append runs in its own transaction so a failed trading write
never takes its log entry down with it, and a failed log write never
interrupts trading.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from loguru import logger

from infinibuy.db.models.trading import JobStatus, JobType
from infinibuy.db.repositories import ExecutionLogRepository
from infinibuy.db.repository import PaginatedResponse, PaginationParams
from infinibuy.db.session import SessionFactory, get_db_context


class ExecutionLogService:
    """
    Usage:
        log = ExecutionLogService()
        await log.append(JobType.BASIC_BUY, JobStatus.COMPLETED, "TQQQ bought 10", position_id=3)
    """

    def __init__(self, session_factory: SessionFactory = get_db_context):
        self._session_factory = session_factory

    async def append(
        self,
        job_type: Union[JobType, str],
        status: Union[JobStatus, str],
        message: str,
        position_id: Optional[int] = None,
        ticker: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Write one entry. Returns False (and logs) on failure."""
        job = job_type.value if isinstance(job_type, JobType) else job_type
        state = status.value if isinstance(status, JobStatus) else status
        try:
            async with self._session_factory() as session:
                await ExecutionLogRepository(session).append(
                    job_type=job,
                    status=state,
                    message=message,
                    position_id=position_id,
                    ticker=ticker,
                    details=details,
                    error_message=error_message,
                )
            return True
        except Exception as e:
            logger.error(f"Failed to write execution log ({job}/{state}): {e}")
            return False

    async def query(
        self,
        page: int = 1,
        page_size: int = 50,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        position_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PaginatedResponse:
        async with self._session_factory() as session:
            return await ExecutionLogRepository(session).query(
                PaginationParams(page=page, page_size=page_size),
                job_type=job_type,
                status=status,
                position_id=position_id,
                start=start,
                end=end,
            )

    async def prune(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete entries older than retention_days. Returns rows removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)
        async with self._session_factory() as session:
            removed = await ExecutionLogRepository(session).delete_older_than(cutoff)
        logger.info(f"Pruned {removed} execution log entries older than {cutoff.date()}")
        return removed
