"""
Error Handling System
Infinibuy Trading Core

Where scheduled jobs and reconciliation report failures they have
already contained. Each report is classified, kept in a bounded
history, logged at a level matching its severity and published as an
error event. Bursts within one category are flagged in the log.

Nothing routed through here stops the process.
"""

import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from loguru import logger

from infinibuy.core.events import ErrorEvent, EventBus, get_event_bus_sync
from infinibuy.core.exceptions import (
    CredentialMissingError,
    ErrorCategory,
    ReconciliationMismatchError,
    TokenExpiredError,
    TokenIssuanceThrottledError,
    TradingError,
)


class ErrorSeverity(str, Enum):
    LOW = "low"           # skipped work, retried on the next trigger
    MEDIUM = "medium"     # transient infrastructure failure
    HIGH = "high"         # an order or a position update failed
    CRITICAL = "critical" # a whole job could not run


@dataclass
class ErrorRecord:
    """One reported failure."""
    error_id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception_type: str
    stack_trace: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error_id": self.error_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "exception_type": self.exception_type,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            data["stack_trace"] = self.stack_trace
        return data


ErrorCallback = Callable[[ErrorRecord], Awaitable[None]]

# Expected skips
_QUIET_ERRORS = (
    CredentialMissingError,
    TokenIssuanceThrottledError,
    TokenExpiredError,
    ReconciliationMismatchError,
)

# Untyped exceptions: (category, fragments of the class name, fragments of the message)
_FALLBACK_RULES: List[Tuple[ErrorCategory, Tuple[str, ...], Tuple[str, ...]]] = [
    (ErrorCategory.NETWORK, ("Connection", "Timeout", "Socket", "ClientError"), ("connection", "timeout", "dns")),
    (ErrorCategory.DATABASE, ("SQL", "Integrity", "Operational", "DBAPI"), ("database", "sqlite", "postgres")),
    (ErrorCategory.VALIDATION, ("Validation", "Value", "Type"), ()),
    (ErrorCategory.EXECUTION, (), ("order", "position", "fill")),
]

_SEVERITY_BY_CATEGORY = {
    ErrorCategory.EXECUTION: ErrorSeverity.HIGH,
    ErrorCategory.BROKER: ErrorSeverity.HIGH,
    ErrorCategory.NETWORK: ErrorSeverity.MEDIUM,
    ErrorCategory.DATABASE: ErrorSeverity.MEDIUM,
    ErrorCategory.RECONCILIATION: ErrorSeverity.MEDIUM,
    ErrorCategory.VALIDATION: ErrorSeverity.LOW,
    ErrorCategory.AUTH: ErrorSeverity.LOW,
}

_LOG_BY_SEVERITY = {
    ErrorSeverity.LOW: logger.warning,
    ErrorSeverity.MEDIUM: logger.error,
    ErrorSeverity.HIGH: logger.error,
    ErrorSeverity.CRITICAL: logger.critical,
}


def categorize(exception: BaseException) -> ErrorCategory:
    if isinstance(exception, TradingError):
        return exception.category

    name = type(exception).__name__
    message = str(exception).lower()
    for category, name_parts, message_parts in _FALLBACK_RULES:
        if any(part in name for part in name_parts) or any(part in message for part in message_parts):
            return category
    return ErrorCategory.UNKNOWN


def assess_severity(exception: BaseException, category: ErrorCategory) -> ErrorSeverity:
    if isinstance(exception, _QUIET_ERRORS):
        return ErrorSeverity.LOW
    if category in _SEVERITY_BY_CATEGORY:
        return _SEVERITY_BY_CATEGORY[category]
    if any(word in str(exception).lower() for word in ("fatal", "critical")):
        return ErrorSeverity.CRITICAL
    return ErrorSeverity.MEDIUM


class ErrorHandler:
    """
    Usage:
        handler = get_error_handler()
        await handler.handle_error(e, context={"job": "basic_buy", "position_id": 3})
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        max_errors: int = 1000,
        burst_window_seconds: float = 60.0,
        burst_threshold: int = 10,
    ):
        self.event_bus = event_bus or get_event_bus_sync()
        self._history: Deque[ErrorRecord] = deque(maxlen=max_errors)
        self._counts: Dict[ErrorCategory, int] = {category: 0 for category in ErrorCategory}
        self._recent: Dict[ErrorCategory, Deque[datetime]] = {category: deque() for category in ErrorCategory}
        self._burst_window = burst_window_seconds
        self._burst_threshold = burst_threshold
        self._callbacks: List[ErrorCallback] = []

    def register_error_callback(self, callback: ErrorCallback) -> None:
        """Awaited with every record after it is published."""
        self._callbacks.append(callback)

    async def handle_error(
        self,
        exception: BaseException,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorRecord:
        """
        Record, log and publish a contained failure.

        Args:
            exception: The failure
            category: Overrides the detected category
            severity: Overrides the detected severity
            context: Job, position id, ticker and similar; merged over
                the exception's own context

        Returns:
            The stored ErrorRecord
        """
        category = category or categorize(exception)
        severity = severity or assess_severity(exception, category)
        merged = {**(getattr(exception, "context", None) or {}), **(context or {})}

        record = ErrorRecord(
            error_id=uuid.uuid4().hex,
            category=category,
            severity=severity,
            message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace="".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            context=merged,
        )
        self._history.append(record)
        self._counts[category] += 1

        log = _LOG_BY_SEVERITY.get(severity, logger.error)
        log(f"[{category.value}] {record.exception_type}: {record.message} {merged or ''}".rstrip())
        if self._in_burst(category, record.timestamp):
            logger.warning(f"{category.value} errors are bursting: {self._burst_threshold}+ in {self._burst_window:.0f}s")

        await self._publish(record)

        for callback in self._callbacks:
            try:
                await callback(record)
            except Exception as e:
                logger.warning(f"Error callback {getattr(callback, '__name__', callback)} failed: {e}")

        return record

    def _in_burst(self, category: ErrorCategory, at: datetime) -> bool:
        recent = self._recent[category]
        recent.append(at)
        while recent and (at - recent[0]).total_seconds() > self._burst_window:
            recent.popleft()
        return len(recent) >= self._burst_threshold

    async def _publish(self, record: ErrorRecord) -> None:
        try:
            await self.event_bus.publish(
                ErrorEvent(
                    category=record.category.value,
                    severity=record.severity.value,
                    message=record.message,
                    metadata={"error_id": record.error_id, "context": record.context},
                )
            )
        except Exception as e:
            logger.warning(f"Failed to publish error event {record.error_id}: {e}")

    def get_error_stats(self) -> Dict[str, Any]:
        by_severity: Dict[str, int] = {}
        for record in self._history:
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
        return {
            "total_errors": len(self._history),
            "by_category": {category.value: count for category, count in self._counts.items()},
            "by_severity": by_severity,
            "recent_errors": [record.to_dict() for record in list(self._history)[-10:]],
        }

    def get_errors(
        self,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        limit: int = 100,
    ) -> List[ErrorRecord]:
        """History, oldest first, optionally filtered."""
        records = [
            record for record in self._history
            if (category is None or record.category == category)
            and (severity is None or record.severity == severity)
        ]
        return records[-limit:]


def with_error_handling(
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    reraise: bool = True,
    handler_attr: Optional[str] = None,
):
    """
    Report exceptions from a coroutine to the global handler.

    With handler_attr, a decorated method reports to that attribute of
    its instance instead. With reraise=False the coroutine returns None,
    which keeps a failed cron run away from the scheduler.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                handler = getattr(args[0], handler_attr) if handler_attr else get_error_handler()
                await handler.handle_error(
                    e,
                    category=category,
                    severity=severity,
                    context={"function": func.__name__},
                )
                if reraise:
                    raise
                return None
        return wrapper
    return decorator


_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def set_error_handler(handler: Optional[ErrorHandler]) -> None:
    """Replace the global instance (None resets it)."""
    global _error_handler
    _error_handler = handler
