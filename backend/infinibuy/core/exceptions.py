"""
Error Taxonomy
Infinibuy Trading Core

Exception hierarchy shared by the venue client, strategies, scheduler
and reconciliation engine. Every class carries an ErrorCategory so the
ErrorHandler can route it without string matching.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error categories for routing and handling."""
    BROKER = "broker"           # Venue API errors
    AUTH = "auth"               # Credential / token errors
    EXECUTION = "execution"     # Order execution errors
    RECONCILIATION = "reconciliation"
    DATABASE = "database"       # Database errors
    NETWORK = "network"         # Network connectivity errors
    VALIDATION = "validation"   # Input validation errors
    SYSTEM = "system"           # System-level errors
    UNKNOWN = "unknown"         # Uncategorized errors


class TradingError(Exception):
    """Base class for all trading core errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(TradingError):
    """Bad strategy configuration."""
    category = ErrorCategory.VALIDATION


class PositionStateError(TradingError):
    """Operation not allowed in the position's current status."""
    category = ErrorCategory.VALIDATION


class CredentialMissingError(TradingError):
    """No venue credential for the account owner. The position is skipped."""
    category = ErrorCategory.AUTH

    def __init__(self, user_id: Any):
        super().__init__(f"No venue credential for user {user_id}", {"user_id": user_id})
        self.user_id = user_id


class TokenIssuanceThrottledError(TradingError):
    """A token was issued for this user too recently. Retried on the next tick."""
    category = ErrorCategory.AUTH

    def __init__(self, user_id: Any, retry_after: float):
        super().__init__(
            f"Token issuance for user {user_id} throttled, retry in {retry_after:.0f}s",
            {"user_id": user_id, "retry_after": retry_after},
        )
        self.user_id = user_id
        self.retry_after = retry_after


class TokenExpiredError(TradingError):
    """The venue rejected the bearer token."""
    category = ErrorCategory.AUTH


class VenueRejectedError(TradingError):
    """The venue returned a business error (rt_cd != 0)."""
    category = ErrorCategory.BROKER

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.code = code
        self.status = status


class RateLimitedError(VenueRejectedError):
    """Venue throttled the request (HTTP 429, EGW00201, EGW00202)."""


class NetworkFailureError(TradingError):
    """Transport failure or timeout talking to the venue."""
    category = ErrorCategory.NETWORK


class ReconciliationMismatchError(TradingError):
    """Order absent at the venue past its expiry threshold."""
    category = ErrorCategory.RECONCILIATION

    def __init__(self, order_id: Optional[str], reason: str):
        super().__init__(f"Order {order_id} not found at venue: {reason}", {"order_id": order_id})
        self.order_id = order_id
        self.reason = reason


class StrategyExecutionError(TradingError):
    """A strategy could not place any of its orders."""
    category = ErrorCategory.EXECUTION


__all__ = [
    "ErrorCategory",
    "TradingError",
    "ValidationError",
    "PositionStateError",
    "CredentialMissingError",
    "TokenIssuanceThrottledError",
    "TokenExpiredError",
    "VenueRejectedError",
    "RateLimitedError",
    "NetworkFailureError",
    "ReconciliationMismatchError",
    "StrategyExecutionError",
]
