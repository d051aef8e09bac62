"""
Event Bus - Redis Streams Implementation
Infinibuy Trading Core

Publishes order, position, notification and error events to Redis
Streams so that external consumers (push delivery, dashboards) can
follow what the scheduler does without coupling to it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import uuid

from loguru import logger
import redis.asyncio as redis
from pydantic import BaseModel, Field

from infinibuy.core.config import RedisSettings, settings


# =============================================================================
# Event Types & Definitions
# =============================================================================

class EventType(str, Enum):
    """All event types in the system."""

    # Trading Events
    ORDER_PLACED = "order.placed"
    ORDER_FILLED = "order.filled"
    ORDER_UNFILLED = "order.unfilled"
    ORDER_CANCELLED = "order.cancelled"

    # Position Events
    POSITION_COMPLETED = "position.completed"

    # System Events
    NOTIFICATION = "notification.requested"
    ERROR_RAISED = "error.raised"
    JOB_COMPLETED = "scheduler.job_completed"


class EventPriority(int, Enum):
    """Event priority levels for processing order."""
    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    priority: EventPriority = EventPriority.NORMAL
    source: str = "infinibuy"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = True


class OrderEvent(BaseEvent):
    """Order lifecycle event."""
    event_type: EventType = EventType.ORDER_PLACED
    priority: EventPriority = EventPriority.HIGH

    position_id: int
    ticker: str
    side: str  # buy, sell
    order_type: str  # limit, loc
    quantity: int
    price: float
    status: str
    venue_order_id: Optional[str] = None


class NotificationEvent(BaseEvent):
    """Request to deliver a user-facing notification."""
    event_type: EventType = EventType.NOTIFICATION

    user_id: int
    title: str
    body: str
    tag: Optional[str] = None


class ErrorEvent(BaseEvent):
    """Error raised inside a scheduled job."""
    event_type: EventType = EventType.ERROR_RAISED
    priority: EventPriority = EventPriority.HIGH

    category: str
    severity: str
    message: str


# =============================================================================
# Event Bus Implementation
# =============================================================================

class EventBus:
    """
    Redis Streams based event publisher.

    When disabled in settings, events are only logged at DEBUG level so
    the trading core runs without a Redis server.
    """

    @staticmethod
    def _get_enum_value(val: Union[EventType, EventPriority, str, int]) -> str:
        """Safely get the string value from an enum or string."""
        if hasattr(val, 'value'):
            return str(val.value)
        return str(val)

    def __init__(self, config: Optional[RedisSettings] = None):
        config = config or settings.redis
        self.redis_url = config.url
        self.enabled = config.enabled
        self.stream_prefix = config.stream_prefix
        self.max_stream_length = config.stream_max_len

        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.enabled and self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info(f"Event bus connected to Redis: {self.redis_url}")

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Event bus disconnected from Redis")

    def _get_stream_name(self, event_type: Union[EventType, str]) -> str:
        """Get Redis stream name for event type."""
        return f"{self.stream_prefix}{self._get_enum_value(event_type)}"

    async def publish(self, event: BaseEvent) -> str:
        """
        Publish an event to the event bus.

        Returns:
            The Redis stream message ID, or an empty string when disabled
        """
        if not self.enabled:
            logger.debug(f"Event {self._get_enum_value(event.event_type)}: {event.event_id}")
            return ""

        if not self._redis:
            await self.connect()

        event_data = {
            "data": event.model_dump_json(),
            "event_type": self._get_enum_value(event.event_type),
            "timestamp": event.timestamp.isoformat(),
            "priority": self._get_enum_value(event.priority),
        }

        message_id = await self._redis.xadd(
            self._get_stream_name(event.event_type),
            event_data,
            maxlen=self.max_stream_length,
            approximate=True,
        )

        logger.debug(f"Published event {event.event_type}: {event.event_id} -> {message_id}")
        return message_id


# =============================================================================
# Global Instance
# =============================================================================

_event_bus: Optional[EventBus] = None


def get_event_bus_sync() -> EventBus:
    """Get or create the global event bus without connecting."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def get_event_bus() -> EventBus:
    """Get or create the global event bus instance with connection."""
    bus = get_event_bus_sync()
    await bus.connect()
    return bus


async def shutdown_event_bus() -> None:
    """Shutdown the global event bus."""
    global _event_bus
    if _event_bus:
        await _event_bus.disconnect()
        _event_bus = None


__all__ = [
    "EventType",
    "EventPriority",
    "BaseEvent",
    "OrderEvent",
    "NotificationEvent",
    "ErrorEvent",
    "EventBus",
    "get_event_bus",
    "get_event_bus_sync",
    "shutdown_event_bus",
]
