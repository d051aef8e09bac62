"""
Notifier
Infinibuy Trading Core

Fire-and-forget user notifications. Delivery (push, email) happens
outside the core; here a message is either published to the event bus
for a delivery worker or just logged. Send failures are logged and
never reach the trading path.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from infinibuy.core.events import EventBus, NotificationEvent, get_event_bus_sync


@dataclass
class NotificationMessage:
    title: str
    body: str
    tag: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, user_id: int, message: NotificationMessage) -> None:
        ...


class LogNotifier:
    """Writes notifications to the log only."""

    async def send(self, user_id: int, message: NotificationMessage) -> None:
        logger.info(f"Notify user {user_id}: {message.title} - {message.body}")


class EventBusNotifier:
    """Publishes a NotificationEvent per message."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or get_event_bus_sync()

    async def send(self, user_id: int, message: NotificationMessage) -> None:
        try:
            await self.event_bus.publish(
                NotificationEvent(
                    user_id=user_id,
                    title=message.title,
                    body=message.body,
                    tag=message.tag,
                    metadata=message.metadata,
                )
            )
        except Exception as e:
            logger.warning(f"Failed to publish notification for user {user_id}: {e}")


async def notify_safely(notifier: Optional[Notifier], user_id: int, message: NotificationMessage) -> None:
    """Send through any notifier without letting its failure propagate."""
    if notifier is None:
        return
    try:
        await notifier.send(user_id, message)
    except Exception as e:
        logger.warning(f"Notification to user {user_id} failed: {e}")
