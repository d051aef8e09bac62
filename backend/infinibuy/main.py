"""
Infinibuy Trading Core - Service Entry Point

Wires the pieces together and runs the scheduler until interrupted:

    SettingsCredentialStore
        ↓
    VenueSessionManager (per-user KIS clients, token cooldown)
        ↓
    TradingScheduler (APScheduler cron triggers)
        ↓
    Basic / LOC split / Value-rebalancing strategies + ReconciliationEngine

Run with:
    python -m infinibuy.main
"""

import asyncio
import signal
from typing import Optional

from loguru import logger

from infinibuy.core.config import settings
from infinibuy.core.events import get_event_bus, shutdown_event_bus
from infinibuy.core.logging import setup_logging
from infinibuy.db.session import close_db, health_check, init_db
from infinibuy.execution.scheduler import TradingScheduler
from infinibuy.services.credentials import CredentialStore, SettingsCredentialStore, VenueSessionManager
from infinibuy.services.notifier import EventBusNotifier


class TradingService:
    """Owns the long-lived components for one process."""

    def __init__(self, store: Optional[CredentialStore] = None):
        self.store = store or SettingsCredentialStore()
        self.sessions: Optional[VenueSessionManager] = None
        self.scheduler: Optional[TradingScheduler] = None

    async def start(self) -> None:
        logger.info(f"Starting {settings.PROJECT_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

        await init_db()
        if not await health_check():
            logger.warning("Database health check failed; jobs will retry on their next trigger")

        event_bus = await get_event_bus()
        self.sessions = VenueSessionManager(self.store)
        self.scheduler = TradingScheduler(
            self.sessions,
            notifier=EventBusNotifier(event_bus),
            event_bus=event_bus,
        )
        self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown()
        if self.sessions:
            await self.sessions.close()
        await shutdown_event_bus()
        await close_db()
        logger.info("Trading service stopped")


async def run() -> None:
    setup_logging()
    service = TradingService()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await service.start()
    try:
        await stop.wait()
    finally:
        await service.stop()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
