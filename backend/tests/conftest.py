"""
Test configuration and shared fixtures for Infinibuy tests.
"""

import itertools
from datetime import datetime, timezone
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from infinibuy.brokers.base import OrderResult, PriceQuote
from infinibuy.db.models.trading import Position, StrategyType
from infinibuy.db.session import init_db, make_session_context
from infinibuy.services.execution_log import ExecutionLogService


# =============================================================================
# Event Bus Mock
# =============================================================================

@pytest.fixture
def mock_event_bus():
    """Create a mock event bus for testing."""
    bus = AsyncMock()
    bus.publish = AsyncMock(return_value="")
    return bus


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite shared across sessions through a single connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """get_db_context-style factory bound to the test engine."""
    maker = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)
    return make_session_context(maker)


@pytest.fixture
def execution_log(session_factory):
    return ExecutionLogService(session_factory)


@pytest.fixture
def create_position(session_factory):
    """Insert a position and return it (detached, attributes loaded)."""

    async def _create(**overrides: Any) -> Position:
        values: Dict[str, Any] = dict(
            user_id=1,
            ticker="TQQQ",
            exchange="NAS",
            strategy=StrategyType.BASIC.value,
            status="buying",
            auto_enabled=True,
            buy_amount=1000.0,
            total_rounds=40,
            target_profit=10.0,
            buy_condition="daily",
            current_round=0,
            total_invested=0.0,
            total_quantity=0,
            avg_price=0.0,
        )
        values.update(overrides)
        async with session_factory() as session:
            position = Position(**values)
            session.add(position)
            await session.flush()
        return position

    return _create


@pytest.fixture
def get_position(session_factory):
    """Re-read a position from the database."""

    async def _get(position_id: int) -> Position:
        async with session_factory() as session:
            return await session.get(Position, position_id)

    return _get


# =============================================================================
# Venue Client Mock
# =============================================================================

def make_quote(price: float, prev_close: float = None, ticker: str = "TQQQ") -> PriceQuote:
    return PriceQuote(
        ticker=ticker,
        exchange="NAS",
        current_price=price,
        prev_close=prev_close if prev_close is not None else price,
    )


@pytest.fixture
def quote():
    """Factory for PriceQuote objects."""
    return make_quote


@pytest.fixture
def mock_client():
    """Venue client returning fixed quotes and sequential order ids."""
    counter = itertools.count(1)

    async def _place(side, ticker, quantity, price, exchange="NAS", order_type=None):
        return OrderResult(order_id=f"ORD{next(counter):04d}", order_time="093000")

    client = MagicMock()
    client.get_price = AsyncMock(return_value=make_quote(100.0))
    client.place_order = AsyncMock(side_effect=_place)
    client.get_filled_orders = AsyncMock(return_value=[])
    client.get_pending_orders = AsyncMock(return_value=[])
    client.is_token_valid = MagicMock(return_value=True)
    client.close = AsyncMock()
    return client


# =============================================================================
# Time Fixtures
# =============================================================================

@pytest.fixture
def trading_now():
    """Tuesday 2025-03-04 10:40 ET (EST), a regular trading day."""
    return datetime(2025, 3, 4, 15, 40, tzinfo=timezone.utc)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
