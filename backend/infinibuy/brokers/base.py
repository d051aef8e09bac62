from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from functools import wraps
from typing import Awaitable, Callable, Iterable, List, Optional

from loguru import logger

from infinibuy.core.exceptions import TokenExpiredError
from infinibuy.db.models.trading import OrderSide, OrderType


@dataclass
class VenueCredential:
    """Decrypted credential handed over by the credential store."""
    user_id: int
    app_key: str
    app_secret: str
    account_no: str
    is_paper: bool = True
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    @property
    def identity(self) -> str:
        """Key used for rate limiting and cooldowns."""
        return self.app_key


@dataclass
class TokenInfo:
    access_token: str
    expires_at: datetime


@dataclass
class PriceQuote:
    ticker: str
    exchange: str
    current_price: float
    prev_close: float
    change: float = 0.0
    change_percent: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    volume: int = 0
    name: Optional[str] = None


@dataclass
class OrderResult:
    order_id: Optional[str]
    order_time: Optional[str] = None
    message: Optional[str] = None


@dataclass
class VenueOrder:
    """An order as reported by the venue's history or open-order listing."""
    order_id: str
    ticker: str
    side: OrderSide
    order_qty: int
    order_price: float
    exchange: str
    filled_qty: int = 0
    filled_price: float = 0.0
    remaining_qty: int = 0
    order_date: Optional[str] = None
    order_time: Optional[str] = None
    cancelled: bool = False

    @property
    def is_filled(self) -> bool:
        return self.filled_qty > 0


TokenRefreshCallback = Callable[[str, datetime], Awaitable[None]]


def with_token_refresh(func):
    """
    Retry a remote call once after reissuing an expired token.

    The wrapped method's instance must provide `refresh_token()`, which
    issues a new token and runs the registered refresh callback. A
    second TokenExpiredError, or any other error, propagates.
    """
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except TokenExpiredError as e:
            logger.info(f"Token expired during {func.__name__} ({e}), reissuing")
            await self.refresh_token()
            return await func(self, *args, **kwargs)
    return wrapper


class BaseVenueClient(ABC):
    """
    Abstract Base Class for venue clients.
    Ensures a unified interface for strategies and reconciliation.
    """

    @abstractmethod
    def is_token_valid(self, now: Optional[datetime] = None) -> bool:
        """Whether the in-memory token is usable, with safety buffer."""
        pass

    @abstractmethod
    async def get_access_token(self) -> TokenInfo:
        """Exchange app credentials for a bearer token."""
        pass

    @abstractmethod
    async def refresh_token(self) -> TokenInfo:
        """Issue a new token and notify the refresh callback."""
        pass

    @abstractmethod
    async def get_price(self, ticker: str, exchange: str = "NAS") -> PriceQuote:
        """Current quote, possibly served from a short-lived cache."""
        pass

    @abstractmethod
    async def place_order(
        self,
        side: OrderSide,
        ticker: str,
        quantity: int,
        price: float,
        exchange: str = "NAS",
        order_type: OrderType = OrderType.LIMIT,
    ) -> OrderResult:
        """Submit a buy or sell, limit or limit-on-close."""
        pass

    @abstractmethod
    async def get_filled_orders(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        dates: Optional[Iterable[date]] = None,
    ) -> List[VenueOrder]:
        """Order history (filled and unfilled) for a date range, or only for the given order dates."""
        pass

    @abstractmethod
    async def get_pending_orders(self) -> List[VenueOrder]:
        """Orders still open at the venue."""
        pass

    async def buy(self, ticker: str, quantity: int, price: float, exchange: str = "NAS",
                  order_type: OrderType = OrderType.LIMIT) -> OrderResult:
        return await self.place_order(OrderSide.BUY, ticker, quantity, price, exchange, order_type)

    async def sell(self, ticker: str, quantity: int, price: float, exchange: str = "NAS",
                   order_type: OrderType = OrderType.LIMIT) -> OrderResult:
        return await self.place_order(OrderSide.SELL, ticker, quantity, price, exchange, order_type)

    async def close(self) -> None:
        """Release network resources."""
        pass
