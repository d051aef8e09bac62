"""
KIS Overseas Stock Client
Infinibuy Trading Core

REST client for Korea Investment & Securities' US-equities endpoints:
- OAuth token issuance and silent reissue on expiry
- Per-credential pacing and rate-limit retry
- Quote lookups with a short-lived cache
- Hash-signed limit / limit-on-close order submission
- Order history and open-order listings across NASD/NYSE/AMEX
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp
from loguru import logger

from infinibuy.brokers.base import (
    BaseVenueClient,
    OrderResult,
    PriceQuote,
    TokenInfo,
    TokenRefreshCallback,
    VenueCredential,
    VenueOrder,
    with_token_refresh,
)
from infinibuy.brokers.rate_limiter import RateLimiter
from infinibuy.core.cache import TTLCache
from infinibuy.core.config import VenueSettings, settings
from infinibuy.core.exceptions import (
    NetworkFailureError,
    RateLimitedError,
    TokenExpiredError,
    ValidationError,
    VenueRejectedError,
)
from infinibuy.db.models.trading import OrderSide, OrderType
from infinibuy.services.market_calendar import KST


# Quote exchange code -> order exchange code
EXCHANGE_ORDER_CODES = {
    "NAS": "NASD",
    "NYS": "NYSE",
    "AMS": "AMEX",
}
ORDER_EXCHANGES = ["NASD", "NYSE", "AMEX"]
SEARCH_EXCHANGES = ["NAS", "NYS", "AMS"]

ORDER_TYPE_CODES = {
    OrderType.LIMIT: "00",
    OrderType.LOC: "34",
}

# (paper, live) transaction ids
TR_IDS = {
    "buy": ("VTTT1002U", "TTTT1002U"),
    "sell": ("VTTT1001U", "TTTT1001U"),
    "history": ("VTTS3035R", "TTTS3035R"),
    "pending": ("VTTS3018R", "TTTS3018R"),
}
PRICE_TR_ID = "HHDFS00000300"

RATE_LIMIT_CODES = {"EGW00201", "EGW00202"}
TOKEN_EXPIRED_CODE = "EGW00123"


def split_account_no(account_no: str) -> Tuple[str, str]:
    """'12345678-01' -> ('12345678', '01'); suffix defaults to '01'."""
    if "-" in account_no:
        prefix, _, suffix = account_no.partition("-")
        return prefix, suffix or "01"
    if len(account_no) == 10:
        return account_no[:8], account_no[8:]
    return account_no, "01"


def to_order_exchange(exchange: str) -> str:
    """Map a quote exchange code (NAS/NYS/AMS) to its order code."""
    if exchange in ORDER_EXCHANGES:
        return exchange
    return EXCHANGE_ORDER_CODES.get(exchange, "AMEX")


def is_token_expired_message(message: str, code: Optional[str] = None) -> bool:
    if code == TOKEN_EXPIRED_CODE or TOKEN_EXPIRED_CODE in message:
        return True
    lowered = message.lower()
    return "기간이 만료된 token" in message or ("token" in lowered and "만료" in message)


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _parse_venue_order(item: Dict[str, Any], exchange: str) -> VenueOrder:
    return VenueOrder(
        order_id=str(item.get("odno", "")),
        ticker=item.get("pdno", ""),
        side=OrderSide.SELL if item.get("sll_buy_dvsn_cd") == "01" else OrderSide.BUY,
        order_qty=_to_int(item.get("ft_ord_qty")),
        order_price=_to_float(item.get("ft_ord_unpr3")),
        exchange=exchange,
        filled_qty=_to_int(item.get("ft_ccld_qty")),
        filled_price=_to_float(item.get("ft_ccld_unpr3")),
        remaining_qty=_to_int(item.get("nccs_qty")),
        order_date=item.get("ord_dt"),
        order_time=item.get("ord_tmd"),
        cancelled=item.get("rvse_cncl_dvsn") == "02",
    )


class KISClient(BaseVenueClient):
    """
    KIS overseas-stock client bound to one credential.

    Usage:
        client = KISClient(credential, rate_limiter=limiter, price_cache=prices)
        client.set_token_refresh_callback(store.save_token)
        quote = await client.get_price("TQQQ", "NAS")
        result = await client.buy("TQQQ", 10, 51.23, "NAS", OrderType.LOC)
    """

    def __init__(
        self,
        credential: VenueCredential,
        rate_limiter: Optional[RateLimiter] = None,
        price_cache: Optional[TTLCache[PriceQuote]] = None,
        ticker_cache: Optional[TTLCache[str]] = None,
        config: Optional[VenueSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or settings.venue
        self.credential = credential
        self.base_url = self.config.paper_base_url if credential.is_paper else self.config.live_base_url
        self.account_prefix, self.account_suffix = split_account_no(credential.account_no)

        self.rate_limiter = rate_limiter or RateLimiter(
            spacing_ms=self.config.request_spacing_ms,
            max_retries=self.config.rate_limit_max_retries,
            backoff_seconds=self.config.rate_limit_backoff_seconds,
        )
        self.price_cache = price_cache if price_cache is not None else TTLCache(self.config.price_cache_ttl_seconds)
        self.ticker_cache = ticker_cache if ticker_cache is not None else TTLCache(self.config.ticker_cache_ttl_seconds)

        self._access_token = credential.access_token
        self._token_expires_at = credential.token_expires_at
        self._on_token_refresh: Optional[TokenRefreshCallback] = None

        self._session = session
        self._owns_session = session is None

    # =========================================================================
    # Token lifecycle
    # =========================================================================

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def token_expires_at(self) -> Optional[datetime]:
        return self._token_expires_at

    def set_access_token(self, token: str, expires_at: datetime) -> None:
        self._access_token = token
        self._token_expires_at = expires_at

    def set_token_refresh_callback(self, callback: TokenRefreshCallback) -> None:
        self._on_token_refresh = callback

    def is_token_valid(self, now: Optional[datetime] = None) -> bool:
        if not self._access_token or not self._token_expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        buffer = timedelta(minutes=self.config.token_buffer_minutes)
        return self._token_expires_at - buffer > now

    async def get_access_token(self) -> TokenInfo:
        """POST /oauth2/tokenP. Expiry is reported in KST."""
        body = {
            "grant_type": "client_credentials",
            "appkey": self.credential.app_key,
            "appsecret": self.credential.app_secret,
        }

        async def call() -> Dict[str, Any]:
            status, data = await self._send(
                "POST", "/oauth2/tokenP", headers={"Content-Type": "application/json"}, body=body
            )
            if status >= 400 or not data.get("access_token"):
                self._raise_for_error(status, data, default="Token issuance failed")
            return data

        data = await self.rate_limiter.execute(self.credential.identity, call)
        expires_at = datetime.strptime(
            data["access_token_token_expired"], "%Y-%m-%d %H:%M:%S"
        ).replace(tzinfo=KST)

        self.set_access_token(data["access_token"], expires_at)
        logger.info(f"KIS token issued for user {self.credential.user_id}, expires {expires_at.isoformat()}")
        return TokenInfo(access_token=data["access_token"], expires_at=expires_at)

    async def refresh_token(self) -> TokenInfo:
        """Issue a new token and hand it to the refresh callback."""
        info = await self.get_access_token()
        if self._on_token_refresh:
            try:
                await self._on_token_refresh(info.access_token, info.expires_at)
            except Exception as e:
                logger.error(f"Token refresh callback failed for user {self.credential.user_id}: {e}")
        return info

    async def _ensure_token(self) -> None:
        if not self.is_token_valid():
            await self.refresh_token()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            )
            self._owns_session = True
        return self._session

    def _headers(self, tr_id: str) -> Dict[str, str]:
        if not self._access_token:
            raise TokenExpiredError("No access token issued")
        return {
            "Content-Type": "application/json; charset=utf-8",
            "authorization": f"Bearer {self._access_token}",
            "appkey": self.credential.app_key,
            "appsecret": self.credential.app_secret,
            "tr_id": tr_id,
        }

    def _tr_id(self, name: str) -> str:
        paper, live = TR_IDS[name]
        return paper if self.credential.is_paper else live

    async def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                params=params,
                json=body,
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = {}
                return response.status, data or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailureError(f"{method} {path} failed: {e!r}") from e

    def _raise_for_error(self, status: int, data: Dict[str, Any], default: str = "Venue error") -> None:
        message = data.get("msg1") or data.get("error_description") or data.get("message") or ""
        code = data.get("msg_cd") or data.get("error_code")

        if status == 401 or is_token_expired_message(message, code):
            raise TokenExpiredError(message or "HTTP 401")
        if status == 429 or code in RATE_LIMIT_CODES or "rate limit" in message.lower():
            raise RateLimitedError(message or "Rate limited", code=code, status=status)
        raise VenueRejectedError(message or f"{default} (HTTP {status})", code=code, status=status)

    async def _request(
        self,
        method: str,
        path: str,
        tr_id: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        hashkey: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Authenticated, paced call. Raises on transport or venue errors."""

        async def call() -> Dict[str, Any]:
            headers = self._headers(tr_id)
            if hashkey:
                headers["hashkey"] = hashkey
            status, data = await self._send(method, path, headers, params=params, body=body)
            if status >= 400 or data.get("rt_cd", "0") != "0":
                self._raise_for_error(status, data)
            return data

        return await self.rate_limiter.execute(self.credential.identity, call)

    async def hashkey(self, body: Dict[str, Any]) -> str:
        """Sign an order body via POST /uapi/hashkey."""
        headers = {
            "Content-Type": "application/json",
            "appkey": self.credential.app_key,
            "appsecret": self.credential.app_secret,
        }

        async def call() -> str:
            status, data = await self._send("POST", "/uapi/hashkey", headers, body=body)
            if status >= 400 or not data.get("HASH"):
                self._raise_for_error(status, data, default="Hashkey generation failed")
            return data["HASH"]

        return await self.rate_limiter.execute(self.credential.identity, call)

    # =========================================================================
    # Quotes
    # =========================================================================

    async def get_price(self, ticker: str, exchange: str = "NAS") -> PriceQuote:
        cache_key = f"{ticker}:{exchange}"
        cached = self.price_cache.get(cache_key)
        if cached is not None:
            return cached

        quote = await self._fetch_price(ticker, exchange)
        self.price_cache.set(cache_key, quote)
        return quote

    @with_token_refresh
    async def _fetch_price(self, ticker: str, exchange: str) -> PriceQuote:
        await self._ensure_token()
        data = await self._request(
            "GET",
            "/uapi/overseas-price/v1/quotations/price",
            PRICE_TR_ID,
            params={"AUTH": "", "EXCD": exchange, "SYMB": ticker},
        )
        output = data.get("output") or {}
        return PriceQuote(
            ticker=ticker,
            exchange=exchange,
            current_price=_to_float(output.get("last")),
            prev_close=_to_float(output.get("base")),
            change=_to_float(output.get("diff")),
            change_percent=_to_float(output.get("rate")),
            open=_to_float(output.get("open")),
            high=_to_float(output.get("high")),
            low=_to_float(output.get("low")),
            volume=_to_int(output.get("tvol")),
            name=output.get("rsym"),
        )

    async def search_stock(self, ticker: str) -> PriceQuote:
        """Find which exchange lists ticker (NAS, then NYS, then AMS)."""
        known = self.ticker_cache.get(ticker)
        if known:
            return await self.get_price(ticker, known)

        for exchange in SEARCH_EXCHANGES:
            try:
                quote = await self.get_price(ticker, exchange)
            except VenueRejectedError:
                continue
            if quote.current_price > 0:
                self.ticker_cache.set(ticker, exchange)
                return quote

        raise VenueRejectedError(f"Ticker not found: {ticker}")

    # =========================================================================
    # Orders
    # =========================================================================

    @with_token_refresh
    async def place_order(
        self,
        side: OrderSide,
        ticker: str,
        quantity: int,
        price: float,
        exchange: str = "NAS",
        order_type: OrderType = OrderType.LIMIT,
    ) -> OrderResult:
        if quantity < 1:
            raise ValidationError(f"Order quantity must be at least 1, got {quantity}")
        if price <= 0:
            raise ValidationError(f"Order price must be positive, got {price}")

        await self._ensure_token()

        body = {
            "CANO": self.account_prefix,
            "ACNT_PRDT_CD": self.account_suffix,
            "OVRS_EXCG_CD": to_order_exchange(exchange),
            "PDNO": ticker,
            "ORD_QTY": str(quantity),
            "OVRS_ORD_UNPR": f"{price:.2f}",
            "ORD_SVR_DVSN_CD": "0",
            "ORD_DVSN": ORDER_TYPE_CODES[order_type],
        }
        if side == OrderSide.SELL:
            body["SLL_TYPE"] = "00"

        signature = await self.hashkey(body)
        data = await self._request(
            "POST",
            "/uapi/overseas-stock/v1/trading/order",
            self._tr_id(side.value),
            body=body,
            hashkey=signature,
        )
        output = data.get("output") or {}
        result = OrderResult(
            order_id=output.get("ODNO"),
            order_time=output.get("ORD_TMD"),
            message=data.get("msg1"),
        )
        logger.info(
            f"{side.value.upper()} {order_type.value} {ticker} {quantity}@{price:.2f} -> order {result.order_id}"
        )
        return result

    @with_token_refresh
    async def get_filled_orders(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        dates: Optional[Iterable[date]] = None,
    ) -> List[VenueOrder]:
        """
        Order history for every exchange and every day in [start, end].

        Dates are KST order dates; the default window is the configured
        lookback ending today. With `dates`, only those distinct days
        are queried and the range is ignored.
        """
        await self._ensure_token()

        if dates is not None:
            days = sorted(set(dates))
            if not days:
                return []
            start, end = days[0], days[-1]
        else:
            end = end or datetime.now(KST).date()
            start = start or end - timedelta(days=self.config.fill_lookback_days - 1)
            days = [start + timedelta(days=i) for i in range((end - start).days + 1)]

        orders: Dict[str, VenueOrder] = {}
        for exchange in ORDER_EXCHANGES:
            for day in days:
                data = await self._request(
                    "GET",
                    "/uapi/overseas-stock/v1/trading/inquire-ccnl",
                    self._tr_id("history"),
                    params={
                        "CANO": self.account_prefix,
                        "ACNT_PRDT_CD": self.account_suffix,
                        "PDNO": "%",
                        "ORD_DT": day.strftime("%Y%m%d"),
                        "ORD_STRT_DT": start.strftime("%Y%m%d"),
                        "ORD_END_DT": end.strftime("%Y%m%d"),
                        "ORD_GNO_BRNO": "",
                        "ODNO": "",
                        "SLL_BUY_DVSN": "00",
                        "SLL_BUY_DVSN_CD": "00",
                        "CCLD_NCCS_DVSN": "00",
                        "OVRS_EXCG_CD": exchange,
                        "SORT_SQN": "DS",
                        "CTX_AREA_FK200": "",
                        "CTX_AREA_NK200": "",
                    },
                )
                for item in data.get("output") or []:
                    order = _parse_venue_order(item, exchange)
                    if order.order_id:
                        orders[order.order_id] = order

        logger.debug(f"Order history {start}..{end}: {len(orders)} orders")
        return list(orders.values())

    @with_token_refresh
    async def get_pending_orders(self) -> List[VenueOrder]:
        await self._ensure_token()

        orders: List[VenueOrder] = []
        for exchange in ORDER_EXCHANGES:
            data = await self._request(
                "GET",
                "/uapi/overseas-stock/v1/trading/inquire-nccs",
                self._tr_id("pending"),
                params={
                    "CANO": self.account_prefix,
                    "ACNT_PRDT_CD": self.account_suffix,
                    "OVRS_EXCG_CD": exchange,
                    "SORT_SQN": "DS",
                    "CTX_AREA_FK200": "",
                    "CTX_AREA_NK200": "",
                },
            )
            orders.extend(_parse_venue_order(item, exchange) for item in data.get("output") or [])

        logger.debug(f"Open orders: {len(orders)}")
        return orders

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
