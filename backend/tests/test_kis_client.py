"""
Tests for the KIS overseas-stock client.

HTTP is replaced at the `_send` seam so the request/response handling,
token lifecycle and parsing run for real.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from infinibuy.brokers.base import VenueCredential
from infinibuy.brokers.kis import (
    KISClient,
    is_token_expired_message,
    split_account_no,
    to_order_exchange,
)
from infinibuy.brokers.rate_limiter import RateLimiter
from infinibuy.core.exceptions import (
    RateLimitedError,
    TokenExpiredError,
    ValidationError,
    VenueRejectedError,
)
from infinibuy.db.models.trading import OrderSide, OrderType
from infinibuy.services.market_calendar import KST


PRICE_OUTPUT = {
    "rt_cd": "0",
    "output": {
        "last": "51.23",
        "base": "50.00",
        "diff": "1.23",
        "rate": "2.46",
        "open": "50.10",
        "high": "51.50",
        "low": "49.80",
        "tvol": "1234567",
        "rsym": "DNASTQQQ",
    },
}


class FakeVenue:
    """Routes `_send` calls by path and records them."""

    def __init__(self):
        self.calls = []
        self.routes = {}

    def route(self, path, *responses):
        self.routes[path] = list(responses)

    async def __call__(self, method, path, headers, params=None, body=None):
        self.calls.append({"method": method, "path": path, "headers": headers, "params": params, "body": body})
        responses = self.routes[path]
        return responses.pop(0) if len(responses) > 1 else responses[0]

    def paths(self):
        return [c["path"] for c in self.calls]


@pytest.fixture
def credential():
    return VenueCredential(
        user_id=7,
        app_key="APPKEY123",
        app_secret="SECRET",
        account_no="12345678-01",
        is_paper=True,
        access_token="TOKEN",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=12),
    )


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def client(credential, venue):
    limiter = RateLimiter(spacing_ms=0, sleep=AsyncMock())
    kis = KISClient(credential, rate_limiter=limiter)
    kis._send = venue
    return kis


class TestHelpers:
    """Module-level helpers."""

    def test_split_account_no(self):
        """Account numbers split into 8-digit prefix and product code."""
        assert split_account_no("12345678-01") == ("12345678", "01")
        assert split_account_no("1234567822") == ("12345678", "22")
        assert split_account_no("12345678") == ("12345678", "01")

    def test_order_exchange(self):
        """Quote exchange codes map to order exchange codes."""
        assert to_order_exchange("NAS") == "NASD"
        assert to_order_exchange("NYS") == "NYSE"
        assert to_order_exchange("AMS") == "AMEX"
        assert to_order_exchange("NASD") == "NASD"

    def test_token_expired_message(self):
        """Expired-token responses are recognised by code or text."""
        assert is_token_expired_message("", "EGW00123")
        assert is_token_expired_message("기간이 만료된 token 입니다.")
        assert not is_token_expired_message("주문가능금액을 초과 했습니다", "APBK0952")


class TestToken:
    """Token issuance and validity."""

    @pytest.mark.asyncio
    async def test_issue_token(self, client, venue):
        """Expiry is parsed as KST and stored on the client."""
        venue.route("/oauth2/tokenP", (200, {
            "access_token": "NEWTOKEN",
            "access_token_token_expired": "2025-03-05 09:00:00",
        }))
        info = await client.get_access_token()
        assert info.access_token == "NEWTOKEN"
        assert info.expires_at == datetime(2025, 3, 5, 9, 0, tzinfo=KST)
        assert client.access_token == "NEWTOKEN"

    @pytest.mark.asyncio
    async def test_issue_token_failure(self, client, venue):
        """A response without a token is a venue rejection."""
        venue.route("/oauth2/tokenP", (403, {"error_description": "접근토큰 발급 잠시 후 다시 시도하세요", "error_code": "EGW00133"}))
        with pytest.raises(VenueRejectedError):
            await client.get_access_token()

    def test_is_token_valid_buffer(self, client):
        """Tokens inside the safety buffer count as expired."""
        now = datetime(2025, 3, 4, tzinfo=timezone.utc)
        client.set_access_token("T", now + timedelta(minutes=5))
        assert not client.is_token_valid(now)
        client.set_access_token("T", now + timedelta(minutes=30))
        assert client.is_token_valid(now)

    @pytest.mark.asyncio
    async def test_reissue_on_expired_token(self, client, venue):
        """An expired-token response triggers one reissue and a retry."""
        venue.route(
            "/uapi/overseas-price/v1/quotations/price",
            (500, {"rt_cd": "1", "msg_cd": "EGW00123", "msg1": "기간이 만료된 token 입니다."}),
            (200, PRICE_OUTPUT),
        )
        venue.route("/oauth2/tokenP", (200, {
            "access_token": "FRESH",
            "access_token_token_expired": "2099-01-01 00:00:00",
        }))
        callback = AsyncMock()
        client.set_token_refresh_callback(callback)

        quote = await client.get_price("TQQQ", "NAS")

        assert quote.current_price == 51.23
        callback.assert_awaited_once()
        assert callback.await_args.args[0] == "FRESH"
        assert venue.paths().count("/oauth2/tokenP") == 1
        assert venue.calls[-1]["headers"]["authorization"] == "Bearer FRESH"


class TestQuotes:
    """Price lookups."""

    @pytest.mark.asyncio
    async def test_get_price_parses_and_caches(self, client, venue):
        """The quote is parsed and served from cache the second time."""
        venue.route("/uapi/overseas-price/v1/quotations/price", (200, PRICE_OUTPUT))

        quote = await client.get_price("TQQQ", "NAS")
        again = await client.get_price("TQQQ", "NAS")

        assert quote.current_price == 51.23
        assert quote.prev_close == 50.0
        assert quote.volume == 1234567
        assert again is quote
        assert len(venue.calls) == 1
        assert venue.calls[0]["params"]["EXCD"] == "NAS"
        assert venue.calls[0]["headers"]["tr_id"] == "HHDFS00000300"

    @pytest.mark.asyncio
    async def test_rate_limited_response(self, client, venue):
        """EGW00201 is surfaced as a rate-limit error after retries."""
        venue.route(
            "/uapi/overseas-price/v1/quotations/price",
            (500, {"rt_cd": "1", "msg_cd": "EGW00201", "msg1": "초당 거래건수를 초과하였습니다."}),
        )
        with pytest.raises(RateLimitedError):
            await client.get_price("TQQQ", "NAS")
        assert len(venue.calls) == 4

    @pytest.mark.asyncio
    async def test_search_stock_falls_through_exchanges(self, client, venue):
        """A ticker missing on NAS is found on NYS and remembered."""

        async def send(method, path, headers, params=None, body=None):
            venue.calls.append({"path": path, "params": params})
            if params["EXCD"] == "NAS":
                return 200, {"rt_cd": "1", "msg1": "없는 종목"}
            return 200, PRICE_OUTPUT

        client._send = send
        quote = await client.search_stock("SPY")
        assert quote.exchange == "NYS"
        assert client.ticker_cache.get("SPY") == "NYS"


class TestOrders:
    """Order submission and listings."""

    @pytest.mark.asyncio
    async def test_place_loc_buy(self, client, venue):
        """LOC buys are hash-signed and sent with the paper buy TR id."""
        venue.route("/uapi/hashkey", (200, {"HASH": "abc123"}))
        venue.route("/uapi/overseas-stock/v1/trading/order", (200, {
            "rt_cd": "0",
            "msg1": "주문 전송 완료 되었습니다.",
            "output": {"ODNO": "0030138295", "ORD_TMD": "101500"},
        }))

        result = await client.buy("TQQQ", 10, 51.234, "NAS", OrderType.LOC)

        assert result.order_id == "0030138295"
        order_call = venue.calls[-1]
        assert order_call["headers"]["tr_id"] == "VTTT1002U"
        assert order_call["headers"]["hashkey"] == "abc123"
        assert order_call["body"]["ORD_DVSN"] == "34"
        assert order_call["body"]["OVRS_EXCG_CD"] == "NASD"
        assert order_call["body"]["OVRS_ORD_UNPR"] == "51.23"
        assert order_call["body"]["CANO"] == "12345678"
        assert "SLL_TYPE" not in order_call["body"]

    @pytest.mark.asyncio
    async def test_place_limit_sell(self, client, venue):
        """Sells carry SLL_TYPE and the sell TR id."""
        venue.route("/uapi/hashkey", (200, {"HASH": "h"}))
        venue.route("/uapi/overseas-stock/v1/trading/order", (200, {"rt_cd": "0", "output": {"ODNO": "1"}}))

        await client.sell("SOXL", 3, 30.0, "AMS", OrderType.LIMIT)

        body = venue.calls[-1]["body"]
        assert venue.calls[-1]["headers"]["tr_id"] == "VTTT1001U"
        assert body["SLL_TYPE"] == "00"
        assert body["ORD_DVSN"] == "00"
        assert body["OVRS_EXCG_CD"] == "AMEX"

    @pytest.mark.asyncio
    async def test_place_order_rejected(self, client, venue):
        """A business rejection raises with the venue's message code."""
        venue.route("/uapi/hashkey", (200, {"HASH": "h"}))
        venue.route("/uapi/overseas-stock/v1/trading/order", (200, {
            "rt_cd": "1",
            "msg_cd": "APBK0952",
            "msg1": "주문가능금액을 초과 했습니다",
        }))
        with pytest.raises(VenueRejectedError) as exc:
            await client.buy("TQQQ", 10, 50.0)
        assert exc.value.code == "APBK0952"

    @pytest.mark.asyncio
    async def test_place_order_validation(self, client, venue):
        """Zero quantity or non-positive price never reaches the venue."""
        with pytest.raises(ValidationError):
            await client.place_order(OrderSide.BUY, "TQQQ", 0, 50.0)
        with pytest.raises(ValidationError):
            await client.place_order(OrderSide.BUY, "TQQQ", 1, 0)
        assert venue.calls == []

    @pytest.mark.asyncio
    async def test_filled_orders_deduplicated(self, client, venue):
        """History is queried per exchange and merged by order id."""
        item = {
            "odno": "0030138295",
            "pdno": "TQQQ",
            "sll_buy_dvsn_cd": "02",
            "ft_ord_qty": "10",
            "ft_ord_unpr3": "51.23",
            "ft_ccld_qty": "10",
            "ft_ccld_unpr3": "51.10",
            "nccs_qty": "0",
            "ord_dt": "20250304",
            "ord_tmd": "101500",
            "rvse_cncl_dvsn": "00",
        }
        venue.route("/uapi/overseas-stock/v1/trading/inquire-ccnl", (200, {"rt_cd": "0", "output": [item]}))

        day = date(2025, 3, 4)
        orders = await client.get_filled_orders(day, day)

        assert len(venue.calls) == 3
        assert [c["params"]["OVRS_EXCG_CD"] for c in venue.calls] == ["NASD", "NYSE", "AMEX"]
        assert len(orders) == 1
        order = orders[0]
        assert order.side == OrderSide.BUY
        assert order.filled_qty == 10
        assert order.filled_price == 51.10
        assert order.is_filled
        assert not order.cancelled

    @pytest.mark.asyncio
    async def test_history_for_distinct_dates(self, client, venue):
        """Only the listed order dates are queried, however far apart."""
        venue.route("/uapi/overseas-stock/v1/trading/inquire-ccnl", (200, {"rt_cd": "0", "output": []}))

        first, last = date(2025, 1, 6), date(2025, 3, 4)
        await client.get_filled_orders(dates=[last, first, last])

        assert len(venue.calls) == 6
        assert {c["params"]["ORD_DT"] for c in venue.calls} == {"20250106", "20250304"}

        venue.calls.clear()
        assert await client.get_filled_orders(dates=[]) == []
        assert venue.calls == []

    @pytest.mark.asyncio
    async def test_pending_orders(self, client, venue):
        """Open orders are collected from every exchange."""
        venue.route("/uapi/overseas-stock/v1/trading/inquire-nccs", (200, {
            "rt_cd": "0",
            "output": [{"odno": "1", "pdno": "TQQQ", "sll_buy_dvsn_cd": "01", "ft_ord_qty": "5", "nccs_qty": "5"}],
        }))
        orders = await client.get_pending_orders()
        assert len(orders) == 3
        assert orders[0].side == OrderSide.SELL
        assert orders[0].remaining_qty == 5
        assert venue.calls[0]["headers"]["tr_id"] == "VTTS3018R"

    @pytest.mark.asyncio
    async def test_missing_token_is_issued(self, credential, venue):
        """Without any token, the first call issues one."""
        credential.access_token = None
        credential.token_expires_at = None
        kis = KISClient(credential, rate_limiter=RateLimiter(spacing_ms=0, sleep=AsyncMock()))
        kis._send = venue
        venue.route("/oauth2/tokenP", (200, {
            "access_token": "ISSUED",
            "access_token_token_expired": "2099-01-01 00:00:00",
        }))
        venue.route("/uapi/overseas-price/v1/quotations/price", (200, PRICE_OUTPUT))

        await kis.get_price("TQQQ")

        assert venue.paths() == ["/oauth2/tokenP", "/uapi/overseas-price/v1/quotations/price"]


class TestErrorMapping:
    """HTTP and body errors map onto the error taxonomy."""

    def test_401_is_token_expired(self, client):
        with pytest.raises(TokenExpiredError):
            client._raise_for_error(401, {})

    def test_429_is_rate_limited(self, client):
        with pytest.raises(RateLimitedError):
            client._raise_for_error(429, {})

    def test_other_is_rejected(self, client):
        with pytest.raises(VenueRejectedError) as exc:
            client._raise_for_error(500, {"msg1": "boom", "msg_cd": "X1"})
        assert not isinstance(exc.value, RateLimitedError)
        assert exc.value.code == "X1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
