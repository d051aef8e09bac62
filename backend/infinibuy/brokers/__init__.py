"""
Venue Integrations
Infinibuy Trading Core

Korea Investment & Securities (KIS) open API for US equities:
    - KISClient: tokens, quotes, limit/LOC orders, order history
    - RateLimiter: per-credential spacing with rate-limit retries
"""

from infinibuy.brokers.base import (
    BaseVenueClient,
    OrderResult,
    PriceQuote,
    TokenInfo,
    VenueCredential,
    VenueOrder,
    with_token_refresh,
)
from infinibuy.brokers.kis import KISClient
from infinibuy.brokers.rate_limiter import RateLimiter


__all__ = [
    "BaseVenueClient",
    "OrderResult",
    "PriceQuote",
    "TokenInfo",
    "VenueCredential",
    "VenueOrder",
    "with_token_refresh",
    "KISClient",
    "RateLimiter",
]
