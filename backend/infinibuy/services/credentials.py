"""
Credential Store & Venue Sessions
Infinibuy Trading Core

The credential store is owned outside the core (encrypted at rest);
the core only reads decrypted credentials and writes back reissued
tokens. VenueSessionManager turns a user id into a ready-to-trade
venue client:

- one client per user, sharing the process-wide rate limiter and caches
- stored tokens are reused while valid
- new tokens are issued at most once per cooldown window per user
- every reissue is written back through the refresh callback
"""

import time
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from loguru import logger

from infinibuy.brokers.base import PriceQuote, VenueCredential
from infinibuy.brokers.kis import KISClient
from infinibuy.brokers.rate_limiter import RateLimiter
from infinibuy.core.cache import TTLCache
from infinibuy.core.config import VenueSettings, settings
from infinibuy.core.exceptions import CredentialMissingError, TokenIssuanceThrottledError


class CredentialStore(Protocol):
    async def get_credential(self, user_id: int) -> Optional[VenueCredential]:
        ...

    async def save_token(self, user_id: int, access_token: str, expires_at: datetime) -> None:
        ...


class InMemoryCredentialStore:
    """Credentials held in a dict. Tokens written back are kept alongside."""

    def __init__(self, credentials: Optional[Dict[int, VenueCredential]] = None):
        self._credentials: Dict[int, VenueCredential] = dict(credentials or {})

    def add(self, credential: VenueCredential) -> None:
        self._credentials[credential.user_id] = credential

    async def get_credential(self, user_id: int) -> Optional[VenueCredential]:
        return self._credentials.get(user_id)

    async def save_token(self, user_id: int, access_token: str, expires_at: datetime) -> None:
        credential = self._credentials.get(user_id)
        if credential is None:
            return
        credential.access_token = access_token
        credential.token_expires_at = expires_at


class SettingsCredentialStore(InMemoryCredentialStore):
    """Single account configured through KIS_* environment variables."""

    def __init__(self, config: Optional[VenueSettings] = None):
        config = config or settings.venue
        super().__init__()
        if config.is_configured:
            self.add(
                VenueCredential(
                    user_id=config.user_id,
                    app_key=config.app_key,
                    app_secret=config.app_secret,
                    account_no=config.account_no,
                    is_paper=config.is_paper,
                )
            )
        else:
            logger.warning("KIS credentials not configured; every position will be skipped")


ClientFactory = Callable[..., KISClient]


class VenueSessionManager:
    """
    Per-user venue clients with token reuse and issuance cooldown.

    Usage:
        sessions = VenueSessionManager(store)
        client = await sessions.get_client(position.user_id)
    """

    def __init__(
        self,
        store: CredentialStore,
        config: Optional[VenueSettings] = None,
        cooldown_seconds: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client_factory: ClientFactory = KISClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or settings.venue
        if cooldown_seconds is None:
            cooldown_seconds = settings.scheduler.token_cooldown_seconds

        self.rate_limiter = rate_limiter or RateLimiter(
            spacing_ms=self.config.request_spacing_ms,
            max_retries=self.config.rate_limit_max_retries,
            backoff_seconds=self.config.rate_limit_backoff_seconds,
        )
        self.price_cache: TTLCache[PriceQuote] = TTLCache(self.config.price_cache_ttl_seconds, clock=clock)
        self.ticker_cache: TTLCache[str] = TTLCache(self.config.ticker_cache_ttl_seconds, clock=clock)
        self.token_cooldowns: TTLCache[bool] = TTLCache(cooldown_seconds, clock=clock)

        self._client_factory = client_factory
        self._clients: Dict[int, KISClient] = {}

    async def get_credential(self, user_id: int) -> VenueCredential:
        credential = await self.store.get_credential(user_id)
        if credential is None:
            raise CredentialMissingError(user_id)
        return credential

    def _build_client(self, user_id: int, credential: VenueCredential) -> KISClient:
        client = self._client_factory(
            credential,
            rate_limiter=self.rate_limiter,
            price_cache=self.price_cache,
            ticker_cache=self.ticker_cache,
            config=self.config,
        )

        async def persist(access_token: str, expires_at: datetime) -> None:
            await self.store.save_token(user_id, access_token, expires_at)

        client.set_token_refresh_callback(persist)
        return client

    async def get_client(self, user_id: int, now: Optional[datetime] = None) -> KISClient:
        """
        Client holding a valid token for user_id.

        Raises:
            CredentialMissingError: no credential stored for the user
            TokenIssuanceThrottledError: a token was issued too recently
        """
        credential = await self.get_credential(user_id)

        client = self._clients.get(user_id)
        if client is None or client.credential.app_key != credential.app_key:
            if client is not None:
                await client.close()
            client = self._build_client(user_id, credential)
            self._clients[user_id] = client

        if (
            credential.access_token
            and credential.token_expires_at
            and credential.access_token != client.access_token
        ):
            client.set_access_token(credential.access_token, credential.token_expires_at)

        if client.is_token_valid(now):
            return client

        key = str(user_id)
        if key in self.token_cooldowns:
            raise TokenIssuanceThrottledError(user_id, self.token_cooldowns.remaining(key))

        self.token_cooldowns.set(key, True)
        logger.info(f"Issuing venue token for user {user_id}")
        await client.refresh_token()
        return client

    def has_valid_token(self, user_id: int, now: Optional[datetime] = None) -> bool:
        """Whether the cached client for user_id holds a usable token. No side effects."""
        client = self._clients.get(user_id)
        return client is not None and client.is_token_valid(now)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
