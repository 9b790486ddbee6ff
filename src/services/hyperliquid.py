"""Hyperliquid Info API Client - Coin universe lookup.

Subscriptions are only offered for coins Hyperliquid lists. The universe
comes from the ``metaAndAssetCtxs`` info request and is cached for
``cache_ttl`` seconds; delisted assets are left out.
"""

import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from src.config.settings import get_settings
from src.core.errors import TerminalError, TransientError
from src.utils.logger import get_logger

logger = get_logger(__name__)


class CoinDirectory(Protocol):
    """Anything able to tell whether a coin is listed."""

    async def coin_exists(self, coin: str) -> bool: ...


def parse_universe(body: Any) -> set[str]:
    """Extract the listed coin names from a metaAndAssetCtxs response.

    Args:
        body: Decoded JSON body, a list holding the meta object first.

    Returns:
        Uppercase names of the assets that are not delisted.

    Raises:
        TerminalError: The body has no ``universe``.
    """
    if not isinstance(body, list):
        raise TerminalError("hyperliquid: unexpected response", reason="bad_response")

    meta = next(
        (item for item in body if isinstance(item, dict) and "universe" in item),
        None,
    )
    if meta is None:
        raise TerminalError("hyperliquid: no universe in response", reason="bad_response")

    return {
        str(asset["name"]).upper()
        for asset in meta["universe"]
        if isinstance(asset, dict) and asset.get("name") and not asset.get("isDelisted")
    }


class HyperliquidClient:
    """Client for the Hyperliquid info endpoint.

    Only the coin universe is fetched; market data streams are not used.
    """

    def __init__(
        self,
        base_url: str | None = None,
        cache_ttl: float | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: REST API base URL.
            cache_ttl: Seconds before the coin universe is fetched again.
            timeout: Request timeout in seconds.
            transport: Custom httpx transport (tests).
            clock: Monotonic clock.
        """
        settings = get_settings()
        self.base_url = (base_url or settings.hyperliquid_api_url).rstrip("/")
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.coin_cache_ttl
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._coins: set[str] | None = None
        self._fetched_at: float | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    @property
    def cache_fresh(self) -> bool:
        if self._coins is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self.cache_ttl

    async def fetch_coins(self) -> set[str]:
        """Fetch the coin universe and refresh the cache.

        Raises:
            TransientError: Timeout, connection error, 429 or 5xx.
            TerminalError: Any other rejection or a malformed body.
        """
        logger.info("hyperliquid_fetch_coins")
        client = await self._get_client()
        try:
            response = await client.post("/info", json={"type": "metaAndAssetCtxs"})
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError(f"hyperliquid: {type(e).__name__}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(f"hyperliquid error {status}")
        if status >= 400:
            raise TerminalError(
                f"hyperliquid rejected request ({status})",
                reason=f"hyperliquid_{status}",
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TerminalError("hyperliquid: body is not JSON", reason="bad_response") from e

        coins = parse_universe(body)
        self._coins = coins
        self._fetched_at = self._clock()
        logger.info("hyperliquid_coins_fetched", count=len(coins))
        return coins

    async def coin_exists(self, coin: str) -> bool:
        """Check a coin against the cached universe, refreshing it when stale."""
        coins = self._coins if self.cache_fresh else await self.fetch_coins()
        exists = coin.upper() in (coins or set())
        if not exists:
            logger.info("coin_not_listed", coin=coin.upper())
        return exists

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
