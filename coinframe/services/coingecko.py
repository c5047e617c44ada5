"""
CoinGecko source fetcher.

CoinGeckoClient wraps the REST endpoints; CoinGeckoSource turns a subject
selector into the detail + chart pair a payload is built from. Neither
caches anything: caching belongs to the refresh coordinator.
"""

import asyncio
import random
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from coinframe.config import Settings
from coinframe.errors import UpstreamFetchFailed, UpstreamRateLimited
from coinframe.models import Coin, CoinDetail, MarketChart, SubjectSelector
from coinframe.utils.logging import get_logger

logger = get_logger(__name__)

_COIN_LIST = TypeAdapter(list[Coin])

# /coins/markets is paginated; one page of the category is plenty to draw from
MARKETS_PAGE_SIZE = 250


def _coin_path(coin_id: str) -> str:
    """Path for one coin, with the id confined to a single segment."""
    if coin_id in ("", ".", ".."):
        raise ValueError(f"Invalid coin id: {coin_id!r}")
    return f"/coins/{quote(coin_id, safe='')}"


def pick_random_coin(coins: list[Coin], rng: Optional[random.Random] = None) -> Optional[Coin]:
    """Pick one coin uniformly at random, or None for an empty list."""
    if not coins:
        return None
    return (rng or random).choice(coins)


class CoinGeckoClient:
    """Async CoinGecko REST client."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_wait: Optional[wait_base] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {"accept": "application/json"}
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "CoinGeckoClient":
        return cls(
            base_url=settings.coingecko_api_base,
            headers=settings.coingecko_headers(),
            timeout=settings.upstream_timeout,
            max_attempts=settings.upstream_max_attempts,
            **kwargs,
        )

    async def initialize(self) -> None:
        """Create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close connections."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _api_request(self, endpoint: str, **params) -> Any:
        """GET an endpoint, retrying only on rate limits."""
        if not self._http_client:
            await self.initialize()

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(UpstreamRateLimited),
            reraise=True,
        ):
            with attempt:
                return await self._request_once(endpoint, params)

    async def _request_once(self, endpoint: str, params: dict) -> Any:
        try:
            response = await self._http_client.get(endpoint, params=params or None)
        except httpx.TimeoutException as e:
            raise UpstreamFetchFailed(f"CoinGecko timeout on {endpoint}") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"CoinGecko transport error on {endpoint}: {e}") from e

        if response.status_code == 429:
            logger.warning("Rate limited by CoinGecko", endpoint=endpoint)
            raise UpstreamRateLimited("Rate limit exceeded", status_code=429)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchFailed(
                f"CoinGecko {endpoint} failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchFailed(f"CoinGecko {endpoint} returned invalid JSON") from e

    # ===================
    # Endpoints
    # ===================

    async def fetch_all_coins(self) -> list[Coin]:
        """Every coin CoinGecko knows about."""
        data = await self._api_request("/coins/list")
        return self._parse_coins(data, "/coins/list")

    async def fetch_coins_by_category(self, category: str) -> list[Coin]:
        """Top coins of a category, by market cap."""
        data = await self._api_request(
            "/coins/markets",
            vs_currency="usd",
            category=category,
            order="market_cap_desc",
            per_page=MARKETS_PAGE_SIZE,
            page=1,
        )
        return self._parse_coins(data, "/coins/markets")

    async def fetch_coin_details(self, coin_id: str) -> CoinDetail:
        data = await self._api_request(
            _coin_path(coin_id),
            localization="false",
            tickers="false",
            community_data="false",
            developer_data="false",
        )
        if not isinstance(data, dict):
            raise UpstreamFetchFailed(f"Unexpected detail shape for {coin_id}")

        market_data = data.get("market_data") or {}
        image = data.get("image") or {}
        try:
            return CoinDetail(
                id=data.get("id") or coin_id,
                symbol=data.get("symbol") or "",
                name=data.get("name") or coin_id,
                image_url=image.get("large") or image.get("small") or image.get("thumb"),
                price_usd=(market_data.get("current_price") or {}).get("usd"),
                market_cap_usd=(market_data.get("market_cap") or {}).get("usd"),
            )
        except ValidationError as e:
            raise UpstreamFetchFailed(f"Malformed detail for {coin_id}") from e

    async def fetch_market_chart(self, coin_id: str, days: int) -> MarketChart:
        data = await self._api_request(
            f"{_coin_path(coin_id)}/market_chart",
            vs_currency="usd",
            days=days,
        )
        if not isinstance(data, dict):
            raise UpstreamFetchFailed(f"Unexpected chart shape for {coin_id}")
        try:
            return MarketChart(days=days, prices=data.get("prices") or [])
        except ValidationError as e:
            raise UpstreamFetchFailed(f"Malformed chart for {coin_id}") from e

    @staticmethod
    def _parse_coins(data: Any, endpoint: str) -> list[Coin]:
        try:
            return _COIN_LIST.validate_python(data)
        except ValidationError as e:
            raise UpstreamFetchFailed(f"Malformed coin list from {endpoint}") from e


class CoinGeckoSource:
    """Source fetcher: selector in, (detail, chart) out."""

    def __init__(self, client: CoinGeckoClient, rng: Optional[random.Random] = None):
        self._client = client
        self._rng = rng

    async def close(self) -> None:
        await self._client.close()

    async def select_coin_id(self, selector: SubjectSelector) -> str:
        if selector.mode == "exact":
            return selector.coin_id

        if selector.category:
            coins = await self._client.fetch_coins_by_category(selector.category)
        else:
            coins = await self._client.fetch_all_coins()
        coin = pick_random_coin(coins, self._rng)
        if coin is None:
            raise UpstreamFetchFailed(f"No candidate coins in '{selector.category or 'all'}'")
        logger.info("Random coin selected", coin_id=coin.id, pool=len(coins))
        return coin.id

    async def fetch(self, selector: SubjectSelector) -> tuple[CoinDetail, MarketChart]:
        coin_id = await self.select_coin_id(selector)
        # Independent calls, so run them side by side
        detail, chart = await asyncio.gather(
            self._client.fetch_coin_details(coin_id),
            self._client.fetch_market_chart(coin_id, selector.chart_days),
        )
        return detail, chart
