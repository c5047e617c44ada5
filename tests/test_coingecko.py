"""
Tests for the CoinGecko source fetcher, against a mocked transport.
"""

import random

import httpx
import pytest
from tenacity import wait_none

from coinframe.errors import UpstreamFetchFailed, UpstreamRateLimited
from coinframe.models import Coin, SubjectSelector
from coinframe.services.coingecko import CoinGeckoClient, CoinGeckoSource, pick_random_coin


DETAIL = {
    "id": "higher",
    "symbol": "higher",
    "name": "Higher",
    "image": {"large": "https://img/large.png", "small": "https://img/small.png"},
    "market_data": {
        "current_price": {"usd": 0.0123},
        "market_cap": {"usd": 12345678},
    },
}

CHART = {"prices": [[1700000000000, 0.01], [1700003600000, 0.012]]}

MARKETS = [
    {"id": "degen-base", "symbol": "degen", "name": "Degen", "current_price": 0.01},
    {"id": "brett", "symbol": "brett", "name": "Brett", "current_price": 0.1},
]


def make_client(handler, **kwargs) -> CoinGeckoClient:
    return CoinGeckoClient(
        base_url="https://api.coingecko.test/api/v3",
        transport=httpx.MockTransport(handler),
        retry_wait=wait_none(),
        **kwargs,
    )


def routes(requests: list):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path.endswith("/coins/markets"):
            return httpx.Response(200, json=MARKETS)
        if path.endswith("/coins/list"):
            return httpx.Response(200, json=[{"id": "bitcoin", "symbol": "btc", "name": "Bitcoin"}])
        if path.endswith("/market_chart"):
            return httpx.Response(200, json=CHART)
        if "/coins/" in path:
            coin_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={**DETAIL, "id": coin_id})
        return httpx.Response(404)
    return handler


class TestPickRandomCoin:
    """Random subject selection."""

    def test_empty(self):
        assert pick_random_coin([]) is None

    def test_picks_from_list(self):
        coins = [Coin(id=str(i), symbol="s", name="n") for i in range(5)]
        rng = random.Random(42)
        for _ in range(20):
            assert pick_random_coin(coins, rng) in coins


class TestCoinGeckoClient:
    """Endpoint parsing and error mapping."""

    async def test_fetch_coin_details(self):
        requests = []
        client = make_client(routes(requests))

        detail = await client.fetch_coin_details("higher")
        await client.close()

        assert detail.id == "higher"
        assert detail.name == "Higher"
        assert detail.image_url == "https://img/large.png"
        assert detail.price_usd == 0.0123
        assert detail.market_cap_usd == 12345678
        assert requests[0].url.params["tickers"] == "false"

    @pytest.mark.parametrize(
        "coin_id, segment",
        [
            ("../../exchanges?x=", b"..%2F..%2Fexchanges%3Fx%3D"),
            ("bitcoin/tickers#", b"bitcoin%2Ftickers%23"),
        ],
    )
    async def test_coin_id_stays_in_one_path_segment(self, coin_id, segment):
        requests = []
        client = make_client(routes(requests))

        await client.fetch_coin_details(coin_id)
        await client.fetch_market_chart(coin_id, 7)

        assert requests[0].url.raw_path.split(b"?")[0] == b"/api/v3/coins/" + segment
        assert requests[1].url.raw_path.split(b"?")[0] == b"/api/v3/coins/" + segment + b"/market_chart"
        assert "x" not in requests[0].url.params

    @pytest.mark.parametrize("coin_id", ["", ".", ".."])
    async def test_dot_segment_ids_rejected(self, coin_id):
        requests = []
        client = make_client(routes(requests))
        with pytest.raises(ValueError):
            await client.fetch_coin_details(coin_id)
        assert requests == []

    async def test_fetch_detail_without_market_data(self):
        def handler(request):
            return httpx.Response(200, json={"id": "x", "symbol": "x", "name": "X"})

        client = make_client(handler)
        detail = await client.fetch_coin_details("x")
        assert detail.price_usd is None
        assert detail.market_cap_usd is None
        assert detail.image_url is None

    async def test_fetch_market_chart(self):
        requests = []
        client = make_client(routes(requests))

        chart = await client.fetch_market_chart("higher", 7)

        assert chart.days == 7
        assert chart.values == [0.01, 0.012]
        assert requests[0].url.params["vs_currency"] == "usd"
        assert requests[0].url.params["days"] == "7"

    async def test_fetch_coins_by_category(self):
        requests = []
        client = make_client(routes(requests))

        coins = await client.fetch_coins_by_category("base-meme-coins")

        assert [c.id for c in coins] == ["degen-base", "brett"]
        assert requests[0].url.params["category"] == "base-meme-coins"

    async def test_fetch_all_coins(self):
        client = make_client(routes([]))
        coins = await client.fetch_all_coins()
        assert coins == [Coin(id="bitcoin", symbol="btc", name="Bitcoin")]

    async def test_sends_api_key_header(self):
        requests = []
        client = make_client(
            routes(requests),
            headers={"accept": "application/json", "x-cg-demo-api-key": "demo"},
        )
        await client.fetch_all_coins()
        assert requests[0].headers["x-cg-demo-api-key"] == "demo"

    async def test_http_error(self):
        client = make_client(lambda request: httpx.Response(500))
        with pytest.raises(UpstreamFetchFailed) as exc_info:
            await client.fetch_all_coins()
        assert exc_info.value.status_code == 500

    async def test_malformed_list(self):
        client = make_client(lambda request: httpx.Response(200, json={"error": "nope"}))
        with pytest.raises(UpstreamFetchFailed):
            await client.fetch_all_coins()

    async def test_malformed_chart(self):
        client = make_client(lambda request: httpx.Response(200, json={"prices": [["a", "b"]]}))
        with pytest.raises(UpstreamFetchFailed):
            await client.fetch_market_chart("x", 7)

    async def test_invalid_json(self):
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(UpstreamFetchFailed):
            await client.fetch_all_coins()

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(UpstreamFetchFailed):
            await client.fetch_all_coins()

    async def test_rate_limit_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429)
            return httpx.Response(200, json=[])

        client = make_client(handler, max_attempts=3)
        assert await client.fetch_all_coins() == []
        assert len(calls) == 3

    async def test_rate_limit_exhausted(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429)

        client = make_client(handler, max_attempts=2)
        with pytest.raises(UpstreamRateLimited):
            await client.fetch_all_coins()
        assert len(calls) == 2

    async def test_server_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client = make_client(handler, max_attempts=3)
        with pytest.raises(UpstreamFetchFailed):
            await client.fetch_all_coins()
        assert len(calls) == 1


class TestCoinGeckoSource:
    """Selector resolution and the combined fetch."""

    async def test_exact_mode(self):
        requests = []
        source = CoinGeckoSource(make_client(routes(requests)))

        detail, chart = await source.fetch(SubjectSelector(mode="exact", coin_id="higher", chart_days=30))

        assert detail.id == "higher"
        assert chart.days == 30
        paths = sorted(r.url.path for r in requests)
        assert paths == ["/api/v3/coins/higher", "/api/v3/coins/higher/market_chart"]

    async def test_random_mode_uses_category(self):
        requests = []
        source = CoinGeckoSource(make_client(routes(requests)), rng=random.Random(1))

        detail, _ = await source.fetch(SubjectSelector(mode="random", category="base-meme-coins"))

        assert detail.id in {"degen-base", "brett"}
        assert requests[0].url.path.endswith("/coins/markets")

    async def test_random_mode_without_category_lists_all(self):
        requests = []
        source = CoinGeckoSource(make_client(routes(requests)))

        detail, _ = await source.fetch(SubjectSelector(mode="random"))

        assert detail.id == "bitcoin"
        assert requests[0].url.path.endswith("/coins/list")

    async def test_random_mode_empty_category(self):
        source = CoinGeckoSource(make_client(lambda request: httpx.Response(200, json=[])))
        with pytest.raises(UpstreamFetchFailed):
            await source.fetch(SubjectSelector(mode="random", category="empty"))
