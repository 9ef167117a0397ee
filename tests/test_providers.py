"""
Unit tests for the market-data and price providers and their TTL cache.

Tests follow the Given/When/Then pattern for clarity.
"""

import asyncio

import httpx
import pytest

from chainledger.errors import ProviderUnavailable
from chainledger.providers.birdeye import BirdeyeClient
from chainledger.providers.cache import TTLCache
from chainledger.providers.coingecko import CoinGeckoClient, api_key_header
from chainledger.providers.dexscreener import DexScreenerClient, best_pair

from conftest import TOKEN_A, TOKEN_B


def http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    @pytest.mark.asyncio
    async def test_entries_expire(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)

        await cache.set("k", 1)
        clock.now = 9.9
        assert await cache.get("k") == 1
        clock.now = 10.0
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self):
        cache = TTLCache(ttl=10)
        await cache.set("k", None)

        assert await cache.lookup("k") == (True, None)
        assert await cache.lookup("other") == (False, None)

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self):
        """
        Given three concurrent lookups for the same missing key
        When each one loads through the cache
        Then the loader runs once and no per-key lock is left behind
        """
        cache = TTLCache(ttl=10)
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0)
            return "value"

        results = await asyncio.gather(*(cache.get_or_load("k", loader) for _ in range(3)))

        assert results == ["value"] * 3
        assert len(calls) == 1
        assert cache._key_locks == {}

    @pytest.mark.asyncio
    async def test_uncached_none_reloads(self):
        cache = TTLCache(ttl=10)
        calls = []

        async def loader():
            calls.append(1)
            return None

        assert await cache.get_or_load("k", loader, cache_none=False) is None
        assert await cache.get_or_load("k", loader, cache_none=False) is None
        assert len(calls) == 2
        assert await cache.lookup("k") == (False, None)


class TestBirdeyeClient:
    @pytest.mark.asyncio
    async def test_token_list_is_ranked_in_response_order(self, ethereum):
        """
        Given a token list containing one row without an address
        When fetching top tokens
        Then addressed rows are ranked 1..N and the chain header is sent
        """
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": {"tokens": [
                {"address": TOKEN_A.upper().replace("0X", "0x"), "symbol": "A", "decimals": 18, "market_cap": 10.0},
                {"address": "", "symbol": "NONE"},
                {"address": TOKEN_B, "symbol": "B"},
            ]}})

        client = BirdeyeClient(api_key="secret", client=http(handler))

        items = await client.fetch_top_tokens(ethereum, limit=3)

        assert [(i.rank, i.contract_or_mint) for i in items] == [(1, TOKEN_A), (2, TOKEN_B)]
        assert items[0].decimals == 18
        assert seen["headers"]["x-api-key"] == "secret"
        assert seen["headers"]["x-chain"] == "ethereum"
        assert seen["params"]["limit"] == "3"

    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self, ethereum):
        with pytest.raises(ProviderUnavailable, match="API key"):
            await BirdeyeClient(client=http(lambda r: httpx.Response(200, json={}))).fetch_top_tokens(ethereum)

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self, ethereum):
        client = BirdeyeClient(api_key="k", client=http(lambda r: httpx.Response(429)))

        with pytest.raises(ProviderUnavailable, match="HTTP 429") as excinfo:
            await client.fetch_top_tokens(ethereum)
        assert excinfo.value.status_code == 429

    @pytest.mark.asyncio
    async def test_empty_list_is_unavailable(self, ethereum):
        client = BirdeyeClient(api_key="k", client=http(lambda r: httpx.Response(200, json={"data": {"tokens": []}})))

        with pytest.raises(ProviderUnavailable, match="no token rows"):
            await client.fetch_top_tokens(ethereum)


class TestCoinGeckoClient:
    def test_key_header_follows_host(self):
        assert api_key_header("https://pro-api.coingecko.com/api/v3") == "x-cg-pro-api-key"
        assert api_key_header("https://api.coingecko.com/api/v3") == "x-cg-demo-api-key"
        assert api_key_header("https://api.coingecko.com/api/v3", key_mode="pro") == "x-cg-pro-api-key"

    @pytest.mark.asyncio
    async def test_markets_are_mapped_to_chain_contracts(self, ethereum):
        """
        Given three ranked coins where the second has no Ethereum contract
        When fetching top tokens
        Then the mapped coins keep contiguous ranks and uppercase symbols
        """
        platforms = {"a": {"ethereum": TOKEN_A}, "b": {"solana": "So1"}, "c": {"ethereum": TOKEN_B}}

        def handler(request):
            path = request.url.path
            if path.endswith("/coins/markets"):
                return httpx.Response(200, json=[
                    {"id": "a", "symbol": "aaa", "name": "A", "market_cap": 3},
                    {"id": "b", "symbol": "bbb", "name": "B", "market_cap": 2},
                    {"id": "c", "symbol": "ccc", "name": "C", "market_cap": 1},
                ])
            coin_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": coin_id, "platforms": platforms[coin_id]})

        client = CoinGeckoClient(base_url="https://api.coingecko.com/api/v3", client=http(handler))

        items = await client.fetch_top_tokens(ethereum, limit=5)

        assert [(i.rank, i.contract_or_mint, i.symbol) for i in items] == [(1, TOKEN_A, "AAA"), (2, TOKEN_B, "CCC")]

    @pytest.mark.asyncio
    async def test_coin_lookups_stop_once_limit_is_mapped(self, ethereum):
        """
        Given six market rows that all map onto Ethereum
        When fetching one token with windows of two lookups
        Then three market rows are requested and only the first window is looked up
        """
        seen = {"markets": None, "coins": []}
        addresses = {f"c{i}": "0x" + format(i + 1, "x").rjust(40, "0") for i in range(6)}

        def handler(request):
            path = request.url.path
            if path.endswith("/coins/markets"):
                seen["markets"] = dict(request.url.params)
                return httpx.Response(200, json=[{"id": cid, "symbol": cid} for cid in addresses])
            coin_id = path.rsplit("/", 1)[-1]
            seen["coins"].append(coin_id)
            return httpx.Response(200, json={"platforms": {"ethereum": addresses[coin_id]}})

        client = CoinGeckoClient(client=http(handler), platform_concurrency=2)

        items = await client.fetch_top_tokens(ethereum, limit=1)

        assert [i.contract_or_mint for i in items] == [addresses["c0"]]
        assert seen["markets"]["per_page"] == "3"
        assert sorted(seen["coins"]) == ["c0", "c1"]

    @pytest.mark.asyncio
    async def test_rate_limited_coin_lookup_is_retried(self, ethereum):
        """
        Given a coin detail endpoint answering 429 once
        When fetching top tokens
        Then the lookup waits, retries and the coin is still mapped
        """
        coin_calls = []

        def handler(request):
            if request.url.path.endswith("/coins/markets"):
                return httpx.Response(200, json=[{"id": "a", "symbol": "a"}])
            coin_calls.append(1)
            if len(coin_calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, json={"platforms": {"ethereum": TOKEN_A}})

        client = CoinGeckoClient(client=http(handler), rate_limit_wait=0)

        items = await client.fetch_top_tokens(ethereum, limit=1)

        assert [i.contract_or_mint for i in items] == [TOKEN_A]
        assert len(coin_calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_gives_up_after_retries(self):
        client = CoinGeckoClient(client=http(lambda r: httpx.Response(429)), rate_limit_wait=0, rate_limit_retries=2)

        assert await client.fetch_coin("a") is None

    @pytest.mark.asyncio
    async def test_contract_prices_are_cached(self, ethereum):
        """
        Given a price cache and a token price response
        When asking for the same contracts twice
        Then only one HTTP request is made and the key header is sent
        """
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={TOKEN_A: {"usd": 1.5}, TOKEN_B: {"usd": 0}})

        client = CoinGeckoClient(api_key="k", client=http(handler), price_cache=TTLCache(ttl=60))

        first = await client.get_prices_by_contracts(ethereum, [TOKEN_A])
        second = await client.get_prices_by_contracts(ethereum, [TOKEN_A])

        assert first == second == {TOKEN_A: 1.5}
        assert len(requests) == 1
        assert requests[0].url.path.endswith("/simple/token_price/ethereum")
        assert requests[0].headers["x-cg-pro-api-key"] == "k"

    @pytest.mark.asyncio
    async def test_native_price(self, polygon):
        def handler(request):
            assert request.url.params["ids"] == "matic-network"
            return httpx.Response(200, json={"matic-network": {"usd": 0.7}})

        assert await CoinGeckoClient(client=http(handler)).get_native_price(polygon) == 0.7

    @pytest.mark.asyncio
    async def test_concurrent_native_price_lookups_share_one_request(self, ethereum):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ethereum": {"usd": 2500}})

        client = CoinGeckoClient(client=http(handler), price_cache=TTLCache(ttl=60))

        prices = await asyncio.gather(*(client.get_native_price(ethereum) for _ in range(3)))

        assert prices == [2500.0] * 3
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_failed_image_lookups_are_dropped(self, ethereum):
        def handler(request):
            if TOKEN_A in request.url.path:
                return httpx.Response(200, json={"image": {"small": "https://img/a.png"}})
            return httpx.Response(404)

        images = await CoinGeckoClient(client=http(handler)).get_token_images_by_contracts(ethereum, [TOKEN_A, TOKEN_B])

        assert images == {TOKEN_A: "https://img/a.png"}


class TestDexScreenerClient:
    def test_best_pair_prefers_liquidity_then_order(self):
        pairs = [
            {"pairAddress": "1", "liquidity": {"usd": 10}},
            {"pairAddress": "2", "liquidity": {"usd": "50"}},
            {"pairAddress": "3", "liquidity": {"usd": 50}},
        ]

        assert best_pair(pairs)["pairAddress"] == "2"
        assert best_pair([]) is None

    @pytest.mark.asyncio
    async def test_price_from_deepest_pair_on_chain(self, ethereum):
        """
        Given pairs on two chains where the deepest overall is on another chain
        When asking for the Ethereum price
        Then the deepest Ethereum pair's price is returned
        """
        def handler(request):
            return httpx.Response(200, json={"pairs": [
                {"chainId": "bsc", "priceUsd": "9.0", "liquidity": {"usd": 1_000_000}},
                {"chainId": "ethereum", "priceUsd": "1.1", "liquidity": {"usd": 100}},
                {"chainId": "ethereum", "priceUsd": "1.2", "liquidity": {"usd": 5_000}},
            ]})

        price = await DexScreenerClient(client=http(handler)).get_price_by_contract(ethereum, TOKEN_A)

        assert price == 1.2

    @pytest.mark.asyncio
    async def test_no_pair_means_no_price(self, ethereum):
        client = DexScreenerClient(client=http(lambda r: httpx.Response(200, json={"pairs": None})))

        assert await client.get_price_by_contract(ethereum, TOKEN_A) is None

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self, ethereum):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(ProviderUnavailable):
            await DexScreenerClient(client=http(handler)).get_price_by_contract(ethereum, TOKEN_A)
