"""CoinGecko client: fallback market data, primary contract prices, native prices and images."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

import httpx

from chainledger.chain.registry import config_for, normalize_address
from chainledger.errors import ProviderUnavailable
from chainledger.models.schema import Chain, UniverseItem
from chainledger.providers.cache import TTLCache
from chainledger.providers.http import get_json

logger = logging.getLogger(__name__)

COINGECKO_BASE = "https://pro-api.coingecko.com/api/v3"
PRO_HOST = "pro-api.coingecko.com"
MAX_PER_PAGE = 250
CANDIDATE_FACTOR = 3
RATE_LIMIT_WAIT = 60.0


def resolve_key_mode(base_url: str, key_mode: str = "auto") -> str:
    if key_mode and key_mode != "auto":
        return key_mode
    return "pro" if urlparse(base_url).netloc.lower() == PRO_HOST else "demo"


def api_key_header(base_url: str, key_mode: str = "auto") -> str:
    return "x-cg-pro-api-key" if resolve_key_mode(base_url, key_mode) == "pro" else "x-cg-demo-api-key"


class CoinGeckoClient:
    name = "coingecko"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = COINGECKO_BASE,
        key_mode: str = "auto",
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        platform_concurrency: int = 8,
        price_cache: TTLCache | None = None,
        rate_limit_wait: float = RATE_LIMIT_WAIT,
        rate_limit_retries: int = 1,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.key_header = api_key_header(self.base_url, key_mode)
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.platform_concurrency = max(1, platform_concurrency)
        self.semaphore = asyncio.Semaphore(self.platform_concurrency)
        self.price_cache = price_cache
        self.rate_limit_wait = rate_limit_wait
        self.rate_limit_retries = max(0, rate_limit_retries)

    async def _get(self, path: str, params: dict | None = None):
        headers = {self.key_header: self.api_key} if self.api_key else {}
        return await get_json(
            self.client, f"{self.base_url}{path}", provider=self.name,
            params=params, headers=headers, timeout=self.timeout,
        )

    def _platform(self, chain: Chain) -> str:
        platform = config_for(chain).coingecko_platform
        if not platform:
            raise ProviderUnavailable(f'CoinGecko unsupported for chain slug "{chain.slug}".', provider=self.name)
        return platform

    # --- Universe fallback ---

    async def fetch_markets(self, limit: int) -> list[dict]:
        return await self._get(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": min(MAX_PER_PAGE, max(limit, 1)),
                "page": 1,
                "sparkline": "false",
            },
        )

    async def fetch_coin(self, coin_id: str) -> dict | None:
        """Coin detail (platforms, image). A failed lookup yields None.

        HTTP 429 waits `rate_limit_wait` seconds (growing per attempt) and retries
        up to `rate_limit_retries` times.
        """
        params = {
            "localization": "false",
            "tickers": "false",
            "market_data": "false",
            "community_data": "false",
            "developer_data": "false",
            "sparkline": "false",
        }
        async with self.semaphore:
            for attempt in range(self.rate_limit_retries + 1):
                try:
                    return await self._get(f"/coins/{coin_id}", params)
                except ProviderUnavailable as e:
                    if e.status_code == 429 and attempt < self.rate_limit_retries:
                        wait = self.rate_limit_wait * (attempt + 1)
                        logger.warning(f"CoinGecko rate limited, waiting {wait:.0f}s...")
                        await asyncio.sleep(wait)
                        continue
                    logger.debug(f"CoinGecko coin lookup failed for {coin_id}: {e}")
                    return None
        return None

    async def fetch_top_tokens(self, chain: Chain, limit: int = 200) -> list[UniverseItem]:
        """Market-cap ranked coins mapped onto the chain's contract space.

        At most `limit * 3` market rows are considered; coin details are fetched
        in windows of `platform_concurrency` and fetching stops once `limit`
        tokens are mapped. Coins without a contract on this chain's platform are
        dropped before ranking, so ranks stay contiguous.
        """
        platform = self._platform(chain)
        markets = await self.fetch_markets(limit * CANDIDATE_FACTOR)
        if not isinstance(markets, list) or not markets:
            raise ProviderUnavailable("CoinGecko markets response returned zero rows.", provider=self.name)

        candidates = [m for m in markets if isinstance(m, dict) and m.get("id")][: limit * CANDIDATE_FACTOR]

        items: list[UniverseItem] = []
        for start in range(0, len(candidates), self.platform_concurrency):
            if len(items) >= limit:
                break
            window = candidates[start:start + self.platform_concurrency]
            coins = await asyncio.gather(*(self.fetch_coin(m["id"]) for m in window))
            for market, coin in zip(window, coins):
                if len(items) >= limit:
                    break
                address = normalize_address(chain.family, ((coin or {}).get("platforms") or {}).get(platform))
                if not address:
                    continue
                symbol = market.get("symbol")
                market_cap = market.get("market_cap")
                items.append(
                    UniverseItem(
                        rank=len(items) + 1,
                        contract_or_mint=address,
                        symbol=symbol.upper() if isinstance(symbol, str) else None,
                        name=market.get("name") if isinstance(market.get("name"), str) else None,
                        market_cap_usd=float(market_cap) if isinstance(market_cap, (int, float)) else None,
                    )
                )

        if not items:
            raise ProviderUnavailable(
                f"CoinGecko fallback found zero contract-mapped tokens for {platform}.", provider=self.name
            )
        logger.info(f"CoinGecko mapped {len(items)} tokens onto {platform}")
        return items

    # --- Prices ---

    async def get_prices_by_contracts(self, chain: Chain, contracts: list[str]) -> dict[str, float]:
        """USD price per contract. Contracts without a quote are absent from the result."""
        if not contracts:
            return {}
        platform = self._platform(chain)

        prices: dict[str, float] = {}
        missing: list[str] = []
        for contract in contracts:
            cached = await self.price_cache.get((chain.slug, contract)) if self.price_cache else None
            if cached is not None:
                prices[contract] = cached
            else:
                missing.append(contract)
        if not missing:
            return prices

        body = await self._get(
            f"/simple/token_price/{platform}",
            {"contract_addresses": ",".join(missing), "vs_currencies": "usd"},
        )
        by_lower = {str(k).lower(): v for k, v in (body or {}).items()}
        fetched: dict[str, float] = {}
        for contract in missing:
            usd = (by_lower.get(contract.lower()) or {}).get("usd")
            if isinstance(usd, (int, float)) and usd > 0:
                fetched[contract] = float(usd)

        if self.price_cache and fetched:
            await self.price_cache.set_many({(chain.slug, c): p for c, p in fetched.items()})
        prices.update(fetched)
        return prices

    async def get_native_price(self, chain: Chain) -> float | None:
        coin_id = config_for(chain).native_coingecko_id
        if not coin_id:
            return None

        async def load() -> float | None:
            body = await self._get("/simple/price", {"ids": coin_id, "vs_currencies": "usd"})
            usd = ((body or {}).get(coin_id) or {}).get("usd")
            if not isinstance(usd, (int, float)) or usd <= 0:
                return None
            return float(usd)

        if self.price_cache is None:
            return await load()
        return await self.price_cache.get_or_load((chain.slug, "native"), load, cache_none=False)

    # --- Images ---

    async def get_native_coin_image(self, chain: Chain) -> str | None:
        coin_id = config_for(chain).native_coingecko_id
        if not coin_id:
            return None
        coin = await self.fetch_coin(coin_id)
        return _image_url(coin)

    async def get_token_images_by_contracts(self, chain: Chain, contracts: list[str]) -> dict[str, str]:
        platform = self._platform(chain)

        async def one(contract: str) -> str | None:
            async with self.semaphore:
                try:
                    return _image_url(await self._get(f"/coins/{platform}/contract/{contract}"))
                except ProviderUnavailable as e:
                    logger.debug(f"CoinGecko image lookup failed for {contract}: {e}")
                    return None

        urls = await asyncio.gather(*(one(c) for c in contracts))
        return {c: url for c, url in zip(contracts, urls) if url}


def _image_url(coin: dict | None) -> str | None:
    image = (coin or {}).get("image") or {}
    if isinstance(image, str):
        return image
    for size in ("small", "thumb", "large"):
        if isinstance(image.get(size), str):
            return image[size]
    return None
