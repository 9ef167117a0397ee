"""Birdeye token list: primary market-data source for the token universe."""

from __future__ import annotations

import logging

import httpx

from chainledger.chain.registry import config_for, normalize_address
from chainledger.errors import ProviderUnavailable
from chainledger.models.schema import Chain, UniverseItem
from chainledger.providers.http import get_json

logger = logging.getLogger(__name__)

BIRDEYE_BASE = "https://public-api.birdeye.so"


class BirdeyeClient:
    name = "birdeye"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = BIRDEYE_BASE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def fetch_top_tokens(self, chain: Chain, limit: int = 200) -> list[UniverseItem]:
        """Top tokens by market cap for one chain, ranked 1..N in response order."""
        if not self.api_key:
            raise ProviderUnavailable("Birdeye API key is not configured.", provider=self.name)
        code = config_for(chain).birdeye_code
        if not code:
            raise ProviderUnavailable(f'Birdeye does not support chain slug "{chain.slug}".', provider=self.name)

        body = await get_json(
            self.client,
            f"{self.base_url}/defi/v3/token/list",
            provider=self.name,
            params={"sort_by": "market_cap", "sort_type": "desc", "limit": limit, "offset": 0},
            headers={"X-API-KEY": self.api_key, "x-chain": code},
            timeout=self.timeout,
        )
        data = (body or {}).get("data") or {}
        rows = data.get("tokens") or data.get("items") or []

        items: list[UniverseItem] = []
        for row in rows[:limit]:
            address = normalize_address(chain.family, row.get("address") or row.get("tokenAddress") or row.get("mintAddress"))
            if not address:
                continue
            market_cap = row.get("market_cap", row.get("marketCap"))
            items.append(
                UniverseItem(
                    rank=len(items) + 1,
                    contract_or_mint=address,
                    symbol=row.get("symbol") or None,
                    name=row.get("name") or None,
                    decimals=row["decimals"] if isinstance(row.get("decimals"), int) else None,
                    market_cap_usd=float(market_cap) if isinstance(market_cap, (int, float)) else None,
                )
            )

        if not items:
            raise ProviderUnavailable("Birdeye returned no token rows for requested chain.", provider=self.name)
        logger.info(f"Birdeye returned {len(items)} tokens for {chain.slug}")
        return items
