"""DexScreener pair lookup: liquidity-based fallback price per contract."""

from __future__ import annotations

import httpx

from chainledger.chain.registry import config_for, normalize_address
from chainledger.models.schema import Chain
from chainledger.providers.http import get_json

DEXSCREENER_BASE = "https://api.dexscreener.com"


def _to_float(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def best_pair(pairs: list[dict]) -> dict | None:
    """Deepest pool by USD liquidity; the first pair wins ties."""
    best, best_liquidity = None, -1.0
    for pair in pairs:
        liquidity = _to_float((pair.get("liquidity") or {}).get("usd")) or 0.0
        if best is None or liquidity > best_liquidity:
            best, best_liquidity = pair, liquidity
    return best


class DexScreenerClient:
    name = "dexscreener"

    def __init__(
        self,
        base_url: str = DEXSCREENER_BASE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 8.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def get_price_by_contract(self, chain: Chain, contract: str) -> float | None:
        """Price of the best-liquidity pair on this chain, or None when there is none.

        Transport failures raise ProviderUnavailable; callers treat them per item.
        """
        dex_chain = (config_for(chain).dexscreener_id or chain.slug).lower()
        address = normalize_address(chain.family, contract)
        if not address:
            return None

        body = await get_json(
            self.client, f"{self.base_url}/latest/dex/tokens/{address}", provider=self.name, timeout=self.timeout
        )
        pairs = [p for p in (body or {}).get("pairs") or [] if str(p.get("chainId", "")).strip().lower() == dex_chain]
        pair = best_pair(pairs)
        if pair is None:
            return None
        price = _to_float(pair.get("priceUsd"))
        return price if price is not None and price > 0 else None
