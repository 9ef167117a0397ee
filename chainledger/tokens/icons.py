"""Token icon enrichment backed by CoinGecko images and a TTL cache."""

from __future__ import annotations

import logging
from functools import partial
from typing import Protocol

from chainledger.chain.registry import config_for, is_native_ref, normalize_address
from chainledger.models.schema import Chain
from chainledger.providers.cache import TTLCache
from chainledger.storage.repositories import ChainStore

logger = logging.getLogger(__name__)

NATIVE_KEY = "native"


class ImageSource(Protocol):
    async def get_native_coin_image(self, chain: Chain) -> str | None: ...

    async def get_token_images_by_contracts(self, chain: Chain, contracts: list[str]) -> dict[str, str]: ...


def is_native_row(chain: Chain, row: dict) -> bool:
    """Native rows carry the reserved ref, or no contract and the native symbol."""
    contract = (row.get("contract_or_mint") or "").strip()
    if is_native_ref(contract):
        return True
    if contract:
        return False
    symbol = (row.get("symbol") or "").strip().upper()
    return bool(symbol) and symbol == config_for(chain).native_symbol.upper()


class TokenIconService:
    def __init__(self, chains: ChainStore, images: ImageSource, cache: TTLCache):
        self.chains = chains
        self.images = images
        self.cache = cache

    async def enrich(self, rows: list[dict]) -> list[dict]:
        """Copy of `rows` with an `icon_url` on each (None when unknown).

        Rows need `chain_id` and `contract_or_mint`. Misses are looked up once per
        chain; lookup failures are cached as None for the TTL.
        """
        chains: dict[str, Chain] = {}
        for chain_id in {r.get("chain_id") for r in rows if r.get("chain_id")}:
            chain = self.chains.get_chain_by_id(chain_id)
            if chain is not None:
                chains[chain_id] = chain

        native_chains: set[str] = set()
        contract_misses: dict[str, set[str]] = {}
        for row in rows:
            chain = chains.get(row.get("chain_id"))
            if chain is None:
                continue
            key = self._key(chain, row)
            if key is None:
                continue
            if key == NATIVE_KEY:
                native_chains.add(chain.id)
                continue
            hit, _ = await self.cache.lookup((chain.id, key))
            if not hit:
                contract_misses.setdefault(chain.id, set()).add(key)

        for chain_id in native_chains:
            await self.cache.get_or_load((chain_id, NATIVE_KEY), partial(self._native_icon, chains[chain_id]))

        for chain_id, contracts in contract_misses.items():
            try:
                found = await self.images.get_token_images_by_contracts(chains[chain_id], sorted(contracts))
            except Exception as e:
                logger.debug(f"Icon lookup failed for {len(contracts)} contracts on {chain_id}: {e}")
                found = {}
            await self.cache.set_many({(chain_id, c): found.get(c) for c in contracts})

        enriched = []
        for row in rows:
            chain = chains.get(row.get("chain_id"))
            key = self._key(chain, row) if chain else None
            icon = await self.cache.get((chain.id, key)) if key else None
            enriched.append({**row, "icon_url": icon if isinstance(icon, str) else None})
        return enriched

    async def _native_icon(self, chain: Chain) -> str | None:
        try:
            url = await self.images.get_native_coin_image(chain)
        except Exception as e:
            logger.debug(f"Native icon lookup failed for {chain.id}: {e}")
            return None
        return url if isinstance(url, str) else None

    @staticmethod
    def _key(chain: Chain, row: dict) -> str | None:
        if is_native_row(chain, row):
            return NATIVE_KEY
        contract = normalize_address(chain.family, row.get("contract_or_mint"))
        return contract or None
