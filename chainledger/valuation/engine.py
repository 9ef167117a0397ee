"""USD valuation of positions: primary batch prices, per-contract liquidity fallback."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Protocol

from chainledger.balances.batcher import chunk
from chainledger.chain.registry import is_native_ref, normalize_address
from chainledger.models.schema import Chain, Position, ValuedPosition

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class PriceSource(Protocol):
    async def get_prices_by_contracts(self, chain: Chain, contracts: list[str]) -> dict[str, float]: ...

    async def get_native_price(self, chain: Chain) -> float | None: ...


class LiquidityPriceSource(Protocol):
    async def get_price_by_contract(self, chain: Chain, contract: str) -> float | None: ...


def _valid_price(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0


class ValuationEngine:
    def __init__(
        self,
        price_source: PriceSource | None = None,
        liquidity_source: LiquidityPriceSource | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrent: int = 6,
    ):
        self.price_source = price_source
        self.liquidity_source = liquidity_source
        self.batch_size = batch_size if batch_size > 0 else DEFAULT_BATCH_SIZE
        self.semaphore = asyncio.Semaphore(max(1, max_concurrent))

    async def native_price(self, chain: Chain) -> float | None:
        if self.price_source is None:
            return None
        try:
            price = await self.price_source.get_native_price(chain)
        except Exception as e:
            logger.warning(f"Native price lookup failed for {chain.slug}: {e}")
            return None
        return float(price) if _valid_price(price) else None

    async def _liquidity_price(self, chain: Chain, contract: str) -> float | None:
        async with self.semaphore:
            price = await self.liquidity_source.get_price_by_contract(chain, contract)
        return float(price) if _valid_price(price) else None

    async def fetch_contract_prices(self, chain: Chain, contracts: list[str]) -> dict[str, tuple[float, str]]:
        """Map of normalized contract -> (usd price, "primary" | "liquidity").

        Contracts no source could price are absent from the result.
        """
        unique = list(dict.fromkeys(normalize_address(chain.family, c) for c in contracts if c))
        prices: dict[str, tuple[float, str]] = {}

        for group in chunk(unique, self.batch_size):
            primary: dict[str, float] = {}
            if self.price_source is not None:
                try:
                    primary = await self.price_source.get_prices_by_contracts(chain, group) or {}
                except Exception as e:
                    logger.warning(f"Primary price batch of {len(group)} failed on {chain.slug}: {e}")
            by_key = {normalize_address(chain.family, k): v for k, v in primary.items()}

            missing = []
            for contract in group:
                if _valid_price(by_key.get(contract)):
                    prices[contract] = (float(by_key[contract]), "primary")
                else:
                    missing.append(contract)

            if missing and self.liquidity_source is not None:
                results = await asyncio.gather(
                    *(self._liquidity_price(chain, c) for c in missing), return_exceptions=True
                )
                for contract, result in zip(missing, results):
                    if isinstance(result, Exception):
                        logger.debug(f"Liquidity price failed for {contract} on {chain.slug}: {result}")
                    elif result is not None:
                        prices[contract] = (result, "liquidity")
        return prices

    async def valuate_positions(self, chain: Chain, positions: list[Position]) -> list[ValuedPosition]:
        """One valued record per input position, in input order.

        Missing prices give valuation_status "unknown" with null price and value;
        only malformed positions raise.
        """
        for position in positions:
            if not position.contract_or_mint:
                raise ValueError("Position is missing contract_or_mint.")
            if not math.isfinite(position.quantity):
                raise ValueError(f"Position {position.contract_or_mint} has a non-finite quantity.")

        native_positions = [p for p in positions if is_native_ref(p.contract_or_mint)]
        native_price = await self.native_price(chain) if native_positions else None

        refs = []
        for position in positions:
            if is_native_ref(position.contract_or_mint):
                if native_price is None and position.valuation_ref and not is_native_ref(position.valuation_ref):
                    refs.append(position.valuation_ref)
            else:
                refs.append(position.valuation_ref or position.contract_or_mint)
        prices = await self.fetch_contract_prices(chain, refs) if refs else {}

        valued = []
        for position in positions:
            quote: tuple[float, str] | None = None
            if is_native_ref(position.contract_or_mint) and native_price is not None:
                quote = (native_price, "native")
            else:
                ref = position.valuation_ref or position.contract_or_mint
                if not is_native_ref(ref):
                    quote = prices.get(normalize_address(chain.family, ref))
            valued.append(_apply(position, quote))

        unknown = sum(1 for v in valued if v.valuation_status == "unknown")
        if unknown:
            logger.info(f"{unknown}/{len(valued)} positions on {chain.slug} have no price")
        return valued


def _apply(position: Position, quote: tuple[float, str] | None) -> ValuedPosition:
    data = position.model_dump()
    if quote is None:
        return ValuedPosition(**data, usd_price=None, usd_value=None, valuation_status="unknown")
    price, source = quote
    return ValuedPosition(
        **data,
        usd_price=price,
        usd_value=position.quantity * price,
        valuation_status="known",
        price_source=source,
    )
