"""Family-specific balance resolvers behind one capability interface.

Each resolver answers one chunk of tokens for one wallet. Calls for the tokens
of a chunk run concurrently under a shared semaphore; a failing token turns
into a zero-balance record flagged `resolution_error` instead of failing the
chunk.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from chainledger.abi.codec import (
    MAX_DECIMALS,
    decode_string,
    decode_uint,
    encode_balance_of,
    encode_call,
    scale_amount,
)
from chainledger.chain.registry import config_for, rpc_urls
from chainledger.chain.rpc import JsonRpcClient
from chainledger.errors import ProviderUnavailable
from chainledger.models.schema import BalanceRecord, Chain, ChainFamily, TokenDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 6


class BalanceResolver(ABC):
    family: ChainFamily

    def __init__(self, rpc: JsonRpcClient, max_concurrent: int = DEFAULT_CONCURRENCY):
        self.rpc = rpc
        self.semaphore = asyncio.Semaphore(max(1, max_concurrent))

    async def resolve_balances(
        self,
        chain: Chain,
        wallet_address: str,
        tokens: list[TokenDescriptor],
    ) -> list[BalanceRecord]:
        """One record per input token, in input order."""
        urls = rpc_urls(chain)
        return list(await asyncio.gather(*(self._resolve_guarded(chain, urls, wallet_address, t) for t in tokens)))

    async def _resolve_guarded(
        self,
        chain: Chain,
        urls: list[str],
        wallet_address: str,
        token: TokenDescriptor,
    ) -> BalanceRecord:
        async with self.semaphore:
            try:
                return await self._resolve_one(chain, urls, wallet_address, token)
            except Exception as e:
                logger.debug(f"Balance read failed for {token.contract_or_mint} on {chain.slug}: {e}")
                return BalanceRecord(
                    contract_or_mint=token.contract_or_mint,
                    balance_raw="0x0",
                    decimals=token.decimals,
                    resolution_error=True,
                    error_message=str(e) or type(e).__name__,
                )

    @abstractmethod
    async def _resolve_one(
        self,
        chain: Chain,
        urls: list[str],
        wallet_address: str,
        token: TokenDescriptor,
    ) -> BalanceRecord: ...

    @abstractmethod
    async def read_metadata(self, chain: Chain, contract_or_mint: str) -> dict:
        """Best-effort symbol/name/decimals straight from the chain."""


class EvmBalanceResolver(BalanceResolver):
    family = ChainFamily.EVM

    async def _resolve_one(self, chain, urls, wallet_address, token):
        if token.is_native:
            raw_hex = await self.rpc.eth_get_balance(urls, wallet_address)
            decimals = token.decimals if token.decimals is not None else config_for(chain).native_decimals
        else:
            raw_hex = await self.rpc.eth_call(urls, token.contract_or_mint, encode_balance_of(wallet_address))
            decimals = token.decimals

        raw = decode_uint(raw_hex)
        if decimals is None and raw > 0:
            decimals = await self._read_decimals(urls, token.contract_or_mint)

        return BalanceRecord(
            contract_or_mint=token.contract_or_mint,
            balance_raw=hex(raw),
            balance_normalized=scale_amount(raw, decimals if decimals is not None else 18),
            decimals=decimals,
        )

    async def _read_decimals(self, urls: list[str], contract: str) -> int | None:
        try:
            value = decode_uint(await self.rpc.eth_call(urls, contract, encode_call("decimals()")))
        except (ProviderUnavailable, ValueError) as e:
            logger.debug(f"decimals() read failed for {contract}: {e}")
            return None
        return value if 0 <= value <= MAX_DECIMALS else None

    async def read_metadata(self, chain: Chain, contract_or_mint: str) -> dict:
        urls = rpc_urls(chain)
        metadata: dict = {"symbol": None, "name": None, "decimals": None}
        metadata["decimals"] = await self._read_decimals(urls, contract_or_mint)
        for field in ("symbol", "name"):
            try:
                raw = await self.rpc.eth_call(urls, contract_or_mint, encode_call(f"{field}()"))
                metadata[field] = decode_string(raw) or None
            except (ProviderUnavailable, ValueError) as e:
                logger.debug(f"{field}() read failed for {contract_or_mint}: {e}")
        return metadata


class SolanaBalanceResolver(BalanceResolver):
    family = ChainFamily.SOLANA

    async def _resolve_one(self, chain, urls, wallet_address, token):
        if token.is_native:
            result = await self.rpc.call_any(urls, "getBalance", [wallet_address])
            raw = int((result or {}).get("value", 0))
            decimals = token.decimals if token.decimals is not None else config_for(chain).native_decimals
        else:
            result = await self.rpc.call_any(
                urls,
                "getTokenAccountsByOwner",
                [wallet_address, {"mint": token.contract_or_mint}, {"encoding": "jsonParsed"}],
            )
            raw, decimals = _sum_token_accounts(result, token.decimals)

        return BalanceRecord(
            contract_or_mint=token.contract_or_mint,
            balance_raw=hex(raw),
            balance_normalized=scale_amount(raw, decimals if decimals is not None else 0),
            decimals=decimals,
        )

    async def read_metadata(self, chain: Chain, contract_or_mint: str) -> dict:
        metadata: dict = {"symbol": None, "name": None, "decimals": None}
        try:
            result = await self.rpc.call_any(
                rpc_urls(chain), "getAccountInfo", [contract_or_mint, {"encoding": "jsonParsed"}]
            )
        except ProviderUnavailable as e:
            logger.debug(f"Mint account read failed for {contract_or_mint}: {e}")
            return metadata
        info = (((result or {}).get("value") or {}).get("data") or {}).get("parsed", {}).get("info", {})
        if isinstance(info.get("decimals"), int):
            metadata["decimals"] = info["decimals"]
        return metadata


def _sum_token_accounts(result: dict | None, known_decimals: int | None) -> tuple[int, int | None]:
    """Total the parsed SPL token accounts a wallet holds for one mint."""
    if not isinstance(result, dict):
        raise ValueError("Invalid RPC result shape for getTokenAccountsByOwner.")
    total = 0
    decimals = known_decimals
    for account in result.get("value") or []:
        parsed = account.get("account", {}).get("data", {}).get("parsed", {})
        amount = parsed.get("info", {}).get("tokenAmount", {})
        total += int(amount.get("amount", "0"))
        if decimals is None and isinstance(amount.get("decimals"), int):
            decimals = amount["decimals"]
    return total, decimals


RESOLVERS: dict[ChainFamily, type[BalanceResolver]] = {
    ChainFamily.EVM: EvmBalanceResolver,
    ChainFamily.SOLANA: SolanaBalanceResolver,
}


def build_resolvers(rpc: JsonRpcClient, max_concurrent: int = DEFAULT_CONCURRENCY) -> dict[ChainFamily, BalanceResolver]:
    return {family: cls(rpc, max_concurrent=max_concurrent) for family, cls in RESOLVERS.items()}
