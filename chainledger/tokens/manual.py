"""Manual token registration with best-effort on-chain metadata."""

from __future__ import annotations

import logging

from chainledger.balances.resolver import BalanceResolver
from chainledger.chain.registry import is_native_ref, normalize_address
from chainledger.chain.validation import is_valid_address
from chainledger.errors import ConfigError
from chainledger.models.schema import Chain, TrackedToken
from chainledger.storage.repositories import TrackedTokenStore

logger = logging.getLogger(__name__)

EMPTY_METADATA = {"symbol": None, "name": None, "decimals": None}


async def resolve_metadata(resolver: BalanceResolver | None, chain: Chain, contract_or_mint: str) -> dict:
    if resolver is None:
        return dict(EMPTY_METADATA)
    try:
        metadata = await resolver.read_metadata(chain, contract_or_mint)
    except Exception as e:
        logger.warning(f"Metadata lookup failed for {contract_or_mint} on {chain.slug}: {e}")
        return dict(EMPTY_METADATA)
    decimals = metadata.get("decimals")
    return {
        "symbol": metadata.get("symbol"),
        "name": metadata.get("name"),
        "decimals": decimals if isinstance(decimals, int) else None,
    }


async def register_manual_token(
    store: TrackedTokenStore,
    chain: Chain,
    contract_or_mint: str,
    symbol: str | None = None,
    name: str | None = None,
    decimals: int | None = None,
    resolver: BalanceResolver | None = None,
) -> TrackedToken:
    """Track a token explicitly.

    Any caller-supplied field marks the row `manual_override` and is written
    over existing metadata; missing fields fall back to on-chain values.
    """
    contract = normalize_address(chain.family, contract_or_mint)
    if not contract:
        raise ConfigError("contract_or_mint is required.")
    if not is_native_ref(contract) and not is_valid_address(chain.family, contract):
        raise ConfigError(f"Invalid {chain.family.value} token address: {contract_or_mint}")

    auto = await resolve_metadata(resolver, chain, contract)
    has_override = any(v is not None for v in (symbol, name, decimals))
    return store.upsert_tracked_token(
        chain.id,
        contract,
        symbol=symbol if symbol is not None else auto["symbol"],
        name=name if name is not None else auto["name"],
        decimals=decimals if decimals is not None else auto["decimals"],
        metadata_source="manual_override" if has_override else "auto",
        tracking_source="manual",
        override=has_override,
    )
