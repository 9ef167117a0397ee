"""Resolve manual protocol positions from a declarative ABI mapping."""

from __future__ import annotations

import logging

from chainledger.abi.codec import MAX_DECIMALS, decode_uint, scale_amount
from chainledger.abi.mapping import assert_supported, encode_read
from chainledger.chain.registry import normalize_address, rpc_urls
from chainledger.chain.rpc import JsonRpcClient
from chainledger.errors import ProtocolReadError, SchemaError, UnsupportedReadError
from chainledger.models.schema import Chain, ChainFamily, Position, ProtocolContract, Wallet

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18


class ProtocolPositionReader:
    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    async def resolve_position(self, chain: Chain, wallet: Wallet, protocol: ProtocolContract) -> Position:
        """Read a wallet's position in one protocol contract.

        Mapping problems raise SchemaError / UnsupportedReadError untouched, before
        any RPC traffic. Anything failing after that is wrapped in ProtocolReadError
        naming the protocol.
        """
        label = protocol.label or protocol.id
        if ChainFamily(chain.family) != ChainFamily.EVM:
            raise ProtocolReadError(
                f"Protocol {label}: ABI reads are only supported on EVM chains (got {chain.slug})",
                protocol_id=protocol.id,
                label=protocol.label,
            )

        mapping = protocol.abi_mapping
        assert_supported(mapping)

        contract = normalize_address(chain.family, protocol.contract_address)
        if not contract:
            raise ProtocolReadError(
                f"Missing protocol contract address for {label}", protocol_id=protocol.id, label=protocol.label
            )

        urls = rpc_urls(chain)
        try:
            raw = decode_uint(await self.rpc.eth_call(urls, contract, encode_read(mapping["positionRead"], wallet.address)))

            decimals = DEFAULT_DECIMALS
            if mapping.get("decimalsRead") is not None:
                decimals = decode_uint(
                    await self.rpc.eth_call(urls, contract, encode_read(mapping["decimalsRead"], wallet.address))
                )
                if decimals > MAX_DECIMALS:
                    raise ValueError(f"Token decimals {decimals} exceed supported maximum {MAX_DECIMALS}.")

            quantity = scale_amount(raw, decimals)
        except (SchemaError, UnsupportedReadError):
            raise
        except Exception as e:
            raise ProtocolReadError(
                f"Protocol {label} ({protocol.id}) position read failed: {e}",
                protocol_id=protocol.id,
                label=protocol.label,
            ) from e

        return Position(
            contract_or_mint=contract,
            symbol=protocol.label,
            quantity=float(quantity),
            wallet_id=wallet.id,
            token_id=protocol.id,
        )
