"""Protocol contract registration: schema check plus execution-support preview."""

from __future__ import annotations

import logging

from chainledger.abi.mapping import assert_supported, validate_schema
from chainledger.chain.registry import normalize_address
from chainledger.chain.validation import is_valid_address
from chainledger.errors import ConfigError
from chainledger.models.schema import Chain, ChainFamily, ProtocolContract
from chainledger.storage.repositories import ProtocolStore

logger = logging.getLogger(__name__)


def register_protocol_contract(
    store: ProtocolStore,
    chain: Chain,
    contract_address: str,
    abi_mapping: dict,
    label: str | None = None,
    category: str | None = None,
) -> ProtocolContract:
    """Persist a protocol contract once its mapping is known to be readable.

    SchemaError and UnsupportedReadError propagate; nothing is written then.
    """
    if ChainFamily(chain.family) != ChainFamily.EVM:
        raise ConfigError(f"Protocol contracts are only supported on EVM chains (got {chain.slug}).")
    address = normalize_address(chain.family, contract_address)
    if not is_valid_address(chain.family, address):
        raise ConfigError(f"Invalid contract address: {contract_address}")

    validate_schema(abi_mapping)
    assert_supported(abi_mapping)

    contract = store.create_protocol_contract(
        chain.id, address, abi_mapping, label=label, category=category, validation_status="valid"
    )
    logger.info(f"Registered protocol {label or contract.id} at {address} on {chain.slug}")
    return contract
