"""Validation of declarative ABI mappings for protocol position reads.

A mapping looks like::

    {
        "positionRead": {"function": "balanceOf", "args": ["$walletAddress"], "returns": "uint256"},
        "decimalsRead": {"function": "decimals", "args": [], "returns": "uint8"},
    }

`validate_schema` checks shape only. `assert_supported` additionally restricts
the inferred signature to the codec allow-list and rejects unknown placeholders.
Both run before any network call.
"""

from __future__ import annotations

from typing import Any

from chainledger.abi.codec import (
    PLACEHOLDER_PREFIX,
    PROTOCOL_READ_ALLOWLIST,
    WALLET_PLACEHOLDER,
    encode_call,
    signature_for,
)
from chainledger.errors import SchemaError, UnsupportedReadError

READ_KEYS = ("positionRead", "decimalsRead")


def _check_read_shape(label: str, read: Any) -> None:
    if not isinstance(read, dict):
        raise SchemaError(f"{label} must be an object.")
    function = read.get("function")
    if not isinstance(function, str) or not function.strip():
        raise SchemaError(f"{label}.function must be a non-empty string.")
    if not isinstance(read.get("args"), list):
        raise SchemaError(f"{label}.args must be an array.")
    returns = read.get("returns")
    if not isinstance(returns, str) or not returns.strip():
        raise SchemaError(f"{label}.returns must be a non-empty string.")


def validate_schema(mapping: Any) -> bool:
    if not isinstance(mapping, dict):
        raise SchemaError("abiMapping must be an object.")
    _check_read_shape("abiMapping.positionRead", mapping.get("positionRead"))
    if "decimalsRead" in mapping:
        _check_read_shape("abiMapping.decimalsRead", mapping["decimalsRead"])
    return True


def _check_placeholders(label: str, args: list) -> None:
    for arg in args:
        if isinstance(arg, str) and arg.startswith(PLACEHOLDER_PREFIX) and arg != WALLET_PLACEHOLDER:
            raise UnsupportedReadError(f"{label} contains unsupported placeholder: {arg}")


def _check_supported(label: str, read: dict) -> str:
    args = read.get("args") or []
    _check_placeholders(label, args)
    signature = signature_for(read["function"], args)
    if signature not in PROTOCOL_READ_ALLOWLIST:
        raise UnsupportedReadError(f"Unsupported protocol read signature: {signature}")
    return signature


def assert_supported(mapping: dict) -> bool:
    validate_schema(mapping)
    _check_supported("abiMapping.positionRead", mapping["positionRead"])
    if mapping.get("decimalsRead") is not None:
        _check_supported("abiMapping.decimalsRead", mapping["decimalsRead"])
    return True


def encode_read(read: dict, wallet_address: str) -> str:
    """Resolve placeholders against the scanned wallet and encode the call data."""
    args = read.get("args") or []
    signature = _check_supported("read", read)
    resolved = [wallet_address if arg == WALLET_PLACEHOLDER else arg for arg in args]
    return encode_call(signature, resolved)
