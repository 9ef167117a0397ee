"""Minimal EVM ABI codec for the handful of read calls chainledger issues.

Call data is a 4-byte selector followed by 32-byte, left-padded, big-endian
argument words. Only static `address` / `uint256` arguments are encoded; the
only dynamic type ever decoded is a `string` return value (head/tail layout).
"""

from __future__ import annotations

import re
from decimal import Decimal, localcontext

from chainledger.errors import UnsupportedReadError

# signature -> 4-byte selector (lowercase hex, no 0x)
SELECTORS: dict[str, str] = {
    "balanceOf(address)": "70a08231",
    "decimals()": "313ce567",
    "symbol()": "95d89b41",
    "name()": "06fdde03",
}

# Signatures a user-supplied protocol ABI mapping may execute
PROTOCOL_READ_ALLOWLIST: tuple[str, ...] = ("balanceOf(address)", "decimals()")

WALLET_PLACEHOLDER = "$walletAddress"
PLACEHOLDER_PREFIX = "$"

MAX_DECIMALS = 36
WORD_HEX = 64

_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")
_HEX_NUMBER_RE = re.compile(r"^0x[0-9a-fA-F]+$")


def infer_arg_type(arg) -> str:
    """Type an argument value by inspection: `address` or `uint256`."""
    if arg == WALLET_PLACEHOLDER:
        return "address"
    if isinstance(arg, bool):
        raise UnsupportedReadError(f"Unsupported ABI argument value: {arg!r}")
    if isinstance(arg, int):
        return "uint256"
    if isinstance(arg, str):
        value = arg.strip()
        if _ADDRESS_RE.match(value):
            return "address"
        if _DECIMAL_RE.match(value) or _HEX_NUMBER_RE.match(value):
            return "uint256"
    raise UnsupportedReadError(f"Unsupported ABI argument value: {arg!r}")


def function_name(raw: str) -> str:
    """`balanceOf(address)` and `balanceOf` both name `balanceOf`."""
    name = (raw or "").strip()
    paren = name.find("(")
    return name[:paren].strip() if paren >= 0 else name


def signature_for(function: str, args: list) -> str:
    types = ",".join(infer_arg_type(a) for a in args)
    return f"{function_name(function)}({types})"


def selector(signature: str) -> str:
    if signature not in SELECTORS:
        raise UnsupportedReadError(f"No selector registered for signature: {signature}")
    return SELECTORS[signature]


def encode_address(value: str) -> str:
    stripped = str(value).strip()
    if stripped[:2].lower() == "0x":
        stripped = stripped[2:]
    if not re.fullmatch(r"[0-9a-fA-F]{40}", stripped):
        raise ValueError(f"Invalid EVM address argument: {value}")
    return stripped.lower().rjust(WORD_HEX, "0")


def encode_uint(value) -> str:
    if isinstance(value, bool):
        raise ValueError(f"Unsupported uint argument: {value!r}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        number = int(text, 16) if text.lower().startswith("0x") else int(text)
    else:
        raise ValueError(f"Unsupported uint argument type: {type(value).__name__}")
    if number < 0:
        raise ValueError(f"Unsigned integer argument cannot be negative: {value}")
    if number >= 2**256:
        raise ValueError(f"Unsigned integer argument exceeds uint256: {value}")
    return format(number, "x").rjust(WORD_HEX, "0")


def encode_call(signature: str, args: list | None = None) -> str:
    """Encode `signature` with already-resolved argument values into 0x-prefixed call data."""
    words = []
    for arg in args or []:
        if infer_arg_type(arg) == "address":
            words.append(encode_address(arg))
        else:
            words.append(encode_uint(arg))
    return "0x" + selector(signature) + "".join(words)


def encode_balance_of(wallet_address: str) -> str:
    return encode_call("balanceOf(address)", [wallet_address])


def _strip(hex_value: str) -> str:
    if not isinstance(hex_value, str) or not hex_value.startswith("0x"):
        raise ValueError(f"Invalid hex RPC response: {hex_value!r}")
    return hex_value[2:]


def decode_uint(hex_value: str) -> int:
    """Big-endian unsigned integer; empty return data (`0x`) decodes to 0."""
    body = _strip(hex_value)
    if not body:
        return 0
    return int(body[:WORD_HEX] if len(body) > WORD_HEX else body, 16)


def decode_string(hex_value: str) -> str:
    """Decode an ABI `string` return. Legacy tokens returning `bytes32` are handled too."""
    data = bytes.fromhex(_strip(hex_value))
    if not data:
        return ""
    if len(data) == 32:
        return data.rstrip(b"\x00").decode("utf-8", errors="replace")
    offset = int.from_bytes(data[0:32], "big")
    length = int.from_bytes(data[offset:offset + 32], "big")
    start = offset + 32
    if start + length > len(data):
        raise ValueError("ABI string length exceeds return data")
    return data[start:start + length].decode("utf-8", errors="replace")


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Exact `raw / 10**decimals` using arbitrary-precision arithmetic."""
    if decimals < 0:
        raise ValueError(f"Invalid token decimals value: {decimals}")
    if decimals > MAX_DECIMALS:
        raise ValueError(f"Token decimals {decimals} exceed supported maximum {MAX_DECIMALS}.")
    with localcontext() as ctx:
        ctx.prec = 120
        return Decimal(raw) / (Decimal(10) ** decimals)
