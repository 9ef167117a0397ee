"""Address checks, RPC URL safety and liveness validation for custom chains."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Awaitable, Callable
from urllib.parse import urlparse

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from chainledger.chain.rpc import JsonRpcClient
from chainledger.errors import ConfigError, RpcUrlSafetyError
from chainledger.models.schema import Chain, ChainFamily
from chainledger.storage.repositories import ChainStore

logger = logging.getLogger(__name__)

_SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,31}$")
_SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")
_BLOCKED_HOSTS = ("localhost", "host.docker.internal")

Resolver = Callable[[str], Awaitable[list[str]]]
ChainIdReader = Callable[[str, float], Awaitable[int]]


def is_valid_address(family: ChainFamily | str, address: str) -> bool:
    address = (address or "").strip()
    if ChainFamily(family) == ChainFamily.EVM:
        return Web3.is_address(address)
    return bool(_SOLANA_ADDRESS_RE.match(address))


def is_private_address(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or (ip.version == 4 and ip in _SHARED_ADDRESS_SPACE)
    )


async def _system_resolver(hostname: str) -> list[str]:
    infos = await asyncio.get_running_loop().getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def assert_safe_rpc_url(url: str, allow_unsafe: bool = False, resolver: Resolver | None = None) -> None:
    """Reject RPC URLs that point at local or private-network hosts."""
    if allow_unsafe:
        return
    parsed = urlparse(url or "")
    if not parsed.scheme or not parsed.hostname:
        raise RpcUrlSafetyError("RPC URL must be a valid absolute URL.")
    if parsed.scheme not in ("http", "https"):
        raise RpcUrlSafetyError("RPC URL protocol must be HTTP or HTTPS.")

    host = parsed.hostname.lower()
    if host in _BLOCKED_HOSTS or host.endswith(".localhost"):
        raise RpcUrlSafetyError("RPC URL cannot target localhost or host-internal addresses.")

    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        if is_private_address(host):
            raise RpcUrlSafetyError("RPC URL cannot target private-network IPs by default.")
        return

    try:
        addresses = await (resolver or _system_resolver)(host)
    except OSError as e:
        raise RpcUrlSafetyError("RPC URL hostname could not be resolved.") from e
    if not addresses:
        raise RpcUrlSafetyError("RPC URL hostname did not resolve to any IP address.")
    if any(is_private_address(a) for a in addresses):
        raise RpcUrlSafetyError("RPC URL hostname resolves to a private-network IP by default.")


async def fetch_evm_chain_id(rpc_url: str, timeout: float) -> int:
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    return await asyncio.wait_for(w3.eth.chain_id, timeout=timeout)


async def validate_custom_chain(
    family: ChainFamily | str,
    rpc_url: str,
    chain_id: int | None = None,
    allow_unsafe: bool = False,
    timeout: float = 5.0,
    resolver: Resolver | None = None,
    chain_id_reader: ChainIdReader | None = None,
    rpc: JsonRpcClient | None = None,
) -> tuple[str, str | None]:
    """(validation_status, validation_error) for a custom chain's RPC endpoint.

    URL safety violations raise RpcUrlSafetyError; liveness problems are
    reported as an "invalid" status.
    """
    await assert_safe_rpc_url(rpc_url, allow_unsafe=allow_unsafe, resolver=resolver)
    try:
        if ChainFamily(family) == ChainFamily.EVM:
            observed = await (chain_id_reader or fetch_evm_chain_id)(rpc_url, timeout)
            if chain_id is None or int(observed) != int(chain_id):
                raise ValueError(f"RPC chainId mismatch. expected={chain_id}, observed={observed}")
        else:
            client = rpc or JsonRpcClient(timeout=timeout)
            await client.call(rpc_url, "getHealth", [])
    except Exception as e:
        logger.warning(f"Custom chain validation failed for {rpc_url}: {e}")
        return "invalid", str(e) or type(e).__name__
    return "valid", None


async def register_custom_chain(
    chains: ChainStore,
    slug: str,
    name: str,
    family: ChainFamily | str,
    rpc_url: str,
    chain_id: int | None = None,
    allow_unsafe: bool = False,
    **validate_kwargs,
) -> Chain:
    slug = (slug or "").strip().lower()
    if not _SLUG_RE.match(slug):
        raise ConfigError(f"Invalid chain slug: {slug!r}")
    if chains.get_chain_by_id(slug) is not None:
        raise ConfigError(f"Chain already exists: {slug}")
    family = ChainFamily(family)
    if family == ChainFamily.EVM and chain_id is None:
        raise ConfigError("EVM chains require a numeric chain id.")

    status, error = await validate_custom_chain(
        family, rpc_url, chain_id, allow_unsafe=allow_unsafe, **validate_kwargs
    )
    chain = Chain(
        id=slug,
        slug=slug,
        name=name or slug,
        family=family,
        chain_id=chain_id if family == ChainFamily.EVM else None,
        rpc_url=rpc_url,
        is_active=status == "valid",
        is_builtin=False,
        validation_status=status,
        validation_error=error,
    )
    return chains.create_chain(chain)
