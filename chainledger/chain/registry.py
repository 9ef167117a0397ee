"""Chain registry mapping chain slug to configuration."""

from __future__ import annotations

from dataclasses import dataclass

from chainledger.config import get_settings
from chainledger.models.schema import Chain, ChainFamily

NATIVE_PREFIX = "native:"


@dataclass(frozen=True)
class ChainConfig:
    slug: str
    name: str
    family: ChainFamily
    rpc_url: str
    chain_id: int | None = None
    native_symbol: str = "ETH"
    native_decimals: int = 18
    native_coingecko_id: str | None = None
    wrapped_native: str | None = None  # valuation reference for the native asset
    native_aliases: tuple[str, ...] = ()
    fallback_rpc_urls: tuple[str, ...] = ()
    coingecko_platform: str | None = None
    birdeye_code: str | None = None
    dexscreener_id: str | None = None


# Pseudo-address some indexers use for the native asset on EVM chains
EEEE_NATIVE = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

CHAINS: dict[str, ChainConfig] = {
    "solana": ChainConfig(
        slug="solana", name="Solana", family=ChainFamily.SOLANA,
        rpc_url="https://api.mainnet-beta.solana.com",
        native_symbol="SOL", native_decimals=9, native_coingecko_id="solana",
        wrapped_native="So11111111111111111111111111111111111111112",
        coingecko_platform="solana", birdeye_code="solana", dexscreener_id="solana",
    ),
    "ethereum": ChainConfig(
        slug="ethereum", name="Ethereum", family=ChainFamily.EVM, chain_id=1,
        rpc_url="https://cloudflare-eth.com",
        native_symbol="ETH", native_coingecko_id="ethereum",
        wrapped_native="0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://ethereum.publicnode.com",),
        coingecko_platform="ethereum", birdeye_code="ethereum", dexscreener_id="ethereum",
    ),
    "base": ChainConfig(
        slug="base", name="Base", family=ChainFamily.EVM, chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH", native_coingecko_id="ethereum",
        wrapped_native="0x4200000000000000000000000000000000000006",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://base-rpc.publicnode.com",),
        coingecko_platform="base", birdeye_code="base", dexscreener_id="base",
    ),
    "arbitrum": ChainConfig(
        slug="arbitrum", name="Arbitrum", family=ChainFamily.EVM, chain_id=42161,
        rpc_url="https://arb1.arbitrum.io/rpc",
        native_symbol="ETH", native_coingecko_id="ethereum",
        wrapped_native="0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://arbitrum.llamarpc.com", "https://arbitrum-one-rpc.publicnode.com"),
        coingecko_platform="arbitrum-one", birdeye_code="arbitrum", dexscreener_id="arbitrum",
    ),
    "optimism": ChainConfig(
        slug="optimism", name="Optimism", family=ChainFamily.EVM, chain_id=10,
        rpc_url="https://mainnet.optimism.io",
        native_symbol="ETH", native_coingecko_id="ethereum",
        wrapped_native="0x4200000000000000000000000000000000000006",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://optimism-rpc.publicnode.com",),
        coingecko_platform="optimistic-ethereum", birdeye_code="optimism", dexscreener_id="optimism",
    ),
    "polygon": ChainConfig(
        slug="polygon", name="Polygon", family=ChainFamily.EVM, chain_id=137,
        rpc_url="https://polygon-rpc.com",
        native_symbol="POL", native_coingecko_id="matic-network",
        wrapped_native="0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270",  # WMATIC
        native_aliases=("0x0000000000000000000000000000000000001010", EEEE_NATIVE),
        fallback_rpc_urls=("https://polygon-bor-rpc.publicnode.com",),
        coingecko_platform="polygon-pos", birdeye_code="polygon", dexscreener_id="polygon",
    ),
    "bsc": ChainConfig(
        slug="bsc", name="BNB Smart Chain", family=ChainFamily.EVM, chain_id=56,
        rpc_url="https://bsc-dataseed.binance.org",
        native_symbol="BNB", native_coingecko_id="binancecoin",
        wrapped_native="0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://bsc-rpc.publicnode.com",),
        coingecko_platform="binance-smart-chain", birdeye_code="bsc", dexscreener_id="bsc",
    ),
    "avalanche": ChainConfig(
        slug="avalanche", name="Avalanche C-Chain", family=ChainFamily.EVM, chain_id=43114,
        rpc_url="https://api.avax.network/ext/bc/C/rpc",
        native_symbol="AVAX", native_coingecko_id="avalanche-2",
        wrapped_native="0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7",
        native_aliases=(EEEE_NATIVE,),
        fallback_rpc_urls=("https://avalanche-c-chain-rpc.publicnode.com",),
        coingecko_platform="avalanche", birdeye_code="avalanche", dexscreener_id="avalanche",
    ),
}


def get_chain_config(slug: str) -> ChainConfig:
    if slug not in CHAINS:
        raise ValueError(f"Unknown chain '{slug}'. Supported: {list(CHAINS.keys())}")
    return CHAINS[slug]


def config_for(chain: Chain) -> ChainConfig:
    """Registry entry for a chain, or a bare config for custom chains."""
    if chain.slug in CHAINS:
        return CHAINS[chain.slug]
    return ChainConfig(
        slug=chain.slug,
        name=chain.name,
        family=chain.family,
        rpc_url=chain.rpc_url,
        chain_id=chain.chain_id,
        native_symbol="SOL" if chain.family == ChainFamily.SOLANA else "ETH",
        native_decimals=9 if chain.family == ChainFamily.SOLANA else 18,
    )


def builtin_chains() -> list[Chain]:
    settings = get_settings()
    return [
        Chain(
            id=c.slug,
            slug=c.slug,
            name=c.name,
            family=c.family,
            chain_id=c.chain_id,
            rpc_url=settings.get_rpc_url(c.slug, c.rpc_url),
        )
        for c in CHAINS.values()
    ]


def normalize_address(family: ChainFamily | str, address: str | None) -> str:
    """Case-normalize an address for its family: lowercase EVM, verbatim Solana."""
    trimmed = (address or "").strip()
    if not trimmed:
        return ""
    return trimmed.lower() if ChainFamily(family) == ChainFamily.EVM else trimmed


def native_id(chain: Chain) -> str:
    return f"{NATIVE_PREFIX}{chain.slug}"


def is_native_ref(contract_or_mint: str | None) -> bool:
    return bool(contract_or_mint) and contract_or_mint.startswith(NATIVE_PREFIX)


def native_key_for(chain: Chain, contract_or_mint: str) -> str:
    """Collapse chain-specific aliases of the native asset onto the native identifier."""
    normalized = normalize_address(chain.family, contract_or_mint)
    if is_native_ref(normalized):
        return native_id(chain)
    if normalized in config_for(chain).native_aliases:
        return native_id(chain)
    return normalized


def valuation_reference(chain: Chain, contract_or_mint: str) -> str:
    """Contract to price a position against. Native assets use the wrapped-native market."""
    if is_native_ref(contract_or_mint):
        return config_for(chain).wrapped_native or contract_or_mint
    return contract_or_mint


def rpc_urls(chain: Chain) -> list[str]:
    """Configured RPC first, then the chain's public fallbacks, deduplicated."""
    urls = [chain.rpc_url, *config_for(chain).fallback_rpc_urls]
    seen: set[str] = set()
    out: list[str] = []
    for url in urls:
        url = (url or "").strip()
        if url and url not in seen:
            seen.add(url)
            out.append(url)
    return out
