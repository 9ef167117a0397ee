"""Centralized configuration via pydantic-settings. All secrets from .env."""

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Market data / price providers
    birdeye_api_key: str = ""
    birdeye_base_url: str = "https://public-api.birdeye.so"
    coingecko_api_key: str = ""
    coingecko_base_url: str = "https://pro-api.coingecko.com/api/v3"
    coingecko_key_mode: str = "auto"
    coingecko_rate_limit_wait: float = 60.0
    dexscreener_base_url: str = "https://api.dexscreener.com"

    # Optional per-chain RPC overrides
    solana_rpc_url: str = ""
    ethereum_rpc_url: str = ""
    base_rpc_url: str = ""
    arbitrum_rpc_url: str = ""
    optimism_rpc_url: str = ""
    polygon_rpc_url: str = ""
    bsc_rpc_url: str = ""
    avalanche_rpc_url: str = ""
    allow_unsafe_rpc_urls: bool = False

    # Data paths
    data_dir: Path = Field(default_factory=lambda: PROJECT_ROOT / "data")
    duckdb_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "chainledger.duckdb")

    # Pipeline tuning
    universe_target_size: int = 200
    balance_chunk_size: int = 50
    max_concurrency: int = 6
    platform_fetch_concurrency: int = 8
    price_batch_size: int = 100
    rpc_timeout: float = 10.0
    http_timeout: float = 15.0
    icon_cache_ttl: float = 6 * 60 * 60
    price_cache_ttl: float = 60.0
    historical_price_max_age_hours: int = 24

    log_level: str = "INFO"

    def get_rpc_url(self, slug: str, default: str = "") -> str:
        """Get RPC URL for a chain slug, using override or the chain default."""
        override = getattr(self, f"{slug}_rpc_url", "")
        if override:
            return override
        if default:
            return default
        raise ValueError(f"No RPC URL configured for chain '{slug}'")


@lru_cache
def get_settings() -> Settings:
    return Settings()
