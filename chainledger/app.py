"""Wire stores, provider clients and engines from settings."""

from __future__ import annotations

from dataclasses import dataclass

import duckdb
import httpx

from chainledger.balances.batcher import BalanceBatcher
from chainledger.balances.resolver import build_resolvers
from chainledger.chain.rpc import JsonRpcClient
from chainledger.config import Settings, get_settings
from chainledger.jobs.cycle import DailyCycle
from chainledger.protocols.reader import ProtocolPositionReader
from chainledger.providers.birdeye import BirdeyeClient
from chainledger.providers.cache import TTLCache
from chainledger.providers.coingecko import CoinGeckoClient
from chainledger.providers.dexscreener import DexScreenerClient
from chainledger.scan.engine import WalletScanEngine
from chainledger.snapshots.daily import DailySnapshotOrchestrator
from chainledger.storage.database import get_connection
from chainledger.storage.repositories import Stores
from chainledger.tokens.icons import TokenIconService
from chainledger.universe.refresh import UniverseRefreshEngine
from chainledger.valuation.engine import ValuationEngine


@dataclass
class Services:
    stores: Stores
    http: httpx.AsyncClient
    rpc: JsonRpcClient
    coingecko: CoinGeckoClient
    batcher: BalanceBatcher
    refresh: UniverseRefreshEngine
    valuation: ValuationEngine
    scanner: WalletScanEngine
    snapshotter: DailySnapshotOrchestrator
    cycle: DailyCycle
    icons: TokenIconService

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.rpc.aclose()


def build_services(
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: Settings | None = None,
    http: httpx.AsyncClient | None = None,
) -> Services:
    settings = settings or get_settings()
    conn = conn or get_connection(settings.duckdb_path)
    stores = Stores.open(conn)
    stores.chains.seed_builtin_chains()

    http = http or httpx.AsyncClient(timeout=settings.http_timeout)
    rpc = JsonRpcClient(timeout=settings.rpc_timeout)

    birdeye = BirdeyeClient(settings.birdeye_api_key, settings.birdeye_base_url, client=http, timeout=settings.http_timeout)
    coingecko = CoinGeckoClient(
        settings.coingecko_api_key,
        settings.coingecko_base_url,
        key_mode=settings.coingecko_key_mode,
        client=http,
        timeout=settings.http_timeout,
        platform_concurrency=settings.platform_fetch_concurrency,
        price_cache=TTLCache(settings.price_cache_ttl),
        rate_limit_wait=settings.coingecko_rate_limit_wait,
    )
    dexscreener = DexScreenerClient(settings.dexscreener_base_url, client=http, timeout=settings.http_timeout)

    batcher = BalanceBatcher(build_resolvers(rpc, settings.max_concurrency), chunk_size=settings.balance_chunk_size)
    refresh = UniverseRefreshEngine(
        stores.chains, stores.universe, birdeye, coingecko, target_size=settings.universe_target_size
    )
    valuation = ValuationEngine(
        coingecko, dexscreener, batch_size=settings.price_batch_size, max_concurrent=settings.max_concurrency
    )
    scanner = WalletScanEngine(
        stores, batcher, valuation, refresh, historical_max_age_hours=settings.historical_price_max_age_hours
    )
    snapshotter = DailySnapshotOrchestrator(stores, valuation, ProtocolPositionReader(rpc))
    return Services(
        stores=stores,
        http=http,
        rpc=rpc,
        coingecko=coingecko,
        batcher=batcher,
        refresh=refresh,
        valuation=valuation,
        scanner=scanner,
        snapshotter=snapshotter,
        cycle=DailyCycle(stores, refresh, scanner, snapshotter),
        icons=TokenIconService(stores.chains, coingecko, TTLCache(settings.icon_cache_ttl)),
    )
