"""Daily cycle: refresh universes, rescan wallets, then take a forced snapshot."""

from __future__ import annotations

import logging
from datetime import date, datetime

from pydantic import BaseModel, Field
from tqdm import tqdm

from chainledger.models.schema import Chain, RefreshOutcome, SnapshotOutcome, Wallet
from chainledger.scan.engine import WalletScanEngine
from chainledger.snapshots.daily import DailySnapshotOrchestrator
from chainledger.storage.database import utc_today, utcnow
from chainledger.storage.repositories import Stores
from chainledger.universe.refresh import UniverseRefreshEngine

logger = logging.getLogger(__name__)


class WalletFailure(BaseModel):
    wallet_id: str
    error: str


class ChainCycleOutcome(BaseModel):
    chain_id: str
    chain_slug: str
    status: str
    refresh_status: str | None = None
    refresh_error: str | None = None
    wallet_count: int = 0
    rescanned_wallet_count: int = 0
    failures: list[WalletFailure] = Field(default_factory=list)
    catalog_upserted: int = 0


class CycleSummary(BaseModel):
    skipped: bool = False
    reason: str | None = None
    status: str | None = None
    as_of_date_utc: date
    started_at: datetime
    finished_at: datetime | None = None
    chains: list[ChainCycleOutcome] = Field(default_factory=list)
    snapshot: SnapshotOutcome | None = None
    error_message: str | None = None


class DailyCycle:
    def __init__(
        self,
        stores: Stores,
        refresh: UniverseRefreshEngine,
        scanner: WalletScanEngine,
        snapshotter: DailySnapshotOrchestrator,
        sync_catalog: bool = False,
    ):
        self.stores = stores
        self.refresh = refresh
        self.scanner = scanner
        self.snapshotter = snapshotter
        self.sync_catalog = sync_catalog
        self.running = False
        self.last_summary: CycleSummary | None = None

    async def run(self, progress: bool = False) -> CycleSummary:
        started_at = utcnow()
        as_of = utc_today()
        if self.running:
            return CycleSummary(
                skipped=True, reason="in_progress", as_of_date_utc=as_of, started_at=started_at, finished_at=utcnow()
            )

        self.running = True
        try:
            by_chain: dict[str, list[Wallet]] = {}
            for wallet in self.stores.wallets.list_wallets():
                by_chain.setdefault(wallet.chain_id, []).append(wallet)

            outcomes = []
            for chain_id, wallets in tqdm(by_chain.items(), desc="Daily cycle", disable=not progress):
                chain = self.stores.chains.get_chain_by_id(chain_id)
                if chain is None or not chain.is_active:
                    continue
                outcomes.append(await self._run_chain(chain, wallets, as_of))

            snapshot = await self.snapshotter.run_daily_snapshot(as_of, force=True, progress=progress)
            if any(o.status == "failed" for o in outcomes):
                status = "failed"
            elif any(o.status == "partial" for o in outcomes):
                status = "partial"
            else:
                status = "success"
            summary = CycleSummary(
                status=status, as_of_date_utc=as_of, started_at=started_at,
                finished_at=utcnow(), chains=outcomes, snapshot=snapshot,
            )
        except Exception as e:
            logger.error(f"Daily cycle failed: {e}")
            summary = CycleSummary(
                status="failed", as_of_date_utc=as_of, started_at=started_at,
                finished_at=utcnow(), error_message=str(e) or type(e).__name__,
            )
        finally:
            self.running = False

        self.last_summary = summary
        logger.info(f"Daily cycle {as_of}: {summary.status}")
        return summary

    async def _run_chain(self, chain: Chain, wallets: list[Wallet], as_of: date) -> ChainCycleOutcome:
        refresh: RefreshOutcome | None = None
        refresh_error = None
        try:
            refresh = await self.refresh.refresh_chain(chain, as_of)
        except Exception as e:
            refresh_error = str(e) or type(e).__name__
            logger.warning(f"Cycle refresh failed for {chain.slug}: {refresh_error}")
            refresh = self.refresh.preserve_or_fail(chain, as_of, refresh_error)

        catalog_upserted = 0
        if self.sync_catalog and refresh_error is None and refresh.snapshot_id:
            items = self.stores.universe.get_snapshot_items(refresh.snapshot_id)
            catalog_upserted = len(self.stores.tracked_tokens.upsert_tracked_tokens_batch(chain.id, items))

        failures = []
        for wallet in wallets:
            try:
                await self.scanner.rescan_wallet(wallet.id)
            except Exception as e:
                failures.append(WalletFailure(wallet_id=wallet.id, error=str(e) or type(e).__name__))

        if refresh_error and wallets and len(failures) == len(wallets):
            status = "failed"
        elif refresh_error or failures:
            status = "partial"
        else:
            status = "success"
        return ChainCycleOutcome(
            chain_id=chain.id,
            chain_slug=chain.slug,
            status=status,
            refresh_status=refresh.status if refresh else None,
            refresh_error=refresh_error,
            wallet_count=len(wallets),
            rescanned_wallet_count=len(wallets) - len(failures),
            failures=failures,
            catalog_upserted=catalog_upserted,
        )
