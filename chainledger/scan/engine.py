"""Wallet scan: balances over universe + tracked tokens + native, auto-tracking, valuation."""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from chainledger.balances.batcher import BalanceBatcher
from chainledger.chain.registry import config_for, is_native_ref, native_id, native_key_for, valuation_reference
from chainledger.errors import NoScanEligibleUniverse, NotFoundError
from chainledger.models.schema import (
    BalanceRecord,
    Chain,
    Position,
    ScanItem,
    ScanOutcome,
    TokenDescriptor,
    TokenUniverseSnapshot,
    TrackedToken,
    UniverseItem,
    ValuedPosition,
)
from chainledger.storage.database import utc_today, utcnow
from chainledger.storage.repositories import Stores
from chainledger.universe.refresh import UniverseRefreshEngine
from chainledger.valuation.engine import ValuationEngine

logger = logging.getLogger(__name__)


def native_descriptor(chain: Chain) -> TokenDescriptor:
    cfg = config_for(chain)
    key = native_id(chain)
    return TokenDescriptor(
        contract_or_mint=key,
        decimals=cfg.native_decimals,
        is_native=True,
        valuation_ref=valuation_reference(chain, key),
        symbol=cfg.native_symbol,
        name=cfg.name,
    )


def build_scan_set(
    chain: Chain,
    tracked: list[TrackedToken],
    universe_items: list[UniverseItem],
) -> list[TokenDescriptor]:
    """Deduplicated scan set keyed by native-aware contract identity.

    Tracked tokens replace universe discovery entirely when there are any. The
    native asset is always present once; tracked aliases of it merge into it.
    """
    native = native_descriptor(chain)
    descriptors: dict[str, TokenDescriptor] = {native.contract_or_mint: native}
    for entry in tracked or universe_items:
        key = native_key_for(chain, entry.contract_or_mint)
        if not key or key in descriptors:
            continue
        descriptors[key] = TokenDescriptor(
            contract_or_mint=key,
            decimals=entry.decimals,
            symbol=entry.symbol,
            name=entry.name,
        )
    return list(descriptors.values())


def _raw_integer(record: BalanceRecord) -> str:
    raw = (record.balance_raw or "0x0").strip()
    return str(int(raw, 16)) if raw.lower().startswith("0x") else str(int(raw or "0"))


class WalletScanEngine:
    def __init__(
        self,
        stores: Stores,
        batcher: BalanceBatcher,
        valuation: ValuationEngine | None = None,
        refresh: UniverseRefreshEngine | None = None,
        historical_max_age_hours: int = 24,
    ):
        self.stores = stores
        self.batcher = batcher
        self.valuation = valuation
        self.refresh = refresh
        self.historical_max_age = timedelta(hours=historical_max_age_hours)

    async def resolve_universe(self, chain: Chain) -> TokenUniverseSnapshot:
        """Latest scan-eligible snapshot, refreshing on demand when there is none.

        Chains that already track tokens get a synthesized empty partial snapshot
        when the refresh fails, so manual tokens can still be scanned.
        """
        universe = self.stores.universe
        snapshot = universe.get_latest_scan_eligible_snapshot(chain.id)
        if snapshot is not None:
            return snapshot

        reason = "no universe refresh configured"
        if self.refresh is not None:
            try:
                outcome = await self.refresh.refresh_chain(chain)
                snapshot = universe.get_snapshot_by_id(outcome.snapshot_id) if outcome.snapshot_id else None
                if snapshot is not None and snapshot.is_scan_eligible:
                    return snapshot
                reason = outcome.error_message or f"refresh produced a {outcome.status} snapshot"
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.warning(f"On-demand universe refresh failed for {chain.slug}: {reason}")

        if self.stores.tracked_tokens.count_tracked_tokens_by_chain(chain.id) > 0:
            logger.warning(f"Scanning {chain.slug} against tracked tokens only: {reason}")
            return universe.replace_snapshot(
                chain.id, utc_today(), "fallback", "partial", [],
                error_message=f"Synthesized for tracked tokens: {reason}",
            )
        raise NoScanEligibleUniverse(f"No scan-eligible universe snapshot for chain {chain.slug}: {reason}")

    async def run_scan(self, wallet_id: str) -> ScanOutcome:
        wallet = self.stores.wallets.get_wallet_by_id(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found: {wallet_id}")
        chain = self.stores.chains.get_chain_by_id(wallet.chain_id)
        if chain is None:
            raise NotFoundError(f"Chain not found for wallet: {wallet.chain_id}")

        snapshot = await self.resolve_universe(chain)
        scans = self.stores.scans
        run = scans.create_scan_run(wallet.id, chain.id, snapshot.id)

        try:
            run = scans.update_scan_run(run.id, "running", started_at=utcnow())
            logger.info(f"Scan {run.id} started for {wallet.address} on {chain.slug} (universe {snapshot.id})")

            tracked = self.stores.tracked_tokens.list_tracked_tokens(chain.id)
            universe_items = [] if tracked else self.stores.universe.get_snapshot_items(snapshot.id)
            tokens = build_scan_set(chain, tracked, universe_items)

            balances = await self.batcher.resolve_balances(chain, wallet.address, tokens)

            items, auto_tracked = await self._track(chain, run.id, tokens, tracked, balances)
            items = await self._value(chain, items, tokens)

            for item in items:
                scans.upsert_scan_item(item)

            status, message = _scan_status(items)
            run = scans.update_scan_run(run.id, status, finished_at=utcnow(), error_message=message)
            logger.info(f"Scan {run.id} finished: {status} ({len(items)} items, {auto_tracked} auto-tracked)")
            return ScanOutcome(
                scan_run=run,
                auto_tracked_count=auto_tracked,
                universe_snapshot_id=snapshot.id,
                items=items,
            )
        except Exception as e:
            logger.error(f"Scan {run.id} failed: {e}")
            scans.update_scan_run(run.id, "failed", finished_at=utcnow(), error_message=str(e) or type(e).__name__)
            raise

    async def rescan_wallet(self, wallet_id: str) -> ScanOutcome:
        """Always a fresh run; earlier runs stay untouched."""
        return await self.run_scan(wallet_id)

    async def _track(
        self,
        chain: Chain,
        scan_id: str,
        tokens: list[TokenDescriptor],
        tracked: list[TrackedToken],
        balances: list[BalanceRecord],
    ) -> tuple[list[ScanItem], int]:
        descriptors = {t.contract_or_mint: t for t in tokens}
        tracked_by_key = {native_key_for(chain, t.contract_or_mint): t for t in tracked}
        store = self.stores.tracked_tokens

        items: dict[str, ScanItem] = {}
        auto_tracked = 0
        for record in balances:
            key = native_key_for(chain, record.contract_or_mint)
            descriptor = descriptors.get(key) or TokenDescriptor(contract_or_mint=key)
            held = not record.resolution_error and record.balance_normalized > 0
            token = tracked_by_key.get(key)
            auto = False

            if held and not is_native_ref(key):
                if token is None:
                    token = store.upsert_tracked_token(
                        chain.id, key,
                        symbol=descriptor.symbol,
                        name=descriptor.name,
                        decimals=descriptor.decimals if descriptor.decimals is not None else record.decimals,
                        metadata_source="auto",
                        tracking_source="scan",
                    )
                    tracked_by_key[key] = token
                    auto = True
                    auto_tracked += 1
                elif token.symbol is None:
                    token = await self._refine_metadata(chain, token)
                    tracked_by_key[key] = token

            items[key] = ScanItem(
                scan_id=scan_id,
                token_id=token.id if token else None,
                contract_or_mint=key,
                balance_raw=_raw_integer(record),
                balance_normalized=record.balance_normalized if held else Decimal(0),
                held_flag=held,
                auto_tracked_flag=auto,
                resolution_error=record.resolution_error,
            )
        return list(items.values()), auto_tracked

    async def _refine_metadata(self, chain: Chain, token: TrackedToken) -> TrackedToken:
        try:
            metadata = await self.batcher.resolver_for(chain).read_metadata(chain, token.contract_or_mint)
        except Exception as e:
            logger.debug(f"Metadata refinement failed for {token.contract_or_mint}: {e}")
            return token
        if not any(metadata.get(k) is not None for k in ("symbol", "name", "decimals")):
            return token
        return self.stores.tracked_tokens.upsert_tracked_token(
            chain.id,
            token.contract_or_mint,
            symbol=metadata.get("symbol"),
            name=metadata.get("name"),
            decimals=metadata.get("decimals"),
            metadata_source=token.metadata_source,
            tracking_source=token.tracking_source,
        )

    async def _value(self, chain: Chain, items: list[ScanItem], tokens: list[TokenDescriptor]) -> list[ScanItem]:
        held = [i for i in items if i.held_flag]
        if not held:
            return items

        descriptors = {t.contract_or_mint: t for t in tokens}
        positions = [
            Position(
                contract_or_mint=i.contract_or_mint,
                quantity=float(i.balance_normalized),
                symbol=descriptors[i.contract_or_mint].symbol if i.contract_or_mint in descriptors else None,
                valuation_ref=descriptors[i.contract_or_mint].valuation_ref if i.contract_or_mint in descriptors else None,
                token_id=i.token_id,
            )
            for i in held
        ]
        valued: list[ValuedPosition] = []
        if self.valuation is not None:
            valued = await self.valuation.valuate_positions(chain, positions)
        by_key = {v.contract_or_mint: v for v in valued}

        observed: dict[str, tuple[float, str]] = {}
        not_before = utcnow() - self.historical_max_age
        out = []
        for item in items:
            if not item.held_flag:
                out.append(item)
                continue
            quote = by_key.get(item.contract_or_mint)
            if quote is not None and quote.valuation_status == "known":
                observed[item.contract_or_mint] = (quote.usd_price, quote.price_source or "primary")
                out.append(item.model_copy(update={
                    "usd_price": quote.usd_price,
                    "usd_value": quote.usd_value,
                    "valuation_status": "known",
                    "price_source": quote.price_source,
                }))
                continue

            price = self.stores.prices.get_recent_price(chain.id, item.contract_or_mint, not_before)
            if price is not None:
                logger.info(f"Using historical price for {item.contract_or_mint} on {chain.slug}")
                out.append(item.model_copy(update={
                    "usd_price": price,
                    "usd_value": float(item.balance_normalized) * price,
                    "valuation_status": "known",
                    "price_source": "historical",
                }))
            else:
                out.append(item)

        self.stores.prices.record_prices(chain.id, observed)
        return out


def _scan_status(items: list[ScanItem]) -> tuple[str, str | None]:
    unpriced = [i.contract_or_mint for i in items if i.held_flag and i.valuation_status != "known"]
    failed = [i.contract_or_mint for i in items if i.resolution_error]
    problems = []
    if unpriced:
        problems.append(f"{len(unpriced)} held token(s) without price: {', '.join(unpriced[:5])}")
    if failed:
        problems.append(f"{len(failed)} balance read(s) failed: {', '.join(failed[:5])}")
    return ("partial", "; ".join(problems)) if problems else ("success", None)
