"""Daily portfolio snapshot across all wallets and registered protocol positions."""

from __future__ import annotations

import logging
from datetime import date

from tqdm import tqdm

from chainledger.chain.registry import config_for, is_native_ref, valuation_reference
from chainledger.models.schema import Chain, Position, SnapshotItem, SnapshotOutcome, ValuedPosition, Wallet
from chainledger.protocols.reader import ProtocolPositionReader
from chainledger.storage.database import utc_today, utcnow
from chainledger.storage.repositories import Stores
from chainledger.valuation.engine import ValuationEngine

logger = logging.getLogger(__name__)

DONE_STATUSES = ("success", "partial")


class DailySnapshotOrchestrator:
    def __init__(
        self,
        stores: Stores,
        valuation: ValuationEngine,
        protocol_reader: ProtocolPositionReader | None = None,
    ):
        self.stores = stores
        self.valuation = valuation
        self.protocol_reader = protocol_reader

    async def run_daily_snapshot(
        self,
        snapshot_date_utc: date | None = None,
        force: bool = False,
        progress: bool = False,
    ) -> SnapshotOutcome:
        """Value every active wallet's latest held positions for one UTC date.

        A date that already completed is skipped unless forced. Unknown prices and
        failed protocol reads make the run partial; an unexpected exception marks
        it failed and propagates.
        """
        snapshot_date_utc = snapshot_date_utc or utc_today()
        snapshots = self.stores.snapshots

        existing = snapshots.get_daily_snapshot_by_date(snapshot_date_utc)
        if existing is not None and not force and existing.status in DONE_STATUSES:
            logger.info(f"Daily snapshot {snapshot_date_utc} already {existing.status}, skipping")
            return SnapshotOutcome(snapshot=existing, skipped=True)

        running = snapshots.upsert_daily_snapshot(snapshot_date_utc, "running", started_at=utcnow())
        snapshots.clear_snapshot_items(running.id)

        try:
            errors: list[str] = []
            unknown: list[str] = []
            item_count = 0

            wallets = self.stores.wallets.list_wallets()
            for wallet in tqdm(wallets, desc="Snapshotting wallets", disable=not progress):
                chain = self.stores.chains.get_chain_by_id(wallet.chain_id)
                if chain is None:
                    errors.append(f"Chain not found for wallet {wallet.id}: {wallet.chain_id}")
                    continue

                for asset_type, position in await self._wallet_positions(chain, wallet, errors):
                    snapshots.upsert_snapshot_item(
                        SnapshotItem(
                            snapshot_id=running.id,
                            wallet_id=wallet.id,
                            asset_type=asset_type,
                            asset_ref_id=position.token_id,
                            contract_or_mint=position.contract_or_mint,
                            symbol=position.symbol,
                            quantity=position.quantity,
                            usd_price=position.usd_price,
                            usd_value=position.usd_value,
                            valuation_status=position.valuation_status,
                        )
                    )
                    item_count += 1
                    if position.valuation_status == "unknown":
                        unknown.append(position.symbol or position.contract_or_mint)

            problems = []
            if unknown:
                problems.append(f"{len(unknown)} position(s) without price: {', '.join(unknown[:5])}")
            problems.extend(errors)
            status = "partial" if problems else "success"
            snapshot = snapshots.upsert_daily_snapshot(
                snapshot_date_utc,
                status,
                started_at=running.started_at,
                finished_at=utcnow(),
                error_message="; ".join(problems) or None,
            )
            logger.info(f"Daily snapshot {snapshot_date_utc}: {status} ({item_count} items)")
            return SnapshotOutcome(snapshot=snapshot, item_count=item_count, errors=errors)
        except Exception as e:
            logger.error(f"Daily snapshot {snapshot_date_utc} failed: {e}")
            snapshots.upsert_daily_snapshot(
                snapshot_date_utc,
                "failed",
                started_at=running.started_at,
                finished_at=utcnow(),
                error_message=str(e) or type(e).__name__,
            )
            raise

    async def _wallet_positions(
        self,
        chain: Chain,
        wallet: Wallet,
        errors: list[str],
    ) -> list[tuple[str, ValuedPosition]]:
        symbols = {t.id: t.symbol for t in self.stores.tracked_tokens.list_tracked_tokens(chain.id, include_inactive=True)}
        native_symbol = config_for(chain).native_symbol

        positions = [
            Position(
                contract_or_mint=item.contract_or_mint,
                quantity=float(item.balance_normalized),
                symbol=native_symbol if is_native_ref(item.contract_or_mint) else symbols.get(item.token_id),
                valuation_ref=valuation_reference(chain, item.contract_or_mint),
                wallet_id=wallet.id,
                token_id=item.token_id,
            )
            for item in self.stores.scans.get_latest_successful_scan_items_by_wallet(wallet.id)
        ]
        out = []
        if positions:
            out.extend(("token", v) for v in await self.valuation.valuate_positions(chain, positions))

        if self.protocol_reader is None:
            return out
        for protocol in self.stores.protocols.list_snapshot_eligible_contracts(chain.id):
            try:
                position = await self.protocol_reader.resolve_position(chain, wallet, protocol)
            except Exception as e:
                logger.warning(f"Protocol read failed for wallet {wallet.id}: {e}")
                errors.append(str(e) or f"Protocol {protocol.label or protocol.id} read failed")
                continue
            [valued] = await self.valuation.valuate_positions(chain, [position])
            out.append(("protocol", valued))
        return out
