"""
Unit tests for the DuckDB stores.

Tests follow the Given/When/Then pattern for clarity.
"""

from datetime import date, timedelta
from decimal import Decimal

from chainledger.models.schema import ScanItem, SnapshotItem
from chainledger.storage.database import utcnow

from conftest import TOKEN_A, TOKEN_B, WALLET, universe_items

DAY = date(2024, 5, 1)


class TestChainStore:
    def test_seeding_is_idempotent(self, stores):
        """
        Given chains already seeded by the fixture
        When seeding again
        Then nothing new is inserted
        """
        assert stores.chains.seed_builtin_chains() == 0
        assert {c.id for c in stores.chains.list_chains()} >= {"ethereum", "solana", "polygon"}


class TestWalletStore:
    def test_evm_addresses_are_lowercased_and_deduplicated(self, stores, ethereum, wallet):
        """
        Given a wallet registered with a lowercase address
        When registering the same address in checksum case
        Then the existing wallet is returned
        """
        again = stores.wallets.create_wallet(ethereum, WALLET.upper().replace("0X", "0x"))

        assert again.id == wallet.id
        assert len(stores.wallets.list_wallets()) == 1

    def test_solana_addresses_keep_their_case(self, stores, solana):
        address = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"

        created = stores.wallets.create_wallet(solana, address)

        assert created.address == address
        assert stores.wallets.list_wallets(chain_id="solana")[0].id == created.id


class TestTrackedTokenStore:
    def test_auto_upsert_only_fills_missing_metadata(self, stores):
        """
        Given a tracked token with a known symbol but no decimals
        When an automatic upsert brings a different symbol and decimals
        Then the symbol is kept and decimals are filled
        """
        stores.tracked_tokens.upsert_tracked_token("ethereum", TOKEN_A, symbol="AAA")

        token = stores.tracked_tokens.upsert_tracked_token("ethereum", TOKEN_A, symbol="ZZZ", decimals=6)

        assert token.symbol == "AAA"
        assert token.decimals == 6
        assert stores.tracked_tokens.get_tracked_token("ethereum", TOKEN_A).decimals == 6

    def test_override_replaces_known_metadata(self, stores):
        stores.tracked_tokens.upsert_tracked_token("ethereum", TOKEN_A, symbol="AAA", decimals=18)

        token = stores.tracked_tokens.upsert_tracked_token(
            "ethereum", TOKEN_A, symbol="ZZZ", metadata_source="manual_override", override=True
        )

        assert token.symbol == "ZZZ"
        assert token.decimals == 18
        assert token.metadata_source == "manual_override"

    def test_tracking_source_survives_later_upserts(self, stores):
        stores.tracked_tokens.upsert_tracked_token("ethereum", TOKEN_A, tracking_source="manual")

        token = stores.tracked_tokens.upsert_tracked_token("ethereum", TOKEN_A, symbol="AAA")

        assert token.tracking_source == "manual"
        assert stores.tracked_tokens.count_tracked_tokens_by_chain("ethereum") == 1


class TestUniverseStore:
    def test_replace_snapshot_swaps_items(self, stores):
        """
        Given a ready snapshot with two items
        When the same chain and date are rewritten with one item
        Then the snapshot id is kept and only the new item remains
        """
        first = stores.universe.replace_snapshot("ethereum", DAY, "primary", "ready", universe_items(TOKEN_A, TOKEN_B))

        second = stores.universe.replace_snapshot("ethereum", DAY, "fallback", "partial", universe_items(TOKEN_B))

        assert second.id == first.id
        assert second.source == "fallback"
        assert second.item_count == 1
        assert [i.contract_or_mint for i in stores.universe.get_snapshot_items(first.id)] == [TOKEN_B]

    def test_failed_write_never_downgrades_eligible_snapshot(self, stores):
        """
        Given a ready snapshot for a date
        When a failed snapshot is written for the same date
        Then the ready snapshot and its items are preserved
        """
        ready = stores.universe.replace_snapshot("ethereum", DAY, "primary", "ready", universe_items(TOKEN_A))

        result = stores.universe.replace_snapshot("ethereum", DAY, "primary", "failed", [], error_message="down")

        assert result.status == "ready"
        assert result.id == ready.id
        assert len(stores.universe.get_snapshot_items(ready.id)) == 1

    def test_latest_eligible_skips_failed_days(self, stores):
        stores.universe.replace_snapshot("ethereum", DAY, "primary", "partial", universe_items(TOKEN_A))
        stores.universe.replace_snapshot("ethereum", DAY + timedelta(days=1), "primary", "failed", [])

        latest = stores.universe.get_latest_scan_eligible_snapshot("ethereum")

        assert latest.as_of_date_utc == DAY
        assert latest.status == "partial"
        assert stores.universe.get_latest_scan_eligible_snapshot("base") is None


class TestScanStore:
    def test_scan_items_are_idempotent_per_contract(self, stores, wallet):
        run = stores.scans.create_scan_run(wallet.id, "ethereum", "snap")
        item = ScanItem(scan_id=run.id, contract_or_mint=TOKEN_A, balance_normalized=Decimal("1.5"), held_flag=True)

        stores.scans.upsert_scan_item(item)
        stores.scans.upsert_scan_item(item.model_copy(update={"balance_normalized": Decimal("2.25")}))

        [stored] = stores.scans.get_scan_items(run.id)
        assert stored.balance_normalized == Decimal("2.25")

    def test_lifecycle_timestamps_are_kept(self, stores, wallet):
        run = stores.scans.create_scan_run(wallet.id, "ethereum", "snap")
        started = utcnow()

        stores.scans.update_scan_run(run.id, "running", started_at=started)
        finished = stores.scans.update_scan_run(run.id, "success", finished_at=utcnow())

        assert finished.status == "success"
        assert finished.started_at == started
        assert finished.universe_snapshot_id == "snap"

    def test_latest_held_items_come_from_newest_successful_run(self, stores, wallet):
        """
        Given an older successful scan, a newer one, and a newest failed one
        When reading the wallet's latest held items
        Then only the newer successful run's held items are returned
        """
        now = utcnow()
        older = stores.scans.create_scan_run(wallet.id, "ethereum", "snap")
        stores.scans.upsert_scan_item(ScanItem(scan_id=older.id, contract_or_mint=TOKEN_A, held_flag=True))
        stores.scans.update_scan_run(older.id, "success", finished_at=now - timedelta(hours=2))

        newer = stores.scans.create_scan_run(wallet.id, "ethereum", "snap")
        stores.scans.upsert_scan_item(ScanItem(scan_id=newer.id, contract_or_mint=TOKEN_B, held_flag=True))
        stores.scans.upsert_scan_item(ScanItem(scan_id=newer.id, contract_or_mint=TOKEN_A, held_flag=False))
        stores.scans.update_scan_run(newer.id, "partial", finished_at=now - timedelta(hours=1))

        failed = stores.scans.create_scan_run(wallet.id, "ethereum", "snap")
        stores.scans.update_scan_run(failed.id, "failed", finished_at=now)

        items = stores.scans.get_latest_successful_scan_items_by_wallet(wallet.id)

        assert [i.contract_or_mint for i in items] == [TOKEN_B]


class TestProtocolStore:
    def test_only_valid_active_contracts_are_snapshot_eligible(self, stores):
        mapping = {"positionRead": {"function": "balanceOf", "args": ["$walletAddress"], "returns": "uint256"}}
        valid = stores.protocols.create_protocol_contract("ethereum", TOKEN_A, mapping, label="Vault")
        stores.protocols.create_protocol_contract("ethereum", TOKEN_B, mapping, validation_status="invalid")

        eligible = stores.protocols.list_snapshot_eligible_contracts("ethereum")

        assert [c.id for c in eligible] == [valid.id]
        assert eligible[0].abi_mapping == mapping


class TestSnapshotStore:
    def test_snapshot_row_is_unique_per_date(self, stores, wallet):
        first = stores.snapshots.upsert_daily_snapshot(DAY, "running", started_at=utcnow())
        stores.snapshots.upsert_snapshot_item(
            SnapshotItem(snapshot_id=first.id, wallet_id=wallet.id, asset_type="token",
                         contract_or_mint=TOKEN_A, quantity=1.0, valuation_status="unknown")
        )

        second = stores.snapshots.upsert_daily_snapshot(DAY, "success", finished_at=utcnow())
        stores.snapshots.clear_snapshot_items(second.id)

        assert second.id == first.id
        assert second.status == "success"
        assert stores.snapshots.get_snapshot_items(first.id) == []


class TestPriceStore:
    def test_recent_price_respects_age_bound(self, stores):
        """
        Given a price observed three hours ago
        When asking for a price no older than one hour, then no older than a day
        Then only the wider window finds it
        """
        observed = utcnow() - timedelta(hours=3)
        stores.prices.record_prices("ethereum", {TOKEN_A: (1.25, "primary")}, observed_at=observed)

        assert stores.prices.get_recent_price("ethereum", TOKEN_A, utcnow() - timedelta(hours=1)) is None
        assert stores.prices.get_recent_price("ethereum", TOKEN_A, utcnow() - timedelta(days=1)) == 1.25
