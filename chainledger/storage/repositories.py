"""DuckDB-backed stores consumed by the engines.

One class per collaborator; all share a single connection. Natural keys are the
table primary keys, so every upsert is a keyed select-then-write.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

import duckdb
import pandas as pd

from chainledger.chain.registry import builtin_chains, normalize_address
from chainledger.models.schema import (
    SCAN_ELIGIBLE_STATUSES,
    Chain,
    DailySnapshot,
    ProtocolContract,
    ScanItem,
    ScanRun,
    SnapshotItem,
    TokenUniverseSnapshot,
    TrackedToken,
    UniverseItem,
    Wallet,
)
from chainledger.storage.database import fetch_dicts, fetch_one, new_id, utcnow

ITEM_COLUMNS = ["snapshot_id", "rank", "contract_or_mint", "symbol", "name", "decimals", "market_cap_usd"]


class ChainStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def seed_builtin_chains(self) -> int:
        inserted = 0
        for chain in builtin_chains():
            if self.get_chain_by_id(chain.id) is None:
                self.create_chain(chain)
                inserted += 1
        return inserted

    def create_chain(self, chain: Chain) -> Chain:
        self.conn.execute(
            """
            INSERT INTO chains (id, slug, name, family, chain_id, rpc_url, is_active, is_builtin,
                                validation_status, validation_error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [chain.id, chain.slug, chain.name, chain.family.value, chain.chain_id, chain.rpc_url,
             chain.is_active, chain.is_builtin, chain.validation_status, chain.validation_error],
        )
        return chain

    def list_chains(self, include_inactive: bool = False) -> list[Chain]:
        query = "SELECT * FROM chains"
        if not include_inactive:
            query += " WHERE is_active"
        return [Chain(**row) for row in fetch_dicts(self.conn, query + " ORDER BY id")]

    def get_chain_by_id(self, chain_id: str) -> Chain | None:
        row = fetch_one(self.conn, "SELECT * FROM chains WHERE id = ?", [chain_id])
        return Chain(**row) if row else None


class WalletStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def create_wallet(self, chain: Chain, address: str, label: str | None = None) -> Wallet:
        normalized = normalize_address(chain.family, address)
        if not normalized:
            raise ValueError("Wallet address is required.")
        existing = self.get_wallet_by_chain_and_address(chain, normalized)
        if existing:
            return existing
        wallet = Wallet(id=new_id(), chain_id=chain.id, address=normalized, label=label, created_at=utcnow())
        self.conn.execute(
            "INSERT INTO wallets (id, chain_id, address, label, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            [wallet.id, wallet.chain_id, wallet.address, wallet.label, wallet.is_active, wallet.created_at],
        )
        return wallet

    def get_wallet_by_id(self, wallet_id: str) -> Wallet | None:
        row = fetch_one(self.conn, "SELECT * FROM wallets WHERE id = ?", [wallet_id])
        return Wallet(**row) if row else None

    def get_wallet_by_chain_and_address(self, chain: Chain, address: str) -> Wallet | None:
        row = fetch_one(
            self.conn,
            "SELECT * FROM wallets WHERE chain_id = ? AND address = ?",
            [chain.id, normalize_address(chain.family, address)],
        )
        return Wallet(**row) if row else None

    def list_wallets(self, chain_id: str | None = None, include_inactive: bool = False) -> list[Wallet]:
        query = "SELECT * FROM wallets WHERE (? IS NULL OR chain_id = ?)"
        if not include_inactive:
            query += " AND is_active"
        rows = fetch_dicts(self.conn, query + " ORDER BY created_at, id", [chain_id, chain_id])
        return [Wallet(**row) for row in rows]


class TrackedTokenStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def get_tracked_token(self, chain_id: str, contract_or_mint: str) -> TrackedToken | None:
        row = fetch_one(
            self.conn,
            "SELECT * FROM tracked_tokens WHERE chain_id = ? AND contract_or_mint = ?",
            [chain_id, contract_or_mint],
        )
        return _tracked(row) if row else None

    def upsert_tracked_token(
        self,
        chain_id: str,
        contract_or_mint: str,
        symbol: str | None = None,
        name: str | None = None,
        decimals: int | None = None,
        metadata_source: str = "auto",
        tracking_source: str = "scan",
        override: bool = False,
    ) -> TrackedToken:
        """Insert a token or refine an existing one.

        Known metadata is only replaced when `override` is set; otherwise only
        null fields are filled. The original tracking source is kept.
        """
        existing = self.get_tracked_token(chain_id, contract_or_mint)
        now = utcnow()
        if existing is None:
            token = TrackedToken(
                id=new_id(),
                chain_id=chain_id,
                contract_or_mint=contract_or_mint,
                symbol=symbol,
                name=name,
                decimals=decimals,
                metadata_source=metadata_source,
                tracking_source=tracking_source,
            )
            self.conn.execute(
                """
                INSERT INTO tracked_tokens (id, chain_id, contract_or_mint, symbol, name, decimals,
                                            metadata_source, tracking_source, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?, ?)
                """,
                [token.id, chain_id, contract_or_mint, symbol, name, decimals,
                 metadata_source, tracking_source, now, now],
            )
            return token

        def pick(new, old):
            if override:
                return new if new is not None else old
            return old if old is not None else new

        updated = existing.model_copy(update={
            "symbol": pick(symbol, existing.symbol),
            "name": pick(name, existing.name),
            "decimals": pick(decimals, existing.decimals),
            "metadata_source": metadata_source if override else existing.metadata_source,
            "is_active": True,
        })
        self.conn.execute(
            """
            UPDATE tracked_tokens
            SET symbol = ?, name = ?, decimals = ?, metadata_source = ?, is_active = TRUE, updated_at = ?
            WHERE chain_id = ? AND contract_or_mint = ?
            """,
            [updated.symbol, updated.name, updated.decimals, updated.metadata_source, now,
             chain_id, contract_or_mint],
        )
        return updated

    def upsert_tracked_tokens_batch(self, chain_id: str, items: list[UniverseItem]) -> list[TrackedToken]:
        return [
            self.upsert_tracked_token(chain_id, i.contract_or_mint, i.symbol, i.name, i.decimals)
            for i in items
        ]

    def list_tracked_tokens(self, chain_id: str | None = None, include_inactive: bool = False) -> list[TrackedToken]:
        query = "SELECT * FROM tracked_tokens WHERE (? IS NULL OR chain_id = ?)"
        if not include_inactive:
            query += " AND is_active"
        rows = fetch_dicts(self.conn, query + " ORDER BY chain_id, contract_or_mint", [chain_id, chain_id])
        return [_tracked(row) for row in rows]

    def count_tracked_tokens_by_chain(self, chain_id: str) -> int:
        result = self.conn.execute(
            "SELECT COUNT(*) FROM tracked_tokens WHERE chain_id = ? AND is_active", [chain_id]
        ).fetchone()
        return result[0] if result else 0


def _tracked(row: dict) -> TrackedToken:
    row = {k: v for k, v in row.items() if k not in ("created_at", "updated_at")}
    return TrackedToken(**row)


class UniverseStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def upsert_snapshot(
        self,
        chain_id: str,
        as_of_date_utc: date,
        source: str,
        status: str,
        item_count: int,
        provider: str | None = None,
        error_message: str | None = None,
    ) -> TokenUniverseSnapshot:
        """Write the (chain, date) snapshot row, keeping its id across rewrites.

        A failed write never downgrades a scan-eligible row for the same date;
        the existing row is returned untouched instead.
        """
        existing = self.get_snapshot_by_chain_and_date(chain_id, as_of_date_utc)
        if existing is not None:
            if status == "failed" and existing.is_scan_eligible:
                return existing
            self.conn.execute(
                """
                UPDATE token_universe_snapshots
                SET source = ?, provider = ?, status = ?, item_count = ?, error_message = ?
                WHERE chain_id = ? AND as_of_date_utc = ?
                """,
                [source, provider, status, item_count, error_message, chain_id, as_of_date_utc],
            )
        else:
            self.conn.execute(
                """
                INSERT INTO token_universe_snapshots
                    (id, chain_id, as_of_date_utc, source, provider, status, item_count, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [new_id(), chain_id, as_of_date_utc, source, provider, status, item_count,
                 error_message, utcnow()],
            )
        return self.get_snapshot_by_chain_and_date(chain_id, as_of_date_utc)

    def replace_snapshot_items(self, snapshot_id: str, items: list[UniverseItem]) -> int:
        self.conn.execute("DELETE FROM token_universe_items WHERE snapshot_id = ?", [snapshot_id])
        if not items:
            return 0
        df = pd.DataFrame([{"snapshot_id": snapshot_id, **i.model_dump()} for i in items])[ITEM_COLUMNS]
        self.conn.execute("INSERT INTO token_universe_items SELECT * FROM df")
        return len(df)

    def replace_snapshot(
        self,
        chain_id: str,
        as_of_date_utc: date,
        source: str,
        status: str,
        items: list[UniverseItem],
        provider: str | None = None,
        error_message: str | None = None,
    ) -> TokenUniverseSnapshot:
        """Upsert the snapshot row and swap its items in one transaction."""
        self.conn.execute("BEGIN TRANSACTION")
        try:
            snapshot = self.upsert_snapshot(
                chain_id, as_of_date_utc, source, status, len(items), provider, error_message
            )
            if snapshot.status == status:
                self.replace_snapshot_items(snapshot.id, items)
            self.conn.execute("COMMIT")
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        return snapshot

    def get_snapshot_by_id(self, snapshot_id: str) -> TokenUniverseSnapshot | None:
        row = fetch_one(self.conn, "SELECT * FROM token_universe_snapshots WHERE id = ?", [snapshot_id])
        return TokenUniverseSnapshot(**row) if row else None

    def get_snapshot_by_chain_and_date(self, chain_id: str, as_of_date_utc: date) -> TokenUniverseSnapshot | None:
        row = fetch_one(
            self.conn,
            "SELECT * FROM token_universe_snapshots WHERE chain_id = ? AND as_of_date_utc = ?",
            [chain_id, as_of_date_utc],
        )
        return TokenUniverseSnapshot(**row) if row else None

    def get_latest_scan_eligible_snapshot(self, chain_id: str) -> TokenUniverseSnapshot | None:
        row = fetch_one(
            self.conn,
            f"""
            SELECT * FROM token_universe_snapshots
            WHERE chain_id = ? AND status IN {SCAN_ELIGIBLE_STATUSES}
            ORDER BY as_of_date_utc DESC, created_at DESC
            LIMIT 1
            """,
            [chain_id],
        )
        return TokenUniverseSnapshot(**row) if row else None

    def get_snapshot_items(self, snapshot_id: str) -> list[UniverseItem]:
        rows = fetch_dicts(
            self.conn,
            "SELECT * FROM token_universe_items WHERE snapshot_id = ? ORDER BY rank",
            [snapshot_id],
        )
        return [UniverseItem(**{k: v for k, v in row.items() if k != "snapshot_id"}) for row in rows]


class ScanStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def create_scan_run(
        self,
        wallet_id: str,
        chain_id: str,
        universe_snapshot_id: str,
        status: str = "queued",
    ) -> ScanRun:
        run = ScanRun(
            id=new_id(),
            wallet_id=wallet_id,
            chain_id=chain_id,
            universe_snapshot_id=universe_snapshot_id,
            status=status,
        )
        self.conn.execute(
            """
            INSERT INTO scan_runs (id, wallet_id, chain_id, universe_snapshot_id, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [run.id, wallet_id, chain_id, universe_snapshot_id, status, utcnow()],
        )
        return run

    def update_scan_run(
        self,
        run_id: str,
        status: str,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        error_message: str | None = None,
    ) -> ScanRun:
        """Lifecycle update. The referenced universe snapshot is never touched."""
        self.conn.execute(
            """
            UPDATE scan_runs
            SET status = ?,
                started_at = COALESCE(?, started_at),
                finished_at = COALESCE(?, finished_at),
                error_message = ?
            WHERE id = ?
            """,
            [status, started_at, finished_at, error_message, run_id],
        )
        return self.get_scan_run(run_id)

    def get_scan_run(self, run_id: str) -> ScanRun | None:
        row = fetch_one(
            self.conn,
            """
            SELECT id, wallet_id, chain_id, universe_snapshot_id, status, started_at, finished_at, error_message
            FROM scan_runs WHERE id = ?
            """,
            [run_id],
        )
        return ScanRun(**row) if row else None

    def list_scan_runs(self, wallet_id: str) -> list[ScanRun]:
        rows = fetch_dicts(
            self.conn,
            """
            SELECT id, wallet_id, chain_id, universe_snapshot_id, status, started_at, finished_at, error_message
            FROM scan_runs WHERE wallet_id = ? ORDER BY created_at
            """,
            [wallet_id],
        )
        return [ScanRun(**row) for row in rows]

    def upsert_scan_item(self, item: ScanItem) -> ScanItem:
        """Idempotent on (scan_id, contract_or_mint)."""
        self.conn.execute(
            "DELETE FROM scan_items WHERE scan_id = ? AND contract_or_mint = ?",
            [item.scan_id, item.contract_or_mint],
        )
        self.conn.execute(
            """
            INSERT INTO scan_items (scan_id, token_id, contract_or_mint, balance_raw, balance_normalized,
                                    held_flag, auto_tracked_flag, resolution_error, usd_price, usd_value,
                                    valuation_status, price_source)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [item.scan_id, item.token_id, item.contract_or_mint, item.balance_raw,
             str(item.balance_normalized), item.held_flag, item.auto_tracked_flag, item.resolution_error,
             item.usd_price, item.usd_value, item.valuation_status, item.price_source],
        )
        return item

    def get_scan_items(self, scan_id: str) -> list[ScanItem]:
        rows = fetch_dicts(
            self.conn, "SELECT * FROM scan_items WHERE scan_id = ? ORDER BY contract_or_mint", [scan_id]
        )
        return [_scan_item(row) for row in rows]

    def get_latest_successful_scan_items_by_wallet(self, wallet_id: str) -> list[ScanItem]:
        """Held items of the newest success/partial scan for a wallet."""
        run = fetch_one(
            self.conn,
            """
            SELECT id FROM scan_runs
            WHERE wallet_id = ? AND status IN ('success', 'partial')
            ORDER BY finished_at DESC NULLS LAST, created_at DESC
            LIMIT 1
            """,
            [wallet_id],
        )
        if run is None:
            return []
        return [item for item in self.get_scan_items(run["id"]) if item.held_flag]


def _scan_item(row: dict) -> ScanItem:
    row = dict(row)
    row["balance_normalized"] = Decimal(row["balance_normalized"])
    return ScanItem(**row)


class ProtocolStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def create_protocol_contract(
        self,
        chain_id: str,
        contract_address: str,
        abi_mapping: dict,
        label: str | None = None,
        category: str | None = None,
        validation_status: str = "valid",
        validation_error: str | None = None,
    ) -> ProtocolContract:
        contract = ProtocolContract(
            id=new_id(),
            chain_id=chain_id,
            contract_address=contract_address,
            label=label,
            category=category,
            abi_mapping=abi_mapping,
            validation_status=validation_status,
            validation_error=validation_error,
        )
        self.conn.execute(
            """
            INSERT INTO protocol_contracts (id, chain_id, contract_address, label, category, abi_mapping,
                                            validation_status, validation_error, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?)
            """,
            [contract.id, chain_id, contract_address, label, category, json.dumps(abi_mapping),
             validation_status, validation_error, utcnow()],
        )
        return contract

    def list_protocol_contracts(self, chain_id: str | None = None) -> list[ProtocolContract]:
        rows = fetch_dicts(
            self.conn,
            "SELECT * FROM protocol_contracts WHERE (? IS NULL OR chain_id = ?) ORDER BY created_at DESC",
            [chain_id, chain_id],
        )
        return [_protocol(row) for row in rows]

    def list_snapshot_eligible_contracts(self, chain_id: str) -> list[ProtocolContract]:
        rows = fetch_dicts(
            self.conn,
            """
            SELECT * FROM protocol_contracts
            WHERE chain_id = ? AND is_active AND validation_status = 'valid'
            ORDER BY created_at DESC
            """,
            [chain_id],
        )
        return [_protocol(row) for row in rows]


def _protocol(row: dict) -> ProtocolContract:
    row = {k: v for k, v in row.items() if k != "created_at"}
    row["abi_mapping"] = json.loads(row["abi_mapping"])
    return ProtocolContract(**row)


class SnapshotStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def get_daily_snapshot_by_date(self, snapshot_date_utc: date) -> DailySnapshot | None:
        row = fetch_one(self.conn, "SELECT * FROM daily_snapshots WHERE snapshot_date_utc = ?", [snapshot_date_utc])
        return DailySnapshot(**row) if row else None

    def upsert_daily_snapshot(
        self,
        snapshot_date_utc: date,
        status: str,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        error_message: str | None = None,
    ) -> DailySnapshot:
        existing = self.get_daily_snapshot_by_date(snapshot_date_utc)
        if existing is None:
            self.conn.execute(
                """
                INSERT INTO daily_snapshots (id, snapshot_date_utc, status, started_at, finished_at, error_message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [new_id(), snapshot_date_utc, status, started_at, finished_at, error_message],
            )
        else:
            self.conn.execute(
                """
                UPDATE daily_snapshots
                SET status = ?, started_at = ?, finished_at = ?, error_message = ?
                WHERE snapshot_date_utc = ?
                """,
                [status, started_at, finished_at, error_message, snapshot_date_utc],
            )
        return self.get_daily_snapshot_by_date(snapshot_date_utc)

    def clear_snapshot_items(self, snapshot_id: str) -> None:
        self.conn.execute("DELETE FROM snapshot_items WHERE snapshot_id = ?", [snapshot_id])

    def upsert_snapshot_item(self, item: SnapshotItem) -> SnapshotItem:
        self.conn.execute(
            """
            DELETE FROM snapshot_items
            WHERE snapshot_id = ? AND wallet_id = ? AND asset_type = ? AND contract_or_mint = ?
            """,
            [item.snapshot_id, item.wallet_id, item.asset_type, item.contract_or_mint],
        )
        self.conn.execute(
            """
            INSERT INTO snapshot_items (snapshot_id, wallet_id, asset_type, asset_ref_id, contract_or_mint,
                                        symbol, quantity, usd_price, usd_value, valuation_status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [item.snapshot_id, item.wallet_id, item.asset_type, item.asset_ref_id, item.contract_or_mint,
             item.symbol, item.quantity, item.usd_price, item.usd_value, item.valuation_status],
        )
        return item

    def get_snapshot_items(self, snapshot_id: str) -> list[SnapshotItem]:
        rows = fetch_dicts(
            self.conn,
            "SELECT * FROM snapshot_items WHERE snapshot_id = ? ORDER BY wallet_id, asset_type, contract_or_mint",
            [snapshot_id],
        )
        return [SnapshotItem(**row) for row in rows]


class PriceStore:
    """Observed USD prices, used as a bounded-age fallback during scans."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def record_prices(self, chain_id: str, prices: dict[str, tuple[float, str]], observed_at: datetime | None = None) -> int:
        if not prices:
            return 0
        observed_at = observed_at or utcnow()
        df = pd.DataFrame(
            [
                {"chain_id": chain_id, "ref": ref, "usd_price": price, "source": source, "observed_at": observed_at}
                for ref, (price, source) in prices.items()
            ]
        )
        self.conn.execute("INSERT INTO price_observations SELECT * FROM df")
        return len(df)

    def get_recent_price(self, chain_id: str, ref: str, not_before: datetime) -> float | None:
        result = self.conn.execute(
            """
            SELECT usd_price FROM price_observations
            WHERE chain_id = ? AND ref = ? AND observed_at >= ?
            ORDER BY observed_at DESC
            LIMIT 1
            """,
            [chain_id, ref, not_before],
        ).fetchone()
        return float(result[0]) if result else None


@dataclass
class Stores:
    chains: ChainStore
    wallets: WalletStore
    tracked_tokens: TrackedTokenStore
    universe: UniverseStore
    scans: ScanStore
    protocols: ProtocolStore
    snapshots: SnapshotStore
    prices: PriceStore

    @classmethod
    def open(cls, conn: duckdb.DuckDBPyConnection) -> "Stores":
        return cls(
            chains=ChainStore(conn),
            wallets=WalletStore(conn),
            tracked_tokens=TrackedTokenStore(conn),
            universe=UniverseStore(conn),
            scans=ScanStore(conn),
            protocols=ProtocolStore(conn),
            snapshots=SnapshotStore(conn),
            prices=PriceStore(conn),
        )
