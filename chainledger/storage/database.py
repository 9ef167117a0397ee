"""DuckDB storage layer: connection and schema."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from uuid import uuid4

import duckdb

from chainledger.config import get_settings

MEMORY = ":memory:"


def get_connection(path: Path | str | None = None) -> duckdb.DuckDBPyConnection:
    """Get a DuckDB connection, creating tables if needed."""
    if path is None:
        path = get_settings().duckdb_path
    if str(path) != MEMORY:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = duckdb.connect(str(path))
    _create_tables(conn)
    return conn


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp; TIMESTAMP columns hold UTC wall time."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def fetch_dicts(conn: duckdb.DuckDBPyConnection, query: str, params: list | None = None) -> list[dict]:
    cursor = conn.execute(query, params or [])
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def fetch_one(conn: duckdb.DuckDBPyConnection, query: str, params: list | None = None) -> dict | None:
    rows = fetch_dicts(conn, query, params)
    return rows[0] if rows else None


def _create_tables(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS chains (
            id VARCHAR PRIMARY KEY,
            slug VARCHAR NOT NULL,
            name VARCHAR NOT NULL,
            family VARCHAR NOT NULL,
            chain_id INTEGER,
            rpc_url VARCHAR NOT NULL,
            is_active BOOLEAN DEFAULT TRUE,
            is_builtin BOOLEAN DEFAULT TRUE,
            validation_status VARCHAR DEFAULT 'valid',
            validation_error VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS wallets (
            id VARCHAR NOT NULL,
            chain_id VARCHAR NOT NULL,
            address VARCHAR NOT NULL,
            label VARCHAR,
            is_active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMP,
            PRIMARY KEY (chain_id, address)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS tracked_tokens (
            id VARCHAR NOT NULL,
            chain_id VARCHAR NOT NULL,
            contract_or_mint VARCHAR NOT NULL,
            symbol VARCHAR,
            name VARCHAR,
            decimals INTEGER,
            metadata_source VARCHAR NOT NULL DEFAULT 'auto',
            tracking_source VARCHAR NOT NULL DEFAULT 'scan',
            is_active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMP,
            updated_at TIMESTAMP,
            PRIMARY KEY (chain_id, contract_or_mint)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS token_universe_snapshots (
            id VARCHAR NOT NULL,
            chain_id VARCHAR NOT NULL,
            as_of_date_utc DATE NOT NULL,
            source VARCHAR NOT NULL,
            provider VARCHAR,
            status VARCHAR NOT NULL,
            item_count INTEGER DEFAULT 0,
            error_message VARCHAR,
            created_at TIMESTAMP,
            PRIMARY KEY (chain_id, as_of_date_utc)
        )
    """)
    # No constraints: items are replaced wholesale inside one transaction
    conn.execute("""
        CREATE TABLE IF NOT EXISTS token_universe_items (
            snapshot_id VARCHAR NOT NULL,
            rank INTEGER NOT NULL,
            contract_or_mint VARCHAR NOT NULL,
            symbol VARCHAR,
            name VARCHAR,
            decimals INTEGER,
            market_cap_usd DOUBLE
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_runs (
            id VARCHAR PRIMARY KEY,
            wallet_id VARCHAR NOT NULL,
            chain_id VARCHAR NOT NULL,
            universe_snapshot_id VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            started_at TIMESTAMP,
            finished_at TIMESTAMP,
            error_message VARCHAR,
            created_at TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_items (
            scan_id VARCHAR NOT NULL,
            token_id VARCHAR,
            contract_or_mint VARCHAR NOT NULL,
            balance_raw VARCHAR NOT NULL,
            balance_normalized VARCHAR NOT NULL,
            held_flag BOOLEAN NOT NULL,
            auto_tracked_flag BOOLEAN NOT NULL,
            resolution_error BOOLEAN DEFAULT FALSE,
            usd_price DOUBLE,
            usd_value DOUBLE,
            valuation_status VARCHAR NOT NULL,
            price_source VARCHAR,
            PRIMARY KEY (scan_id, contract_or_mint)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS protocol_contracts (
            id VARCHAR PRIMARY KEY,
            chain_id VARCHAR NOT NULL,
            contract_address VARCHAR NOT NULL,
            label VARCHAR,
            category VARCHAR,
            abi_mapping VARCHAR NOT NULL,
            validation_status VARCHAR NOT NULL,
            validation_error VARCHAR,
            is_active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS daily_snapshots (
            id VARCHAR NOT NULL,
            snapshot_date_utc DATE PRIMARY KEY,
            status VARCHAR NOT NULL,
            started_at TIMESTAMP,
            finished_at TIMESTAMP,
            error_message VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS snapshot_items (
            snapshot_id VARCHAR NOT NULL,
            wallet_id VARCHAR NOT NULL,
            asset_type VARCHAR NOT NULL,
            asset_ref_id VARCHAR,
            contract_or_mint VARCHAR NOT NULL,
            symbol VARCHAR,
            quantity DOUBLE NOT NULL,
            usd_price DOUBLE,
            usd_value DOUBLE,
            valuation_status VARCHAR NOT NULL,
            PRIMARY KEY (snapshot_id, wallet_id, asset_type, contract_or_mint)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS price_observations (
            chain_id VARCHAR NOT NULL,
            ref VARCHAR NOT NULL,
            usd_price DOUBLE NOT NULL,
            source VARCHAR NOT NULL,
            observed_at TIMESTAMP NOT NULL
        )
    """)
