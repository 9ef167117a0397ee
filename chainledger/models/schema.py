"""Pydantic v2 data models with multi-chain support."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ChainFamily(str, Enum):
    EVM = "evm"
    SOLANA = "solana"


SnapshotStatus = Literal["ready", "partial", "failed"]
SnapshotSource = Literal["primary", "fallback"]
RunStatus = Literal["queued", "running", "success", "partial", "failed"]
ValuationStatus = Literal["known", "unknown"]
PriceSource = Literal["primary", "liquidity", "native", "historical"]

SCAN_ELIGIBLE_STATUSES = ("ready", "partial")


class Chain(BaseModel):
    id: str
    slug: str
    name: str
    family: ChainFamily
    chain_id: int | None = Field(default=None, description="Numeric EVM chain id, None for Solana")
    rpc_url: str
    is_active: bool = True
    is_builtin: bool = True
    validation_status: str = "valid"
    validation_error: str | None = None


class Wallet(BaseModel):
    id: str
    chain_id: str
    address: str = Field(description="Lowercased for EVM, verbatim for Solana")
    label: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


class TrackedToken(BaseModel):
    id: str
    chain_id: str
    contract_or_mint: str
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    metadata_source: Literal["auto", "manual_override"] = "auto"
    tracking_source: Literal["manual", "scan"] = "scan"
    is_active: bool = True


class UniverseItem(BaseModel):
    rank: int
    contract_or_mint: str
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    market_cap_usd: float | None = None


class TokenUniverseSnapshot(BaseModel):
    id: str
    chain_id: str
    as_of_date_utc: date
    source: SnapshotSource
    provider: str | None = None
    status: SnapshotStatus
    item_count: int = 0
    error_message: str | None = None
    created_at: datetime | None = None

    @property
    def is_scan_eligible(self) -> bool:
        return self.status in SCAN_ELIGIBLE_STATUSES


class ScanRun(BaseModel):
    id: str
    wallet_id: str
    chain_id: str
    universe_snapshot_id: str
    status: RunStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


class ScanItem(BaseModel):
    scan_id: str
    token_id: str | None = None
    contract_or_mint: str
    balance_raw: str = Field(default="0", description="Raw uint256 as decimal string to avoid overflow")
    balance_normalized: Decimal = Decimal(0)
    held_flag: bool = False
    auto_tracked_flag: bool = False
    resolution_error: bool = False
    usd_price: float | None = None
    usd_value: float | None = None
    valuation_status: ValuationStatus = "unknown"
    price_source: PriceSource | None = None


class ProtocolContract(BaseModel):
    id: str
    chain_id: str
    contract_address: str
    label: str | None = None
    category: str | None = None
    abi_mapping: dict[str, Any]
    validation_status: str = "valid"
    validation_error: str | None = None
    is_active: bool = True


class DailySnapshot(BaseModel):
    id: str
    snapshot_date_utc: date
    status: RunStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


class SnapshotItem(BaseModel):
    snapshot_id: str
    wallet_id: str
    asset_type: Literal["token", "protocol"]
    asset_ref_id: str | None = None
    contract_or_mint: str
    symbol: str | None = None
    quantity: float
    usd_price: float | None = None
    usd_value: float | None = None
    valuation_status: ValuationStatus


# --- In-flight records (not persisted as-is) ---


class TokenDescriptor(BaseModel):
    contract_or_mint: str
    decimals: int | None = None
    is_native: bool = False
    valuation_ref: str | None = Field(
        default=None, description="Contract used for pricing when it differs from the scan identity"
    )
    symbol: str | None = None
    name: str | None = None


class BalanceRecord(BaseModel):
    contract_or_mint: str
    balance_raw: str = Field(default="0x0", description="Unsigned integer as base-16 text")
    balance_normalized: Decimal = Decimal(0)
    decimals: int | None = None
    resolution_error: bool = False
    error_message: str | None = None


class Position(BaseModel):
    contract_or_mint: str
    quantity: float
    symbol: str | None = None
    valuation_ref: str | None = None
    wallet_id: str | None = None
    token_id: str | None = None


class ValuedPosition(Position):
    usd_price: float | None = None
    usd_value: float | None = None
    valuation_status: ValuationStatus = "unknown"
    price_source: PriceSource | None = None


class RefreshOutcome(BaseModel):
    chain_id: str
    snapshot_id: str | None
    active_snapshot_id: str | None
    source: SnapshotSource | None = None
    provider: str | None = None
    status: SnapshotStatus
    item_count: int = 0
    error_message: str | None = None
    preserved: bool = False


class ScanOutcome(BaseModel):
    scan_run: ScanRun
    auto_tracked_count: int = 0
    universe_snapshot_id: str
    items: list[ScanItem] = Field(default_factory=list)


class SnapshotOutcome(BaseModel):
    snapshot: DailySnapshot
    skipped: bool = False
    item_count: int = 0
    errors: list[str] = Field(default_factory=list)
