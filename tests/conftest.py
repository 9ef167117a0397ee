"""
Shared fixtures: in-memory DuckDB stores, seeded chains and a JSON-RPC mock transport.
"""

import json
from decimal import Decimal

import httpx
import pytest

from chainledger.chain.rpc import JsonRpcClient
from chainledger.models.schema import BalanceRecord, UniverseItem
from chainledger.storage.database import MEMORY, get_connection
from chainledger.storage.repositories import Stores

WALLET = "0x1111111111111111111111111111111111111111"
TOKEN_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TOKEN_C = "0xcccccccccccccccccccccccccccccccccccccccc"


@pytest.fixture
def conn():
    connection = get_connection(MEMORY)
    yield connection
    connection.close()


@pytest.fixture
def stores(conn):
    bundle = Stores.open(conn)
    bundle.chains.seed_builtin_chains()
    return bundle


@pytest.fixture
def ethereum(stores):
    return stores.chains.get_chain_by_id("ethereum")


@pytest.fixture
def polygon(stores):
    return stores.chains.get_chain_by_id("polygon")


@pytest.fixture
def solana(stores):
    return stores.chains.get_chain_by_id("solana")


@pytest.fixture
def wallet(stores, ethereum):
    return stores.wallets.create_wallet(ethereum, WALLET, label="main")


def rpc_result(payload: dict, result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


def rpc_error(payload: dict, message: str) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32000, "message": message}})


def make_rpc(handler) -> JsonRpcClient:
    """JsonRpcClient whose transport calls `handler(request, payload)`."""

    def transport(request: httpx.Request) -> httpx.Response:
        return handler(request, json.loads(request.content))

    return JsonRpcClient(client=httpx.AsyncClient(transport=httpx.MockTransport(transport)), timeout=5.0)


def uint_word(value: int) -> str:
    return "0x" + format(value, "x").rjust(64, "0")


def universe_items(*addresses: str) -> list[UniverseItem]:
    return [
        UniverseItem(rank=i + 1, contract_or_mint=a, symbol=f"T{i + 1}", name=f"Token {i + 1}", decimals=0)
        for i, a in enumerate(addresses)
    ]


def balance(contract: str, amount, decimals: int = 0, error: bool = False) -> BalanceRecord:
    raw = int(amount * (10 ** decimals))
    return BalanceRecord(
        contract_or_mint=contract,
        balance_raw=hex(raw),
        balance_normalized=Decimal(amount),
        decimals=decimals,
        resolution_error=error,
        error_message="rpc down" if error else None,
    )


class FakeMarketSource:
    """Market-data source returning canned tokens or raising a canned error."""

    def __init__(self, name: str, items=None, error: Exception | None = None):
        self.name = name
        self.items = items or []
        self.error = error
        self.calls = 0

    async def fetch_top_tokens(self, chain, limit=200):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.items)


class FakePriceSource:
    def __init__(self, prices=None, native=None, error: Exception | None = None):
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.native = native
        self.error = error
        self.batches: list[list[str]] = []

    async def get_prices_by_contracts(self, chain, contracts):
        self.batches.append(list(contracts))
        if self.error is not None:
            raise self.error
        return {c: self.prices[c.lower()] for c in contracts if c.lower() in self.prices}

    async def get_native_price(self, chain):
        return self.native


class FakeLiquiditySource:
    def __init__(self, prices=None, failing=()):
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.failing = {f.lower() for f in failing}
        self.calls: list[str] = []

    async def get_price_by_contract(self, chain, contract):
        self.calls.append(contract)
        if contract.lower() in self.failing:
            raise httpx.ConnectError("dexscreener unreachable")
        return self.prices.get(contract.lower())


class FakeBatcher:
    """Answers every requested token from a balance map; doubles as its own metadata resolver."""

    def __init__(self, balances=None, errors=(), error: Exception | None = None, metadata=None):
        self.balances = balances or {}
        self.errors = set(errors)
        self.error = error
        self.metadata = metadata or {}
        self.requests: list[list[str]] = []

    async def resolve_balances(self, chain, wallet_address, tokens):
        self.requests.append([t.contract_or_mint for t in tokens])
        if self.error is not None:
            raise self.error
        return [
            balance(t.contract_or_mint, self.balances.get(t.contract_or_mint, 0), error=t.contract_or_mint in self.errors)
            for t in tokens
        ]

    def resolver_for(self, chain):
        return self

    async def read_metadata(self, chain, contract_or_mint):
        return self.metadata
