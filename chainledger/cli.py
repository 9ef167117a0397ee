"""Click CLI: init-db, chains, wallets, tokens, protocols, refresh, scan, snapshot, daily cycle."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from chainledger.config import get_settings


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _run(coro_factory):
    """Build services, run one coroutine against them, always close clients."""
    from chainledger.app import build_services

    async def _main():
        services = build_services()
        try:
            return await coro_factory(services)
        finally:
            await services.aclose()
            services.stores.chains.conn.close()

    return asyncio.run(_main())


def _chain_or_fail(stores, chain_id: str):
    chain = stores.chains.get_chain_by_id(chain_id)
    if chain is None:
        raise click.ClickException(f"Unknown chain '{chain_id}'.")
    return chain


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override LOG_LEVEL from settings")
def cli(log_level: str | None):
    """Chainledger - multi-chain wallet balances, valuation and daily snapshots."""
    _setup_logging(log_level or get_settings().log_level)


@cli.command("init-db")
def init_db():
    """Create tables and seed the built-in chain directory."""
    from chainledger.storage.database import get_connection
    from chainledger.storage.repositories import ChainStore

    settings = get_settings()
    conn = get_connection(settings.duckdb_path)
    inserted = ChainStore(conn).seed_builtin_chains()
    click.echo(f"Database ready at {settings.duckdb_path} ({inserted} chains seeded).")
    conn.close()


@cli.command("add-chain")
@click.option("--slug", required=True)
@click.option("--name", default=None)
@click.option("--family", type=click.Choice(["evm", "solana"]), default="evm")
@click.option("--rpc-url", required=True)
@click.option("--chain-id", type=int, default=None, help="Numeric EVM chain id")
def add_chain(slug: str, name: str | None, family: str, rpc_url: str, chain_id: int | None):
    """Register a custom chain after RPC safety and liveness checks."""
    from chainledger.chain.validation import register_custom_chain
    from chainledger.errors import ChainLedgerError

    async def _add(services):
        return await register_custom_chain(
            services.stores.chains, slug, name, family, rpc_url, chain_id,
            allow_unsafe=get_settings().allow_unsafe_rpc_urls, rpc=services.rpc,
        )

    try:
        chain = _run(_add)
    except ChainLedgerError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Chain {chain.slug}: {chain.validation_status}" + (f" ({chain.validation_error})" if chain.validation_error else ""))


@cli.command("add-wallet")
@click.option("--chain", "chain_id", required=True)
@click.option("--address", required=True)
@click.option("--label", default=None)
def add_wallet(chain_id: str, address: str, label: str | None):
    """Track a wallet address on a chain."""
    from chainledger.chain.validation import is_valid_address

    async def _add(services):
        chain = _chain_or_fail(services.stores, chain_id)
        if not is_valid_address(chain.family, address):
            raise click.ClickException(f"Invalid {chain.family.value} address: {address}")
        return services.stores.wallets.create_wallet(chain, address, label)

    wallet = _run(_add)
    click.echo(f"Wallet {wallet.id} ({wallet.address}) on {wallet.chain_id}")


@cli.command("add-token")
@click.option("--chain", "chain_id", required=True)
@click.option("--contract", required=True, help="Contract address or mint")
@click.option("--symbol", default=None)
@click.option("--name", default=None)
@click.option("--decimals", type=int, default=None)
def add_token(chain_id: str, contract: str, symbol: str | None, name: str | None, decimals: int | None):
    """Track a token manually; explicit fields override on-chain metadata."""
    from chainledger.errors import ChainLedgerError
    from chainledger.tokens.manual import register_manual_token

    async def _add(services):
        chain = _chain_or_fail(services.stores, chain_id)
        return await register_manual_token(
            services.stores.tracked_tokens, chain, contract, symbol, name, decimals,
            resolver=services.batcher.resolver_for(chain),
        )

    try:
        token = _run(_add)
    except ChainLedgerError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Tracking {token.symbol or '?'} {token.contract_or_mint} (decimals={token.decimals}, {token.metadata_source})")


@cli.command("add-protocol")
@click.option("--chain", "chain_id", required=True)
@click.option("--contract", required=True)
@click.option("--mapping", "mapping_path", required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON file with positionRead and optional decimalsRead")
@click.option("--label", default=None)
@click.option("--category", default=None)
def add_protocol(chain_id: str, contract: str, mapping_path: Path, label: str | None, category: str | None):
    """Register a protocol contract with a declarative ABI mapping."""
    from chainledger.errors import ChainLedgerError
    from chainledger.protocols.contracts import register_protocol_contract
    from chainledger.storage.database import get_connection
    from chainledger.storage.repositories import Stores

    mapping = json.loads(mapping_path.read_text())
    conn = get_connection(get_settings().duckdb_path)
    stores = Stores.open(conn)
    try:
        chain = _chain_or_fail(stores, chain_id)
        protocol = register_protocol_contract(stores.protocols, chain, contract, mapping, label, category)
    except ChainLedgerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        conn.close()
    click.echo(f"Protocol {protocol.label or protocol.id} registered ({protocol.validation_status}).")


@cli.command("refresh-universe")
@click.option("--chain", "chain_id", default=None, help="Single chain id; all active chains when omitted")
def refresh_universe(chain_id: str | None):
    """Refresh today's token universe."""
    from chainledger.storage.database import utc_today

    async def _refresh(services):
        if chain_id is None:
            return await services.refresh.refresh_all_chains(progress=True)
        chain = _chain_or_fail(services.stores, chain_id)
        try:
            return [await services.refresh.refresh_chain(chain)]
        except Exception as e:
            return [services.refresh.preserve_or_fail(chain, utc_today(), str(e))]

    for outcome in _run(_refresh):
        line = f"{outcome.chain_id}: {outcome.status} ({outcome.item_count} items"
        line += f", source={outcome.source}/{outcome.provider})" if outcome.provider else ")"
        if outcome.preserved:
            line += f" kept snapshot {outcome.active_snapshot_id}"
        if outcome.error_message:
            line += f" - {outcome.error_message}"
        click.echo(line)


@cli.command()
@click.option("--wallet", "wallet_id", default=None, help="Wallet id; every active wallet when omitted")
def scan(wallet_id: str | None):
    """Scan wallet balances and value held tokens."""
    from tqdm import tqdm

    from chainledger.errors import ChainLedgerError

    async def _scan(services):
        ids = [wallet_id] if wallet_id else [w.id for w in services.stores.wallets.list_wallets()]
        results = []
        for wid in tqdm(ids, desc="Scanning wallets", disable=len(ids) < 2):
            try:
                results.append((wid, await services.scanner.run_scan(wid), None))
            except ChainLedgerError as e:
                results.append((wid, None, str(e)))
        return results

    for wid, outcome, error in _run(_scan):
        if outcome is None:
            click.echo(f"{wid}: failed - {error}")
            continue
        run = outcome.scan_run
        held = [i for i in outcome.items if i.held_flag]
        total = sum(i.usd_value or 0 for i in held)
        click.echo(f"{wid}: {run.status} - {len(held)} held, {outcome.auto_tracked_count} auto-tracked, ${total:,.2f}")
        if run.error_message:
            click.echo(f"  {run.error_message}")


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Re-run even if today already completed")
def snapshot(force: bool):
    """Take today's portfolio snapshot."""

    async def _snap(services):
        return await services.snapshotter.run_daily_snapshot(force=force, progress=True)

    outcome = _run(_snap)
    snap = outcome.snapshot
    if outcome.skipped:
        click.echo(f"Snapshot {snap.snapshot_date_utc} already {snap.status}; use --force to re-run.")
        return
    click.echo(f"Snapshot {snap.snapshot_date_utc}: {snap.status} ({outcome.item_count} items)")
    for error in outcome.errors:
        click.echo(f"  {error}")


@cli.command("run-daily")
@click.option("--sync-catalog", is_flag=True, default=False, help="Track every refreshed universe token")
def run_daily(sync_catalog: bool):
    """Refresh, rescan every wallet, then take a forced snapshot."""

    async def _cycle(services):
        services.cycle.sync_catalog = sync_catalog
        return await services.cycle.run(progress=True)

    summary = _run(_cycle)
    click.echo(f"Daily cycle {summary.as_of_date_utc}: {summary.status or summary.reason}")
    for outcome in summary.chains:
        click.echo(f"  {outcome.chain_slug}: {outcome.status} ({outcome.rescanned_wallet_count}/{outcome.wallet_count} wallets)")
    if summary.error_message:
        click.echo(f"  {summary.error_message}")


@cli.command()
@click.option("--wallet", "wallet_id", default=None)
@click.option("--icons", is_flag=True, default=False, help="Attach token icon URLs")
def holdings(wallet_id: str | None, icons: bool):
    """Show held tokens from each wallet's latest completed scan."""
    import pandas as pd

    async def _holdings(services):
        stores = services.stores
        wallets = [stores.wallets.get_wallet_by_id(wallet_id)] if wallet_id else stores.wallets.list_wallets()
        rows = []
        for wallet in filter(None, wallets):
            symbols = {t.id: t.symbol for t in stores.tracked_tokens.list_tracked_tokens(wallet.chain_id)}
            for item in stores.scans.get_latest_successful_scan_items_by_wallet(wallet.id):
                rows.append({
                    "wallet": wallet.label or wallet.address,
                    "chain_id": wallet.chain_id,
                    "contract_or_mint": item.contract_or_mint,
                    "symbol": symbols.get(item.token_id),
                    "balance": str(item.balance_normalized),
                    "usd_value": item.usd_value,
                    "valuation": item.valuation_status,
                })
        if icons and rows:
            rows = await services.icons.enrich(rows)
        return rows

    rows = _run(_holdings)
    if not rows:
        click.echo("No holdings. Run `chainledger scan` first.")
        return
    click.echo(pd.DataFrame(rows).to_string(index=False))


if __name__ == "__main__":
    cli()
