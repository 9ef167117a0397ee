"""Token universe refresh: ranked top-N tokens per chain with provider fallback."""

from __future__ import annotations

import logging
from datetime import date
from functools import partial
from typing import Protocol

from tqdm import tqdm

from chainledger.chain.registry import normalize_address
from chainledger.models.schema import Chain, RefreshOutcome, TokenUniverseSnapshot, UniverseItem
from chainledger.providers.fallback import Attempt, first_success
from chainledger.storage.database import utc_today
from chainledger.storage.repositories import ChainStore, UniverseStore

logger = logging.getLogger(__name__)


class MarketDataSource(Protocol):
    name: str

    async def fetch_top_tokens(self, chain: Chain, limit: int = 200) -> list[UniverseItem]: ...


def rank_items(chain: Chain, items: list[UniverseItem]) -> list[UniverseItem]:
    """Drop entries without an on-chain address, then renumber 1..N in source order."""
    ranked: list[UniverseItem] = []
    seen: set[str] = set()
    for item in items:
        address = normalize_address(chain.family, item.contract_or_mint)
        if not address or address in seen:
            continue
        seen.add(address)
        ranked.append(item.model_copy(update={"rank": len(ranked) + 1, "contract_or_mint": address}))
    return ranked


class UniverseRefreshEngine:
    def __init__(
        self,
        chains: ChainStore,
        universe: UniverseStore,
        primary: MarketDataSource,
        fallback: MarketDataSource | None = None,
        target_size: int = 200,
    ):
        self.chains = chains
        self.universe = universe
        self.primary = primary
        self.fallback = fallback
        self.target_size = target_size

    async def refresh_chain(self, chain: Chain, as_of_date_utc: date | None = None) -> RefreshOutcome:
        """Fetch and persist today's universe for one chain.

        Raises DualSourceFailure (carrying both messages) when every source fails;
        nothing is written in that case.
        """
        as_of_date_utc = as_of_date_utc or utc_today()
        sources = [("primary", self.primary)]
        if self.fallback is not None:
            sources.append(("fallback", self.fallback))

        attempts = [
            Attempt(source, partial(provider.fetch_top_tokens, chain, self.target_size))
            for source, provider in sources
        ]
        source, tokens = await first_success(attempts, label="Universe refresh")
        provider_name = dict(sources)[source].name

        ranked = rank_items(chain, tokens)
        status = "ready" if len(ranked) >= self.target_size else "partial"
        snapshot = self.universe.replace_snapshot(
            chain.id, as_of_date_utc, source, status, ranked, provider=provider_name
        )
        logger.info(f"Universe {chain.slug} {as_of_date_utc}: {status} via {provider_name} ({len(ranked)} items)")
        return _outcome(snapshot, active=snapshot)

    async def refresh_all_chains(self, as_of_date_utc: date | None = None, progress: bool = False) -> list[RefreshOutcome]:
        as_of_date_utc = as_of_date_utc or utc_today()
        outcomes = []
        for chain in tqdm(self.chains.list_chains(), desc="Refreshing universes", disable=not progress):
            try:
                outcomes.append(await self.refresh_chain(chain, as_of_date_utc))
            except Exception as e:
                logger.error(f"Universe refresh failed for {chain.slug}: {e}")
                outcomes.append(self.preserve_or_fail(chain, as_of_date_utc, str(e) or type(e).__name__))
        return outcomes

    def preserve_or_fail(self, chain: Chain, as_of_date_utc: date, message: str) -> RefreshOutcome:
        """Keep a same-day scan-eligible snapshot; only without one record an explicit failure."""
        existing = self.universe.get_snapshot_by_chain_and_date(chain.id, as_of_date_utc)
        if existing is not None and existing.is_scan_eligible:
            logger.warning(f"Keeping {existing.status} universe {existing.id} for {chain.slug} after failed refresh")
            outcome = _outcome(existing, active=existing)
            return outcome.model_copy(update={"error_message": message, "preserved": True})

        failed = self.universe.replace_snapshot(
            chain.id, as_of_date_utc, "primary", "failed", [], error_message=message
        )
        active = self.universe.get_latest_scan_eligible_snapshot(chain.id)
        return _outcome(failed, active=active)


def _outcome(snapshot: TokenUniverseSnapshot, active: TokenUniverseSnapshot | None) -> RefreshOutcome:
    return RefreshOutcome(
        chain_id=snapshot.chain_id,
        snapshot_id=snapshot.id,
        active_snapshot_id=active.id if active else None,
        source=snapshot.source,
        provider=snapshot.provider,
        status=snapshot.status,
        item_count=snapshot.item_count,
        error_message=snapshot.error_message,
    )
