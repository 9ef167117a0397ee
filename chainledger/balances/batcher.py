"""Chunked balance resolution with per-family dispatch."""

from __future__ import annotations

import logging
from decimal import Decimal

from chainledger.balances.resolver import BalanceResolver
from chainledger.errors import AllResolutionsFailed, BalanceResolverNotConfigured
from chainledger.models.schema import BalanceRecord, Chain, ChainFamily, TokenDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50


def chunk(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _align(tokens: list[TokenDescriptor], records: list[BalanceRecord]) -> list[BalanceRecord]:
    """Map resolver output back onto the requested tokens by contract identity.

    A token the resolver did not answer for is reported as a resolution error.
    """
    by_key = {r.contract_or_mint.lower(): r for r in records}
    aligned = []
    for token in tokens:
        record = by_key.get(token.contract_or_mint.lower())
        if record is None:
            record = BalanceRecord(
                contract_or_mint=token.contract_or_mint,
                resolution_error=True,
                error_message="No balance returned by resolver",
            )
        elif record.contract_or_mint != token.contract_or_mint:
            record = record.model_copy(update={"contract_or_mint": token.contract_or_mint})
        aligned.append(record)
    return aligned


class BalanceBatcher:
    """Split a scan's token set into chunks and route each to its family resolver."""

    def __init__(
        self,
        resolvers: dict[ChainFamily, BalanceResolver],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.resolvers = resolvers
        self.chunk_size = chunk_size if isinstance(chunk_size, int) and chunk_size > 0 else DEFAULT_CHUNK_SIZE

    def resolver_for(self, chain: Chain) -> BalanceResolver:
        resolver = self.resolvers.get(ChainFamily(chain.family))
        if resolver is None:
            raise BalanceResolverNotConfigured(
                f"No {ChainFamily(chain.family).value} balance resolver configured for wallet scan."
            )
        return resolver

    async def resolve_balances(
        self,
        chain: Chain,
        wallet_address: str,
        tokens: list[TokenDescriptor],
    ) -> list[BalanceRecord]:
        resolver = self.resolver_for(chain)
        outputs: list[BalanceRecord] = []

        for group in chunk(tokens, self.chunk_size):
            try:
                records = await resolver.resolve_balances(chain, wallet_address, group)
            except Exception as e:
                # a whole chunk failing must not take the other chunks with it
                logger.warning(f"Balance chunk of {len(group)} failed on {chain.slug}: {e}")
                records = [
                    BalanceRecord(
                        contract_or_mint=t.contract_or_mint,
                        balance_normalized=Decimal(0),
                        resolution_error=True,
                        error_message=str(e) or type(e).__name__,
                    )
                    for t in group
                ]
            outputs.extend(_align(group, records))

        if outputs and all(r.resolution_error for r in outputs):
            errors = sorted({r.error_message or "unknown error" for r in outputs})
            raise AllResolutionsFailed(
                f"All {len(outputs)} balance resolutions failed on {chain.slug}: {'; '.join(errors[:3])}",
                errors=errors,
            )
        return outputs
