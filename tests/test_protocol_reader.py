"""
Unit tests for protocol position reads.

Tests follow the Given/When/Then pattern for clarity.
"""

import pytest

from chainledger.errors import ProtocolReadError, UnsupportedReadError
from chainledger.models.schema import ProtocolContract, Wallet
from chainledger.protocols.reader import ProtocolPositionReader

from conftest import WALLET, make_rpc, rpc_error, rpc_result, uint_word

VAULT = "0x9999999999999999999999999999999999999999"
BALANCE_OF = {"function": "balanceOf", "args": ["$walletAddress"], "returns": "uint256"}
DECIMALS = {"function": "decimals", "args": [], "returns": "uint8"}


def protocol(mapping: dict, label: str | None = "Vault") -> ProtocolContract:
    return ProtocolContract(id="p1", chain_id="ethereum", contract_address=VAULT, label=label, abi_mapping=mapping)


def main_wallet() -> Wallet:
    return Wallet(id="w1", chain_id="ethereum", address=WALLET)


class TestResolvePosition:
    @pytest.mark.asyncio
    async def test_balance_scaled_by_decimals_read(self, ethereum):
        """
        Given a vault mapping with a decimals read returning 6
        When resolving the wallet's position
        Then the raw balance is scaled by 10^6 and tagged with the protocol
        """
        calls = []

        def handler(request, payload):
            call = payload["params"][0]
            calls.append(call)
            if call["data"].startswith("0x70a08231"):
                return rpc_result(payload, uint_word(2_500_000))
            return rpc_result(payload, uint_word(6))

        reader = ProtocolPositionReader(make_rpc(handler))

        position = await reader.resolve_position(
            ethereum, main_wallet(), protocol({"positionRead": BALANCE_OF, "decimalsRead": DECIMALS})
        )

        assert position.quantity == 2.5
        assert position.contract_or_mint == VAULT
        assert position.token_id == "p1"
        assert position.symbol == "Vault"
        assert all(c["to"] == VAULT for c in calls)
        assert calls[0]["data"].endswith(WALLET[2:])

    @pytest.mark.asyncio
    async def test_missing_decimals_read_defaults_to_18(self, ethereum):
        def handler(request, payload):
            return rpc_result(payload, uint_word(3 * 10**18))

        reader = ProtocolPositionReader(make_rpc(handler))

        position = await reader.resolve_position(ethereum, main_wallet(), protocol({"positionRead": BALANCE_OF}))

        assert position.quantity == 3.0

    @pytest.mark.asyncio
    async def test_unsupported_mapping_fails_before_any_rpc(self, ethereum):
        """
        Given a mapping calling a function outside the allow-list
        When resolving the position
        Then UnsupportedReadError is raised and no RPC call is made
        """
        calls = []

        def handler(request, payload):
            calls.append(payload)
            return rpc_result(payload, uint_word(1))

        reader = ProtocolPositionReader(make_rpc(handler))
        mapping = {"positionRead": {"function": "customRead", "args": ["$walletAddress"], "returns": "uint256"}}

        with pytest.raises(UnsupportedReadError):
            await reader.resolve_position(ethereum, main_wallet(), protocol(mapping))
        assert calls == []

    @pytest.mark.asyncio
    async def test_rpc_failure_names_the_protocol(self, ethereum):
        """
        Given every RPC endpoint rejecting the call
        When resolving the position
        Then ProtocolReadError carries the protocol id and label
        """
        reader = ProtocolPositionReader(make_rpc(lambda request, payload: rpc_error(payload, "execution reverted")))

        with pytest.raises(ProtocolReadError, match=r"Protocol Vault \(p1\) position read failed") as excinfo:
            await reader.resolve_position(ethereum, main_wallet(), protocol({"positionRead": BALANCE_OF}))

        assert excinfo.value.protocol_id == "p1"
        assert excinfo.value.label == "Vault"

    @pytest.mark.asyncio
    async def test_decimals_above_cap_fail(self, ethereum):
        def handler(request, payload):
            data = payload["params"][0]["data"]
            return rpc_result(payload, uint_word(1 if data.startswith("0x70a08231") else 40))

        reader = ProtocolPositionReader(make_rpc(handler))

        with pytest.raises(ProtocolReadError, match="exceed supported maximum"):
            await reader.resolve_position(
                ethereum, main_wallet(), protocol({"positionRead": BALANCE_OF, "decimalsRead": DECIMALS})
            )

    @pytest.mark.asyncio
    async def test_non_evm_chain_is_rejected(self, solana):
        reader = ProtocolPositionReader(make_rpc(lambda request, payload: rpc_result(payload, "0x")))

        with pytest.raises(ProtocolReadError, match="only supported on EVM"):
            await reader.resolve_position(solana, main_wallet(), protocol({"positionRead": BALANCE_OF}))
