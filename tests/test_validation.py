"""
Unit tests for address checks, RPC URL safety and custom chain registration.

Tests follow the Given/When/Then pattern for clarity.
"""

import pytest

from chainledger.chain.validation import (
    assert_safe_rpc_url,
    is_private_address,
    is_valid_address,
    register_custom_chain,
    validate_custom_chain,
)
from chainledger.errors import ConfigError, RpcUrlSafetyError

from conftest import make_rpc, rpc_error, rpc_result


def resolving_to(*addresses):
    async def resolver(hostname):
        return list(addresses)

    return resolver


def chain_id_of(value):
    async def reader(url, timeout):
        return value

    return reader


class TestAddresses:
    def test_evm_and_solana_formats(self):
        assert is_valid_address("evm", "0x" + "ab" * 20)
        assert not is_valid_address("evm", "0x1234")
        assert is_valid_address("solana", "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin")
        assert not is_valid_address("solana", "0OIl" * 10)

    @pytest.mark.parametrize("host", ["10.0.0.1", "127.0.0.1", "169.254.1.1", "100.64.0.1", "::1", "::ffff:192.168.1.1"])
    def test_private_ranges(self, host):
        assert is_private_address(host)

    def test_public_ip_is_not_private(self):
        assert not is_private_address("1.1.1.1")


class TestRpcUrlSafety:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        ["ftp://rpc.example.com", "http://localhost:8545", "http://node.localhost", "http://192.168.0.10:8545", "not a url"],
    )
    async def test_unsafe_urls_are_rejected(self, url):
        with pytest.raises(RpcUrlSafetyError):
            await assert_safe_rpc_url(url, resolver=resolving_to("1.1.1.1"))

    @pytest.mark.asyncio
    async def test_hostname_resolving_privately_is_rejected(self):
        """
        Given a public-looking hostname that resolves to a private IP
        When checking URL safety
        Then the URL is rejected
        """
        with pytest.raises(RpcUrlSafetyError, match="resolves to a private-network IP"):
            await assert_safe_rpc_url("https://rpc.example.com", resolver=resolving_to("1.1.1.1", "10.1.2.3"))

    @pytest.mark.asyncio
    async def test_opt_out_allows_local_nodes(self):
        await assert_safe_rpc_url("http://127.0.0.1:8545", allow_unsafe=True)


class TestValidateCustomChain:
    @pytest.mark.asyncio
    async def test_matching_chain_id_is_valid(self):
        status = await validate_custom_chain(
            "evm", "https://rpc.example.com", 10, resolver=resolving_to("1.1.1.1"), chain_id_reader=chain_id_of(10)
        )

        assert status == ("valid", None)

    @pytest.mark.asyncio
    async def test_mismatched_chain_id_is_invalid(self):
        """
        Given an RPC reporting a different chain id than declared
        When validating the custom chain
        Then the status is invalid with both ids in the error
        """
        status, error = await validate_custom_chain(
            "evm", "https://rpc.example.com", 10, resolver=resolving_to("1.1.1.1"), chain_id_reader=chain_id_of(1)
        )

        assert status == "invalid"
        assert "expected=10" in error and "observed=1" in error

    @pytest.mark.asyncio
    async def test_solana_health_check(self):
        healthy = make_rpc(lambda request, payload: rpc_result(payload, "ok"))
        unhealthy = make_rpc(lambda request, payload: rpc_error(payload, "Node is behind"))

        ok = await validate_custom_chain("solana", "https://sol.example.com", resolver=resolving_to("1.1.1.1"), rpc=healthy)
        bad = await validate_custom_chain("solana", "https://sol.example.com", resolver=resolving_to("1.1.1.1"), rpc=unhealthy)

        assert ok == ("valid", None)
        assert bad == ("invalid", "Node is behind")


class TestRegisterCustomChain:
    @pytest.mark.asyncio
    async def test_invalid_chain_is_stored_inactive(self, stores):
        """
        Given an EVM RPC that reports the wrong chain id
        When registering the custom chain
        Then it is stored inactive with its validation error
        """
        chain = await register_custom_chain(
            stores.chains, "mychain", "My Chain", "evm", "https://rpc.example.com", chain_id=777,
            resolver=resolving_to("1.1.1.1"), chain_id_reader=chain_id_of(1),
        )

        assert not chain.is_active
        assert chain.validation_status == "invalid"
        assert stores.chains.get_chain_by_id("mychain").is_builtin is False
        assert "mychain" not in {c.id for c in stores.chains.list_chains()}

    @pytest.mark.asyncio
    async def test_valid_chain_is_active(self, stores):
        chain = await register_custom_chain(
            stores.chains, "mychain", "My Chain", "evm", "https://rpc.example.com", chain_id=777,
            resolver=resolving_to("1.1.1.1"), chain_id_reader=chain_id_of(777),
        )

        assert chain.is_active
        assert "mychain" in {c.id for c in stores.chains.list_chains()}

    @pytest.mark.asyncio
    async def test_duplicate_and_malformed_slugs_are_rejected(self, stores):
        with pytest.raises(ConfigError, match="already exists"):
            await register_custom_chain(stores.chains, "ethereum", "Eth", "evm", "https://rpc.example.com", chain_id=1)
        with pytest.raises(ConfigError, match="Invalid chain slug"):
            await register_custom_chain(stores.chains, "Bad Slug!", "x", "evm", "https://rpc.example.com", chain_id=1)

    @pytest.mark.asyncio
    async def test_evm_requires_chain_id(self, stores):
        with pytest.raises(ConfigError, match="chain id"):
            await register_custom_chain(stores.chains, "mychain", "x", "evm", "https://rpc.example.com")

    @pytest.mark.asyncio
    async def test_unsafe_url_is_not_stored(self, stores):
        with pytest.raises(RpcUrlSafetyError):
            await register_custom_chain(
                stores.chains, "mychain", "x", "evm", "http://127.0.0.1:8545", chain_id=1
            )
        assert stores.chains.get_chain_by_id("mychain") is None
