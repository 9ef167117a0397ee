"""Async JSON-RPC transport over httpx with per-call timeout and endpoint fallback."""

from __future__ import annotations

import asyncio
import itertools
from functools import partial
from typing import Any

import httpx

from chainledger.errors import DualSourceFailure, ProviderUnavailable
from chainledger.providers.fallback import Attempt, first_success

DEFAULT_TIMEOUT = 10.0


class JsonRpcClient:
    """Thin JSON-RPC client shared by the balance resolvers and the protocol reader."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT):
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def call(self, url: str, method: str, params: list[Any]) -> Any:
        """Single POST to one endpoint. Timeouts cancel the request."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await asyncio.wait_for(self.client.post(url, json=payload), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProviderUnavailable(f"RPC {method} timed out after {self.timeout}s", provider=url) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"RPC {method} transport error: {e}", provider=url) from e

        if resp.status_code >= 300:
            raise ProviderUnavailable(
                f"RPC call failed with HTTP {resp.status_code}",
                provider=url,
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderUnavailable(f"RPC {method} returned a non-JSON body", provider=url) from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderUnavailable(message or "Unknown RPC error", provider=url)
        return body.get("result")

    async def call_any(self, urls: list[str], method: str, params: list[Any]) -> Any:
        """Try each endpoint once in order; the first answer wins."""
        if not urls:
            raise ProviderUnavailable(f"No RPC endpoint configured for {method}")

        attempts = [Attempt(url, partial(self.call, url, method, params)) for url in urls]
        try:
            _, result = await first_success(attempts, label=f"RPC {method}")
        except DualSourceFailure as e:
            raise ProviderUnavailable(str(e), provider="rpc") from e
        return result

    async def eth_call(self, urls: list[str], to: str, data: str) -> str:
        result = await self.call_any(urls, "eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str):
            raise ProviderUnavailable("Invalid RPC result shape for eth_call.")
        return result

    async def eth_get_balance(self, urls: list[str], address: str) -> str:
        result = await self.call_any(urls, "eth_getBalance", [address, "latest"])
        if not isinstance(result, str):
            raise ProviderUnavailable("Invalid RPC result shape for eth_getBalance.")
        return result
