"""Shared GET-JSON helper for the market-data and price providers."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from chainledger.errors import ProviderUnavailable


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    provider: str,
    params: dict | None = None,
    headers: dict | None = None,
    timeout: float = 15.0,
) -> Any:
    """GET a JSON document, mapping every transport-level problem to ProviderUnavailable."""
    request_headers = {"accept": "application/json", **(headers or {})}
    try:
        resp = await asyncio.wait_for(client.get(url, params=params, headers=request_headers), timeout=timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise ProviderUnavailable(f"{provider} request timed out after {timeout}s", provider=provider) from e
    except httpx.HTTPError as e:
        raise ProviderUnavailable(f"{provider} transport error: {e}", provider=provider) from e

    if resp.status_code >= 300:
        raise ProviderUnavailable(
            f"{provider} request failed with HTTP {resp.status_code}.",
            provider=provider,
            status_code=resp.status_code,
        )
    try:
        return resp.json()
    except ValueError as e:
        raise ProviderUnavailable(f"{provider} returned a non-JSON body", provider=provider) from e
