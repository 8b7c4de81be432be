from __future__ import annotations

import asyncio
from typing import Any

import httpx

from walletlookup.core.errors import ProviderError
from walletlookup.core.wallets import clean_twitter_handle
from walletlookup.services.providers.base import ENSResult, ProviderResult, as_text, raise_for_provider_status

ENS_GATEWAY_URL = "https://api.ensdata.net"
ENS_BATCH_SIZE = 50
# ENSIP-5 text record keys that may hold a Twitter handle, in lookup order.
TWITTER_RECORD_KEYS = ("com.twitter", "twitter", "vnd.twitter")
GITHUB_RECORD_KEYS = ("com.github", "github")


class ENSProvider:
    """Reverse-resolves wallets to a primary ENS name plus its text records.

    Talks to an HTTP gateway that performs the on-chain reverse lookup, so the
    worker does not need an RPC node.
    """

    name = "ens"
    max_batch_size = ENS_BATCH_SIZE

    def __init__(
        self,
        *,
        gateway_url: str = ENS_GATEWAY_URL,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.gateway_url = gateway_url.rstrip("/")
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def resolve_batch(self, addresses: list[str]) -> dict[str, ProviderResult]:
        if not addresses:
            return {}
        if self._client is not None:
            payloads = await self._fetch_all(self._client, addresses)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                payloads = await self._fetch_all(client, addresses)

        results: dict[str, ProviderResult] = {}
        for address, payload in zip(addresses, payloads):
            parsed = parse_ens_record(payload, address)
            if parsed is not None:
                results[address] = parsed
        return results

    async def _fetch_all(self, client: httpx.AsyncClient, addresses: list[str]) -> list[dict[str, Any] | None]:
        return list(await asyncio.gather(*(self._fetch_record(client, address) for address in addresses)))

    async def _fetch_record(self, client: httpx.AsyncClient, address: str) -> dict[str, Any] | None:
        try:
            response = await client.get(f"{self.gateway_url}/{address}", headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed for {address}: {exc}") from exc

        if response.status_code == 404:
            return None
        raise_for_provider_status(self.name, response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "invalid JSON payload", status_code=response.status_code) from exc
        return payload if isinstance(payload, dict) else None


def parse_ens_record(payload: dict[str, Any] | None, wallet: str) -> ENSResult | None:
    if not payload:
        return None
    ens_name = as_text(payload.get("ens_primary")) or as_text(payload.get("ens")) or as_text(payload.get("name"))
    if ens_name is None:
        return None

    records = payload.get("records") if isinstance(payload.get("records"), dict) else payload
    twitter = None
    for key in TWITTER_RECORD_KEYS:
        twitter = clean_twitter_handle(records.get(key))
        if twitter:
            break
    github = next((as_text(records.get(key)) for key in GITHUB_RECORD_KEYS if as_text(records.get(key))), None)

    return ENSResult(
        wallet=wallet.lower(),
        ens_name=ens_name,
        twitter=twitter,
        github=github,
        url=as_text(records.get("url")),
    )
